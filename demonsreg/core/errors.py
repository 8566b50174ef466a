"""
Exception hierarchy for demons registration.

Every failure is terminal for the run it occurs in; recovery (for example
restarting with different parameters) is left to the caller.
"""


class RegistrationError(RuntimeError):
    """Base class for all registration failures."""


class InvalidConfiguration(RegistrationError, ValueError):
    """
    Raised at setup when a parameter is out of range.

    Examples are a zero thread count, a barrier with zero parties, a
    non-positive iteration count or a non-positive intensity threshold.
    """


class NumericalInstability(RegistrationError):
    """Raised when the update kernel produces or consumes a non-finite value."""


class DispatchFailure(RegistrationError):
    """Raised when the worker pool cannot be started, dispatched or joined."""


class BarrierError(RegistrationError):
    """Raised when a barrier is misused, times out or has been aborted."""
