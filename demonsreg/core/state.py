"""
Solver state enumeration.
"""

from enum import IntEnum


class SolverState(IntEnum):
    """
    States of a registration run.

    A run moves UNINITIALIZED -> COMPUTING_UPDATE -> APPLYING_UPDATE and then
    either back to COMPUTING_UPDATE or on to TERMINATED. FAILED is entered
    when a fatal error aborts the run.

    Examples:
        >>> solver.state == SolverState.TERMINATED
        True
    """

    UNINITIALIZED = 0
    COMPUTING_UPDATE = 1
    APPLYING_UPDATE = 2
    TERMINATED = 3
    FAILED = -1

    @property
    def is_running(self) -> bool:
        """True while one of the two phases is in flight."""
        return self in (SolverState.COMPUTING_UPDATE, SolverState.APPLYING_UPDATE)
