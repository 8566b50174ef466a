"""Core data structures and classes for demons registration."""

from .errors import (
    RegistrationError,
    InvalidConfiguration,
    NumericalInstability,
    DispatchFailure,
    BarrierError,
)
from .state import SolverState
from .region import ImageRegion
from .image import RegistrationImage
from .parameters import DemonsParameters, GradientSource

__all__ = [
    "RegistrationError",
    "InvalidConfiguration",
    "NumericalInstability",
    "DispatchFailure",
    "BarrierError",
    "SolverState",
    "ImageRegion",
    "RegistrationImage",
    "DemonsParameters",
    "GradientSource",
]
