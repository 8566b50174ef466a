"""
demonsreg - Multi-threaded demons deformable image registration in Python.

Reference:
    Image matching as a diffusion process: an analogy with Maxwell's demons
    J-P Thirion
    Medical Image Analysis 2 (3), 243-260
"""

__version__ = "1.0.0"
__author__ = "demonsreg developers"

from .core.errors import (
    RegistrationError,
    InvalidConfiguration,
    NumericalInstability,
    DispatchFailure,
    BarrierError,
)
from .core.state import SolverState
from .core.region import ImageRegion
from .core.image import RegistrationImage
from .core.parameters import DemonsParameters
from .algorithms.barrier import Barrier
from .algorithms.partition import RegionPartitioner
from .algorithms.threader import MultiThreader
from .algorithms.demons_function import DemonsRegistrationFunction
from .algorithms.solver import DemonsRegistrationFilter
from .main import DemonsRegistration, RegistrationResult

__all__ = [
    "DemonsRegistration",
    "RegistrationResult",
    "RegistrationError",
    "InvalidConfiguration",
    "NumericalInstability",
    "DispatchFailure",
    "BarrierError",
    "SolverState",
    "ImageRegion",
    "RegistrationImage",
    "DemonsParameters",
    "Barrier",
    "RegionPartitioner",
    "MultiThreader",
    "DemonsRegistrationFunction",
    "DemonsRegistrationFilter",
]
