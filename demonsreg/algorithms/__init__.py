"""Core algorithms for demons registration."""

from .barrier import Barrier
from .partition import RegionPartitioner
from .threader import MultiThreader, ThreadInfo
from .demons_function import (
    DemonsRegistrationFunction,
    IterationMetric,
    ThreadState,
    compute_voxel_update,
)
from .solver import DemonsRegistrationFilter

__all__ = [
    "Barrier",
    "RegionPartitioner",
    "MultiThreader",
    "ThreadInfo",
    "DemonsRegistrationFunction",
    "IterationMetric",
    "ThreadState",
    "compute_voxel_update",
    "DemonsRegistrationFilter",
]
