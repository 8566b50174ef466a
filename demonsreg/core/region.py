"""
N-dimensional index regions.

An ImageRegion is a rectangular box of voxel indices described by a start
index and a size per axis, in numpy axis order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Sequence, Tuple

import numpy as np


@dataclass(frozen=True)
class ImageRegion:
    """
    Rectangular index region.

    Attributes:
        index: Start index along each axis
        size: Number of voxels along each axis
    """

    index: Tuple[int, ...]
    size: Tuple[int, ...]

    def __post_init__(self):
        index = tuple(int(i) for i in self.index)
        size = tuple(int(s) for s in self.size)
        if len(index) != len(size):
            raise ValueError(
                f"Index and size must have the same dimension, got {len(index)} and {len(size)}"
            )
        if any(s < 0 for s in size):
            raise ValueError(f"Region size must be non-negative, got {size}")
        object.__setattr__(self, "index", index)
        object.__setattr__(self, "size", size)

    @classmethod
    def from_shape(cls, shape: Sequence[int]) -> "ImageRegion":
        """Create the region covering a whole array of the given shape."""
        return cls(index=(0,) * len(shape), size=tuple(shape))

    @property
    def ndim(self) -> int:
        return len(self.size)

    @property
    def upper_index(self) -> Tuple[int, ...]:
        """Exclusive upper index along each axis."""
        return tuple(i + s for i, s in zip(self.index, self.size))

    @property
    def number_of_pixels(self) -> int:
        return int(np.prod(self.size, dtype=np.int64)) if self.size else 0

    @property
    def slices(self) -> Tuple[slice, ...]:
        """Slices selecting this region from an array."""
        return tuple(slice(i, i + s) for i, s in zip(self.index, self.size))

    def is_empty(self) -> bool:
        """Check if region holds no voxels."""
        return self.number_of_pixels == 0

    def contains(self, index: Sequence[int]) -> bool:
        """Check whether a voxel index lies inside the region."""
        if len(index) != self.ndim:
            return False
        return all(lo <= i < hi for i, lo, hi in zip(index, self.index, self.upper_index))

    def intersect(self, other: "ImageRegion") -> "ImageRegion":
        """Return the overlap of two regions (possibly empty)."""
        if other.ndim != self.ndim:
            raise ValueError("Cannot intersect regions of different dimension")
        lower = [max(a, b) for a, b in zip(self.index, other.index)]
        upper = [min(a, b) for a, b in zip(self.upper_index, other.upper_index)]
        size = [max(u - l, 0) for l, u in zip(lower, upper)]
        return ImageRegion(index=tuple(lower), size=tuple(size))

    def grid(self) -> np.ndarray:
        """
        Voxel indices of the region as a float array.

        Returns:
            Array of shape (ndim, *size) holding the index along each axis
        """
        grid = np.indices(self.size, dtype=np.float64)
        for axis, start in enumerate(self.index):
            if start:
                grid[axis] += start
        return grid

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {"index": list(self.index), "size": list(self.size)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ImageRegion":
        """Create ImageRegion from dictionary."""
        return cls(index=tuple(d["index"]), size=tuple(d["size"]))
