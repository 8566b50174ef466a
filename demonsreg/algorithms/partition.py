"""
Region partitioning for multi-threaded processing.

Splits an index region into disjoint slabs, one per worker thread.
"""

from __future__ import annotations

from typing import List

from ..core.errors import InvalidConfiguration
from ..core.region import ImageRegion


class RegionPartitioner:
    """
    Split an image region into balanced, disjoint sub-regions.

    The region is cut along its largest axis (lowest axis index on ties) by
    recursive halving: each half receives a share of the rows proportional to
    the number of threads assigned to it. The resulting slabs differ in
    thickness by at most one row, their union is the input region and no two
    of them overlap.
    """

    @staticmethod
    def split_axis(region: ImageRegion) -> int:
        """Axis with the largest extent."""
        return max(range(region.ndim), key=lambda axis: (region.size[axis], -axis))

    @staticmethod
    def split(region: ImageRegion, number_of_threads: int) -> List[ImageRegion]:
        """
        Split region into at most number_of_threads sub-regions.

        If the split axis holds fewer rows than threads, fewer sub-regions
        are returned; the idle threads get no work for that phase.

        Args:
            region: Region to divide
            number_of_threads: Requested number of pieces

        Returns:
            Ordered list of sub-regions (empty for an empty region)

        Raises:
            InvalidConfiguration: If number_of_threads < 1
        """
        if number_of_threads < 1:
            raise InvalidConfiguration(
                f"number_of_threads must be >= 1, got {number_of_threads}"
            )

        if region.is_empty():
            return []

        axis = RegionPartitioner.split_axis(region)
        pieces = min(number_of_threads, region.size[axis])

        return RegionPartitioner._bisect(region, axis, region.index[axis], region.size[axis], pieces)

    @staticmethod
    def _bisect(
        region: ImageRegion,
        axis: int,
        start: int,
        rows: int,
        pieces: int,
    ) -> List[ImageRegion]:
        if pieces == 1:
            index = list(region.index)
            size = list(region.size)
            index[axis] = start
            size[axis] = rows
            return [ImageRegion(index=tuple(index), size=tuple(size))]

        left_pieces = (pieces + 1) // 2
        # floor(rows * k / pieces) keeps every slab within one row of the others
        left_rows = rows * left_pieces // pieces

        return (
            RegionPartitioner._bisect(region, axis, start, left_rows, left_pieces)
            + RegionPartitioner._bisect(
                region, axis, start + left_rows, rows - left_rows, pieces - left_pieces
            )
        )
