"""
Demons update function.

Computes the per-voxel demons force from the fixed intensity, the moving
intensity at the deformed position and an image gradient, and accumulates
the mean-square-difference statistics of one worker.

The voxel loop runs in Numba kernels compiled with ``nogil=True`` so that
worker threads execute them concurrently.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from numba import njit

from ..core.errors import InvalidConfiguration, NumericalInstability
from ..core.image import RegistrationImage
from ..core.region import ImageRegion


# Voxel outcomes returned by the kernels
VOXEL_NONFINITE = -1
VOXEL_MATCHED = 0
VOXEL_COUNTED = 1

DENOMINATOR_THRESHOLD = 1e-9


# =============================================================================
# Module-level Numba kernels
# =============================================================================

@njit(cache=True, nogil=True)
def _voxel_update(
    fixed_value: float,
    moving_value: float,
    gradient: NDArray[np.float64],
    threshold: float,
    normalizer: float,
    denominator_threshold: float,
    update: NDArray[np.float64],
) -> int:
    """
    Demons force at one voxel, written into ``update``.

    speed = fixed - moving
    update = speed * gradient / (|gradient|^2 + speed^2 / normalizer)

    The sign is the opposite of the moving-minus-fixed convention: with the
    moving image pulled at x + u(x), fixed - moving drives u toward the match.

    Returns:
        VOXEL_MATCHED when |speed| < threshold (zero update, no metric
        contribution), VOXEL_COUNTED when the voxel contributes to the
        metric, VOXEL_NONFINITE on a NaN or infinite value
    """
    ndim = gradient.shape[0]
    for d in range(ndim):
        update[d] = 0.0

    if not (np.isfinite(fixed_value) and np.isfinite(moving_value)):
        return VOXEL_NONFINITE

    speed = fixed_value - moving_value
    if abs(speed) < threshold:
        return VOXEL_MATCHED

    gradient_squared_magnitude = 0.0
    for d in range(ndim):
        g = gradient[d]
        if not np.isfinite(g):
            return VOXEL_NONFINITE
        gradient_squared_magnitude += g * g

    denominator = gradient_squared_magnitude + speed * speed / normalizer
    if denominator < denominator_threshold:
        return VOXEL_COUNTED

    scale = speed / denominator
    for d in range(ndim):
        update[d] = gradient[d] * scale
        if not np.isfinite(update[d]):
            return VOXEL_NONFINITE

    return VOXEL_COUNTED


@njit(cache=True, nogil=True)
def _compute_region_update(
    fixed_values: NDArray[np.float64],
    moving_values: NDArray[np.float64],
    gradients: NDArray[np.float64],
    inside: NDArray[np.bool_],
    threshold: float,
    normalizer: float,
    denominator_threshold: float,
    update: NDArray[np.float64],
) -> Tuple[float, int, float, float, int]:
    """
    Demons update for every voxel of a flattened region.

    Voxels whose deformed position lies outside the moving buffer get a zero
    update and are not counted.

    Returns:
        Tuple of (sum of squared differences, counted pixels, sum of squared
        update norms, largest squared update norm, non-finite voxels)
    """
    n = fixed_values.shape[0]
    ndim = update.shape[1]

    sum_of_squared_difference = 0.0
    number_of_pixels = 0
    sum_of_squared_change = 0.0
    max_squared_norm = 0.0
    nonfinite = 0

    for i in range(n):
        if not inside[i]:
            for d in range(ndim):
                update[i, d] = 0.0
            continue

        status = _voxel_update(
            fixed_values[i], moving_values[i], gradients[i],
            threshold, normalizer, denominator_threshold, update[i],
        )

        if status == VOXEL_NONFINITE:
            nonfinite += 1
        elif status == VOXEL_COUNTED:
            speed = fixed_values[i] - moving_values[i]
            sum_of_squared_difference += speed * speed
            number_of_pixels += 1

            squared_norm = 0.0
            for d in range(ndim):
                squared_norm += update[i, d] * update[i, d]
            sum_of_squared_change += squared_norm
            if squared_norm > max_squared_norm:
                max_squared_norm = squared_norm

    return (
        sum_of_squared_difference,
        number_of_pixels,
        sum_of_squared_change,
        max_squared_norm,
        nonfinite,
    )


def compute_voxel_update(
    fixed_value: float,
    moving_value: float,
    gradient: Sequence[float],
    threshold: float = 0.001,
    normalizer: float = 1.0,
) -> Tuple[NDArray[np.float64], bool]:
    """
    Demons update for a single voxel.

    Args:
        fixed_value: Fixed image intensity
        moving_value: Moving image intensity at the deformed position
        gradient: Gradient vector (fixed or moving image)
        threshold: Intensity difference threshold
        normalizer: Mean squared voxel spacing

    Returns:
        Tuple of (update vector, whether the voxel contributes to the metric)

    Raises:
        NumericalInstability: If any input or the result is not finite
    """
    gradient = np.ascontiguousarray(gradient, dtype=np.float64)
    update = np.zeros(gradient.shape[0], dtype=np.float64)

    status = _voxel_update(
        float(fixed_value), float(moving_value), gradient,
        float(threshold), float(normalizer), DENOMINATOR_THRESHOLD, update,
    )
    if status == VOXEL_NONFINITE:
        raise NumericalInstability(
            f"Non-finite demons update for fixed={fixed_value}, "
            f"moving={moving_value}, gradient={gradient}"
        )

    return update, status == VOXEL_COUNTED


# =============================================================================
# Per-thread and per-iteration accumulators
# =============================================================================

@dataclass
class ThreadState:
    """
    Partial statistics of one worker for one compute phase.

    Attributes:
        thread_id: Worker index
        region: Sub-region assigned to the worker (None if idle)
        sum_of_squared_difference: Sum of squared intensity differences
        number_of_pixels_processed: Voxels counted in the metric
        sum_of_squared_change: Sum of squared update norms
        maximum_update_norm: Largest update norm seen
    """

    thread_id: int
    region: Optional[ImageRegion] = None
    sum_of_squared_difference: float = 0.0
    number_of_pixels_processed: int = 0
    sum_of_squared_change: float = 0.0
    maximum_update_norm: float = 0.0


@dataclass
class IterationMetric:
    """Statistics of one completed compute phase, summed over all workers."""

    sum_of_squared_difference: float = 0.0
    number_of_pixels_processed: int = 0
    sum_of_squared_change: float = 0.0
    maximum_update_norm: float = 0.0

    @property
    def metric(self) -> float:
        """Mean square difference over the counted voxels (0.0 if none)."""
        if self.number_of_pixels_processed == 0:
            return 0.0
        return self.sum_of_squared_difference / self.number_of_pixels_processed

    @property
    def rms_change(self) -> float:
        """Root mean square update norm over the counted voxels (0.0 if none)."""
        if self.number_of_pixels_processed == 0:
            return 0.0
        return math.sqrt(self.sum_of_squared_change / self.number_of_pixels_processed)


# =============================================================================
# Update function
# =============================================================================

class DemonsRegistrationFunction:
    """
    Demons update strategy consumed by the registration solver.

    The solver calls initialize_iteration() once per iteration from the
    controlling thread, then compute_update() concurrently from every worker
    with a disjoint region and the worker's own ThreadState.
    """

    def __init__(
        self,
        intensity_difference_threshold: float = 0.001,
        use_moving_image_gradient: bool = False,
    ):
        self.intensity_difference_threshold = intensity_difference_threshold
        self.use_moving_image_gradient = use_moving_image_gradient

        self._fixed: Optional[RegistrationImage] = None
        self._moving: Optional[RegistrationImage] = None
        self._fixed_gradient: Optional[NDArray[np.float64]] = None
        self._normalizer = 1.0

    @property
    def intensity_difference_threshold(self) -> float:
        return self._threshold

    @intensity_difference_threshold.setter
    def intensity_difference_threshold(self, value: float) -> None:
        if not value > 0:
            raise InvalidConfiguration(
                f"intensity_difference_threshold must be > 0, got {value}"
            )
        self._threshold = float(value)

    @property
    def use_moving_image_gradient(self) -> bool:
        return self._use_moving_image_gradient

    @use_moving_image_gradient.setter
    def use_moving_image_gradient(self, value: bool) -> None:
        self._use_moving_image_gradient = bool(value)

    @property
    def normalizer(self) -> float:
        return self._normalizer

    def initialize_iteration(
        self,
        fixed: RegistrationImage,
        moving: RegistrationImage,
    ) -> None:
        """
        Bind the images and refresh cached gradients for the next iteration.

        Args:
            fixed: Fixed image
            moving: Moving image (same dimension as fixed)
        """
        if fixed.ndim != moving.ndim:
            raise InvalidConfiguration(
                f"Fixed image is {fixed.ndim}-D but moving image is {moving.ndim}-D"
            )

        self._fixed = fixed
        self._moving = moving
        self._normalizer = fixed.normalizer

        if self._use_moving_image_gradient:
            moving.get_gradient_image()
            self._fixed_gradient = None
        else:
            self._fixed_gradient = fixed.get_gradient_image()

    def get_global_data(self, thread_id: int, region: Optional[ImageRegion]) -> ThreadState:
        """Fresh accumulator for one worker."""
        return ThreadState(thread_id=thread_id, region=region)

    def compute_update(
        self,
        region: ImageRegion,
        deformation_field: NDArray[np.float64],
        update_field: NDArray[np.float64],
        state: ThreadState,
    ) -> None:
        """
        Compute the demons update for every voxel of region.

        Reads deformation_field and the images, writes update_field[region]
        and adds the region's statistics to state.

        Raises:
            NumericalInstability: If a counted voxel yields a non-finite value
        """
        if self._fixed is None:
            raise RuntimeError("initialize_iteration() must be called before compute_update()")

        if region.is_empty():
            return

        fixed = self._fixed
        moving = self._moving
        ndim = fixed.ndim
        n = region.number_of_pixels
        region_slices = region.slices

        displacement = deformation_field[region_slices].reshape(n, ndim)

        # physical position of each voxel, expressed in moving index space
        fixed_spacing = np.asarray(fixed.spacing).reshape(ndim, 1)
        moving_spacing = np.asarray(moving.spacing).reshape(ndim, 1)
        positions = (region.grid().reshape(ndim, n) * fixed_spacing + displacement.T) / moving_spacing

        moving_values, inside = moving.interpolate(positions)

        if self._use_moving_image_gradient:
            gradients = moving.interpolate_gradient(positions)
        else:
            gradients = np.ascontiguousarray(self._fixed_gradient[region_slices].reshape(n, ndim))

        fixed_values = np.ascontiguousarray(fixed.data[region_slices].reshape(n))
        update = np.empty((n, ndim), dtype=np.float64)

        ssd, pixels, sum_sq_change, max_sq_norm, nonfinite = _compute_region_update(
            fixed_values,
            np.ascontiguousarray(moving_values),
            gradients,
            inside,
            self._threshold,
            self._normalizer,
            DENOMINATOR_THRESHOLD,
            update,
        )

        if nonfinite:
            raise NumericalInstability(
                f"{nonfinite} non-finite demons updates in region "
                f"index={region.index} size={region.size}"
            )

        update_field[region_slices] = update.reshape(region.size + (ndim,))

        state.sum_of_squared_difference += ssd
        state.number_of_pixels_processed += pixels
        state.sum_of_squared_change += sum_sq_change
        state.maximum_update_norm = max(state.maximum_update_norm, math.sqrt(max_sq_norm))

    @staticmethod
    def reduce(states: Sequence[Optional[ThreadState]]) -> IterationMetric:
        """
        Combine per-thread statistics in thread-id order.

        Args:
            states: One slot per worker; None for workers that did not report
        """
        total = IterationMetric()
        for state in states:
            if state is None:
                continue
            total.sum_of_squared_difference += state.sum_of_squared_difference
            total.number_of_pixels_processed += state.number_of_pixels_processed
            total.sum_of_squared_change += state.sum_of_squared_change
            total.maximum_update_norm = max(total.maximum_update_norm, state.maximum_update_norm)
        return total
