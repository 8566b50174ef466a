"""
Multi-threaded demons registration solver.

Drives the iteration loop: initialize iteration, compute the update on every
worker, reduce the per-thread statistics, pick a time step, apply the update
on every worker, then check the halting condition.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, List, Optional

import numpy as np
from numpy.typing import NDArray
from scipy import ndimage
from tqdm import tqdm

from .barrier import Barrier
from .demons_function import DemonsRegistrationFunction, IterationMetric, ThreadState
from .partition import RegionPartitioner
from .threader import MultiThreader, ThreadInfo
from ..core.errors import InvalidConfiguration, NumericalInstability, RegistrationError
from ..core.image import RegistrationImage
from ..core.parameters import DemonsParameters
from ..core.region import ImageRegion
from ..core.state import SolverState

logger = logging.getLogger(__name__)


class DemonsRegistrationFilter:
    """
    Deformably register two images using the demons algorithm.

    The filter computes a deformation field that maps the moving image onto
    the fixed image. The field has one vector per fixed-image voxel (in
    physical units), stored as an array of shape (*fixed.shape, ndim).

    Each iteration runs two phases on a persistent pool of worker threads,
    each worker owning one disjoint slab of the image:

    1. compute: every worker writes the demons update for its slab into the
       update buffer and records its partial statistics; all workers and the
       controller then meet at the compute barrier.
    2. apply: every worker adds ``dt * update`` to its slab of the
       deformation field; all then meet at the apply barrier.

    The metric returned by get_metric() is the mean square difference of the
    previous completed iteration, NOT the one in progress.

    Example:
        >>> solver = DemonsRegistrationFilter(DemonsParameters(number_of_iterations=50))
        >>> solver.set_fixed_image(fixed)
        >>> solver.set_moving_image(moving)
        >>> field = solver.update()
        >>> solver.get_metric()
    """

    def __init__(
        self,
        parameters: Optional[DemonsParameters] = None,
        function: Optional[DemonsRegistrationFunction] = None,
    ):
        """
        Initialize the solver.

        Args:
            parameters: Registration parameters (copied and validated)
            function: Update strategy; built from the parameters if omitted
        """
        params = replace(parameters) if parameters is not None else DemonsParameters()
        params.validate()
        self._params = params

        if function is None:
            function = DemonsRegistrationFunction(
                intensity_difference_threshold=params.intensity_difference_threshold,
                use_moving_image_gradient=params.use_moving_image_gradient,
            )
        else:
            # parameters report what the injected kernel actually uses
            params.intensity_difference_threshold = function.intensity_difference_threshold
            params.use_moving_image_gradient = function.use_moving_image_gradient
        self._function = function

        self._fixed: Optional[RegistrationImage] = None
        self._moving: Optional[RegistrationImage] = None
        self._initial_field: Optional[NDArray[np.float64]] = None

        self._field: Optional[NDArray[np.float64]] = None
        self._update: Optional[NDArray[np.float64]] = None
        self._regions: List[ImageRegion] = []
        self._thread_states: List[Optional[ThreadState]] = []

        self._compute_barrier = Barrier()
        self._apply_barrier = Barrier()

        self._state = SolverState.UNINITIALIZED
        self._metric = float(np.finfo(np.float64).max)
        self._rms_change = 0.0
        self._pending: Optional[IterationMetric] = None
        self._metric_history: List[float] = []
        self._elapsed_iterations = 0
        self._time_step = params.time_step
        self._stop_requested = False

        self._progress_callback: Optional[Callable[[float, str], None]] = None
        self.show_progress = False

    # Inputs

    def set_fixed_image(self, image: RegistrationImage) -> None:
        """Set the fixed (reference) image."""
        self._fixed = image

    def set_moving_image(self, image: RegistrationImage) -> None:
        """Set the moving image, resampled onto the fixed grid."""
        self._moving = image

    def set_initial_deformation_field(self, field: Optional[NDArray[np.float64]]) -> None:
        """
        Set the field the registration starts from (zero field if None).

        The field is checked against the fixed image when the run starts.
        """
        self._initial_field = None if field is None else np.asarray(field, dtype=np.float64)

    @property
    def fixed_image(self) -> Optional[RegistrationImage]:
        return self._fixed

    @property
    def moving_image(self) -> Optional[RegistrationImage]:
        return self._moving

    # Configuration

    @property
    def parameters(self) -> DemonsParameters:
        """Copy of the current parameters."""
        return replace(self._params)

    @property
    def function(self) -> DemonsRegistrationFunction:
        return self._function

    @property
    def number_of_iterations(self) -> int:
        return self._params.number_of_iterations

    @number_of_iterations.setter
    def number_of_iterations(self, value: int) -> None:
        if value < 1:
            raise InvalidConfiguration(f"number_of_iterations must be >= 1, got {value}")
        self._params.number_of_iterations = int(value)

    @property
    def number_of_threads(self) -> int:
        return self._params.number_of_threads

    @number_of_threads.setter
    def number_of_threads(self, value: int) -> None:
        if value < 1:
            raise InvalidConfiguration(f"number_of_threads must be >= 1, got {value}")
        self._params.number_of_threads = int(value)

    @property
    def intensity_difference_threshold(self) -> float:
        return self._function.intensity_difference_threshold

    @intensity_difference_threshold.setter
    def intensity_difference_threshold(self, value: float) -> None:
        self._function.intensity_difference_threshold = value
        self._params.intensity_difference_threshold = float(value)

    @property
    def use_moving_image_gradient(self) -> bool:
        return self._function.use_moving_image_gradient

    @use_moving_image_gradient.setter
    def use_moving_image_gradient(self, value: bool) -> None:
        self._function.use_moving_image_gradient = value
        self._params.use_moving_image_gradient = bool(value)

    def set_progress_callback(self, callback: Callable[[float, str], None]) -> None:
        """
        Set callback for progress updates.

        The callback runs on the controlling thread after every iteration and
        may call stop_registration().

        Args:
            callback: Function(progress: float, message: str)
        """
        self._progress_callback = callback

    def _report_progress(self, progress: float, message: str = "") -> None:
        """Report progress to callback if set."""
        if self._progress_callback:
            self._progress_callback(progress, message)

    def stop_registration(self) -> None:
        """Halt the run once the current iteration has completed."""
        self._stop_requested = True

    # Queries

    @property
    def state(self) -> SolverState:
        return self._state

    @property
    def elapsed_iterations(self) -> int:
        return self._elapsed_iterations

    @property
    def time_step(self) -> float:
        """Time step used by the most recent apply phase."""
        return self._time_step

    @property
    def metric_history(self) -> List[float]:
        """Published metric of every completed iteration."""
        return list(self._metric_history)

    def get_metric(self) -> float:
        """
        Mean square intensity difference between the fixed image and the
        deformed moving image over their overlap.

        Only available for the previous iteration, NOT the current one. The
        largest float is returned before the first iteration completes.
        """
        return self._metric

    def get_rms_change(self) -> float:
        """Root mean square update norm of the previous iteration."""
        return self._rms_change

    def get_deformation_field(self) -> Optional[NDArray[np.float64]]:
        """
        Current deformation field (None before the first run).

        Raises:
            RegistrationError: If the last run aborted with a numerical failure
        """
        if self._state == SolverState.FAILED and self._field is None:
            raise RegistrationError(
                "Registration failed numerically; no valid deformation field is available"
            )
        return self._field

    # Iteration loop

    def update(self) -> NDArray[np.float64]:
        """
        Run the registration for the configured number of iterations.

        Returns:
            Deformation field of shape (*fixed.shape, ndim)

        Raises:
            InvalidConfiguration: If inputs or parameters are invalid
            NumericalInstability: If the kernel produced a non-finite value
            DispatchFailure: If the worker pool could not be started
        """
        self._initialize()

        n_iter = self._params.number_of_iterations
        n_threads = self._params.number_of_threads

        logger.info(
            "Demons registration: %d iterations, image shape %s, %d threads (%d regions)",
            n_iter, self._fixed.shape, n_threads, len(self._regions),
        )

        threader = MultiThreader(n_threads)
        try:
            threader.start()
            with tqdm(total=n_iter, desc="Demons", unit="it", disable=not self.show_progress) as pbar:
                while not self._halt():
                    self._iterate(threader)
                    pbar.update(1)
                    pbar.set_postfix(metric=f"{self._metric:.4g}")
                    self._report_progress(
                        self._elapsed_iterations / n_iter,
                        f"Iteration {self._elapsed_iterations}/{n_iter}",
                    )
        except NumericalInstability:
            logger.error(
                "Numerical failure in iteration %d; discarding deformation field",
                self._elapsed_iterations + 1,
            )
            self._state = SolverState.FAILED
            self._field = None
            raise
        except Exception:
            logger.error("Registration aborted in iteration %d", self._elapsed_iterations + 1)
            self._state = SolverState.FAILED
            raise
        finally:
            threader.shutdown()
            self._update = None

        self._state = SolverState.TERMINATED
        logger.info(
            "Demons registration finished after %d iterations: metric=%.6g rms_change=%.6g",
            self._elapsed_iterations, self._metric, self._rms_change,
        )
        return self._field

    def _initialize(self) -> None:
        """Validate inputs and allocate the fields for a new run."""
        if self._fixed is None or self._moving is None:
            raise InvalidConfiguration("Fixed and moving images must be set")

        self._params.validate()

        fixed = self._fixed
        if self._moving.ndim != fixed.ndim:
            raise InvalidConfiguration(
                f"Fixed image is {fixed.ndim}-D but moving image is {self._moving.ndim}-D"
            )

        field_shape = fixed.shape + (fixed.ndim,)
        if self._initial_field is None:
            self._field = np.zeros(field_shape, dtype=np.float64)
        else:
            if self._initial_field.shape != field_shape:
                raise InvalidConfiguration(
                    f"Initial deformation field has shape {self._initial_field.shape}, "
                    f"expected {field_shape}"
                )
            if not np.all(np.isfinite(self._initial_field)):
                raise InvalidConfiguration("Initial deformation field contains non-finite values")
            self._field = np.array(self._initial_field, dtype=np.float64, order="C")

        self._update = np.zeros(field_shape, dtype=np.float64)

        n_threads = self._params.number_of_threads
        self._regions = RegionPartitioner.split(fixed.region, n_threads)
        self._thread_states = [None] * n_threads

        # workers plus the controlling thread
        self._compute_barrier.initialize(n_threads + 1)
        self._apply_barrier.initialize(n_threads + 1)

        self._metric = float(np.finfo(np.float64).max)
        self._rms_change = 0.0
        self._pending = None
        self._metric_history = []
        self._elapsed_iterations = 0
        self._time_step = self._params.time_step
        self._stop_requested = False
        self._state = SolverState.UNINITIALIZED

    def _halt(self) -> bool:
        if self._stop_requested:
            logger.info("Registration stopped after %d iterations", self._elapsed_iterations)
            return True
        return self._elapsed_iterations >= self._params.number_of_iterations

    def _iterate(self, threader: MultiThreader) -> None:
        """Run one compute phase and one apply phase."""
        self._initialize_iteration()

        self._state = SolverState.COMPUTING_UPDATE
        threader.single_method_execute(self._threaded_compute_update, self._compute_barrier)

        self._pending = self._function.reduce(self._thread_states)
        self._time_step = self._compute_global_time_step(self._pending)

        if self._params.smooth_update_field:
            self._smooth_field(self._update, self._params.update_field_standard_deviations)

        self._state = SolverState.APPLYING_UPDATE
        self._metric = self._pending.metric
        self._rms_change = self._pending.rms_change
        self._metric_history.append(self._metric)

        threader.single_method_execute(self._threaded_apply_update, self._apply_barrier)

        if self._params.smooth_deformation_field:
            self._smooth_field(self._field, self._params.standard_deviations)

        self._elapsed_iterations += 1
        logger.debug(
            "Iteration %d: metric=%.6g pixels=%d rms_change=%.6g dt=%.4g",
            self._elapsed_iterations,
            self._metric,
            self._pending.number_of_pixels_processed,
            self._rms_change,
            self._time_step,
        )

    def _initialize_iteration(self) -> None:
        """Refresh kernel caches and reset per-iteration accumulators."""
        self._function.initialize_iteration(self._fixed, self._moving)
        self._thread_states = [None] * self._params.number_of_threads
        self._update.fill(0.0)

    def _compute_global_time_step(self, metric: IterationMetric) -> float:
        """
        Time step for the apply phase.

        The configured time step, reduced when needed so that no voxel moves
        farther than maximum_step_length in one iteration.
        """
        dt = self._params.time_step
        bound = self._params.maximum_step_length
        if bound > 0 and metric.maximum_update_norm * dt > bound:
            dt = bound / metric.maximum_update_norm
        return dt

    def _region_for(self, info: ThreadInfo) -> Optional[ImageRegion]:
        if info.thread_id < len(self._regions):
            return self._regions[info.thread_id]
        return None

    def _threaded_compute_update(self, info: ThreadInfo) -> None:
        region = self._region_for(info)
        state = self._function.get_global_data(info.thread_id, region)
        if region is not None:
            self._function.compute_update(region, self._field, self._update, state)
        self._thread_states[info.thread_id] = state

    def _threaded_apply_update(self, info: ThreadInfo) -> None:
        region = self._region_for(info)
        if region is None:
            return
        region_slices = region.slices
        self._field[region_slices] += self._time_step * self._update[region_slices]

    @staticmethod
    def _smooth_field(field: NDArray[np.float64], sigma: float) -> None:
        """Gaussian smooth every vector component in place."""
        if sigma <= 0:
            return
        for component in range(field.shape[-1]):
            field[..., component] = ndimage.gaussian_filter(
                field[..., component], sigma, mode="nearest"
            )
