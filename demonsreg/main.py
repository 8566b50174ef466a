"""
Main demons registration application module.

Provides the high-level API for the registration workflow and the
command-line entry point.
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import numpy as np
from numpy.typing import NDArray

from . import __version__
from .algorithms.solver import DemonsRegistrationFilter
from .core.errors import InvalidConfiguration, RegistrationError
from .core.image import RegistrationImage
from .core.parameters import DemonsParameters
from .utils.image_loader import images_compatible, load_image, save_image
from .utils.validation import validate_demons_parameters

logger = logging.getLogger(__name__)


@dataclass
class RegistrationResult:
    """
    Complete demons registration results.

    Attributes:
        deformation_field: Displacement per fixed-image voxel, shape (*shape, ndim)
        metric: Mean square difference of the last completed iteration
        rms_change: RMS update norm of the last completed iteration
        metric_history: Metric of every completed iteration
        iterations: Number of iterations run
        parameters: Parameters used
    """

    deformation_field: NDArray[np.float64]
    metric: float = 0.0
    rms_change: float = 0.0
    metric_history: List[float] = field(default_factory=list)
    iterations: int = 0
    parameters: Optional[DemonsParameters] = None

    def get_diagnostics(self) -> dict:
        """Get convergence diagnostics for the registration result."""
        norms = np.linalg.norm(self.deformation_field, axis=-1)

        diagnostics = {
            "iterations": self.iterations,
            "metric": float(self.metric),
            "rms_change": float(self.rms_change),
            "displacement_max": float(np.max(norms)) if norms.size else 0.0,
            "displacement_mean": float(np.mean(norms)) if norms.size else 0.0,
        }

        if self.metric_history:
            first = self.metric_history[0]
            diagnostics["metric_initial"] = float(first)
            diagnostics["metric_reduction_percent"] = (
                float((first - self.metric) / first * 100) if first > 0 else 0.0
            )

        return diagnostics

    def log_diagnostics(self) -> None:
        """Log convergence diagnostics."""
        diag = self.get_diagnostics()
        logger.info("Demons registration diagnostics")
        logger.info("  Iterations:          %d", diag["iterations"])
        logger.info("  Metric (MSD):        %.6g", diag["metric"])
        if "metric_initial" in diag:
            logger.info("  Initial metric:      %.6g", diag["metric_initial"])
            logger.info("  Metric reduction:    %.1f%%", diag["metric_reduction_percent"])
        logger.info("  RMS change:          %.6g", diag["rms_change"])
        logger.info("  Displacement max:    %.4f", diag["displacement_max"])
        logger.info("  Displacement mean:   %.4f", diag["displacement_mean"])

    def save(self, filepath: Union[str, Path]) -> None:
        """Save results to ``<filepath>.npz`` (arrays) and ``<filepath>.json`` (metadata)."""
        filepath = Path(filepath)

        data = {
            "parameters": self.parameters.to_dict() if self.parameters else None,
            "metric": self.metric,
            "rms_change": self.rms_change,
            "iterations": self.iterations,
        }

        np.savez(
            filepath.with_suffix(".npz"),
            deformation_field=self.deformation_field,
            metric_history=np.asarray(self.metric_history, dtype=np.float64),
        )

        with open(filepath.with_suffix(".json"), "w") as f:
            json.dump(data, f, indent=2)

    @classmethod
    def load(cls, filepath: Union[str, Path]) -> "RegistrationResult":
        """Load results from file."""
        filepath = Path(filepath)

        with open(filepath.with_suffix(".json")) as f:
            data = json.load(f)

        with np.load(filepath.with_suffix(".npz")) as arrays:
            deformation_field = arrays["deformation_field"]
            metric_history = arrays["metric_history"].tolist()

        return cls(
            deformation_field=deformation_field,
            metric=data["metric"],
            rms_change=data["rms_change"],
            metric_history=metric_history,
            iterations=data["iterations"],
            parameters=DemonsParameters.from_dict(data["parameters"]) if data["parameters"] else None,
        )


class DemonsRegistration:
    """
    Main demons registration application class.

    Provides high-level API for the registration workflow:
    1. Load fixed and moving images
    2. Set registration parameters
    3. Run the registration
    4. Warp the moving image and export results

    Example:
        >>> reg = DemonsRegistration()
        >>> reg.set_fixed("fixed.tif")
        >>> reg.set_moving("moving.tif")
        >>> reg.set_parameters(DemonsParameters(number_of_iterations=50))
        >>> results = reg.run()
        >>> warped = reg.warp_moving()
    """

    def __init__(self):
        """Initialize the application."""
        self._fixed: Optional[RegistrationImage] = None
        self._moving: Optional[RegistrationImage] = None
        self._initial_field: Optional[NDArray[np.float64]] = None
        self._params: DemonsParameters = DemonsParameters()
        self._results: Optional[RegistrationResult] = None
        self._progress_callback: Optional[Callable[[float, str], None]] = None

    def set_progress_callback(self, callback: Callable[[float, str], None]) -> None:
        """
        Set callback for progress updates.

        Args:
            callback: Function(progress: float, message: str)
        """
        self._progress_callback = callback

    # Image management

    @staticmethod
    def _to_image(
        source: Union[str, Path, NDArray, RegistrationImage],
        spacing: Optional[Sequence[float]],
    ) -> RegistrationImage:
        if isinstance(source, RegistrationImage):
            return source
        if isinstance(source, np.ndarray):
            return RegistrationImage.from_array(source, spacing=spacing)
        return load_image(source, spacing=spacing)

    def set_fixed(
        self,
        source: Union[str, Path, NDArray, RegistrationImage],
        spacing: Optional[Sequence[float]] = None,
    ) -> None:
        """
        Set fixed image.

        Args:
            source: Image file path, numpy array, or RegistrationImage
            spacing: Voxel spacing for arrays and files
        """
        self._fixed = self._to_image(source, spacing)

        # Clear dependent data
        self._initial_field = None
        self._results = None

    def set_moving(
        self,
        source: Union[str, Path, NDArray, RegistrationImage],
        spacing: Optional[Sequence[float]] = None,
    ) -> None:
        """
        Set moving image.

        Args:
            source: Image file path, numpy array, or RegistrationImage
            spacing: Voxel spacing for arrays and files
        """
        self._moving = self._to_image(source, spacing)
        self._results = None

    def set_initial_deformation_field(self, deformation_field: Optional[NDArray[np.float64]]) -> None:
        """Start the next run from this field instead of the zero field."""
        self._initial_field = deformation_field
        self._results = None

    # Parameter management

    def set_parameters(self, params: DemonsParameters) -> None:
        """
        Set registration parameters.

        Raises:
            InvalidConfiguration: If parameters are out of range
        """
        params.validate()
        self._params = params
        self._results = None

    def load_parameters(self, filepath: Union[str, Path]) -> DemonsParameters:
        """
        Load parameters from a JSON file and set them.

        Raises:
            InvalidConfiguration: If a value in the file is invalid
        """
        with open(filepath) as f:
            data = json.load(f)

        valid, message = validate_demons_parameters(data)
        if not valid:
            raise InvalidConfiguration(f"{filepath}: {message}")

        params = DemonsParameters.from_dict(data)
        self.set_parameters(params)
        return params

    # Registration

    def run(self, show_progress: bool = False) -> RegistrationResult:
        """
        Run the demons registration.

        Args:
            show_progress: Display a tqdm progress bar

        Returns:
            RegistrationResult
        """
        if self._fixed is None or self._moving is None:
            raise InvalidConfiguration("Fixed and moving images must be set")

        compatible, reason = images_compatible(self._fixed, self._moving)
        if not compatible:
            raise InvalidConfiguration(f"Images cannot be registered: {reason}")

        solver = DemonsRegistrationFilter(self._params)
        solver.set_fixed_image(self._fixed)
        solver.set_moving_image(self._moving)
        solver.set_initial_deformation_field(self._initial_field)
        solver.show_progress = show_progress
        if self._progress_callback:
            solver.set_progress_callback(self._progress_callback)

        deformation_field = solver.update()

        self._results = RegistrationResult(
            deformation_field=deformation_field,
            metric=solver.get_metric(),
            rms_change=solver.get_rms_change(),
            metric_history=solver.metric_history,
            iterations=solver.elapsed_iterations,
            parameters=solver.parameters,
        )

        return self._results

    def warp_moving(self, default_value: float = 0.0) -> RegistrationImage:
        """Resample the moving image through the computed deformation field."""
        if self._results is None:
            raise RuntimeError("Registration has not been run")
        return self._moving.warp(
            self._results.deformation_field, default_value, output_spacing=self._fixed.spacing
        )

    # Getters

    @property
    def fixed_image(self) -> Optional[RegistrationImage]:
        """Get fixed image."""
        return self._fixed

    @property
    def moving_image(self) -> Optional[RegistrationImage]:
        """Get moving image."""
        return self._moving

    @property
    def parameters(self) -> DemonsParameters:
        """Get registration parameters."""
        return self._params

    @property
    def results(self) -> Optional[RegistrationResult]:
        """Get registration results."""
        return self._results


def build_parser() -> argparse.ArgumentParser:
    """Command-line interface definition."""
    parser = argparse.ArgumentParser(
        prog="demonsreg",
        description="Demons deformable registration of two images",
    )
    parser.add_argument("--version", action="version", version=f"demonsreg {__version__}")
    parser.add_argument("fixed", type=Path, help="Fixed image (.npy or raster image)")
    parser.add_argument("moving", type=Path, help="Moving image (.npy or raster image)")
    parser.add_argument(
        "-o", "--output", type=Path, default=Path("registration"),
        help="Output prefix; writes <prefix>.npz and <prefix>.json",
    )
    parser.add_argument("--config", type=Path, help="JSON file with registration parameters")
    parser.add_argument("--iterations", type=int, help="Number of iterations")
    parser.add_argument("--threshold", type=float, help="Intensity difference threshold")
    parser.add_argument("--threads", type=int, help="Number of worker threads")
    parser.add_argument(
        "--moving-gradient", action="store_true", default=None,
        help="Use the moving image gradient for the demons force",
    )
    parser.add_argument("--time-step", type=float, help="Time step applied to each update")
    parser.add_argument("--max-step", type=float, help="Maximum displacement added per iteration")
    parser.add_argument(
        "--no-smooth", action="store_true",
        help="Do not smooth the deformation field between iterations",
    )
    parser.add_argument("--sigma", type=float, help="Deformation field smoothing sigma (voxels)")
    parser.add_argument("--spacing", type=float, nargs="+", help="Voxel spacing of both images")
    parser.add_argument("--warped", type=Path, help="Also save the warped moving image here")
    parser.add_argument("--progress", action="store_true", help="Show a progress bar")
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command-line entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    reg = DemonsRegistration()

    try:
        params = reg.load_parameters(args.config) if args.config else DemonsParameters()

        overrides = {
            "number_of_iterations": args.iterations,
            "intensity_difference_threshold": args.threshold,
            "number_of_threads": args.threads,
            "use_moving_image_gradient": args.moving_gradient,
            "time_step": args.time_step,
            "maximum_step_length": args.max_step,
            "standard_deviations": args.sigma,
        }
        for name, value in overrides.items():
            if value is not None:
                setattr(params, name, value)
        if args.no_smooth:
            params.smooth_deformation_field = False

        reg.set_parameters(params)
        reg.set_fixed(args.fixed, spacing=args.spacing)
        reg.set_moving(args.moving, spacing=args.spacing)

        results = reg.run(show_progress=args.progress)

    except (FileNotFoundError, ValueError) as e:
        # InvalidConfiguration is a ValueError
        logger.error("%s", e)
        return 2
    except RegistrationError as e:
        logger.error("Registration failed: %s", e)
        return 1

    results.log_diagnostics()
    results.save(args.output)
    logger.info("Saved results to %s(.npz|.json)", args.output)

    if args.warped:
        save_image(args.warped, reg.warp_moving())
        logger.info("Saved warped moving image to %s", args.warped)

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
