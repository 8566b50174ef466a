"""
Demons registration parameters.

Stores all parameters used by the registration solver.
"""

import os
from dataclasses import dataclass, field
from enum import Enum

from .errors import InvalidConfiguration


def default_number_of_threads() -> int:
    """Number of threads used when none is given (hardware concurrency)."""
    return os.cpu_count() or 1


class GradientSource(str, Enum):
    """Image whose gradient drives the demons force."""

    FIXED = "fixed"
    MOVING = "moving"


@dataclass
class DemonsParameters:
    """
    Demons registration parameters.

    Attributes:
        number_of_iterations: Iterations to run (typical: 10-200)
        intensity_difference_threshold: Absolute intensity difference below
            which a voxel counts as matched and receives no update
        use_moving_image_gradient: Use the moving image gradient at the
            deformed position instead of the fixed image gradient
        number_of_threads: Number of worker threads
        time_step: Scale applied to every update before it is added
        maximum_step_length: Upper bound on the displacement added to any
            voxel in one iteration (0 disables the bound)
        smooth_deformation_field: Gaussian smooth the field after each update
        standard_deviations: Smoothing sigma for the deformation field (voxels)
        smooth_update_field: Gaussian smooth the update before it is applied
        update_field_standard_deviations: Smoothing sigma for the update field
    """

    number_of_iterations: int = 10
    intensity_difference_threshold: float = 0.001
    use_moving_image_gradient: bool = False
    number_of_threads: int = field(default_factory=default_number_of_threads)
    time_step: float = 1.0
    maximum_step_length: float = 0.0
    smooth_deformation_field: bool = True
    standard_deviations: float = 1.0
    smooth_update_field: bool = False
    update_field_standard_deviations: float = 1.0

    @property
    def gradient_source(self) -> GradientSource:
        """Gradient source selected by use_moving_image_gradient."""
        if self.use_moving_image_gradient:
            return GradientSource.MOVING
        return GradientSource.FIXED

    def validate(self) -> bool:
        """
        Validate parameters are within acceptable ranges.

        Returns:
            True if parameters are valid, raises InvalidConfiguration otherwise
        """
        if self.number_of_iterations < 1:
            raise InvalidConfiguration(
                f"number_of_iterations must be >= 1, got {self.number_of_iterations}"
            )

        if not self.intensity_difference_threshold > 0:
            raise InvalidConfiguration(
                "intensity_difference_threshold must be > 0, "
                f"got {self.intensity_difference_threshold}"
            )

        if self.number_of_threads < 1:
            raise InvalidConfiguration(
                f"number_of_threads must be >= 1, got {self.number_of_threads}"
            )

        if not self.time_step > 0:
            raise InvalidConfiguration(f"time_step must be > 0, got {self.time_step}")

        if not self.maximum_step_length >= 0:
            raise InvalidConfiguration(
                f"maximum_step_length must be >= 0, got {self.maximum_step_length}"
            )

        for name in ("standard_deviations", "update_field_standard_deviations"):
            if not getattr(self, name) >= 0:
                raise InvalidConfiguration(f"{name} must be >= 0, got {getattr(self, name)}")

        return True

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "number_of_iterations": self.number_of_iterations,
            "intensity_difference_threshold": self.intensity_difference_threshold,
            "use_moving_image_gradient": self.use_moving_image_gradient,
            "number_of_threads": self.number_of_threads,
            "time_step": self.time_step,
            "maximum_step_length": self.maximum_step_length,
            "smooth_deformation_field": self.smooth_deformation_field,
            "standard_deviations": self.standard_deviations,
            "smooth_update_field": self.smooth_update_field,
            "update_field_standard_deviations": self.update_field_standard_deviations,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "DemonsParameters":
        """Create from dictionary."""
        return cls(
            number_of_iterations=d.get("number_of_iterations", 10),
            intensity_difference_threshold=d.get("intensity_difference_threshold", 0.001),
            use_moving_image_gradient=d.get("use_moving_image_gradient", False),
            number_of_threads=d.get("number_of_threads", default_number_of_threads()),
            time_step=d.get("time_step", 1.0),
            maximum_step_length=d.get("maximum_step_length", 0.0),
            smooth_deformation_field=d.get("smooth_deformation_field", True),
            standard_deviations=d.get("standard_deviations", 1.0),
            smooth_update_field=d.get("smooth_update_field", False),
            update_field_standard_deviations=d.get("update_field_standard_deviations", 1.0),
        )
