"""
Image class for demons registration.

Wraps an N-dimensional intensity array with voxel spacing and provides the
read-only sampling, gradient and interpolation capabilities the solver needs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray
from PIL import Image
from scipy import ndimage

from .region import ImageRegion


@dataclass
class RegistrationImage:
    """
    Image class for registration.

    Attributes:
        data: Intensity values (float64, any number of dimensions)
        spacing: Physical voxel spacing along each axis (numpy axis order)
        name: Image filename
        path: Image file path
    """

    data: NDArray[np.float64]
    spacing: Optional[Tuple[float, ...]] = None
    name: str = ""
    path: str = ""

    _gradient: Optional[NDArray[np.float64]] = field(default=None, repr=False)

    def __post_init__(self):
        """Normalize data and spacing after dataclass creation."""
        data = np.asarray(self.data)
        if data.ndim == 0:
            raise ValueError("Image must have at least one dimension")
        self.data = np.ascontiguousarray(self._to_double(data))

        if self.spacing is None:
            self.spacing = (1.0,) * self.data.ndim
        self.spacing = tuple(float(s) for s in self.spacing)

        if len(self.spacing) != self.data.ndim:
            raise ValueError(
                f"Spacing has {len(self.spacing)} entries for a {self.data.ndim}-D image"
            )
        if any(not s > 0 for s in self.spacing):
            raise ValueError(f"Spacing must be positive, got {self.spacing}")

    @classmethod
    def from_array(
        cls,
        array: NDArray,
        spacing: Optional[Sequence[float]] = None,
        name: str = "",
    ) -> "RegistrationImage":
        """
        Create image from numpy array.

        Args:
            array: Intensity array
            spacing: Voxel spacing (defaults to 1 along each axis)
            name: Optional image name
        """
        return cls(data=array, spacing=None if spacing is None else tuple(spacing), name=name)

    @classmethod
    def from_file(
        cls,
        filepath: Union[str, Path],
        spacing: Optional[Sequence[float]] = None,
    ) -> "RegistrationImage":
        """
        Load image from file.

        ``.npy`` files are loaded as-is (any dimension). Other formats are read
        with Pillow; RGB images are converted to grayscale.

        Args:
            filepath: Path to image file
            spacing: Voxel spacing (defaults to 1 along each axis)

        Raises:
            FileNotFoundError: If the file does not exist
        """
        filepath = Path(filepath)
        if not filepath.exists():
            raise FileNotFoundError(f"Image file not found: {filepath}")

        if filepath.suffix.lower() == ".npy":
            array = np.load(filepath)
        else:
            with Image.open(filepath) as pil_img:
                array = np.array(pil_img)
            if array.ndim == 3 and array.shape[2] in (3, 4):
                array = cls._rgb_to_grayscale(array[:, :, :3])

        return cls(
            data=array,
            spacing=None if spacing is None else tuple(spacing),
            name=filepath.name,
            path=str(filepath.parent),
        )

    @staticmethod
    def _to_double(img: NDArray) -> NDArray[np.float64]:
        """Convert image to float64, scaling integer types to [0, 1]."""
        if img.dtype == np.float64:
            return img
        elif img.dtype == np.uint8:
            return img.astype(np.float64) / 255.0
        elif img.dtype == np.uint16:
            return img.astype(np.float64) / 65535.0
        else:
            return img.astype(np.float64)

    @staticmethod
    def _rgb_to_grayscale(img: NDArray) -> NDArray[np.float64]:
        """Convert RGB image to grayscale using ITU-R 601-2 luma transform."""
        img_double = RegistrationImage._to_double(img)
        return (
            0.299 * img_double[:, :, 0] +
            0.587 * img_double[:, :, 1] +
            0.114 * img_double[:, :, 2]
        )

    # Geometry

    @property
    def ndim(self) -> int:
        return self.data.ndim

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.data.shape

    @property
    def region(self) -> ImageRegion:
        """Buffered (valid) index region of the image."""
        return ImageRegion.from_shape(self.data.shape)

    @property
    def normalizer(self) -> float:
        """Mean squared voxel spacing."""
        return float(np.mean(np.square(self.spacing)))

    def same_geometry(self, other: "RegistrationImage") -> bool:
        """Check whether two images share shape and spacing."""
        return self.shape == other.shape and np.allclose(self.spacing, other.spacing)

    # Sampling

    def sample(self, index: Sequence[int]) -> float:
        """Intensity at an integer voxel index."""
        return float(self.data[tuple(index)])

    def get_gradient_image(self) -> NDArray[np.float64]:
        """
        Central-difference gradient of the whole image in physical units.

        Axes shorter than two voxels have a zero derivative.

        Returns:
            Array of shape (*shape, ndim), computed once and cached
        """
        if self._gradient is None:
            gradient = np.zeros(self.shape + (self.ndim,), dtype=np.float64)
            for axis in range(self.ndim):
                if self.shape[axis] >= 2:
                    gradient[..., axis] = np.gradient(
                        self.data, self.spacing[axis], axis=axis
                    )
            self._gradient = gradient
        return self._gradient

    def gradient(self, index: Sequence[int]) -> NDArray[np.float64]:
        """Gradient vector at an integer voxel index."""
        return self.get_gradient_image()[tuple(index)].copy()

    def is_inside_buffer(self, positions: NDArray[np.float64]) -> NDArray[np.bool_]:
        """
        Check which continuous index positions fall inside the buffer.

        Args:
            positions: Array of shape (ndim, n)

        Returns:
            Boolean array of length n
        """
        positions = np.asarray(positions, dtype=np.float64)
        upper = np.asarray(self.shape, dtype=np.float64).reshape(-1, 1) - 1.0
        return np.all((positions >= 0.0) & (positions <= upper), axis=0)

    def interpolate(
        self, positions: NDArray[np.float64]
    ) -> Tuple[NDArray[np.float64], NDArray[np.bool_]]:
        """
        Linearly interpolate intensities at continuous index positions.

        Args:
            positions: Array of shape (ndim, n)

        Returns:
            Tuple of (values, inside). Values outside the buffer are clamped
            to the nearest edge voxel and flagged False in ``inside``.
        """
        positions = np.asarray(positions, dtype=np.float64)
        inside = self.is_inside_buffer(positions)
        if positions.shape[1] == 0:
            return np.empty(0, dtype=np.float64), inside
        values = ndimage.map_coordinates(self.data, positions, order=1, mode="nearest")
        return values, inside

    def interpolate_gradient(self, positions: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Linearly interpolate the gradient image at continuous index positions.

        Args:
            positions: Array of shape (ndim, n)

        Returns:
            Array of shape (n, ndim)
        """
        positions = np.asarray(positions, dtype=np.float64)
        gradient = self.get_gradient_image()
        out = np.empty((positions.shape[1], self.ndim), dtype=np.float64)
        if positions.shape[1] == 0:
            return out
        for axis in range(self.ndim):
            out[:, axis] = ndimage.map_coordinates(
                gradient[..., axis], positions, order=1, mode="nearest"
            )
        return out

    def warp(
        self,
        deformation_field: NDArray[np.float64],
        default_value: float = 0.0,
        output_spacing: Optional[Sequence[float]] = None,
    ) -> "RegistrationImage":
        """
        Resample this image through a deformation field.

        Output voxel x lies at physical position x * output_spacing and takes
        this image's value at x * output_spacing + field(x), so warping the
        moving image with the registration result maps it onto the fixed
        image grid.

        Args:
            deformation_field: Array of shape (*out_shape, ndim)
            default_value: Value for positions outside the buffer
            output_spacing: Spacing of the output grid (defaults to this
                image's spacing)

        Returns:
            Warped image on the field's grid
        """
        deformation_field = np.asarray(deformation_field, dtype=np.float64)
        out_shape = deformation_field.shape[:-1]
        if deformation_field.shape[-1] != self.ndim or len(out_shape) != self.ndim:
            raise ValueError(
                f"Deformation field of shape {deformation_field.shape} does not match "
                f"a {self.ndim}-D image"
            )

        if output_spacing is None:
            output_spacing = self.spacing
        output_spacing = tuple(float(s) for s in output_spacing)
        if len(output_spacing) != self.ndim:
            raise ValueError(
                f"Output spacing has {len(output_spacing)} entries for a {self.ndim}-D image"
            )

        axes = (-1,) + (1,) * self.ndim
        grid = ImageRegion.from_shape(out_shape).grid()
        physical = grid * np.asarray(output_spacing).reshape(axes) + np.moveaxis(deformation_field, -1, 0)
        positions = (physical / np.asarray(self.spacing).reshape(axes)).reshape(self.ndim, -1)

        values, inside = self.interpolate(positions)
        values = np.where(inside, values, default_value)

        return RegistrationImage(
            data=values.reshape(out_shape),
            spacing=output_spacing,
            name=self.name,
            path=self.path,
        )
