"""
Image loading and saving utilities.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray
from PIL import Image

from ..core.image import RegistrationImage


# Supported image formats
SUPPORTED_FORMATS = {".npy", ".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff"}


def validate_image_format(img_array: NDArray) -> Tuple[bool, str]:
    """
    Validate an intensity array for registration.

    Args:
        img_array: Image array to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if img_array is None:
        return False, "Image is None"

    if img_array.ndim == 0:
        return False, "Image must have at least one dimension"

    if img_array.size == 0:
        return False, f"Image is empty (shape {img_array.shape})"

    if not (np.issubdtype(img_array.dtype, np.integer) or np.issubdtype(img_array.dtype, np.floating)):
        return False, f"Unsupported dtype: {img_array.dtype}"

    return True, ""


def load_image(
    path: Union[str, Path],
    spacing: Optional[Sequence[float]] = None,
) -> RegistrationImage:
    """
    Load a registration image from file.

    Args:
        path: Image file (``.npy`` for N-D arrays, raster formats for 2-D)
        spacing: Voxel spacing (defaults to 1 along each axis)

    Returns:
        RegistrationImage

    Raises:
        FileNotFoundError: If file not found
        ValueError: If invalid format
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")

    if path.suffix.lower() not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported format: {path.suffix}")

    image = RegistrationImage.from_file(path, spacing=spacing)

    is_valid, error = validate_image_format(image.data)
    if not is_valid:
        raise ValueError(f"Invalid image format for {path}: {error}")

    return image


def save_image(path: Union[str, Path], image: RegistrationImage) -> Path:
    """
    Save a registration image.

    ``.npy`` keeps the float64 data of any dimension. TIFF stores 2-D images
    as 32-bit float. Other raster formats store 2-D images as 8-bit after
    clipping to [0, 1].

    Args:
        path: Output file
        image: Image to save

    Returns:
        Path written
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix not in SUPPORTED_FORMATS:
        raise ValueError(f"Unsupported format: {path.suffix}")

    if suffix == ".npy":
        np.save(path, image.data)
        return path

    if image.ndim != 2:
        raise ValueError(f"Only 2-D images can be saved as {suffix}; use .npy for {image.ndim}-D")

    if suffix in (".tif", ".tiff"):
        Image.fromarray(image.data.astype(np.float32)).save(path)
    else:
        data = (np.clip(image.data, 0, 1) * 255).astype(np.uint8)
        Image.fromarray(data).save(path)

    return path


def images_compatible(fixed: RegistrationImage, moving: RegistrationImage) -> Tuple[bool, str]:
    """
    Check if two images can be registered together.

    Images must have the same number of dimensions.

    Args:
        fixed: Fixed image
        moving: Moving image

    Returns:
        Tuple of (is_compatible, reason)
    """
    if fixed.ndim != moving.ndim:
        return False, f"Dimension mismatch: {fixed.ndim}-D vs {moving.ndim}-D"

    return True, ""
