"""Utility functions for demons registration."""

from .image_loader import load_image, save_image, validate_image_format, images_compatible
from .validation import is_real_bounded, is_int_bounded, validate_demons_parameters

__all__ = [
    "load_image",
    "save_image",
    "validate_image_format",
    "images_compatible",
    "is_real_bounded",
    "is_int_bounded",
    "validate_demons_parameters",
]
