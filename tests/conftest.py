"""Pytest fixtures for demons registration tests."""

import numpy as np
import pytest


def gaussian_blob(shape, center, sigma=4.0):
    """Smooth Gaussian blob with peak value 1."""
    grid = np.indices(shape, dtype=np.float64)
    r2 = sum((g - c) ** 2 for g, c in zip(grid, center))
    return np.exp(-r2 / (2 * sigma ** 2))


@pytest.fixture
def make_blob():
    """Factory for Gaussian blob images."""
    return gaussian_blob


@pytest.fixture
def sample_grayscale_image():
    """Create a sample grayscale image."""
    np.random.seed(42)
    return (np.random.rand(40, 30) * 255).astype(np.uint8)


@pytest.fixture
def sample_rgb_image():
    """Create a sample RGB image."""
    np.random.seed(42)
    return (np.random.rand(40, 30, 3) * 255).astype(np.uint8)


@pytest.fixture
def fixed_blob():
    """Gaussian blob centered in a 32x32 image."""
    return gaussian_blob((32, 32), (16.0, 16.0))


@pytest.fixture
def moving_blob():
    """Same blob displaced by 1.5 pixels along axis 1."""
    return gaussian_blob((32, 32), (16.0, 17.5))


@pytest.fixture
def textured_pair():
    """Random smooth texture and a slightly displaced copy (24x20)."""
    from scipy.ndimage import gaussian_filter, shift

    np.random.seed(42)
    texture = gaussian_filter(np.random.rand(24, 20), 2.0)
    texture = (texture - texture.min()) / (texture.max() - texture.min())
    displaced = shift(texture, [0.7, -0.4], mode="nearest")
    return texture, displaced


@pytest.fixture
def blob_files(tmp_path, fixed_blob, moving_blob):
    """Fixed and moving blobs saved as .npy files."""
    fixed_path = tmp_path / "fixed.npy"
    moving_path = tmp_path / "moving.npy"
    np.save(fixed_path, fixed_blob)
    np.save(moving_path, moving_blob)
    return fixed_path, moving_path


@pytest.fixture
def demons_parameters():
    """Create default demons parameters for testing."""
    from demonsreg.core.parameters import DemonsParameters

    return DemonsParameters(
        number_of_iterations=20,
        intensity_difference_threshold=0.001,
        number_of_threads=2,
        smooth_deformation_field=True,
        standard_deviations=1.0,
    )
