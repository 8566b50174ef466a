"""Tests for core modules."""

import numpy as np
import pytest
from PIL import Image

from demonsreg.core.errors import (
    BarrierError,
    DispatchFailure,
    InvalidConfiguration,
    NumericalInstability,
    RegistrationError,
)
from demonsreg.core.image import RegistrationImage
from demonsreg.core.parameters import DemonsParameters, GradientSource
from demonsreg.core.region import ImageRegion
from demonsreg.core.state import SolverState


class TestErrors:
    """Tests for the exception hierarchy."""

    @pytest.mark.parametrize(
        "error", [InvalidConfiguration, NumericalInstability, DispatchFailure, BarrierError]
    )
    def test_subclasses_registration_error(self, error):
        """Test every failure is a RegistrationError."""
        assert issubclass(error, RegistrationError)

    def test_invalid_configuration_is_value_error(self):
        """Test configuration errors can be caught as ValueError."""
        with pytest.raises(ValueError):
            raise InvalidConfiguration("bad")


class TestSolverState:
    """Tests for SolverState enum."""

    def test_values(self):
        """Test state values."""
        assert SolverState.UNINITIALIZED == 0
        assert SolverState.COMPUTING_UPDATE == 1
        assert SolverState.APPLYING_UPDATE == 2
        assert SolverState.TERMINATED == 3
        assert SolverState.FAILED == -1

    def test_is_running(self):
        """Test only the two phases count as running."""
        assert SolverState.COMPUTING_UPDATE.is_running
        assert SolverState.APPLYING_UPDATE.is_running
        assert not SolverState.UNINITIALIZED.is_running
        assert not SolverState.TERMINATED.is_running
        assert not SolverState.FAILED.is_running


class TestImageRegion:
    """Tests for ImageRegion."""

    def test_from_shape(self):
        """Test region covering a whole array."""
        region = ImageRegion.from_shape((4, 5, 6))

        assert region.index == (0, 0, 0)
        assert region.size == (4, 5, 6)
        assert region.ndim == 3
        assert region.number_of_pixels == 120

    def test_normalizes_to_int_tuples(self):
        """Test index and size become int tuples."""
        region = ImageRegion(index=[np.int64(1), 2], size=np.array([3, 4]))

        assert region.index == (1, 2)
        assert region.size == (3, 4)
        assert all(type(i) is int for i in region.index + region.size)

    def test_invalid(self):
        """Test mismatched or negative sizes are rejected."""
        with pytest.raises(ValueError):
            ImageRegion(index=(0,), size=(1, 2))
        with pytest.raises(ValueError):
            ImageRegion(index=(0, 0), size=(1, -2))

    def test_slices(self):
        """Test slices select the region."""
        arr = np.arange(30).reshape(5, 6)
        region = ImageRegion(index=(1, 2), size=(2, 3))

        np.testing.assert_array_equal(arr[region.slices], arr[1:3, 2:5])
        assert region.upper_index == (3, 5)

    def test_empty(self):
        """Test region with a zero-length axis."""
        region = ImageRegion(index=(0, 0), size=(0, 5))

        assert region.is_empty()
        assert region.number_of_pixels == 0

    def test_contains(self):
        """Test index membership."""
        region = ImageRegion(index=(1, 1), size=(2, 2))

        assert region.contains((1, 2))
        assert not region.contains((3, 1))
        assert not region.contains((1,))

    def test_intersect(self):
        """Test overlap of two regions."""
        a = ImageRegion(index=(0, 0), size=(4, 4))
        b = ImageRegion(index=(2, 3), size=(4, 4))

        overlap = a.intersect(b)

        assert overlap.index == (2, 3)
        assert overlap.size == (2, 1)
        assert a.intersect(ImageRegion(index=(5, 5), size=(1, 1))).is_empty()

    def test_grid(self):
        """Test voxel index grid is offset by the start index."""
        grid = ImageRegion(index=(2, 3), size=(2, 2)).grid()

        assert grid.shape == (2, 2, 2)
        np.testing.assert_array_equal(grid[0], [[2, 2], [3, 3]])
        np.testing.assert_array_equal(grid[1], [[3, 4], [3, 4]])

    def test_to_from_dict(self):
        """Test dictionary conversion."""
        region = ImageRegion(index=(1, 2), size=(3, 4))

        assert ImageRegion.from_dict(region.to_dict()) == region


class TestDemonsParameters:
    """Tests for DemonsParameters."""

    def test_default_values(self):
        """Test default parameter values."""
        params = DemonsParameters()

        assert params.number_of_iterations == 10
        assert params.intensity_difference_threshold == 0.001
        assert params.use_moving_image_gradient is False
        assert params.number_of_threads >= 1
        assert params.time_step == 1.0
        assert params.smooth_deformation_field is True

    def test_validate_valid(self):
        """Test validation of valid parameters."""
        assert DemonsParameters(number_of_threads=4).validate()

    @pytest.mark.parametrize(
        "field, value",
        [
            ("number_of_iterations", 0),
            ("intensity_difference_threshold", 0.0),
            ("intensity_difference_threshold", -1.0),
            ("number_of_threads", 0),
            ("time_step", 0.0),
            ("maximum_step_length", -0.5),
            ("standard_deviations", -1.0),
            ("update_field_standard_deviations", float("nan")),
        ],
    )
    def test_validate_invalid(self, field, value):
        """Test out-of-range parameters raise InvalidConfiguration."""
        params = DemonsParameters()
        setattr(params, field, value)

        with pytest.raises(InvalidConfiguration):
            params.validate()

    def test_gradient_source(self):
        """Test gradient source follows the flag."""
        assert DemonsParameters().gradient_source == GradientSource.FIXED
        assert DemonsParameters(use_moving_image_gradient=True).gradient_source == GradientSource.MOVING

    def test_to_from_dict(self):
        """Test dictionary conversion."""
        params = DemonsParameters(
            number_of_iterations=50,
            intensity_difference_threshold=0.01,
            number_of_threads=3,
            maximum_step_length=0.5,
            smooth_update_field=True,
        )

        restored = DemonsParameters.from_dict(params.to_dict())

        assert restored == params

    def test_from_dict_defaults(self):
        """Test missing keys fall back to defaults."""
        params = DemonsParameters.from_dict({"number_of_iterations": 7})

        assert params.number_of_iterations == 7
        assert params.time_step == 1.0


class TestRegistrationImage:
    """Tests for RegistrationImage."""

    def test_from_uint8(self, sample_grayscale_image):
        """Test 8-bit data is scaled to [0, 1]."""
        img = RegistrationImage.from_array(sample_grayscale_image)

        assert img.data.dtype == np.float64
        assert img.shape == (40, 30)
        assert img.data.max() <= 1.0
        assert img.spacing == (1.0, 1.0)

    def test_from_uint16(self):
        """Test 16-bit data is scaled to [0, 1]."""
        img = RegistrationImage.from_array(np.full((3, 3), 65535, dtype=np.uint16))

        np.testing.assert_allclose(img.data, 1.0)

    def test_float_data_kept(self):
        """Test float data keeps its values."""
        data = np.array([[0.0, 2.5], [-1.0, 4.0]])
        img = RegistrationImage.from_array(data)

        np.testing.assert_array_equal(img.data, data)

    def test_invalid_spacing(self):
        """Test spacing must match dimension and be positive."""
        with pytest.raises(ValueError):
            RegistrationImage.from_array(np.zeros((3, 3)), spacing=(1.0,))
        with pytest.raises(ValueError):
            RegistrationImage.from_array(np.zeros((3, 3)), spacing=(1.0, 0.0))

    def test_scalar_rejected(self):
        """Test zero-dimensional data is rejected."""
        with pytest.raises(ValueError):
            RegistrationImage.from_array(np.float64(1.0))

    def test_normalizer(self):
        """Test normalizer is the mean squared spacing."""
        img = RegistrationImage.from_array(np.zeros((3, 3)), spacing=(1.0, 2.0))

        assert img.normalizer == pytest.approx(2.5)

    def test_region(self):
        """Test buffered region covers the whole image."""
        img = RegistrationImage.from_array(np.zeros((3, 4, 5)))

        assert img.region == ImageRegion.from_shape((3, 4, 5))

    def test_sample(self):
        """Test sampling at an integer index."""
        img = RegistrationImage.from_array(np.arange(6, dtype=np.float64).reshape(2, 3))

        assert img.sample((1, 2)) == 5.0

    def test_gradient_ramp(self):
        """Test gradient of a linear ramp in physical units."""
        data = np.tile(np.arange(10, dtype=np.float64) * 2.0, (5, 1))
        img = RegistrationImage.from_array(data, spacing=(1.0, 0.5))

        gradient = img.get_gradient_image()

        assert gradient.shape == (5, 10, 2)
        np.testing.assert_allclose(gradient[..., 0], 0.0)
        np.testing.assert_allclose(gradient[..., 1], 4.0)
        np.testing.assert_allclose(img.gradient((2, 3)), [0.0, 4.0])

    def test_gradient_short_axis(self):
        """Test an axis of length one has zero derivative."""
        img = RegistrationImage.from_array(np.arange(5, dtype=np.float64).reshape(1, 5))

        gradient = img.get_gradient_image()

        np.testing.assert_allclose(gradient[..., 0], 0.0)
        np.testing.assert_allclose(gradient[..., 1], 1.0)

    def test_gradient_cached(self):
        """Test gradient image is computed once."""
        img = RegistrationImage.from_array(np.random.rand(4, 4))

        assert img.get_gradient_image() is img.get_gradient_image()

    def test_interpolate(self):
        """Test bilinear interpolation and buffer flags."""
        img = RegistrationImage.from_array(np.array([[0.0, 1.0], [2.0, 3.0]]))
        positions = np.array([[0.0, 0.5, 1.0, 1.5], [0.5, 0.5, 1.0, 0.0]])

        values, inside = img.interpolate(positions)

        np.testing.assert_allclose(values[:3], [0.5, 1.5, 3.0])
        np.testing.assert_array_equal(inside, [True, True, True, False])

    def test_interpolate_gradient(self):
        """Test gradient interpolation shape and values."""
        data = np.tile(np.arange(6, dtype=np.float64), (6, 1))
        img = RegistrationImage.from_array(data)
        positions = np.array([[2.5, 3.0], [1.5, 2.25]])

        gradient = img.interpolate_gradient(positions)

        assert gradient.shape == (2, 2)
        np.testing.assert_allclose(gradient[:, 1], 1.0)
        np.testing.assert_allclose(gradient[:, 0], 0.0)

    def test_warp_identity(self):
        """Test a zero field leaves the image unchanged."""
        data = np.random.rand(6, 7)
        img = RegistrationImage.from_array(data)

        warped = img.warp(np.zeros((6, 7, 2)))

        np.testing.assert_allclose(warped.data, data)

    def test_warp_shift(self):
        """Test a constant field samples the displaced position."""
        data = np.tile(np.arange(5, dtype=np.float64), (3, 1))
        img = RegistrationImage.from_array(data)
        field = np.zeros((3, 5, 2))
        field[..., 1] = 1.0

        warped = img.warp(field, default_value=-1.0)

        np.testing.assert_allclose(warped.data[:, :4], data[:, 1:])
        np.testing.assert_allclose(warped.data[:, 4], -1.0)

    def test_warp_output_spacing(self):
        """Test output voxels are placed on the output grid's physical positions."""
        np.random.seed(42)
        data = np.random.rand(8, 8)
        img = RegistrationImage.from_array(data, spacing=(1.0, 1.0))

        warped = img.warp(np.zeros((4, 4, 2)), output_spacing=(2.0, 2.0))

        np.testing.assert_allclose(warped.data, data[::2, ::2])
        assert warped.spacing == (2.0, 2.0)

    def test_warp_wrong_field(self):
        """Test field dimension must match the image."""
        img = RegistrationImage.from_array(np.zeros((3, 3)))

        with pytest.raises(ValueError):
            img.warp(np.zeros((3, 3, 3)))

    def test_from_file_npy(self, tmp_path):
        """Test loading an N-D array from .npy."""
        data = np.random.rand(3, 4, 5)
        path = tmp_path / "volume.npy"
        np.save(path, data)

        img = RegistrationImage.from_file(path, spacing=(1.0, 1.0, 2.0))

        assert img.shape == (3, 4, 5)
        assert img.spacing == (1.0, 1.0, 2.0)
        assert img.name == "volume.npy"

    def test_from_file_rgb(self, tmp_path, sample_rgb_image):
        """Test RGB files are converted to grayscale."""
        path = tmp_path / "rgb.png"
        Image.fromarray(sample_rgb_image).save(path)

        img = RegistrationImage.from_file(path)

        assert img.ndim == 2
        assert img.shape == (40, 30)

    def test_from_file_missing(self, tmp_path):
        """Test missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            RegistrationImage.from_file(tmp_path / "missing.png")

    def test_same_geometry(self):
        """Test geometry comparison."""
        a = RegistrationImage.from_array(np.zeros((3, 3)))
        b = RegistrationImage.from_array(np.ones((3, 3)))
        c = RegistrationImage.from_array(np.ones((3, 3)), spacing=(2.0, 1.0))

        assert a.same_geometry(b)
        assert not a.same_geometry(c)
