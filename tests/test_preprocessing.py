"""Tests for intensity normalization, resampling and 2D promotion."""

import numpy as np
import pytest

from mito_segmentation.data_structures import VolumeGrid
from mito_segmentation.errors import UnsupportedFormatError
from mito_segmentation.preprocessing import (NormalizationMode, convert_to_8bit, convert_to_8bit_z_adaptive,
                                             convert_to_8bit_z_blocks, convert_to_8bit_z_gentle,
                                             normalize_intensity, promote_2d, resample_z)


@pytest.fixture
def ramp_volume():
    """16-bit volume whose planes get brighter with z."""
    data = np.zeros((16, 8, 8), dtype=np.uint16)
    for z in range(16):
        data[z] = np.linspace(100 * z, 100 * z + 1000, 64, dtype=np.uint16).reshape(8, 8)
    return VolumeGrid(data)


class TestNormalization:
    """Tests for the 8-bit conversions."""

    def test_8bit_input_is_returned_unchanged(self, line_volume):
        """uint8 input is already normalized."""
        for mode in NormalizationMode:
            assert normalize_intensity(line_volume, mode) is line_volume

    def test_unsupported_voxel_type(self):
        """Float input is rejected."""
        volume = VolumeGrid(np.zeros((2, 2, 2), dtype=np.float32))
        with pytest.raises(UnsupportedFormatError):
            normalize_intensity(volume)

    def test_unsupported_format_is_value_error(self):
        """UnsupportedFormatError can be caught as ValueError."""
        volume = VolumeGrid(np.zeros((2, 2, 2), dtype=np.int32))
        with pytest.raises(ValueError):
            convert_to_8bit(volume)

    def test_global_range(self, ramp_volume):
        """Global conversion maps min to 0 and max to 255."""
        out = convert_to_8bit(ramp_volume)
        assert out.dtype == np.uint8
        assert out.data.min() == 0
        assert out.data.max() == 255
        assert out.spacing == ramp_volume.spacing

    def test_global_full_byte_range_is_identity(self):
        """A 16-bit volume already spanning 0..255 keeps its values."""
        data = np.arange(256, dtype=np.uint16).reshape(4, 8, 8)
        out = convert_to_8bit(VolumeGrid(data))
        assert out.dtype == np.uint8
        np.testing.assert_array_equal(out.data, data)
        np.testing.assert_array_equal(normalize_intensity(VolumeGrid(data)).data, data)

    def test_z_adaptive_stretches_every_plane(self, ramp_volume):
        """Every non-uniform plane spans the full range."""
        out = convert_to_8bit_z_adaptive(ramp_volume)
        for plane in out.data:
            assert plane.min() == 0
            assert plane.max() == 255

    def test_z_adaptive_uniform_plane(self):
        """A uniform plane maps to mid-gray."""
        data = np.zeros((2, 4, 4), dtype=np.uint16)
        data[1] = np.arange(16).reshape(4, 4)
        out = convert_to_8bit_z_adaptive(VolumeGrid(data))
        assert np.all(out.data[0] == 128)
        assert out.data[1].max() == 255

    def test_z_blocks_stretch_each_block(self, ramp_volume):
        """Each block spans the full range when its range is large enough."""
        out = convert_to_8bit_z_blocks(ramp_volume, block_size=8)
        assert out.data.dtype == np.uint8
        assert out.data[:8].min() == 0
        assert out.data[:8].max() == 255
        assert out.data[8:].min() == 0
        assert out.data[8:].max() == 255

    def test_z_blocks_fall_back_to_global_range(self):
        """A nearly uniform block uses the global range."""
        data = np.zeros((4, 4, 4), dtype=np.uint16)
        data[:2] = 1000
        data[0, 0, 0] = 1001
        data[2:] = np.arange(0, 2000, 2000 / 32).astype(np.uint16).reshape(2, 4, 4)
        out = convert_to_8bit_z_blocks(VolumeGrid(data), block_size=2)
        # global range keeps 1000 in the middle instead of stretching it to 0
        assert 100 < out.data[0, 1, 1] < 150

    def test_gentle_keeps_range_and_type(self, ramp_volume):
        """Gentle conversion stays in 8 bits with the input shape."""
        out = convert_to_8bit_z_gentle(ramp_volume, block_size=4)
        assert out.data.dtype == np.uint8
        assert out.data.shape == ramp_volume.data.shape

    def test_gentle_stretches_dark_blocks(self):
        """A dark block gets more contrast than the plain global rescale."""
        data = np.zeros((4, 8, 8), dtype=np.uint16)
        data[:2] = np.linspace(0, 60, 128).reshape(2, 8, 8).astype(np.uint16)
        data[2:] = 4000
        data[3, 0, 0] = 4001
        gentle = convert_to_8bit_z_gentle(VolumeGrid(data), block_size=2)
        plain = convert_to_8bit(VolumeGrid(data))
        assert gentle.data[:2].astype(float).std() > plain.data[:2].astype(float).std()

    def test_unknown_mode(self, ramp_volume):
        """normalize_intensity rejects unknown modes."""
        with pytest.raises(ValueError):
            normalize_intensity(ramp_volume, 'nonsense')


class TestGeometry:
    """Tests for z resampling and 2D promotion."""

    def test_resample_z_doubles_planes(self):
        """Halving the z spacing doubles the number of planes."""
        volume = VolumeGrid(np.ones((4, 5, 6), dtype=np.uint8) * 10, spacing=(1.0, 1.0, 2.0))
        out = resample_z(volume, 1.0)
        assert out.data.shape == (8, 5, 6)
        assert out.spacing[2] == pytest.approx(1.0)
        assert out.spacing[0] == pytest.approx(1.0)

    def test_promote_2d(self):
        """The plane sits in the middle of a background stack."""
        plane = np.arange(16, dtype=np.uint8).reshape(1, 4, 4) + 5
        out = promote_2d(VolumeGrid(plane))
        assert out.data.shape == (7, 4, 4)
        np.testing.assert_array_equal(out.data[3], plane[0])
        assert np.all(out.data[0] == 5)
        assert np.all(out.data[6] == 5)

    def test_promote_2d_requires_single_plane(self, line_volume):
        """A real stack cannot be promoted."""
        with pytest.raises(ValueError):
            promote_2d(line_volume)
