import logging
from enum import Enum
from typing import Optional

import numpy as np
import SimpleITK as sitk

from .data_structures import VolumeGrid
from .errors import UnsupportedFormatError

logger = logging.getLogger(__name__)


class NormalizationMode(Enum):
    """How 16-bit intensities are mapped to 8 bits"""
    GLOBAL = 'global'
    Z_ADAPTIVE = 'z_adaptive'
    Z_BLOCK_ADAPTIVE = 'z_block_adaptive'
    Z_BLOCK_GENTLE = 'z_block_gentle'


def _needs_conversion(volume: VolumeGrid) -> bool:
    """True for 16-bit input, False for 8-bit input

    Raises:
        UnsupportedFormatError: for any other voxel type
    """
    if volume.dtype == np.uint8:
        return False
    if volume.dtype == np.uint16:
        return True
    raise UnsupportedFormatError(f"Unsupported voxel type {volume.dtype}; expected 8 or 16-bit unsigned")


def _rescale(values: np.ndarray, vmin: float, vmax: float) -> np.ndarray:
    """Linear map of [vmin, vmax] to [0, 255] with a truncating cast"""
    if vmax <= vmin:
        return np.zeros(values.shape, dtype=np.uint8)
    scaled = 255.0 * (values.astype(np.float64) - vmin) / (vmax - vmin)
    return np.clip(scaled, 0, 255).astype(np.uint8)


def convert_to_8bit(volume: VolumeGrid) -> VolumeGrid:
    """Rescale the full-volume min/max to [0, 255]"""
    if not _needs_conversion(volume):
        return volume
    data = volume.data
    return volume.with_data(_rescale(data, float(data.min()), float(data.max())))


def convert_to_8bit_z_adaptive(volume: VolumeGrid) -> VolumeGrid:
    """Rescale every z-plane by its own min/max

    A uniform plane maps to mid-gray (128).
    """
    if not _needs_conversion(volume):
        return volume
    out = np.empty(volume.data.shape, dtype=np.uint8)
    for z, plane in enumerate(volume.data):
        zmin, zmax = float(plane.min()), float(plane.max())
        if zmax > zmin:
            out[z] = _rescale(plane, zmin, zmax)
        else:
            out[z] = 128
    return volume.with_data(out)


def convert_to_8bit_z_blocks(volume: VolumeGrid, block_size: int = 8) -> VolumeGrid:
    """Rescale contiguous z-blocks by their own min/max

    Blocks whose range is below 10% of the global range use the global
    min/max instead, so near-uniform dark blocks do not amplify noise.
    """
    if not _needs_conversion(volume):
        return volume
    data = volume.data
    gmin, gmax = float(data.min()), float(data.max())
    out = np.empty(data.shape, dtype=np.uint8)
    for z_start in range(0, data.shape[0], block_size):
        block = data[z_start:z_start + block_size]
        bmin, bmax = float(block.min()), float(block.max())
        if bmax - bmin < 0.1 * (gmax - gmin):
            bmin, bmax = gmin, gmax
        out[z_start:z_start + block_size] = _rescale(block, bmin, bmax)
    return volume.with_data(out)


def _enhancement_factor(block_mean: float) -> float:
    if block_mean < 20:
        return 3.0
    if block_mean < 50:
        return 2.5
    if block_mean < 100:
        return 1.5
    if block_mean < 150:
        return 1.2
    return 1.1


def convert_to_8bit_z_gentle(volume: VolumeGrid, block_size: int = 8) -> VolumeGrid:
    """Global rescale followed by a per z-block contrast stretch

    Each block is stretched about its mean by a factor that grows as the
    block gets darker, then clamped to [0, 255]. Starting from the global
    rescale keeps slices comparable across blocks.
    """
    if not _needs_conversion(volume):
        return volume
    data = volume.data
    base = _rescale(data, float(data.min()), float(data.max()))
    out = base.copy()
    for z_start in range(0, data.shape[0], block_size):
        block = base[z_start:z_start + block_size].astype(np.float64)
        if block.max() - block.min() <= 0:
            continue
        block_mean = float(block.mean())
        factor = _enhancement_factor(block_mean)
        enhanced = np.clip(block_mean + factor * (block - block_mean), 0, 255)
        out[z_start:z_start + block_size] = enhanced.astype(np.uint8)
        logger.debug(f"z-block {z_start}: mean {block_mean:.1f}, enhancement x{factor}")
    return volume.with_data(out)


def normalize_intensity(volume: VolumeGrid, mode: NormalizationMode = NormalizationMode.GLOBAL,
                        block_size: int = 8) -> VolumeGrid:
    """Map a volume to 8-bit intensities

    Args:
        volume: 8 or 16-bit unsigned input; 8-bit input is returned as is
        mode: Normalization strategy
        block_size: Number of z-planes per block for the block modes

    Returns:
        uint8 volume with the input geometry

    Raises:
        UnsupportedFormatError: for voxel types other than uint8/uint16
    """
    if mode == NormalizationMode.GLOBAL:
        return convert_to_8bit(volume)
    if mode == NormalizationMode.Z_ADAPTIVE:
        return convert_to_8bit_z_adaptive(volume)
    if mode == NormalizationMode.Z_BLOCK_ADAPTIVE:
        return convert_to_8bit_z_blocks(volume, block_size)
    if mode == NormalizationMode.Z_BLOCK_GENTLE:
        return convert_to_8bit_z_gentle(volume, block_size)
    raise ValueError(f"Unknown normalization mode {mode}")


def resample_z(volume: VolumeGrid, target_spacing: float) -> VolumeGrid:
    """Resample the z axis so that the z spacing equals target_spacing

    Args:
        volume: Input volume
        target_spacing: New z spacing in the volume's physical units

    Returns:
        Linearly interpolated volume with unchanged xy sampling
    """
    image = volume.to_sitk()
    original_spacing = image.GetSpacing()
    original_size = image.GetSize()

    new_spacing = [original_spacing[0], original_spacing[1], target_spacing]
    new_size = [
        original_size[0],
        original_size[1],
        max(1, int(round(original_size[2] * original_spacing[2] / target_spacing))),
    ]

    resample = sitk.ResampleImageFilter()
    resample.SetOutputSpacing(new_spacing)
    resample.SetSize(new_size)
    resample.SetOutputDirection(image.GetDirection())
    resample.SetOutputOrigin(image.GetOrigin())
    resample.SetTransform(sitk.Transform())
    resample.SetDefaultPixelValue(0)
    resample.SetInterpolator(sitk.sitkLinear)

    resampled = resample.Execute(image)
    logger.info(f"Resampled z: {original_size[2]} planes @ {original_spacing[2]} -> "
                f"{new_size[2]} planes @ {target_spacing}")
    return VolumeGrid.from_sitk(resampled)


def promote_2d(volume: VolumeGrid, depth: int = 7,
               background: Optional[float] = None) -> VolumeGrid:
    """Embed a single-plane image in the middle of a short stack

    The extra planes are filled with a constant background (the image
    minimum by default) so 3D filters can run on 2D input.

    Args:
        volume: Volume with exactly one z-plane
        depth: Total number of planes of the result
        background: Fill value for the added planes

    Returns:
        Volume with ``depth`` planes, the input plane at ``depth // 2``
    """
    if volume.data.shape[0] != 1:
        raise ValueError(f"promote_2d expects one z-plane, got {volume.data.shape[0]}")
    plane = volume.data[0]
    fill = plane.min() if background is None else background
    data = np.full((depth,) + plane.shape, fill, dtype=plane.dtype)
    data[depth // 2] = plane
    return VolumeGrid(data, volume.spacing, volume.origin)
