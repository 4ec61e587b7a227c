import logging

import numpy as np

from .config import SegmentationConfig

logger = logging.getLogger(__name__)

FOREGROUND = 255


def _apply_threshold(values: np.ndarray, threshold: float) -> np.ndarray:
    """value <= threshold -> 0, otherwise 255"""
    return np.where(values > threshold, FOREGROUND, 0).astype(np.uint8)


def binarize_fixed(field: np.ndarray, threshold: float) -> np.ndarray:
    """Binarize with a single global threshold

    A non-positive threshold disables thresholding and returns the field
    linearly rescaled to [0, 255] instead.
    """
    if threshold > 0:
        return _apply_threshold(field, threshold)

    vmin, vmax = float(field.min()), float(field.max())
    if vmax <= vmin:
        return np.zeros(field.shape, dtype=np.uint8)
    return (255.0 * (field - vmin) / (vmax - vmin)).astype(np.uint8)


def binarize_z_adaptive(field: np.ndarray, base_threshold: float) -> np.ndarray:
    """Binarize every z-plane with its own statistical threshold

    threshold = mean + 2 * base_threshold * std. A threshold above the plane
    maximum drops to 0.8 * max, and one below the plane minimum rises to
    min + 0.1 * range.
    """
    binary = np.zeros(field.shape, dtype=np.uint8)
    for z, plane in enumerate(field):
        z_min, z_max = float(plane.min()), float(plane.max())
        z_threshold = float(plane.mean()) + 2.0 * base_threshold * float(plane.std())
        if z_threshold > z_max:
            z_threshold = 0.8 * z_max
        if z_threshold < z_min:
            z_threshold = z_min + 0.1 * (z_max - z_min)
        binary[z] = _apply_threshold(plane, z_threshold)
    return binary


def block_threshold(block: np.ndarray, base_threshold: float, global_range: float) -> float:
    """Conservative threshold for one z-block

    Args:
        block: Field values of the block
        base_threshold: User threshold
        global_range: max - min of the whole field

    Returns:
        Threshold for the block
    """
    block_min = float(block.min())
    block_max = float(block.max())
    block_mean = float(block.mean())
    block_std = float(block.std())

    block_range = block_max - block_min
    if block_range < 1e-6:
        block_range = 1.0

    brightness = (block_mean - block_min) / block_range
    cv = block_std / block_mean if block_mean > 0 else 0.0
    very_dark = block_mean < 0.1 * global_range or brightness < 0.2

    if very_dark:
        if block_mean < 0.05 * global_range:
            threshold = block_mean + 1.5 * base_threshold * block_std
        else:
            threshold = block_mean + 2.0 * base_threshold * block_std
        threshold = max(threshold, block_min + 0.01 * block_range)
        lower = block_min + 0.01 * block_range
        upper = block_mean + 3.0 * block_std
    else:
        adjustment = 0.0
        if cv > 0.5:
            adjustment = 0.2 * block_std
        elif cv < 0.3:
            adjustment = -0.1 * block_std
        # Dim blocks get a lower threshold
        if brightness < 0.5:
            adjustment -= 0.1 * block_std
        threshold = block_min + block_range * base_threshold + adjustment
        lower = block_min + block_range * 0.3 * base_threshold
        upper = block_min + block_range * 3.0 * base_threshold

    if threshold < lower:
        threshold = lower
    if threshold > upper:
        threshold = upper
    return threshold


def binarize_z_block_conservative(field: np.ndarray, base_threshold: float, block_size: int = 8) -> np.ndarray:
    """Binarize contiguous z-blocks with block_threshold()"""
    global_range = float(field.max() - field.min()) if field.size else 0.0
    binary = np.zeros(field.shape, dtype=np.uint8)
    for z_start in range(0, field.shape[0], block_size):
        block = field[z_start:z_start + block_size]
        threshold = block_threshold(block, base_threshold, global_range)
        logger.debug(f"z-block {z_start}: threshold {threshold:.5f}")
        binary[z_start:z_start + block_size] = _apply_threshold(block, threshold)
    return binary


def binarize(field: np.ndarray, config: SegmentationConfig) -> np.ndarray:
    """Binarize the enhanced field as configured

    Uses the conservative z-block threshold in z-adaptive mode and the
    fixed threshold otherwise.
    """
    if config.z_adaptive:
        return binarize_z_block_conservative(field, config.threshold, config.z_block_size)
    return binarize_fixed(field, config.threshold)
