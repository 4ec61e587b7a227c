import logging
from typing import Tuple

import numpy as np
from scipy.ndimage import generate_binary_structure, label

from .data_structures import ComponentLabels

logger = logging.getLogger(__name__)

_CONNECTIVITY_RANK = {6: 1, 18: 2, 26: 3}


def _structure(connectivity: int) -> np.ndarray:
    if connectivity not in _CONNECTIVITY_RANK:
        raise ValueError(f"Unsupported connectivity {connectivity}; expected 6, 18 or 26")
    return generate_binary_structure(3, _CONNECTIVITY_RANK[connectivity])


def label_connected_components(field: np.ndarray, connectivity: int = 6,
                               threshold: float = 0.0) -> ComponentLabels:
    """Label connected components of voxels with value > threshold

    The partition depends only on the mask and the connectivity. The k-th
    component is labelled -k so it cannot be confused with background.

    Args:
        field: Array of shape (nz, ny, nx)
        connectivity: 6, 18 or 26
        threshold: Voxels strictly above this value are foreground

    Returns:
        ComponentLabels with per-component voxel counts
    """
    labeled, num = label(field > threshold, structure=_structure(connectivity))
    sizes = np.bincount(labeled.ravel(), minlength=num + 1)[1:]
    logger.debug(f"Found {num} connected components ({connectivity}-connectivity)")
    return ComponentLabels(-labeled.astype(np.int64), sizes, connectivity)


def prune_small_components(field: np.ndarray, min_size: int, connectivity: int = 6,
                           threshold: float = 0.0) -> Tuple[np.ndarray, int]:
    """Zero the voxels of components smaller than min_size

    Nothing is removed when the field has a single component.

    Returns:
        Pruned copy of the field and the number of removed components
    """
    components = label_connected_components(field, connectivity, threshold)
    pruned = np.array(field, copy=True)
    if components.count <= 1:
        return pruned, 0

    small = np.flatnonzero(components.sizes < min_size) + 1
    if len(small):
        pruned[np.isin(-components.labels, small)] = 0
    logger.info(f"Removed {len(small)} of {components.count} components smaller than {min_size} voxels")
    return pruned, int(len(small))


def fill_holes(binary: np.ndarray, fill_value: int = 255) -> Tuple[np.ndarray, int]:
    """Fill background cavities that are enclosed by foreground

    Background voxels of the grid interior (1-voxel margin) are split into
    6-connected regions. A region touching the boundary layer of the
    interior is open background; every other region is a hole.

    Returns:
        Filled copy of the binary volume and the number of filled holes
    """
    filled = np.array(binary, copy=True)
    if min(binary.shape) < 5:
        return filled, 0

    interior = binary[1:-1, 1:-1, 1:-1] == 0
    regions, num = label(interior, structure=_structure(6))

    open_regions = np.zeros(num + 1, dtype=bool)
    for face in (regions[0], regions[-1], regions[:, 0], regions[:, -1], regions[:, :, 0], regions[:, :, -1]):
        open_regions[np.unique(face)] = True
    open_regions[0] = True

    holes = ~open_regions[regions]
    filled[1:-1, 1:-1, 1:-1][holes] = fill_value
    n_holes = int(num + 1 - open_regions.sum())
    logger.info(f"Number of filled holes: {n_holes}")
    return filled, n_holes
