"""Pytest configuration and fixtures for mito_segmentation tests."""

import os
import sys

import numpy as np
import pytest

# Repository root holds both the package and the command line script
_ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _ROOT_DIR not in sys.path:
    sys.path.insert(0, _ROOT_DIR)

from mito_segmentation.data_structures import SkeletonGraph, VolumeGrid  # noqa: E402


@pytest.fixture
def line_array():
    """
    Create a uint8 stack with a single bright tubule.

    Ten voxels of intensity 200 along x (x=3..12) at y=8, z=4.
    Shape: (8, 16, 16)
    """
    data = np.zeros((8, 16, 16), dtype=np.uint8)
    data[4, 8, 3:13] = 200
    return data


@pytest.fixture
def line_volume(line_array):
    """VolumeGrid around line_array with unit spacing."""
    return VolumeGrid(line_array, (1.0, 1.0, 1.0))


@pytest.fixture
def t_junction_mask():
    """
    Create a one-voxel-wide T in the plane z=2.

    Horizontal bar x=2..10 at y=5, vertical bar y=6..10 at x=6.
    Shape: (5, 14, 14)
    """
    mask = np.zeros((5, 14, 14), dtype=np.uint8)
    mask[2, 5, 2:11] = 1
    mask[2, 6:11, 6] = 1
    return mask


@pytest.fixture
def t_junction_graph():
    """
    Skeleton graph of a T: three edges meeting at point 0.

    Point 0 at the origin, arms along +x, -x and +y.
    """
    points = np.array([
        [0, 0, 0],
        [1, 0, 0], [2, 0, 0],
        [-1, 0, 0], [-2, 0, 0],
        [0, 1, 0], [0, 2, 0], [0, 3, 0],
    ], dtype=float)
    edges = [[0, 1, 2], [0, 3, 4], [0, 5, 6, 7]]
    return SkeletonGraph(points, edges)


@pytest.fixture
def closed_shell():
    """
    Create a binary cube shell enclosing one cavity.

    7x7x7 foreground cube with a 3x3x3 empty core, inside an 11^3 grid.
    """
    binary = np.zeros((11, 11, 11), dtype=np.uint8)
    binary[2:9, 2:9, 2:9] = 255
    binary[4:7, 4:7, 4:7] = 0
    return binary
