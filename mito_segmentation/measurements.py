import logging
from typing import List, Optional, Tuple

import networkx as nx
import numpy as np
from scipy.spatial import cKDTree

from .data_structures import NEIGHBOR_OFFSETS, ComponentLabels, MitoObject, SkeletonGraph, VolumeGrid

logger = logging.getLogger(__name__)


def estimate_tubule_width(skeleton: SkeletonGraph, surface_points: np.ndarray,
                          context: Optional[MitoObject] = None, n_neighbors: int = 3) -> np.ndarray:
    """Approximate the local tubule diameter at every skeleton point

    The width at a point is the mean of 2 * distance to its nearest surface
    points. Stores the 'Width' point array and, when a context is given,
    the 'Average width (um)' and 'Std width (um)' attributes.

    Args:
        skeleton: Skeleton in physical units
        surface_points: (M, 3) surface vertices in the same units
        context: Run context receiving the summary attributes
        n_neighbors: Number of nearest surface points per skeleton point

    Returns:
        Width per skeleton point
    """
    surface_points = np.asarray(surface_points, dtype=float).reshape(-1, 3)
    width = np.zeros(skeleton.n_points, dtype=np.float64)
    if skeleton.n_points and len(surface_points):
        k = min(n_neighbors, len(surface_points))
        tree = cKDTree(surface_points)
        distances, _ = tree.query(skeleton.points, k=k)
        distances = np.asarray(distances).reshape(skeleton.n_points, k)
        width = (2.0 * distances).mean(axis=1)
    elif skeleton.n_points:
        logger.warning("Empty surface; widths set to 0")
    skeleton.point_data['Width'] = width

    if context is not None:
        n = max(skeleton.n_points, 1)
        mean = width.sum() / n
        variance = max((width ** 2).sum() / n - mean ** 2, 0.0)
        context.add_attribute("Average width (um)", mean)
        context.add_attribute("Std width (um)", np.sqrt(variance))
    return width


def estimate_tubule_length(skeleton: SkeletonGraph) -> np.ndarray:
    """Tag every point of an edge with the total length of that edge

    Edges are processed last to first, so a point shared by several edges
    keeps the length of the lowest-index one.

    Returns:
        Length per skeleton point (0 for points outside any edge)
    """
    length = np.zeros(skeleton.n_points, dtype=np.float64)
    for edge in reversed(skeleton.edges):
        segment = np.diff(skeleton.points[edge], axis=0)
        length[edge] = np.sqrt((segment ** 2).sum(axis=1)).sum()
    skeleton.point_data['Length'] = length
    return length


def map_image_intensity(skeleton: SkeletonGraph, volume: VolumeGrid,
                        spacing: Tuple[float, float, float],
                        origin: Tuple[float, float, float] = (0.0, 0.0, 0.0),
                        n_neighbors: int = 6) -> np.ndarray:
    """Sample image intensity along the skeleton

    Each point is rounded to its voxel (the inverse of
    SkeletonGraph.scaled) and the intensity is the sum over its first
    n_neighbors neighbours divided by n_neighbors. Out-of-bounds neighbours
    add nothing.

    Returns:
        Intensity per skeleton point
    """
    intensity = np.zeros(skeleton.n_points, dtype=np.float64)
    voxels = np.rint(skeleton.points / np.asarray(spacing, dtype=float)
                     - np.asarray(origin, dtype=float)).astype(int)
    for i, (x, y, z) in enumerate(voxels):
        total = 0.0
        for dx, dy, dz in NEIGHBOR_OFFSETS[:n_neighbors]:
            if volume.contains(x + dx, y + dy, z + dz):
                total += float(volume.at(x + dx, y + dy, z + dz))
        intensity[i] = total / n_neighbors
    skeleton.point_data['Intensity'] = intensity
    return intensity


def total_length(skeleton: SkeletonGraph) -> float:
    """Sum of all edge lengths"""
    length = 0.0
    for edge in skeleton.edges:
        segment = np.diff(skeleton.points[edge], axis=0)
        length += float(np.sqrt((segment ** 2).sum(axis=1)).sum())
    return length


def volume_from_length(skeleton: SkeletonGraph, context: MitoObject) -> float:
    """Network volume as total length times a cylinder cross-section

    Adds 'Total length (um)' and 'Volume from length (um3)' to the context.
    """
    length = total_length(skeleton)
    volume = length * np.pi * context.config.tubule_radius ** 2
    context.add_attribute("Total length (um)", length)
    context.add_attribute("Volume from length (um3)", volume)
    return volume


def topological_attributes(skeleton: SkeletonGraph, context: MitoObject) -> Tuple[int, int, int]:
    """Count end points, bifurcations and connected components

    Only edge ends are considered nodes: a node where exactly one edge ends
    is an end point, one where three or more end is a bifurcation.
    """
    ends: List[int] = []
    for edge in skeleton.edges:
        ends.append(int(edge[0]))
        ends.append(int(edge[-1]))
    counts = np.bincount(np.asarray(ends, dtype=np.int64), minlength=skeleton.n_points)
    n_end_points = int((counts == 1).sum())
    n_bifurcations = int((counts >= 3).sum())
    n_components = nx.number_connected_components(skeleton.to_networkx())

    context.add_attribute("#End points", n_end_points)
    context.add_attribute("#Bifurcations", n_bifurcations)
    context.add_attribute("#CComps", n_components)
    return n_end_points, n_bifurcations, n_components


def attribute_nodes_to_components(skeleton: SkeletonGraph, labels: ComponentLabels,
                                  voxel_volume: float) -> List[Tuple[int, int, float]]:
    """Find the image component each skeleton node sits in

    For every point with a node id, the first of its 6 face neighbours
    that carries a component label decides the component. Nodes that fall
    off the structure get volume 0.

    Args:
        skeleton: Skeleton in voxel coordinates with a 'Nodes' point array
        labels: Component labels of the binary volume
        voxel_volume: Physical volume of one voxel (um3)

    Returns:
        (node id, component id, component volume) per node
    """
    node_ids = skeleton.point_data.get('Nodes')
    if node_ids is None:
        node_ids = skeleton.node_ids()
    nz, ny, nx_ = labels.labels.shape
    rows = []
    for point_id in np.flatnonzero(np.asarray(node_ids) > -1):
        x, y, z = skeleton.points[point_id].astype(int)
        component = 0
        for dx, dy, dz in NEIGHBOR_OFFSETS[:6]:
            xi, yi, zi = x + dx, y + dy, z + dz
            if 0 <= xi < nx_ and 0 <= yi < ny and 0 <= zi < nz:
                component = int(labels.labels[zi, yi, xi])
                if component < 0:
                    break
        if component < 0:
            rows.append((int(node_ids[point_id]), abs(component), labels.size_of(component) * voxel_volume))
        else:
            rows.append((int(node_ids[point_id]), abs(component), 0.0))
    return rows
