import logging
from typing import Callable, Dict, List, Set, Tuple

import numpy as np
from networkx.utils import UnionFind
from skimage.measure import marching_cubes
from skimage.morphology import skeletonize

from .config import SegmentationConfig
from .data_structures import NEIGHBOR_OFFSETS, SkeletonGraph, TriangleMesh, VolumeGrid

logger = logging.getLogger(__name__)

# Binary volume -> centerline graph in voxel coordinates
Skeletonizer = Callable[[VolumeGrid], SkeletonGraph]

# Scalar field, isovalue, spacing, origin -> surface
SurfaceExtractor = Callable[[np.ndarray, float, Tuple[float, float, float], Tuple[float, float, float]], TriangleMesh]

Voxel = Tuple[int, int, int]


def _sq_dist(a: Voxel, b: Voxel) -> int:
    return (a[0] - b[0]) ** 2 + (a[1] - b[1]) ** 2 + (a[2] - b[2]) ** 2


def _build_adjacency(voxels: List[Voxel]) -> Dict[int, Set[int]]:
    """26-neighbour adjacency between skeleton voxels

    Diagonal links that short-cut a path through a common neighbour closer
    to both ends are dropped, so staircase steps do not look like junctions.
    """
    index = {v: i for i, v in enumerate(voxels)}
    adjacency: Dict[int, Set[int]] = {i: set() for i in range(len(voxels))}
    for i, (x, y, z) in enumerate(voxels):
        for dx, dy, dz in NEIGHBOR_OFFSETS:
            j = index.get((x + dx, y + dy, z + dz))
            if j is not None:
                adjacency[i].add(j)

    redundant = set()
    for a in adjacency:
        for c in adjacency[a]:
            if c < a:
                continue
            d_ac = _sq_dist(voxels[a], voxels[c])
            if d_ac == 1:
                continue
            for b in adjacency[a] & adjacency[c]:
                if _sq_dist(voxels[a], voxels[b]) < d_ac and _sq_dist(voxels[b], voxels[c]) < d_ac:
                    redundant.add((a, c))
                    break
    for a, c in redundant:
        adjacency[a].discard(c)
        adjacency[c].discard(a)
    return adjacency


def trace_skeleton_graph(skeleton_mask: np.ndarray) -> SkeletonGraph:
    """Convert a 1-voxel-wide centerline mask into polylines

    Voxels whose neighbour count differs from 2 are junction or end voxels.
    Every chain of pass-through voxels between two of them becomes one edge,
    each chain emitted once. Closed loops without any junction become a single
    edge that starts and ends on the same point. Isolated voxels are dropped.

    Args:
        skeleton_mask: Array of shape (nz, ny, nx), nonzero on the centerline

    Returns:
        SkeletonGraph with points in voxel (x, y, z) coordinates
    """
    zyx = np.argwhere(skeleton_mask > 0)
    voxels: List[Voxel] = [(int(x), int(y), int(z)) for z, y, x in zyx]
    adjacency = _build_adjacency(voxels)
    is_node = {i: len(nbrs) != 2 for i, nbrs in adjacency.items()}

    used: Set[Tuple[int, int]] = set()

    def mark(a: int, b: int) -> None:
        used.add((min(a, b), max(a, b)))

    def is_used(a: int, b: int) -> bool:
        return (min(a, b), max(a, b)) in used

    def walk(start: int, first: int) -> List[int]:
        path = [start, first]
        mark(start, first)
        prev, current = start, first
        while not is_node[current] and current != start:
            candidates = [n for n in sorted(adjacency[current]) if n != prev and not is_used(current, n)]
            if not candidates:
                break
            prev, current = current, candidates[0]
            mark(prev, current)
            path.append(current)
        return path

    edges: List[List[int]] = []
    for start in sorted(i for i in adjacency if is_node[i]):
        for nbr in sorted(adjacency[start]):
            if not is_used(start, nbr):
                edges.append(walk(start, nbr))

    # Anything left is part of a junction-free loop
    for start in sorted(adjacency):
        for nbr in sorted(adjacency[start]):
            if not is_used(start, nbr):
                edges.append(walk(start, nbr))

    # Keep only the voxels that belong to an edge
    kept = sorted({p for edge in edges for p in edge})
    remap = {old: new for new, old in enumerate(kept)}
    points = np.array([voxels[i] for i in kept], dtype=float).reshape(-1, 3)
    graph = SkeletonGraph(points, [[remap[p] for p in edge] for edge in edges])
    logger.debug(f"Traced {graph.n_edges} edges over {graph.n_points} centerline voxels")
    return graph


def thin_binary_volume(binary: VolumeGrid) -> SkeletonGraph:
    """Default skeletonizer: topology-preserving thinning plus tracing

    Returns:
        SkeletonGraph in voxel coordinates with a 'Nodes' point array
    """
    skeleton_mask = skeletonize(binary.data > 0)
    graph = trace_skeleton_graph(skeleton_mask)
    graph.point_data['Nodes'] = graph.node_ids().astype(float)
    logger.info(f"Skeleton: {graph.n_points} points, {graph.n_edges} edges")
    return graph


def extract_isosurface(field: np.ndarray, isovalue: float,
                       spacing: Tuple[float, float, float] = (1.0, 1.0, 1.0),
                       origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)) -> TriangleMesh:
    """Default surface extractor: marching cubes at the given isovalue

    Vertices are returned in (x, y, z) order as spacing * (r + origin).
    An isovalue outside the field range gives an empty mesh.
    """
    field = np.asarray(field, dtype=np.float64)
    if min(field.shape) < 2 or not (field.min() < isovalue < field.max()):
        logger.warning(f"Isovalue {isovalue} outside the field range; empty surface")
        return TriangleMesh(np.zeros((0, 3)), np.zeros((0, 3), dtype=np.int64))
    verts, faces, _, _ = marching_cubes(field, level=isovalue)
    xyz = verts[:, ::-1]
    xyz = np.asarray(spacing, dtype=float) * (xyz + np.asarray(origin, dtype=float))
    return TriangleMesh(xyz, faces)


def fragment_gap_distance(config: SegmentationConfig) -> float:
    """Largest endpoint gap bridged by connect_skeleton_fragments, in um"""
    factor = 5.0 if config.threshold < 0.1 else 3.0
    return factor * config.pixel_size_xy


def connect_skeleton_fragments(skeleton: SkeletonGraph, max_gap_distance: float,
                               skip_connected: bool = False) -> Tuple[SkeletonGraph, int]:
    """Bridge nearby skeleton endpoints with straight edges

    Every pair of degree-1 points at a distance d with 0 < d <= max_gap_distance
    gets a new two-point edge. With skip_connected, pairs that are already
    joined through the graph (including bridges added earlier) are skipped.

    Returns:
        Copy of the skeleton with the new edges and the number of edges added
    """
    connected = skeleton.copy()
    endpoints = skeleton.endpoints()
    logger.debug(f"Found {len(endpoints)} endpoints")

    components = None
    if skip_connected:
        components = UnionFind()
        for a, b in skeleton.to_networkx().edges():
            components.union(a, b)

    added = 0
    for i, p1 in enumerate(endpoints):
        for p2 in endpoints[i + 1:]:
            distance = float(np.linalg.norm(skeleton.points[p1] - skeleton.points[p2]))
            if not (0.0 < distance <= max_gap_distance):
                continue
            if components is not None:
                if components[int(p1)] == components[int(p2)]:
                    continue
                components.union(int(p1), int(p2))
            connected.add_edge(int(p1), int(p2))
            added += 1

    logger.info(f"Added {added} fragment connections (max gap {max_gap_distance:.3f})")
    return connected, added
