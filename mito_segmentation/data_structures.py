from enum import Enum, auto
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import networkx as nx
import numpy as np
import SimpleITK as sitk

from .config import SegmentationConfig

# Neighbour offsets (dx, dy, dz): the first 6 are face neighbours, the first
# 18 add edge neighbours and all 26 add corner neighbours.
NEIGHBOR_OFFSETS: Tuple[Tuple[int, int, int], ...] = (
    (0, 0, -1), (-1, 0, 0), (0, -1, 0), (1, 0, 0), (0, 1, 0), (0, 0, 1),
    (-1, 0, -1), (0, -1, -1), (1, 0, -1), (0, 1, -1), (-1, -1, 0), (1, -1, 0),
    (1, 1, 0), (-1, 1, 0), (-1, 0, 1), (0, -1, 1), (1, 0, 1), (0, 1, 1),
    (-1, -1, -1), (1, -1, -1), (1, 1, -1), (-1, 1, -1), (-1, -1, 1), (1, -1, 1),
    (1, 1, 1), (-1, 1, 1),
)


class PointType(Enum):
    """Types of skeleton points"""
    ENDPOINT = auto()     # Degree 1
    NORMAL = auto()       # Degree 2
    BIFURCATION = auto()  # Degree >= 3
    ISOLATED = auto()     # Not part of any edge


class VolumeGrid:
    """3D scalar field with voxel spacing and origin

    Samples are stored as a numpy array of shape (nz, ny, nx), so the linear
    index ``x + y*nx + z*nx*ny`` is the C-order ravel index of the array.
    """

    def __init__(self, data: np.ndarray,
                 spacing: Sequence[float] = (1.0, 1.0, 1.0),
                 origin: Sequence[float] = (0.0, 0.0, 0.0)):
        """Initialize a grid

        Args:
            data: Voxel samples with shape (nz, ny, nx)
            spacing: Voxel size in (x, y, z) order
            origin: Physical position of voxel (0, 0, 0) in (x, y, z) order
        """
        data = np.asarray(data)
        if data.ndim != 3:
            raise ValueError(f"VolumeGrid expects a 3D array, got {data.ndim}D")
        self.data = data
        self.spacing = tuple(float(s) for s in spacing)
        self.origin = tuple(float(o) for o in origin)

    @property
    def dimensions(self) -> Tuple[int, int, int]:
        """Grid size as (nx, ny, nz)"""
        nz, ny, nx = self.data.shape
        return nx, ny, nz

    @property
    def n_voxels(self) -> int:
        return int(self.data.size)

    @property
    def dtype(self):
        return self.data.dtype

    def index(self, x: int, y: int, z: int) -> int:
        nx, ny, _ = self.dimensions
        return x + y * nx + z * nx * ny

    def coordinates(self, index: int) -> Tuple[int, int, int]:
        """Inverse of index()"""
        nx, ny, _ = self.dimensions
        return index % nx, (index % (nx * ny)) // nx, index // (nx * ny)

    def contains(self, x: int, y: int, z: int) -> bool:
        nx, ny, nz = self.dimensions
        return 0 <= x < nx and 0 <= y < ny and 0 <= z < nz

    def at(self, x: int, y: int, z: int):
        return self.data[z, y, x]

    def set(self, x: int, y: int, z: int, value) -> None:
        self.data[z, y, x] = value

    def value_at_index(self, index: int):
        return self.data.flat[index]

    def neighbors(self, x: int, y: int, z: int, connectivity: int = 6) -> Iterator[Tuple[int, int, int]]:
        """Yield in-bounds neighbours of a voxel

        Args:
            connectivity: 6, 18 or 26
        """
        if connectivity not in (6, 18, 26):
            raise ValueError(f"Unsupported connectivity {connectivity}")
        for dx, dy, dz in NEIGHBOR_OFFSETS[:connectivity]:
            if self.contains(x + dx, y + dy, z + dz):
                yield x + dx, y + dy, z + dz

    def voxel_to_physical(self, point: Sequence[float]) -> np.ndarray:
        """Map (x, y, z) voxel coordinates to physical units"""
        return np.asarray(point, dtype=float) * self.spacing + self.origin

    def physical_to_voxel(self, point: Sequence[float]) -> np.ndarray:
        """Map physical (x, y, z) coordinates back to voxel units"""
        return (np.asarray(point, dtype=float) - self.origin) / self.spacing

    def with_data(self, data: np.ndarray) -> 'VolumeGrid':
        """New grid with the same geometry and different samples"""
        if data.shape != self.data.shape:
            raise ValueError(f"Shape mismatch: {data.shape} != {self.data.shape}")
        return VolumeGrid(data, self.spacing, self.origin)

    def copy(self) -> 'VolumeGrid':
        return VolumeGrid(self.data.copy(), self.spacing, self.origin)

    @classmethod
    def from_sitk(cls, image: sitk.Image) -> 'VolumeGrid':
        """Wrap a SimpleITK image; 2D images become a single z plane"""
        array = sitk.GetArrayFromImage(image)
        spacing = list(image.GetSpacing())
        origin = list(image.GetOrigin())
        if array.ndim == 2:
            array = array[np.newaxis]
            spacing.append(1.0)
            origin.append(0.0)
        return cls(array, spacing[:3], origin[:3])

    def to_sitk(self) -> sitk.Image:
        image = sitk.GetImageFromArray(self.data)
        image.SetSpacing(self.spacing)
        image.SetOrigin(self.origin)
        return image

    def __repr__(self):
        nx, ny, nz = self.dimensions
        return f"VolumeGrid({nx}x{ny}x{nz}, dtype={self.dtype}, spacing={self.spacing})"


class ComponentLabels:
    """Connected-component label field with per-component voxel counts

    Background voxels are 0 and the k-th component is labelled ``-k``.
    """

    def __init__(self, labels: np.ndarray, sizes: Sequence[int], connectivity: int):
        self.labels = labels
        self.sizes = np.asarray(sizes, dtype=np.int64)
        self.connectivity = connectivity

    @property
    def count(self) -> int:
        return int(len(self.sizes))

    def size_of(self, label: int) -> int:
        """Voxel count of a component given its (signed) label"""
        if label == 0:
            return 0
        return int(self.sizes[abs(label) - 1])


class TriangleMesh:
    """Isosurface as vertices (x, y, z) and triangle faces"""

    def __init__(self, vertices: np.ndarray, faces: np.ndarray):
        self.vertices = np.asarray(vertices, dtype=float).reshape(-1, 3)
        self.faces = np.asarray(faces, dtype=np.int64).reshape(-1, 3)

    @property
    def n_points(self) -> int:
        return len(self.vertices)


class SkeletonGraph:
    """Centerline network as an ordered list of polylines

    Points are stored once in ``points`` (x, y, z) and each edge is an array of
    point indices with at least two entries. Per-point attributes (Width,
    Length, Intensity, Nodes) live in ``point_data``.
    """

    def __init__(self, points: np.ndarray, edges: Optional[List[Sequence[int]]] = None,
                 point_data: Optional[Dict[str, np.ndarray]] = None):
        self.points = np.asarray(points, dtype=float).reshape(-1, 3)
        self.edges: List[np.ndarray] = []
        self.point_data: Dict[str, np.ndarray] = dict(point_data or {})
        for edge in edges or []:
            self._check_edge(edge)
            self.edges.append(np.asarray(edge, dtype=np.int64))

    @property
    def n_points(self) -> int:
        return len(self.points)

    @property
    def n_edges(self) -> int:
        return len(self.edges)

    def _check_edge(self, edge: Sequence[int]) -> None:
        if len(edge) < 2:
            raise ValueError("An edge needs at least two points")
        if min(edge) < 0 or max(edge) >= self.n_points:
            raise ValueError(f"Edge references a point outside the graph: {list(edge)}")

    def add_edge(self, start: int, end: int) -> None:
        """Append a straight two-point edge between existing points"""
        self._check_edge((start, end))
        self.edges.append(np.array([start, end], dtype=np.int64))

    def degrees(self) -> np.ndarray:
        """Number of edge incidences per point

        Edge ends count once, interior occurrences twice.
        """
        degree = np.zeros(self.n_points, dtype=np.int64)
        for edge in self.edges:
            degree[edge[0]] += 1
            degree[edge[-1]] += 1
            if len(edge) > 2:
                np.add.at(degree, edge[1:-1], 2)
        return degree

    def point_types(self) -> List[PointType]:
        types = []
        for d in self.degrees():
            if d == 0:
                types.append(PointType.ISOLATED)
            elif d == 1:
                types.append(PointType.ENDPOINT)
            elif d == 2:
                types.append(PointType.NORMAL)
            else:
                types.append(PointType.BIFURCATION)
        return types

    def endpoints(self) -> np.ndarray:
        return np.flatnonzero(self.degrees() == 1)

    def branch_points(self) -> np.ndarray:
        return np.flatnonzero(self.degrees() >= 3)

    def node_ids(self) -> np.ndarray:
        """Node identifier for edge-end points with degree != 2, -1 otherwise"""
        degree = self.degrees()
        ends = set()
        for edge in self.edges:
            ends.add(int(edge[0]))
            ends.add(int(edge[-1]))
        ids = np.full(self.n_points, -1, dtype=np.int64)
        node_id = 0
        for point_id in sorted(ends):
            if degree[point_id] != 2:
                ids[point_id] = node_id
                node_id += 1
        return ids

    def to_networkx(self) -> nx.Graph:
        """Point-level graph with one edge per consecutive polyline pair"""
        graph = nx.Graph()
        for edge in self.edges:
            graph.add_nodes_from(int(p) for p in edge)
            graph.add_edges_from(zip(edge[:-1].tolist(), edge[1:].tolist()))
        return graph

    def scaled(self, spacing: Sequence[float], origin: Sequence[float] = (0.0, 0.0, 0.0)) -> 'SkeletonGraph':
        """Copy with points mapped to physical units: spacing * (r + origin)"""
        points = np.asarray(spacing, dtype=float) * (self.points + np.asarray(origin, dtype=float))
        return SkeletonGraph(points, [e.copy() for e in self.edges],
                             {k: v.copy() for k, v in self.point_data.items()})

    def copy(self) -> 'SkeletonGraph':
        return SkeletonGraph(self.points.copy(), [e.copy() for e in self.edges],
                             {k: v.copy() for k, v in self.point_data.items()})


class MitoObject:
    """Per-file run context

    Owns the active volume, the configuration and the scalar attributes
    produced by the estimators. Reset before each new file.
    """

    def __init__(self, config: SegmentationConfig, file_name: str = ""):
        self.config = config
        self.file_name = file_name
        self.volume: Optional[VolumeGrid] = None
        self.origin: Tuple[float, float, float] = (0.0, 0.0, 0.0)
        self.attributes: List[Tuple[str, float]] = []

    def reset(self, file_name: str) -> None:
        self.file_name = file_name
        self.volume = None
        self.origin = (0.0, 0.0, 0.0)
        self.attributes = []

    def add_attribute(self, name: str, value: float) -> None:
        self.attributes.append((name, float(value)))

    def get_attribute(self, name: str) -> Optional[float]:
        for key, value in self.attributes:
            if key == name:
                return value
        return None
