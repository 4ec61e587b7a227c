import logging
import os
from contextlib import contextmanager
from typing import Iterator, Optional, Sequence, Union

import numpy as np
import SimpleITK as sitk
import vtk
from vtk.util import numpy_support

from .data_structures import SkeletonGraph, TriangleMesh, VolumeGrid
from .errors import MissingInputError

logger = logging.getLogger(__name__)


@contextmanager
def atomic_output(path: str) -> Iterator[str]:
    """Yield a temporary path that replaces ``path`` only on success"""
    root, ext = os.path.splitext(path)
    tmp_path = f"{root}.partial{ext}"
    try:
        yield tmp_path
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def read_volume(path: str, spacing: Optional[Sequence[float]] = None) -> VolumeGrid:
    """Decode an image stack

    Args:
        path: TIFF (or any SimpleITK-readable) file
        spacing: Voxel spacing (x, y, z) overriding the file metadata

    Raises:
        MissingInputError: if the file is absent or cannot be decoded
    """
    if not os.path.isfile(path):
        raise MissingInputError(f"File {path} does not exist")
    try:
        image = sitk.ReadImage(path)
    except RuntimeError as e:
        raise MissingInputError(f"File {path} cannot be opened: {e}") from e

    volume = VolumeGrid.from_sitk(image)
    if spacing is not None:
        volume.spacing = tuple(float(s) for s in spacing)
    nx, ny, nz = volume.dimensions
    logger.info(f"Loaded {os.path.basename(path)}: {nx}x{ny}x{nz}, {volume.dtype}")
    return volume


def write_volume(volume: Union[VolumeGrid, np.ndarray], path: str) -> None:
    """Write a volume (or a bare array) through SimpleITK"""
    if isinstance(volume, VolumeGrid):
        image = volume.to_sitk()
    else:
        image = sitk.GetImageFromArray(volume)
    with atomic_output(path) as tmp_path:
        sitk.WriteImage(image, tmp_path)


def write_max_projection(binary: np.ndarray, path: str) -> None:
    """Write the maximum intensity projection along z as an 8-bit PNG"""
    image = sitk.GetImageFromArray(np.asarray(binary, dtype=np.uint8))
    projection = sitk.MaximumProjection(image, projectionDimension=2)
    with atomic_output(path) as tmp_path:
        sitk.WriteImage(projection[:, :, 0], tmp_path)


def _to_vtk_points(points: np.ndarray) -> vtk.vtkPoints:
    vtk_points = vtk.vtkPoints()
    if len(points) == 0:
        return vtk_points
    vtk_points.SetData(numpy_support.numpy_to_vtk(np.ascontiguousarray(points, dtype=np.float64), deep=True))
    return vtk_points


def skeleton_to_polydata(skeleton: SkeletonGraph) -> vtk.vtkPolyData:
    """Polylines with every point_data entry as a named point array"""
    lines = vtk.vtkCellArray()
    for edge in skeleton.edges:
        line = vtk.vtkPolyLine()
        line.GetPointIds().SetNumberOfIds(len(edge))
        for i, point_id in enumerate(edge):
            line.GetPointIds().SetId(i, int(point_id))
        lines.InsertNextCell(line)

    polydata = vtk.vtkPolyData()
    polydata.SetPoints(_to_vtk_points(skeleton.points))
    polydata.SetLines(lines)
    for name, values in skeleton.point_data.items():
        if len(values) == 0:
            continue
        array = numpy_support.numpy_to_vtk(np.ascontiguousarray(values, dtype=np.float64), deep=True)
        array.SetName(name)
        polydata.GetPointData().AddArray(array)
    return polydata


def mesh_to_polydata(mesh: TriangleMesh) -> vtk.vtkPolyData:
    polys = vtk.vtkCellArray()
    for face in mesh.faces:
        triangle = vtk.vtkTriangle()
        for i in range(3):
            triangle.GetPointIds().SetId(i, int(face[i]))
        polys.InsertNextCell(triangle)

    polydata = vtk.vtkPolyData()
    polydata.SetPoints(_to_vtk_points(mesh.vertices))
    polydata.SetPolys(polys)
    return polydata


def write_polydata(data: Union[SkeletonGraph, TriangleMesh], path: str) -> None:
    """Save a skeleton or a surface as legacy VTK polydata"""
    if isinstance(data, SkeletonGraph):
        polydata = skeleton_to_polydata(data)
    else:
        polydata = mesh_to_polydata(data)
    with atomic_output(path) as tmp_path:
        writer = vtk.vtkPolyDataWriter()
        writer.SetFileName(tmp_path)
        writer.SetInputData(polydata)
        if not writer.Write():
            raise IOError(f"Could not write {path}")
