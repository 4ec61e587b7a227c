import glob
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from .centerline_extraction import (Skeletonizer, SurfaceExtractor, connect_skeleton_fragments,
                                    extract_isosurface, fragment_gap_distance, thin_binary_volume)
from .config import SegmentationConfig
from .data_structures import ComponentLabels, MitoObject, SkeletonGraph, TriangleMesh, VolumeGrid
from .errors import MissingInputError, StageError, UnsupportedFormatError
from .image_io import read_volume, write_max_projection, write_polydata, write_volume
from .measurements import (attribute_nodes_to_components, estimate_tubule_length, estimate_tubule_width,
                           map_image_intensity, topological_attributes, volume_from_length)
from .preprocessing import NormalizationMode, normalize_intensity, promote_2d, resample_z
from .reporting import write_attributes, write_component_table, write_config_file, write_skeleton_table
from .segmentation import fill_holes, label_connected_components, prune_small_components
from .thresholding import binarize
from .vessel_enhancement import (clear_boundaries, connectivity_sigma, divergence_filter,
                                 enhance_structural_connectivity, multiscale_vesselness)

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class SegmentationResult:
    """Everything produced for one volume

    ``skeleton`` and ``surface`` are in physical units; ``skeleton_voxels``
    holds the same graph in voxel coordinates.
    """
    file_name: str
    context: MitoObject
    binary: np.ndarray
    surface: TriangleMesh
    skeleton: SkeletonGraph
    skeleton_voxels: SkeletonGraph
    spacing: Tuple[float, float, float]
    enhanced: Optional[np.ndarray] = None
    labels: Optional[ComponentLabels] = None
    component_rows: List[Tuple[int, int, float]] = field(default_factory=list)
    n_holes: int = 0
    n_bridges: int = 0


class MitoGraphPipeline:
    """Volume -> binary segmentation -> skeleton with width, length and intensity

    Args:
        config: Run configuration, validated on construction
        skeletonizer: Binary volume -> skeleton graph in voxel coordinates
        isosurface: Surface extractor used for the width estimate
    """

    def __init__(self, config: SegmentationConfig,
                 skeletonizer: Skeletonizer = thin_binary_volume,
                 isosurface: SurfaceExtractor = extract_isosurface):
        self.config = config.validated()
        self.skeletonizer = skeletonizer
        self.isosurface = isosurface
        self.context = MitoObject(self.config)

    @contextmanager
    def _stage(self, name: str):
        """Run a stage, re-raising any failure as StageError(file, stage)"""
        logger.info(f"{self.context.file_name}: {name}...")
        try:
            yield
        except StageError:
            raise
        except Exception as e:
            raise StageError(self.context.file_name, name, e) from e

    def _prepare(self, volume: VolumeGrid) -> VolumeGrid:
        """Apply the configured spacing, promote 2D input and resample z"""
        volume = VolumeGrid(volume.data, self.config.spacing, volume.origin)
        if volume.data.shape[0] == 1:
            logger.info("2D image detected, padding with background planes")
            volume = promote_2d(volume)
        elif self.config.resample_z is not None:
            volume = resample_z(volume, self.config.resample_z)
        return volume

    def process(self, volume: VolumeGrid, file_name: str = "volume") -> SegmentationResult:
        """Run every stage on one volume

        Raises:
            StageError: naming the file and the failing stage
        """
        config = self.config
        self.context.reset(file_name)

        with self._stage("preparation"):
            raw = self._prepare(volume)
            spacing = raw.spacing
            origin = raw.origin
            self.context.volume = raw
            self.context.origin = origin

        with self._stage("normalization"):
            mode = NormalizationMode.Z_BLOCK_GENTLE if config.z_adaptive else NormalizationMode.GLOBAL
            normalized = normalize_intensity(raw, mode, config.z_block_size)

        enhanced = None
        n_holes = 0
        if config.binary_input:
            binary = np.where(normalized.data > 0, 255, 0).astype(np.uint8)
            surface_field = (binary > 0).astype(np.float64)
            isovalue = 0.5
        else:
            with self._stage("vesselness"):
                vesselness = multiscale_vesselness(normalized.data, config.scales,
                                                   config.adaptive_threshold, config.n_blocks)
            with self._stage("divergence filter"):
                enhanced = clear_boundaries(divergence_filter(vesselness))
            if config.component_filtering:
                with self._stage("component pruning"):
                    enhanced, _ = prune_small_components(enhanced, config.min_component_size,
                                                         connectivity=6, threshold=config.threshold)
            if config.enhance_connectivity:
                with self._stage("connectivity enhancement"):
                    enhanced = enhance_structural_connectivity(enhanced, connectivity_sigma(config.threshold))
            with self._stage("binarization"):
                binary = binarize(enhanced, config)
            if config.fill_holes:
                with self._stage("hole filling"):
                    binary, n_holes = fill_holes(binary)
            surface_field = enhanced
            isovalue = config.threshold

        with self._stage("surface extraction"):
            surface = self.isosurface(surface_field, isovalue, spacing, origin)

        labels = None
        if config.analyze:
            with self._stage("component labelling"):
                labels = label_connected_components(binary, connectivity=26, threshold=0)

        with self._stage("skeletonization"):
            skeleton_voxels = self.skeletonizer(VolumeGrid(binary, spacing, origin))
            skeleton = skeleton_voxels.scaled(spacing, origin)

        n_bridges = 0
        if config.enhance_connectivity:
            with self._stage("fragment connection"):
                skeleton, n_bridges = connect_skeleton_fragments(skeleton, fragment_gap_distance(config))
        skeleton.point_data['Nodes'] = skeleton.node_ids().astype(float)
        skeleton_voxels = SkeletonGraph(skeleton_voxels.points, skeleton.edges,
                                        {'Nodes': skeleton.point_data['Nodes']})

        component_rows = []
        if labels is not None:
            with self._stage("component attribution"):
                voxel_volume = spacing[0] * spacing[1] * spacing[2]
                component_rows = attribute_nodes_to_components(skeleton_voxels, labels, voxel_volume)

        with self._stage("measurements"):
            estimate_tubule_width(skeleton, surface.vertices, self.context)
            estimate_tubule_length(skeleton)
            map_image_intensity(skeleton, raw, spacing, origin)
            volume_from_length(skeleton, self.context)
            topological_attributes(skeleton, self.context)

        return SegmentationResult(
            file_name=file_name,
            context=self.context,
            binary=binary,
            surface=surface,
            skeleton=skeleton,
            skeleton_voxels=skeleton_voxels,
            spacing=spacing,
            enhanced=enhanced,
            labels=labels,
            component_rows=component_rows,
            n_holes=n_holes,
            n_bridges=n_bridges,
        )

    def save(self, result: SegmentationResult, prefix: str) -> None:
        """Write every output of a processed volume next to ``prefix``"""
        config = self.config
        with self._stage("export"):
            if config.export_binary:
                write_volume(result.binary, f"{prefix}_binary.tif")
            if config.export_projection:
                write_max_projection(result.binary, f"{prefix}.png")
            if config.scale_polydata:
                write_polydata(result.surface, f"{prefix}_mitosurface.vtk")
                write_polydata(result.skeleton, f"{prefix}_skeleton.vtk")
            else:
                unscaled = TriangleMesh(result.surface.vertices / np.asarray(result.spacing), result.surface.faces)
                write_polydata(unscaled, f"{prefix}_mitosurface.vtk")
                voxels = result.skeleton_voxels.copy()
                voxels.point_data.update(result.skeleton.point_data)
                write_polydata(voxels, f"{prefix}_skeleton.vtk")
            write_skeleton_table(result.skeleton, f"{prefix}.txt")
            if config.analyze:
                write_component_table(result.component_rows, f"{prefix}.cc")
            write_attributes(result.context, f"{prefix}.mitograph")


def find_input_files(input_folder: str) -> List[str]:
    """TIFF stacks in a folder, sorted by name"""
    files = glob.glob(os.path.join(input_folder, '*.tif')) + glob.glob(os.path.join(input_folder, '*.tiff'))
    return sorted(set(files))


def run_batch(input_folder: str, config: SegmentationConfig,
              output_folder: Optional[str] = None,
              pipeline: Optional[MitoGraphPipeline] = None) -> Dict[str, str]:
    """Process every stack of a folder

    A failing file is logged with the failing stage and skipped; the batch
    continues with the next file. Outputs of a file are written only after
    all of its stages succeed.

    Returns:
        Status per input file: 'ok', 'missing', 'unsupported' or 'failed'
    """
    if output_folder is None:
        output_folder = input_folder
    os.makedirs(output_folder, exist_ok=True)

    file_handler = logging.FileHandler(os.path.join(output_folder, 'mitograph.log'))
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)

    if pipeline is None:
        pipeline = MitoGraphPipeline(config)
    status: Dict[str, str] = {}
    try:
        files = find_input_files(input_folder)
        logger.info(f"Found {len(files)} files in {input_folder}")
        for path in files:
            name = os.path.splitext(os.path.basename(path))[0]
            try:
                volume = read_volume(path)
                result = pipeline.process(volume, name)
                pipeline.save(result, os.path.join(output_folder, name))
                status[path] = 'ok'
            except MissingInputError as e:
                logger.error(f"{name}: skipped, {e}")
                status[path] = 'missing'
            except StageError as e:
                logger.error(str(e))
                status[path] = 'unsupported' if isinstance(e.cause, UnsupportedFormatError) else 'failed'
        write_config_file(pipeline.config, output_folder)
    finally:
        logging.getLogger().removeHandler(file_handler)
        file_handler.close()

    n_ok = sum(1 for s in status.values() if s == 'ok')
    logger.info(f"Processed {n_ok} of {len(status)} files")
    return status
