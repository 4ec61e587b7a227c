import logging
import os
from datetime import datetime
from typing import List, Tuple

from . import __version__
from .config import SegmentationConfig
from .data_structures import MitoObject, SkeletonGraph
from .image_io import atomic_output

logger = logging.getLogger(__name__)

_TRUE = "[True]"
_FALSE = "[False]"


def write_attributes(context: MitoObject, path: str) -> None:
    """Write <name>.mitograph: attribute names, then values, tab separated"""
    with atomic_output(path) as tmp_path:
        with open(tmp_path, 'w') as f:
            f.write(''.join(f"{name}\t" for name, _ in context.attributes) + '\n')
            f.write(''.join(f"{value:1.5f}\t" for _, value in context.attributes) + '\n')


def write_skeleton_table(skeleton: SkeletonGraph, path: str) -> None:
    """Write <name>.txt with one row per point of every edge"""
    width = skeleton.point_data.get('Width')
    intensity = skeleton.point_data.get('Intensity')
    with atomic_output(path) as tmp_path:
        with open(tmp_path, 'w') as f:
            f.write("line_id\tpoint_id\tx\ty\tz\twidth_(um)\tpixel_intensity\n")
            for line_id, edge in enumerate(skeleton.edges):
                for point_id, p in enumerate(edge):
                    x, y, z = skeleton.points[p]
                    w = width[p] if width is not None else 0.0
                    v = intensity[p] if intensity is not None else 0.0
                    f.write(f"{line_id}\t{point_id}\t{x:1.5f}\t{y:1.5f}\t{z:1.5f}\t{w:1.5f}\t{v:1.5f}\n")


def write_component_table(rows: List[Tuple[int, int, float]], path: str) -> None:
    """Write <name>.cc mapping skeleton nodes to image components"""
    with atomic_output(path) as tmp_path:
        with open(tmp_path, 'w') as f:
            f.write("Node\tBelonging_CC\tVol_Of_Belonging_CC_From_Img_(um3)\n")
            for node_id, component, volume in rows:
                f.write(f"{node_id}\t{component}\t{volume:1.5f}\n")


def write_config_file(config: SegmentationConfig, folder: str, input_type: str = "TIF") -> str:
    """Record the run configuration in <folder>/mitograph.config

    Returns:
        Path of the written file
    """
    path = os.path.join(folder, 'mitograph.config')
    lines = []
    if config.adaptive_threshold:
        lines.append(f"mito_segmentation {__version__} [Adaptive Algorithm]")
    else:
        lines.append(f"mito_segmentation {__version__}")
    lines.append(f"Folder: {folder}")
    if config.adaptive_threshold:
        lines.append(f"NBlocks: {config.n_blocks}")
    if config.z_adaptive:
        lines.append(f"Z-Adaptive Processing: {_TRUE}")
        lines.append(f"Z-Block Size: {config.z_block_size}")
    lines.append(f"Enhance Connectivity: {_TRUE if config.enhance_connectivity else _FALSE}")
    if config.component_filtering:
        lines.append(f"Smart Component Filtering: {_TRUE}")
        lines.append(f"Min Component Size: {config.min_component_size}")
    else:
        lines.append(f"Smart Component Filtering: {_FALSE}")
    lines.append(f"Pixel size: -xy {config.pixel_size_xy:1.4f}um, -z {config.pixel_size_z:1.4f}um")
    lines.append(f"Average tubule radius: -r {config.tubule_radius:1.4f}um")
    lines.append("Scales: -scales " + " ".join(f"{s:1.2f}" for s in config.scales.values()))
    lines.append(f"Post-divergence threshold: -threshold {config.threshold:1.5f}")
    lines.append(f"Input type: {input_type}")
    lines.append(f"Analyze: {_TRUE if config.analyze else _FALSE}")
    lines.append(f"Binary input: {_TRUE if config.binary_input else _FALSE}")
    lines.append(f"Z-Adaptive: {_TRUE if config.z_adaptive else _FALSE}")
    lines.append(datetime.now().strftime('%a %b %d %H:%M:%S %Y'))

    with atomic_output(path) as tmp_path:
        with open(tmp_path, 'w') as f:
            f.write('\n'.join(lines) + '\n')
    logger.info(f"Configuration written to {path}")
    return path
