import argparse
import logging
import sys

from mito_segmentation.config import ScaleRange, SegmentationConfig
from mito_segmentation.errors import InvalidConfigurationError
from mito_segmentation.pipeline import LOG_FORMAT, run_batch

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Mitochondria segmentation and skeleton analysis of 3D stacks')
    parser.add_argument('--path', type=str, required=True,
                        help='Folder containing the .tif stacks to process')
    parser.add_argument('--output', type=str, default=None,
                        help='Output folder (default: the input folder)')

    geometry_group = parser.add_argument_group('Geometry')
    geometry_group.add_argument('--xy', type=float,
                                help='Pixel size in xy (um)')
    geometry_group.add_argument('--z', type=float,
                                help='Pixel size in z (um)')
    geometry_group.add_argument('--rad', type=float, default=0.150,
                                help='Average tubule radius for the volume estimate (default: 0.150um)')
    geometry_group.add_argument('--resample', type=float, default=None,
                                help='Resample z to this spacing before processing (um)')

    enhancement_group = parser.add_argument_group('Enhancement')
    enhancement_group.add_argument('--scales', type=float, nargs=3, metavar=('MIN', 'MAX', 'N'),
                                   default=None,
                                   help='Vesselness scales: min, max and count (default: 1.0 1.5 6)')
    enhancement_group.add_argument('--threshold', type=float, default=0.1666667,
                                   help='Post-divergence threshold (default: 0.1666667)')
    enhancement_group.add_argument('--adaptive', type=int, metavar='NBLOCKS', default=None,
                                   help='Region-adaptive Hessian threshold on an NBLOCKS x NBLOCKS grid')
    enhancement_group.add_argument('--z-adaptive', action='store_true',
                                   help='Gentle z-block normalization and conservative z-block binarization')
    enhancement_group.add_argument('--z-block-size', type=int, default=8,
                                   help='Number of z-planes per block (default: 8)')
    enhancement_group.add_argument('--enhance-connectivity', action='store_true',
                                   help='Bridge gaps before binarization and between skeleton fragments')
    enhancement_group.add_argument('--component-filtering', type=int, nargs='?', const=5, default=None,
                                   metavar='MIN_SIZE',
                                   help='Remove components smaller than MIN_SIZE voxels (default: 5)')

    io_group = parser.add_argument_group('Input/Output')
    io_group.add_argument('--binary', action='store_true',
                          help='Input stacks are already binary segmentations')
    io_group.add_argument('--analyze', action='store_true',
                          help='Write the node to component table (.cc)')
    io_group.add_argument('--export-binary', action='store_true',
                          help='Save the binary segmentation as <name>_binary.tif')
    io_group.add_argument('--precision-off', action='store_true',
                          help='Skip hole filling before skeletonization')
    io_group.add_argument('--scale-off', action='store_true',
                          help='Save polydata in voxel instead of physical units')
    io_group.add_argument('--verbose', action='store_true',
                          help='Debug logging')

    return parser.parse_args(argv)


def build_config(args) -> SegmentationConfig:
    """Translate command line arguments into a SegmentationConfig"""
    params = {
        'pixel_size_xy': args.xy,
        'pixel_size_z': args.z,
        'tubule_radius': args.rad,
        'threshold': args.threshold,
        'z_adaptive': args.z_adaptive,
        'z_block_size': args.z_block_size,
        'enhance_connectivity': args.enhance_connectivity,
        'binary_input': args.binary,
        'fill_holes': not args.precision_off,
        'resample_z': args.resample,
        'analyze': args.analyze,
        'export_binary': args.export_binary,
        'scale_polydata': not args.scale_off,
    }
    if args.scales is not None:
        params['scales'] = ScaleRange(args.scales[0], args.scales[1], int(args.scales[2]))
    if args.adaptive is not None:
        params['adaptive_threshold'] = True
        params['n_blocks'] = args.adaptive
    if args.component_filtering is not None:
        params['component_filtering'] = True
        params['min_component_size'] = args.component_filtering
    return SegmentationConfig.from_dict(params)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT
    )

    if args.xy is None or args.z is None:
        logger.error("Please, use --xy and --z to provide the pixel size.")
        return 1

    try:
        config = build_config(args).validated()
    except InvalidConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    status = run_batch(args.path, config, args.output)
    failed = [path for path, s in status.items() if s != 'ok']
    if failed:
        logger.warning(f"{len(failed)} file(s) could not be processed: {', '.join(failed)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
