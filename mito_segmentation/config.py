import logging
from dataclasses import dataclass, field, fields, replace
from typing import Dict, Iterator, Optional

from .errors import InvalidConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScaleRange:
    """Scales (sigma, in voxels) at which vesselness is evaluated

    Parameters:
        sigma_min: float = 1.0
            Smallest scale. Should match the thinnest tubule of interest.
        sigma_max: float = 1.5
            Largest scale. Larger values pick up thicker tubules but blur
            nearby structures together.
        n_scales: int = 6
            Number of scales between sigma_min and sigma_max (inclusive).
    """
    sigma_min: float = 1.0
    sigma_max: float = 1.5
    n_scales: int = 6

    @property
    def step(self) -> float:
        if self.n_scales > 1:
            return (self.sigma_max - self.sigma_min) / (self.n_scales - 1)
        return self.sigma_max

    def values(self) -> Iterator[float]:
        """Yield every scale of the range in increasing order"""
        step = self.step
        if step <= 0:
            yield self.sigma_min
            return
        sigma = self.sigma_min
        while sigma <= self.sigma_max + 0.5 * step:
            yield sigma
            sigma += step

    def as_list(self):
        return list(self.values())


@dataclass(frozen=True)
class SegmentationConfig:
    """Parameters of one segmentation run

    Built once per run and handed to every stage.

    Parameters:
        pixel_size_xy, pixel_size_z: float (um)
            Voxel spacing. Both must be positive.
        tubule_radius: float = 0.150 (um)
            Average tubule radius used for the length-based volume estimate.
        scales: ScaleRange
            Multiscale vesselness range.
        threshold: float = 0.1666667
            Post-divergence threshold. Also the isovalue of the surface.
            - Smaller values (<0.1): more sensitive, stronger gap bridging
            - Larger values: cleaner but more fragmented networks
        adaptive_threshold / n_blocks: bool, int = 3
            Region-adaptive Hessian noise floor on an n x n grid of XY blocks.
        z_adaptive / z_block_size: bool, int = 8
            Gentle z-block normalization and conservative z-block binarization.
        enhance_connectivity: bool
            Gap bridging before binarization and after skeletonization.
        component_filtering / min_component_size: bool, int = 5
            Remove components smaller than min_component_size voxels.
        binary_input: bool
            Input is already a segmentation; skip enhancement.
        fill_holes: bool = True
            Fill enclosed cavities before skeletonization.
        resample_z: float, optional (um)
            Resample the z axis to this spacing before processing.
        analyze: bool
            Attribute skeleton nodes to image components.
    """
    pixel_size_xy: float = 0.056
    pixel_size_z: float = 0.2
    tubule_radius: float = 0.150
    scales: ScaleRange = field(default_factory=ScaleRange)
    threshold: float = 0.1666667
    adaptive_threshold: bool = False
    n_blocks: int = 3
    z_adaptive: bool = False
    z_block_size: int = 8
    enhance_connectivity: bool = False
    component_filtering: bool = False
    min_component_size: int = 5
    binary_input: bool = False
    fill_holes: bool = True
    resample_z: Optional[float] = None
    analyze: bool = False
    export_binary: bool = False
    export_projection: bool = True
    scale_polydata: bool = True

    @property
    def spacing(self):
        """Voxel spacing in (x, y, z) order"""
        return (self.pixel_size_xy, self.pixel_size_xy, self.pixel_size_z)

    @classmethod
    def from_dict(cls, params_dict: Dict) -> 'SegmentationConfig':
        """Create a configuration from a dictionary of overrides

        Unknown keys are ignored. A ``scales`` entry may be a ScaleRange or a
        (min, max, count) triple.
        """
        known = {f.name for f in fields(cls)}
        overrides = {}
        for key, value in params_dict.items():
            if key not in known:
                logger.debug(f"Ignoring unknown configuration key '{key}'")
                continue
            if key == 'scales' and not isinstance(value, ScaleRange):
                value = ScaleRange(float(value[0]), float(value[1]), int(value[2]))
            overrides[key] = value
        return cls(**overrides)

    def validated(self) -> 'SegmentationConfig':
        """Return a copy with repairable values clamped to a safe minimum

        Raises:
            InvalidConfigurationError: for values that cannot be repaired
        """
        if self.pixel_size_xy <= 0 or self.pixel_size_z <= 0:
            raise InvalidConfigurationError(
                f"Pixel size must be positive (xy={self.pixel_size_xy}, z={self.pixel_size_z})")
        if self.scales.sigma_min <= 0 or self.scales.sigma_min > self.scales.sigma_max:
            raise InvalidConfigurationError(
                f"Invalid scale range [{self.scales.sigma_min}, {self.scales.sigma_max}]")

        changes = {}
        if self.z_block_size < 1:
            logger.warning(f"z_block_size too small ({self.z_block_size}), setting to minimum of 1")
            changes['z_block_size'] = 1
        if self.min_component_size < 1:
            logger.warning(f"min_component_size too small ({self.min_component_size}), setting to minimum of 1")
            changes['min_component_size'] = 1
        if self.n_blocks < 1:
            logger.warning(f"n_blocks too small ({self.n_blocks}), setting to minimum of 1")
            changes['n_blocks'] = 1
        if self.scales.n_scales < 1:
            logger.warning(f"Number of scales too small ({self.scales.n_scales}), setting to 1")
            changes['scales'] = replace(self.scales, n_scales=1)
        elif self.scales.n_scales > 1 and self.scales.sigma_min == self.scales.sigma_max:
            logger.warning(f"Scale range is a single sigma ({self.scales.sigma_min}), setting number of scales to 1")
            changes['scales'] = replace(self.scales, n_scales=1)
        if self.threshold > 1.0:
            logger.warning(f"Threshold {self.threshold} outside the divergence range, clamping to 1.0")
            changes['threshold'] = 1.0
        if self.resample_z is not None and self.resample_z <= 0:
            logger.warning(f"Ignoring non-positive resample spacing {self.resample_z}")
            changes['resample_z'] = None
        return replace(self, **changes) if changes else self
