"""
Run configuration for the strip mosaic pipeline
"""

import math
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional, Tuple, Union

from .errors import ConfigurationError
from ..models.output_type import OutputType


SUPPORTED_ORIENTATIONS = ('horizontal',)
SUPPORTED_MATCHERS = ('sift', 'patch')

# Output tiles are multiples of this for efficient block writes
TILE_MULTIPLE = 16


def fix_tile_multiple(size: int) -> int:
    """Round a tile size up to the next multiple of TILE_MULTIPLE"""
    if size % TILE_MULTIPLE != 0:
        size = ((size // TILE_MULTIPLE) + 1) * TILE_MULTIPLE
    return size


@dataclass(frozen=True)
class MosaicConfig:
    """
    Immutable parameters of one mosaic run.

    Validated on construction so a bad configuration fails before any
    image is opened. `blend_radius` of 0 means "use overlap_width".
    """
    image_files: Tuple[Path, ...]
    output_image: Optional[Path] = None
    orientation: str = 'horizontal'
    overlap_width: int = 2000
    blend_radius: int = 0
    band: int = 1
    input_nodata_value: Optional[float] = None
    output_nodata_value: Optional[float] = None
    output_type: Union[OutputType, str] = OutputType.FLOAT32
    tile_size: int = 256
    num_threads: Optional[int] = None
    ransac_iterations: int = 100
    inlier_threshold: float = 10.0
    matcher: str = 'sift'
    random_seed: int = 0

    def __post_init__(self):
        image_files = tuple(Path(p) for p in (self.image_files or ()))
        if not image_files:
            raise ConfigurationError("No images to mosaic")
        object.__setattr__(self, 'image_files', image_files)

        if self.output_image is not None:
            # Path('') collapses to '.', which names no file either
            if str(self.output_image) in ('', '.'):
                raise ConfigurationError("Missing output image name")
            object.__setattr__(self, 'output_image', Path(self.output_image))

        if self.orientation not in SUPPORTED_ORIENTATIONS:
            raise ConfigurationError(
                f"Unsupported orientation: {self.orientation}. "
                f"Supported: {', '.join(SUPPORTED_ORIENTATIONS)}"
            )

        if not isinstance(self.output_type, OutputType):
            try:
                object.__setattr__(self, 'output_type', OutputType.parse(self.output_type))
            except ValueError as e:
                raise ConfigurationError(str(e)) from None

        if self.matcher not in SUPPORTED_MATCHERS:
            raise ConfigurationError(
                f"Unknown matcher: {self.matcher}. Supported: {', '.join(SUPPORTED_MATCHERS)}"
            )

        if self.overlap_width <= 0:
            raise ConfigurationError(f"Overlap width must be positive, got {self.overlap_width}")
        if self.blend_radius < 0:
            raise ConfigurationError(f"Blend radius must not be negative, got {self.blend_radius}")
        if self.band < 1:
            raise ConfigurationError(f"Band index is 1-based, got {self.band}")
        if self.tile_size <= 0:
            raise ConfigurationError(f"Tile size must be positive, got {self.tile_size}")
        if self.num_threads is not None and self.num_threads < 1:
            raise ConfigurationError(f"Thread count must be at least 1, got {self.num_threads}")
        if self.ransac_iterations <= 0:
            raise ConfigurationError("RANSAC iteration count must be positive")
        if self.inlier_threshold <= 0:
            raise ConfigurationError("RANSAC inlier threshold must be positive")

        for name in ('input_nodata_value', 'output_nodata_value'):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, float(value))

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'MosaicConfig':
        """Create a config from a mapping, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in config_dict.items() if k in known})

    @property
    def effective_blend_radius(self) -> int:
        return self.blend_radius if self.blend_radius > 0 else self.overlap_width

    @property
    def effective_tile_size(self) -> int:
        """Tile edge length: at least twice the blend radius, a multiple of 16"""
        size = max(self.tile_size, 2 * self.effective_blend_radius)
        return fix_tile_multiple(size)

    def resolve_output_nodata(self, input_nodata: Optional[float]) -> float:
        """Output nodata: user override, then the inputs', then the type default"""
        if self.output_nodata_value is not None:
            return self.output_nodata_value
        if input_nodata is not None and not math.isnan(input_nodata):
            return input_nodata
        return self.output_type.default_nodata()

    def to_dict(self) -> dict:
        return {
            'image_files': [str(p) for p in self.image_files],
            'output_image': str(self.output_image) if self.output_image else None,
            'orientation': self.orientation,
            'overlap_width': self.overlap_width,
            'blend_radius': self.effective_blend_radius,
            'band': self.band,
            'input_nodata_value': self.input_nodata_value,
            'output_nodata_value': self.output_nodata_value,
            'output_type': self.output_type.value,
            'tile_size': self.effective_tile_size,
        }
