"""
Source image and metadata models
"""

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np

from .geometry import BBox


@dataclass
class ImageMetadata:
    """Metadata for an input raster"""
    filename: str
    path: Path
    width: int
    height: int
    bands: int
    band: int
    dtype: str
    nodata: Optional[float] = None


class SourceImage:
    """
    One band of an input raster plus its nodata predicate.

    `data` is any 2-D array supporting numpy slicing (an ndarray or a
    memory map). Regions are copied out on demand, so concurrent readers
    never share buffers.
    """

    def __init__(
        self,
        data: np.ndarray,
        nodata: Optional[float] = None,
        metadata: Optional[ImageMetadata] = None
    ):
        if data.ndim != 2:
            raise ValueError(f"Source image must be 2-D, got shape {data.shape}")
        self._data = data
        self.nodata = None if nodata is None or math.isnan(nodata) else float(nodata)
        self.metadata = metadata

    @classmethod
    def from_array(cls, array, nodata: Optional[float] = None) -> 'SourceImage':
        return cls(np.asarray(array), nodata=nodata)

    @property
    def width(self) -> int:
        return self._data.shape[1]

    @property
    def height(self) -> int:
        return self._data.shape[0]

    @property
    def bbox(self) -> BBox:
        return BBox.from_size(self.width, self.height)

    @property
    def name(self) -> str:
        return self.metadata.filename if self.metadata is not None else '<array>'

    def read_region(self, box: Optional[BBox] = None) -> np.ndarray:
        """Copy of the samples inside `box` (clipped to the image) as float32"""
        box = self.bbox if box is None else box.intersection(self.bbox)
        return np.array(self._data[box.slices()], dtype=np.float32)

    def valid_mask(self, values: np.ndarray) -> np.ndarray:
        """True where a sample holds data: not NaN and above the nodata value"""
        valid = ~np.isnan(values)
        if self.nodata is not None:
            valid &= values > self.nodata
        return valid
