"""
Raster I/O: loading source bands and writing the mosaic
"""

import itertools
import json
import logging
import math
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterator, Optional, Tuple

import numpy as np
import cv2
import tifffile

from ..core.errors import ConfigurationError, RasterIOError
from ..models.geometry import BBox
from ..models.image import ImageMetadata, SourceImage
from ..models.output_type import OutputType


logger = logging.getLogger(__name__)

TIFF_SUFFIXES = {'.tif', '.tiff', '.gtif'}
STANDARD_SUFFIXES = {'.png', '.jpg', '.jpeg', '.bmp'}

GDAL_NODATA_TAG = 42113

# Called with (completed_tiles, total_tiles)
ProgressCallback = Callable[[int, int], None]


def load_source_image(
    path: Path,
    band: int = 1,
    nodata_override: Optional[float] = None
) -> SourceImage:
    """
    Open one band of a raster without decoding more than needed.

    Uncompressed TIFFs are memory-mapped in place; other TIFFs are decoded
    once into a temporary memory map. `nodata_override` replaces the
    file's own nodata value.
    """
    path = Path(path)
    if not path.exists():
        raise RasterIOError(f"Image not found: {path}", path)

    suffix = path.suffix.lower()
    try:
        if suffix in TIFF_SUFFIXES:
            data, axes, file_nodata = _open_tiff(path)
        elif suffix in STANDARD_SUFFIXES:
            data, axes, file_nodata = _open_standard(path)
        else:
            raise ValueError(f"Unsupported raster format: {suffix}")
        data, num_bands = _select_band(data, axes, band, path)
    except ConfigurationError:
        raise
    except Exception as e:
        logger.error(f"Failed to load {path.name}: {str(e)}")
        raise RasterIOError(f"Failed to load {path.name}: {str(e)}", path) from e

    nodata = nodata_override if nodata_override is not None else file_nodata

    metadata = ImageMetadata(
        filename=path.name,
        path=path,
        width=data.shape[1],
        height=data.shape[0],
        bands=num_bands,
        band=band,
        dtype=str(data.dtype),
        nodata=nodata
    )
    logger.debug(
        f"Opened {path.name}: {metadata.width}x{metadata.height}, "
        f"band {band}/{num_bands}, nodata={nodata}"
    )

    return SourceImage(data, nodata=nodata, metadata=metadata)


def _open_tiff(path: Path) -> Tuple[np.ndarray, str, Optional[float]]:
    with tifffile.TiffFile(str(path)) as tif:
        series = tif.series[0]
        axes = series.axes
        nodata = _read_gdal_nodata(tif.pages[0])

    try:
        data = tifffile.memmap(str(path))
    except ValueError:
        # Compressed or non-contiguous data cannot be mapped in place
        data = tifffile.imread(str(path), out='memmap')

    return data, axes, nodata


def _read_gdal_nodata(page) -> Optional[float]:
    tag = page.tags.get(GDAL_NODATA_TAG)
    if tag is None:
        return None
    value = str(tag.value).strip().strip('\x00')
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring unparseable GDAL_NODATA value: {value!r}")
        return None


def _open_standard(path: Path) -> Tuple[np.ndarray, str, Optional[float]]:
    image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)

    if image is None:
        raise ValueError(f"Failed to load image: {path}")

    # Convert BGR to RGB so band numbers follow the usual order
    if image.ndim == 3 and image.shape[2] == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
    elif image.ndim == 3 and image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)

    axes = 'YX' if image.ndim == 2 else 'YXS'
    return image, axes, None


def _select_band(data: np.ndarray, axes: str, band: int, path: Path) -> Tuple[np.ndarray, int]:
    """Reduce an N-D raster to the 2-D plane of the requested 1-based band"""
    if data.ndim == 2:
        return data, 1
    if len(axes) != data.ndim:
        raise ValueError(f"Axes {axes!r} do not match data shape {data.shape}")

    index = []
    band_axis = None
    for i, axis in enumerate(axes):
        if axis in 'YX':
            index.append(slice(None))
        elif data.shape[i] == 1:
            index.append(0)
        elif band_axis is None:
            band_axis = i
            index.append(None)
        else:
            raise ValueError(f"Unsupported raster layout {axes} {data.shape}")

    if band_axis is None:
        return data[tuple(index)], 1

    num_bands = data.shape[band_axis]
    if band > num_bands:
        raise ConfigurationError(f"Band {band} requested but {path.name} has {num_bands} bands")
    index[band_axis] = band - 1
    return data[tuple(index)], num_bands


def tile_boxes(width: int, height: int, tile_size: int) -> Iterator[BBox]:
    """Row-major grid of full-size tiles covering a width x height raster"""
    for y in range(0, height, tile_size):
        for x in range(0, width, tile_size):
            yield BBox(x, y, x + tile_size, y + tile_size)


class MosaicWriter:
    """
    Writes a rendered mosaic to a tiled TIFF one tile at a time.

    Tiles are rendered on a thread pool; only a bounded window of finished
    tiles is held in memory while they are streamed to disk in order.
    """

    def __init__(
        self,
        path: Path,
        output_type: OutputType = OutputType.FLOAT32,
        nodata: Optional[float] = None,
        tile_size: int = 256,
        num_threads: Optional[int] = None,
        progress: Optional[ProgressCallback] = None
    ):
        self.path = Path(path)
        self.output_type = output_type
        self.nodata = nodata
        self.tile_size = tile_size
        self.num_threads = num_threads
        self.progress = progress

    def write(self, renderer, layout) -> Path:
        """
        Render every tile of `renderer` for `layout` and write it to `self.path`
        """
        width, height = renderer.width, renderer.height
        dtype = self.output_type.dtype
        bigtiff = width * height * dtype.itemsize > 2 ** 31

        logger.info(
            f"Writing {self.path} ({width}x{height}, {self.output_type.value}, "
            f"tiles of {self.tile_size})"
        )

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tifffile.imwrite(
                str(self.path),
                data=self._render_tiles(renderer, layout),
                shape=(height, width),
                dtype=dtype,
                tile=(self.tile_size, self.tile_size),
                photometric='minisblack',
                bigtiff=bigtiff,
                extratags=self._extratags(),
                metadata=None
            )
        except OSError as e:
            raise RasterIOError(f"Failed to write {self.path.name}: {e}", self.path) from e

        return self.path

    def _extratags(self) -> list:
        if self.nodata is None:
            return []
        value = self.output_type.convert_value(self.nodata)
        text = 'nan' if isinstance(value, float) and math.isnan(value) else repr(value)
        return [(GDAL_NODATA_TAG, 's', 0, text, True)]

    def _render_tiles(self, renderer, layout) -> Iterator[np.ndarray]:
        boxes = list(tile_boxes(renderer.width, renderer.height, self.tile_size))
        total = len(boxes)
        window = 2 * (self.num_threads or 4)

        with ThreadPoolExecutor(max_workers=self.num_threads) as executor:
            remaining = iter(boxes)
            pending = deque(
                executor.submit(self._render_tile, renderer, layout, box)
                for box in itertools.islice(remaining, window)
            )
            done = 0
            while pending:
                tile = pending.popleft().result()
                box = next(remaining, None)
                if box is not None:
                    pending.append(executor.submit(self._render_tile, renderer, layout, box))
                done += 1
                if self.progress is not None:
                    self.progress(done, total)
                yield tile

    def _render_tile(self, renderer, layout, box: BBox) -> np.ndarray:
        return self.output_type.convert(renderer.render(layout, box), self.nodata)


def export_layout(layout, output_path: Path) -> Path:
    """
    Export per-image transforms and canvas boxes to JSON
    """
    data = {
        'version': '1.0',
        'num_images': len(layout),
        'canvas_bbox': layout.canvas_box.to_list(),
        'canvas_size': [layout.width, layout.height],
        'images': [
            {
                'index': i,
                'name': placement.name,
                'transform': placement.transform.to_dict(),
                'bbox': placement.bbox.to_list()
            }
            for i, placement in enumerate(layout)
        ]
    }

    output_path = Path(output_path)
    try:
        with open(output_path, 'w') as f:
            json.dump(data, f, indent=2)
    except OSError as e:
        raise RasterIOError(f"Failed to write {output_path.name}: {e}", output_path) from e

    return output_path
