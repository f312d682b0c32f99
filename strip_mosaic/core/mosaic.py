"""
Lazy tiled rendering of the blended strip mosaic
"""

import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
from scipy import ndimage

from .layout import ImagePlacement, Layout
from ..algorithms.weights import blend_weight_ceiling, centerline_weights
from ..models.geometry import AffineTransform, BBox
from ..models.image import SourceImage


logger = logging.getLogger(__name__)

# Extra source pixels read around a region for the bilinear kernel
KERNEL_SUPPORT = 2

# Fraction of the bilinear footprint that must fall on valid samples
VALID_COVERAGE = 0.999


@dataclass
class Contribution:
    """One image's resampled pixels and blend weights within a tile"""
    intersection: BBox
    values: np.ndarray
    valid: np.ndarray
    weights: np.ndarray
    ceiling: float


class MosaicRenderer:
    """
    Renders any region of the mosaic on demand.

    Output pixel (0, 0) is the top-left corner of `canvas_box`. The layout
    is passed to each `render` call and never kept; apart from it `render`
    reads only the images and settings given at construction and keeps all
    of its buffers private, so tiles can be rendered in any order or
    concurrently.
    """

    def __init__(
        self,
        images: Sequence[SourceImage],
        canvas_box: BBox,
        blend_radius: int,
        output_nodata_value: float = float('nan'),
        hole_fill_value: float = 0.0,
        border_fill_value: float = -1.0
    ):
        self.images = tuple(images)
        self.canvas_box = canvas_box
        self.blend_radius = blend_radius
        self.output_nodata_value = output_nodata_value
        self.hole_fill_value = hole_fill_value
        self.border_fill_value = border_fill_value

    @property
    def width(self) -> int:
        return self.canvas_box.width

    @property
    def height(self) -> int:
        return self.canvas_box.height

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    def render(self, layout: Layout, box: BBox) -> np.ndarray:
        """
        Blend all images of `layout` intersecting `box` (output pixel
        coordinates).

        Returns a float64 array of `box.shape`; pixels no image covers hold
        the output nodata value.
        """
        if len(layout) != len(self.images):
            raise ValueError(f"{len(self.images)} images but {len(layout)} placements")
        origin = self.canvas_box
        canvas_tile = box.translate(origin.min_x, origin.min_y)

        tile = np.full(box.shape, self.output_nodata_value, dtype=np.float64)
        weights = np.zeros(box.shape, dtype=np.float64)

        for image, placement in zip(self.images, layout):
            if not placement.bbox.intersects(canvas_tile):
                continue

            contribution = self.contribution(image, placement, canvas_tile)
            index = contribution.intersection.translate(
                -canvas_tile.min_x, -canvas_tile.min_y
            ).slices()

            tile_part = tile[index]
            weight_part = weights[index]
            weighted = contribution.values * contribution.weights
            valid = contribution.valid

            # The first contributor replaces the nodata fill, later ones add to it
            tile_part[...] = np.where(
                valid,
                np.where(weight_part == 0, weighted, tile_part + weighted),
                tile_part
            )
            weight_part += np.where(valid, contribution.weights, 0.0)

        covered = weights > 0
        tile[covered] /= weights[covered]
        return tile

    def rasterize(self, layout: Layout) -> np.ndarray:
        """Render the whole canvas in one piece"""
        return self.render(layout, BBox.from_size(self.width, self.height))

    def contribution(
        self,
        image: SourceImage,
        placement: ImagePlacement,
        canvas_tile: BBox
    ) -> Contribution:
        """
        Resampled values and clamped blend weights of one image over the
        part of `canvas_tile` its bounding box covers.
        """
        r = self.blend_radius
        intersection = placement.bbox.intersection(canvas_tile)

        # Weights are measured over a padded window so they fade smoothly
        # across tile borders
        padded = intersection.expand(r)
        values, valid = resample(image, placement.transform, padded)
        weights = centerline_weights(
            valid,
            hole_fill_value=self.hole_fill_value,
            border_fill_value=self.border_fill_value
        )

        ceiling = blend_weight_ceiling(intersection, r)
        np.minimum(weights, ceiling, out=weights)

        inner = BBox(r, r, r + intersection.width, r + intersection.height).slices()
        return Contribution(
            intersection=intersection,
            values=values[inner],
            valid=valid[inner],
            weights=weights[inner],
            ceiling=ceiling
        )


def resample(
    image: SourceImage,
    transform: AffineTransform,
    canvas_box: BBox
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Bilinearly resample `image` onto `canvas_box` of the canvas frame.

    Samples outside the image or flagged as nodata are treated as zero and
    excluded; the interpolated value is renormalised by the valid fraction
    of its footprint. Returns float32 values and a boolean validity mask,
    both of `canvas_box.shape`.
    """
    if canvas_box.empty:
        return np.zeros(canvas_box.shape, dtype=np.float32), np.zeros(canvas_box.shape, dtype=bool)

    source_box = transform.reverse_bbox(canvas_box).expand(KERNEL_SUPPORT).intersection(image.bbox)
    if source_box.empty:
        return np.zeros(canvas_box.shape, dtype=np.float32), np.zeros(canvas_box.shape, dtype=bool)

    region = image.read_region(source_box)
    region_valid = image.valid_mask(region)
    filled = np.where(region_valid, region, 0).astype(np.float32, copy=False)

    matrix, offset = _output_to_region(transform.inverse(), canvas_box, source_box)
    value_sum = ndimage.affine_transform(
        filled, matrix, offset=offset, output_shape=canvas_box.shape,
        output=np.float32, order=1, mode='grid-constant', cval=0.0
    )
    coverage = ndimage.affine_transform(
        region_valid.astype(np.float32), matrix, offset=offset, output_shape=canvas_box.shape,
        output=np.float32, order=1, mode='grid-constant', cval=0.0
    )

    valid = coverage >= VALID_COVERAGE
    np.divide(value_sum, coverage, out=value_sum, where=valid)
    value_sum[~valid] = 0.0
    return value_sum, valid


def _output_to_region(
    inverse: AffineTransform,
    canvas_box: BBox,
    source_box: BBox
) -> Tuple[np.ndarray, np.ndarray]:
    """
    (row, col) matrix and offset taking output array indices of `canvas_box`
    to array indices of the `source_box` region
    """
    # Swap x/y so the linear part acts on (row, col)
    linear = inverse.linear[::-1, ::-1]
    origin = np.array([canvas_box.min_y, canvas_box.min_x], dtype=np.float64)
    shift = inverse.translation[::-1] - [source_box.min_y, source_box.min_x]
    return linear, linear @ origin + shift
