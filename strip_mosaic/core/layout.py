"""
Placement of every strip image on the shared canvas
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Sequence

from .aligner import PairwiseAligner
from ..models.geometry import AffineTransform, BBox
from ..models.image import SourceImage


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImagePlacement:
    """Where one image lands on the canvas"""
    name: str
    transform: AffineTransform
    bbox: BBox
    width: int
    height: int


class Layout:
    """
    Absolute transforms and canvas boxes for an ordered list of images.

    The canvas frame is the first image's pixel frame; `canvas_box` is the
    union of every image's footprint and may extend to negative coordinates.
    """

    def __init__(self, placements: Sequence[ImagePlacement], canvas_box: BBox):
        self._placements = tuple(placements)
        self.canvas_box = canvas_box

    def __len__(self) -> int:
        return len(self._placements)

    def __iter__(self) -> Iterator[ImagePlacement]:
        return iter(self._placements)

    def __getitem__(self, index: int) -> ImagePlacement:
        return self._placements[index]

    @property
    def transforms(self) -> List[AffineTransform]:
        return [p.transform for p in self._placements]

    @property
    def bboxes(self) -> List[BBox]:
        return [p.bbox for p in self._placements]

    @property
    def width(self) -> int:
        return self.canvas_box.width

    @property
    def height(self) -> int:
        return self.canvas_box.height


class LayoutChainBuilder:
    """
    Chains pairwise alignments along the strip into absolute placements.

    Only consecutive images are ever aligned: image i is placed by composing
    image i-1's absolute transform with the (i-1, i) relative transform, so
    errors accumulate along the strip without any global correction.
    """

    def __init__(
        self,
        aligner: PairwiseAligner,
        progress: Optional[Callable[[int, int], None]] = None
    ):
        self.aligner = aligner
        self.progress = progress

    def build(self, images: Sequence[SourceImage]) -> Layout:
        if not images:
            raise ValueError("Cannot build a layout without images")

        first = images[0]
        canvas_box = first.bbox
        absolute = AffineTransform.identity()
        placements = [ImagePlacement(first.name, absolute, first.bbox, first.width, first.height)]

        total_pairs = len(images) - 1
        for i in range(1, len(images)):
            logger.info(f"Aligning image {i} of {total_pairs}: {images[i - 1].name} -> {images[i].name}")
            relative = self.aligner.align(images[i - 1], images[i])
            absolute = absolute.compose(relative)
            logger.info(f"Relative transform: {relative}")
            logger.info(f"Absolute transform: {absolute}")

            footprint = absolute.forward_bbox(images[i].bbox)
            canvas_box = canvas_box.union(footprint)
            bbox = footprint.expand(1).intersection(canvas_box)
            placements.append(ImagePlacement(
                images[i].name, absolute, bbox, images[i].width, images[i].height
            ))
            logger.debug(f"Image {i} bbox: {bbox}, canvas: {canvas_box}")

            if self.progress is not None:
                self.progress(i, total_pairs)

        logger.info(f"Canvas box: {canvas_box} ({canvas_box.width}x{canvas_box.height})")
        return Layout(placements, canvas_box)
