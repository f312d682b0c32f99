"""
Main mosaic pipeline orchestrating all components
"""

import logging
from pathlib import Path
from typing import Callable, List, Optional

from .aligner import PairwiseAligner
from .config import MosaicConfig
from .errors import ConfigurationError
from .layout import Layout, LayoutChainBuilder
from .mosaic import MosaicRenderer
from ..algorithms.feature_matcher import FeatureMatcher, create_matcher
from ..models.image import SourceImage
from ..utils.io import MosaicWriter, ProgressCallback, load_source_image


logger = logging.getLogger(__name__)


class StripMosaicPipeline:
    """
    Loads a strip of images, aligns neighbours, and renders the blended
    mosaic to disk
    """

    def __init__(
        self,
        config: MosaicConfig,
        matcher: Optional[FeatureMatcher] = None,
        progress: Optional[ProgressCallback] = None,
        image_loader: Optional[Callable[..., SourceImage]] = None
    ):
        self.config = config
        self.matcher = matcher if matcher is not None else create_matcher(config.matcher)
        self.progress = progress
        self.image_loader = image_loader if image_loader is not None else load_source_image
        self.layout = None

    def load_images(self) -> List[SourceImage]:
        images = []
        for path in self.config.image_files:
            images.append(self.image_loader(
                path,
                band=self.config.band,
                nodata_override=self.config.input_nodata_value
            ))
        logger.info(f"Loaded {len(images)} images")
        return images

    def build_layout(self, images: List[SourceImage]) -> Layout:
        aligner = PairwiseAligner(
            matcher=self.matcher,
            overlap_width=self.config.overlap_width,
            orientation=self.config.orientation,
            ransac_iterations=self.config.ransac_iterations,
            inlier_threshold=self.config.inlier_threshold,
            random_seed=self.config.random_seed
        )
        return LayoutChainBuilder(aligner).build(images)

    def output_nodata(self, images: List[SourceImage]) -> float:
        """Output nodata value, falling back to the inputs' nodata"""
        input_nodata = None
        for image in images:
            if image.nodata is not None:
                input_nodata = image.nodata
        return self.config.resolve_output_nodata(input_nodata)

    def create_renderer(self, images: List[SourceImage], layout: Layout) -> MosaicRenderer:
        nodata = self.output_nodata(images)
        return MosaicRenderer(
            images,
            layout.canvas_box,
            blend_radius=self.config.effective_blend_radius,
            output_nodata_value=nodata
        )

    def prepare(self):
        """
        Load the images and compute their layout.

        Alignment failures surface here, before any tile is rendered.
        """
        images = self.load_images()
        layout = self.build_layout(images)
        self.layout = layout
        return images, layout

    def run(self) -> Path:
        """
        Run the full pipeline and return the written mosaic's path
        """
        if self.config.output_image is None:
            raise ConfigurationError("Missing output image name")

        logger.info(f"Using blend radius: {self.config.effective_blend_radius}")
        logger.info(f"Using tile size: {self.config.effective_tile_size}")

        images, layout = self.prepare()
        renderer = self.create_renderer(images, layout)

        nodata = renderer.output_nodata_value
        writer = MosaicWriter(
            self.config.output_image,
            output_type=self.config.output_type,
            nodata=nodata,
            tile_size=self.config.effective_tile_size,
            num_threads=self.config.num_threads,
            progress=self.progress
        )
        output_path = writer.write(renderer, layout)
        logger.info(f"Mosaic written to {output_path} ({layout.width}x{layout.height})")

        return output_path
