#!/usr/bin/env python3
"""
Image Mosaic - Blend a strip of overlapping images into one raster
Main entry point for the mosaic pipeline
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from strip_mosaic.core.config import MosaicConfig
from strip_mosaic.core.errors import MosaicError
from strip_mosaic.core.pipeline import StripMosaicPipeline
from strip_mosaic.models.output_type import OutputType
from strip_mosaic.utils.io import export_layout
from strip_mosaic.utils.logging import setup_logging


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Image Mosaic - Mosaic a line of overlapping images on disk",
        usage="image_mosaic.py <images> [options]"
    )

    parser.add_argument(
        "image_files",
        type=Path,
        nargs="*",
        help="Input images, in strip order"
    )

    parser.add_argument(
        "-o", "--output-image",
        type=Path,
        default=None,
        help="Specify the output image"
    )

    parser.add_argument(
        "--orientation",
        default="horizontal",
        help="Choose a supported image layout from [horizontal]"
    )

    parser.add_argument(
        "--overlap-width",
        type=int,
        default=2000,
        help="Select the size of the overlap region to use"
    )

    parser.add_argument(
        "--blend-radius",
        type=int,
        default=0,
        help="Size to perform blending over. Default is the overlap width"
    )

    parser.add_argument(
        "--band",
        type=int,
        default=1,
        help="Which band to use (for multi-spectral images)"
    )

    parser.add_argument(
        "--input-nodata-value",
        type=float,
        default=None,
        help="Nodata value to use on input; input pixel values less than or equal to this are considered invalid"
    )

    parser.add_argument(
        "--output-nodata-value",
        type=float,
        default=None,
        help="Nodata value to use on output"
    )

    parser.add_argument(
        "--ot",
        dest="output_type",
        default=OutputType.FLOAT32.value,
        help="Output data type. Supported types: "
             + ", ".join(t.value for t in OutputType)
             + ". If the output type is a kind of integer, values are rounded and then "
               "clamped to the limits of that type"
    )

    parser.add_argument(
        "--tile-size",
        type=int,
        default=256,
        help="Output tile size; raised to twice the blend radius and a multiple of 16"
    )

    parser.add_argument(
        "--num-threads",
        type=int,
        default=None,
        help="Number of threads to use for rendering (None for auto)"
    )

    parser.add_argument(
        "--matcher",
        choices=["sift", "patch"],
        default="sift",
        help="Feature matcher used in the overlap regions"
    )

    parser.add_argument(
        "--ransac-iterations",
        type=int,
        default=100,
        help="Number of RANSAC trials per image pair"
    )

    parser.add_argument(
        "--inlier-threshold",
        type=float,
        default=10.0,
        help="RANSAC inlier distance in pixels"
    )

    parser.add_argument(
        "--export-transforms",
        action="store_true",
        help="Export the image layout to JSON next to the output image"
    )

    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also write the log to this file"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )

    return parser.parse_args(argv)


class TqdmProgress:
    """Progress observer drawing a tqdm bar for tile rendering"""

    def __init__(self, desc: str = "Mosaic"):
        self.desc = desc
        self.bar = None

    def __call__(self, done: int, total: int):
        if self.bar is None:
            self.bar = tqdm(total=total, desc=self.desc, unit="tile")
        self.bar.update(done - self.bar.n)
        if done >= total:
            self.close()

    def close(self):
        if self.bar is not None:
            self.bar.close()
            self.bar = None


def main(argv=None) -> int:
    args = parse_arguments(argv)

    log_level = logging.DEBUG if args.debug else logging.INFO
    logger = setup_logging(log_level, args.log_file)

    progress = TqdmProgress()
    try:
        config = MosaicConfig(
            image_files=tuple(args.image_files),
            output_image=args.output_image,
            orientation=args.orientation,
            overlap_width=args.overlap_width,
            blend_radius=args.blend_radius,
            band=args.band,
            input_nodata_value=args.input_nodata_value,
            output_nodata_value=args.output_nodata_value,
            output_type=args.output_type,
            tile_size=args.tile_size,
            num_threads=args.num_threads,
            ransac_iterations=args.ransac_iterations,
            inlier_threshold=args.inlier_threshold,
            matcher=args.matcher
        )

        logger.info(f"Mosaicking {len(config.image_files)} images")
        logger.debug(f"Configuration: {json.dumps(config.to_dict())}")

        pipeline = StripMosaicPipeline(config, progress=progress)
        output_path = pipeline.run()

        if args.export_transforms:
            layout_path = export_layout(
                pipeline.layout,
                output_path.with_name(output_path.stem + "_layout.json")
            )
            logger.info(f"Layout exported to: {layout_path}")

    except MosaicError as e:
        logger.error(str(e))
        return 1
    finally:
        progress.close()

    logger.info("Mosaic complete!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
