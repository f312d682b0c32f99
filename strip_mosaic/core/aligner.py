"""
Affine alignment of two neighbouring images in a strip
"""

import logging
from typing import Tuple

import numpy as np

from .errors import AlignmentError
from ..algorithms.feature_matcher import FeatureMatcher, SiftMatcher
from ..algorithms.ransac import AffineRansac, RansacError
from ..models.geometry import AffineTransform, BBox
from ..models.image import SourceImage


logger = logging.getLogger(__name__)


def overlap_regions(
    first: SourceImage,
    second: SourceImage,
    overlap_width: int,
    orientation: str = 'horizontal'
) -> Tuple[BBox, BBox]:
    """
    Regions where two consecutive images are expected to overlap.

    For a horizontal strip: the trailing `overlap_width` columns of the
    first image and the leading `overlap_width` columns of the second.
    """
    if orientation != 'horizontal':
        raise AlignmentError(f"Unrecognized image orientation: {orientation}")

    roi1 = BBox(first.width - overlap_width, 0, first.width, first.height).intersection(first.bbox)
    roi2 = BBox(0, 0, overlap_width, second.height).intersection(second.bbox)
    return roi1, roi2


class PairwiseAligner:
    """
    Estimates the affine transform taking the second image of a pair into
    the pixel frame of the first.

    Features are matched only inside the expected overlap regions and the
    model is fit with RANSAC.
    """

    def __init__(
        self,
        matcher: FeatureMatcher = None,
        overlap_width: int = 2000,
        orientation: str = 'horizontal',
        ransac_iterations: int = 100,
        inlier_threshold: float = 10.0,
        random_seed: int = 0
    ):
        self.matcher = matcher if matcher is not None else SiftMatcher()
        self.overlap_width = overlap_width
        self.orientation = orientation
        self.ransac_iterations = ransac_iterations
        self.inlier_threshold = inlier_threshold
        self.random_seed = random_seed

    def align(self, first: SourceImage, second: SourceImage) -> AffineTransform:
        """
        Transform mapping `second`'s pixels into `first`'s pixel frame
        """
        roi1, roi2 = overlap_regions(first, second, self.overlap_width, self.orientation)
        logger.debug(f"Overlap regions: {roi1} / {roi2}")

        if roi1.empty or roi2.empty:
            raise AlignmentError(
                f"Empty overlap region between {first.name} and {second.name}"
            )

        points1, points2 = self.match_in_regions(first, second, roi1, roi2)
        logger.info(f"Matched {len(points1)} points between {first.name} and {second.name}")

        if len(points1) == 0:
            raise AlignmentError(
                f"No feature matches found between {first.name} and {second.name}"
            )

        ransac = AffineRansac(
            num_iterations=self.ransac_iterations,
            inlier_threshold=self.inlier_threshold,
            min_inliers=len(points1) // 2,
            reduce_min_inliers_if_no_fit=True,
            random_seed=self.random_seed
        )
        try:
            result = ransac.fit(points2, points1)
        except RansacError as e:
            raise AlignmentError(
                f"Automatic alignment failed in RANSAC fit for "
                f"{first.name} and {second.name}: {e}"
            ) from e

        logger.info(
            f"RANSAC kept {result.num_inliers}/{len(points1)} matches "
            f"(required {result.min_inliers}, mean error {result.residual:.3f} px)"
        )
        logger.debug(f"Relative transform: {result.transform}")

        return result.transform

    def match_in_regions(
        self,
        first: SourceImage,
        second: SourceImage,
        roi1: BBox,
        roi2: BBox
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Matched points in full-image pixel coordinates
        """
        region1 = first.read_region(roi1)
        region2 = second.read_region(roi2)

        points1, points2 = self.matcher.match(
            region1,
            region2,
            first.valid_mask(region1),
            second.valid_mask(region2)
        )

        points1 = np.asarray(points1, dtype=np.float64).reshape(-1, 2) + [roi1.min_x, roi1.min_y]
        points2 = np.asarray(points2, dtype=np.float64).reshape(-1, 2) + [roi2.min_x, roi2.min_y]
        return points1, points2
