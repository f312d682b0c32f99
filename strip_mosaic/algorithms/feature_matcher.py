"""
Feature matching between two image regions
"""

import logging
from typing import Optional, Tuple

import numpy as np
import cv2


logger = logging.getLogger(__name__)

MatchedPoints = Tuple[np.ndarray, np.ndarray]


class FeatureMatcher:
    """
    Finds corresponding points in two regions.

    `match` returns two (N, 2) arrays of (x, y) coordinates, local to each
    region, where row k of the first corresponds to row k of the second.
    Masks mark valid samples; invalid samples never seed a match.
    """

    def match(
        self,
        region_a: np.ndarray,
        region_b: np.ndarray,
        mask_a: Optional[np.ndarray] = None,
        mask_b: Optional[np.ndarray] = None
    ) -> MatchedPoints:
        raise NotImplementedError


class SiftMatcher(FeatureMatcher):
    """
    SIFT keypoints matched with FLANN and Lowe's ratio test
    """

    def __init__(
        self,
        max_features: int = 5000,
        ratio: float = 0.7,
        flann_trees: int = 5,
        flann_checks: int = 50
    ):
        self.max_features = max_features
        self.ratio = ratio
        self.flann_trees = flann_trees
        self.flann_checks = flann_checks

    def match(self, region_a, region_b, mask_a=None, mask_b=None) -> MatchedPoints:
        # cv2 feature objects are not shared between calls
        detector = cv2.SIFT_create(nfeatures=self.max_features)

        points_a, descriptors_a = self._detect(detector, region_a, mask_a)
        points_b, descriptors_b = self._detect(detector, region_b, mask_b)
        logger.debug(f"Detected {len(points_a)} and {len(points_b)} keypoints")

        if len(points_a) < 2 or len(points_b) < 2:
            return _no_matches()

        FLANN_INDEX_KDTREE = 1
        index_params = dict(algorithm=FLANN_INDEX_KDTREE, trees=self.flann_trees)
        search_params = dict(checks=self.flann_checks)
        flann = cv2.FlannBasedMatcher(index_params, search_params)

        raw_matches = flann.knnMatch(descriptors_a, descriptors_b, k=2)

        # Lowe's ratio test
        good_matches = []
        for match_pair in raw_matches:
            if len(match_pair) == 2:
                m, n = match_pair
                if m.distance < self.ratio * n.distance:
                    good_matches.append(m)

        if not good_matches:
            return _no_matches()

        matched_a = np.array([points_a[m.queryIdx] for m in good_matches])
        matched_b = np.array([points_b[m.trainIdx] for m in good_matches])
        return matched_a, matched_b

    def _detect(self, detector, region, mask):
        gray = to_uint8(region, mask)
        cv_mask = None if mask is None else mask.astype(np.uint8) * 255
        keypoints, descriptors = detector.detectAndCompute(gray, cv_mask)
        if descriptors is None:
            return np.empty((0, 2)), None
        points = np.array([kp.pt for kp in keypoints], dtype=np.float64)
        return points, descriptors.astype(np.float32)


class PatchMatcher(FeatureMatcher):
    """
    Normalized cross-correlation of a grid of patches.

    Patches are cut from the first region on a regular grid and searched for
    over the whole second region; a match is kept when its correlation
    reaches `ncc_threshold`.
    """

    def __init__(
        self,
        patch_size: int = 64,
        grid_spacing: int = 32,
        ncc_threshold: float = 0.9,
        min_patch_std: float = 1e-6
    ):
        self.patch_size = patch_size
        self.grid_spacing = grid_spacing
        self.ncc_threshold = ncc_threshold
        self.min_patch_std = min_patch_std

    def match(self, region_a, region_b, mask_a=None, mask_b=None) -> MatchedPoints:
        a = _fill_invalid(region_a, mask_a)
        b = _fill_invalid(region_b, mask_b)
        valid_a = np.isfinite(region_a) if mask_a is None else mask_a & np.isfinite(region_a)
        valid_b = np.isfinite(region_b) if mask_b is None else mask_b & np.isfinite(region_b)

        size = min(self.patch_size, *a.shape, *b.shape)
        if size < 3:
            return _no_matches()
        half = (size - 1) / 2.0

        points_a = []
        points_b = []
        h, w = a.shape
        for y in range(0, h - size + 1, self.grid_spacing):
            for x in range(0, w - size + 1, self.grid_spacing):
                patch = a[y:y + size, x:x + size]
                if not valid_a[y:y + size, x:x + size].all():
                    continue
                if np.std(patch) < self.min_patch_std:
                    continue

                result = cv2.matchTemplate(b, patch, cv2.TM_CCOEFF_NORMED)
                result = np.nan_to_num(result, nan=-1.0, posinf=-1.0, neginf=-1.0)
                by, bx = np.unravel_index(np.argmax(result), result.shape)
                if result[by, bx] < self.ncc_threshold:
                    continue
                if not valid_b[by:by + size, bx:bx + size].all():
                    continue

                points_a.append((x + half, y + half))
                points_b.append((bx + half, by + half))

        if not points_a:
            return _no_matches()
        return np.array(points_a), np.array(points_b)


def create_matcher(name: str, **kwargs) -> FeatureMatcher:
    """Build a matcher by name ('sift' or 'patch')"""
    matchers = {
        'sift': SiftMatcher,
        'patch': PatchMatcher,
    }
    try:
        return matchers[name.lower()](**kwargs)
    except KeyError:
        raise ValueError(f"Unknown matcher: {name}. Choose from {', '.join(matchers)}") from None


def to_uint8(region: np.ndarray, mask: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Stretch a float region to 8 bits for feature detection
    """
    valid = np.isfinite(region)
    if mask is not None:
        valid &= mask
    if not np.any(valid):
        return np.zeros(region.shape, dtype=np.uint8)

    lo, hi = np.percentile(region[valid], [0.5, 99.5])
    if hi <= lo:
        hi = lo + 1.0
    scaled = (np.where(valid, region, lo) - lo) / (hi - lo) * 255.0
    return np.clip(scaled, 0, 255).astype(np.uint8)


def _fill_invalid(region: np.ndarray, mask: Optional[np.ndarray]) -> np.ndarray:
    region = np.asarray(region, dtype=np.float32)
    valid = np.isfinite(region)
    if mask is not None:
        valid &= mask
    return np.where(valid, region, 0).astype(np.float32)


def _no_matches() -> MatchedPoints:
    return np.empty((0, 2)), np.empty((0, 2))
