"""
Shared fixtures: synthetic textured scenes cut into overlapping strips
"""

from typing import List, Sequence

import numpy as np
import pytest
from scipy import ndimage

from strip_mosaic.algorithms.feature_matcher import PatchMatcher
from strip_mosaic.models.geometry import AffineTransform
from strip_mosaic.models.image import SourceImage


def make_scene(width: int, height: int, seed: int = 0, sigma: float = 0.0) -> np.ndarray:
    """Random texture scaled to [10, 250] so no sample looks like nodata"""
    rng = np.random.default_rng(seed)
    scene = rng.random((height, width))
    if sigma > 0:
        scene = ndimage.gaussian_filter(scene, sigma)
    scene = (scene - scene.min()) / (scene.max() - scene.min())
    return (10 + 240 * scene).astype(np.float32)


def cut_strip(scene: np.ndarray, width: int, offsets: Sequence[int]) -> List[np.ndarray]:
    """Horizontal strip images starting at each column offset"""
    return [scene[:, x:x + width].copy() for x in offsets]


class FixedAligner:
    """Aligner stand-in returning preset relative transforms in order"""

    def __init__(self, transforms: Sequence[AffineTransform]):
        self.transforms = list(transforms)
        self.calls = []

    def align(self, first: SourceImage, second: SourceImage) -> AffineTransform:
        self.calls.append((first, second))
        return self.transforms[len(self.calls) - 1]


class NoMatches:
    """Matcher that never finds anything"""

    def match(self, region_a, region_b, mask_a=None, mask_b=None):
        return np.empty((0, 2)), np.empty((0, 2))


@pytest.fixture
def scene():
    """190 x 100 texture"""
    return make_scene(190, 100, seed=7)


@pytest.fixture
def strip_pair(scene):
    """Two 100 x 100 images, the second starting 90 columns to the right"""
    first, second = cut_strip(scene, 100, [0, 90])
    return SourceImage.from_array(first), SourceImage.from_array(second)


@pytest.fixture
def patch_matcher():
    return PatchMatcher(patch_size=7, grid_spacing=1, ncc_threshold=0.95)
