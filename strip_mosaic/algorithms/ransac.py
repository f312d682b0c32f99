"""
Robust affine fitting with random sample consensus
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..models.geometry import AffineTransform


logger = logging.getLogger(__name__)

MIN_SAMPLE_SIZE = 3


class RansacError(RuntimeError):
    """No model satisfied the consensus requirements"""


@dataclass
class RansacResult:
    """Fitted model together with the consensus that supports it"""
    transform: AffineTransform
    inliers: np.ndarray
    min_inliers: int
    residual: float

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))


def fit_affine(src: np.ndarray, dst: np.ndarray) -> AffineTransform:
    """
    Least-squares affine transform mapping src points onto dst points
    """
    src = np.asarray(src, dtype=np.float64)
    dst = np.asarray(dst, dtype=np.float64)
    design = np.hstack([src, np.ones((len(src), 1))])
    params, _, rank, _ = np.linalg.lstsq(design, dst, rcond=None)
    if rank < 3:
        raise np.linalg.LinAlgError("Degenerate point configuration")
    return AffineTransform(params.T)


def point_errors(transform: AffineTransform, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """Euclidean distance between transformed src points and dst points"""
    return np.linalg.norm(transform.transform_points(src) - dst, axis=1)


class AffineRansac:
    """
    Random sample consensus estimator for 2D affine transforms.

    Each trial fits a model to a minimal sample of three matches and counts
    the matches lying within `inlier_threshold` pixels of it. The model with
    the largest consensus is refit on its inliers. When no trial reaches
    `min_inliers` and `reduce_min_inliers_if_no_fit` is set, the requirement
    is lowered and the trials are repeated.
    """

    def __init__(
        self,
        num_iterations: int = 100,
        inlier_threshold: float = 10.0,
        min_inliers: Optional[int] = None,
        reduce_min_inliers_if_no_fit: bool = True,
        random_seed: Optional[int] = 0
    ):
        self.num_iterations = num_iterations
        self.inlier_threshold = inlier_threshold
        self.min_inliers = min_inliers
        self.reduce_min_inliers_if_no_fit = reduce_min_inliers_if_no_fit
        self.random_seed = random_seed

    def fit(self, src: np.ndarray, dst: np.ndarray) -> RansacResult:
        """
        Fit the transform taking `src` points onto `dst` points
        """
        src = np.asarray(src, dtype=np.float64).reshape(-1, 2)
        dst = np.asarray(dst, dtype=np.float64).reshape(-1, 2)
        if len(src) != len(dst):
            raise ValueError(f"Point count mismatch: {len(src)} vs {len(dst)}")
        if len(src) < MIN_SAMPLE_SIZE:
            raise RansacError(
                f"Need at least {MIN_SAMPLE_SIZE} matches for an affine fit, got {len(src)}"
            )

        rng = np.random.default_rng(self.random_seed)
        min_inliers = self.min_inliers if self.min_inliers is not None else len(src) // 2
        min_inliers = max(min_inliers, MIN_SAMPLE_SIZE)

        while True:
            result = self._consensus(src, dst, min_inliers, rng)
            if result is not None:
                return result

            if not self.reduce_min_inliers_if_no_fit:
                break
            reduced = int(min_inliers / 1.5)
            if reduced < MIN_SAMPLE_SIZE or reduced == min_inliers:
                break
            logger.debug(f"No fit with {min_inliers} inliers, retrying with {reduced}")
            min_inliers = reduced

        raise RansacError(
            f"No affine model found with at least {min_inliers} inliers "
            f"after {self.num_iterations} iterations"
        )

    def _consensus(
        self,
        src: np.ndarray,
        dst: np.ndarray,
        min_inliers: int,
        rng: np.random.Generator
    ) -> Optional[RansacResult]:
        best_inliers = None
        best_count = 0
        best_residual = np.inf

        for _ in range(self.num_iterations):
            sample = rng.choice(len(src), MIN_SAMPLE_SIZE, replace=False)
            try:
                candidate = fit_affine(src[sample], dst[sample])
            except np.linalg.LinAlgError:
                continue

            errors = point_errors(candidate, src, dst)
            inliers = errors < self.inlier_threshold
            count = int(np.count_nonzero(inliers))
            if count < min_inliers:
                continue

            residual = float(np.mean(errors[inliers]))
            if count > best_count or (count == best_count and residual < best_residual):
                best_inliers = inliers
                best_count = count
                best_residual = residual

        if best_inliers is None:
            return None

        try:
            transform = fit_affine(src[best_inliers], dst[best_inliers])
        except np.linalg.LinAlgError:
            return None

        inliers = point_errors(transform, src, dst) < self.inlier_threshold
        if np.count_nonzero(inliers) < min_inliers:
            # The refit drifted; keep the consensus it was computed from
            inliers = best_inliers
        residual = float(np.mean(point_errors(transform, src[inliers], dst[inliers])))

        return RansacResult(
            transform=transform,
            inliers=inliers,
            min_inliers=min_inliers,
            residual=residual
        )
