"""
Bounding box and affine transform models
"""

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np


# Slack used when snapping transformed corners to integer pixel bounds
ROUND_TOLERANCE = 1e-3


@dataclass(frozen=True)
class BBox:
    """
    Integer axis-aligned box, half-open: [min_x, max_x) x [min_y, max_y)
    """
    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @classmethod
    def from_size(cls, width: int, height: int) -> 'BBox':
        return cls(0, 0, int(width), int(height))

    @classmethod
    def from_points(cls, points: np.ndarray) -> 'BBox':
        """Smallest integer box containing all (x, y) points"""
        points = np.asarray(points, dtype=np.float64)
        min_x = math.floor(points[:, 0].min() + ROUND_TOLERANCE)
        min_y = math.floor(points[:, 1].min() + ROUND_TOLERANCE)
        max_x = math.ceil(points[:, 0].max() - ROUND_TOLERANCE)
        max_y = math.ceil(points[:, 1].max() - ROUND_TOLERANCE)
        return cls(min_x, min_y, max_x, max_y)

    @property
    def width(self) -> int:
        return max(self.max_x - self.min_x, 0)

    @property
    def height(self) -> int:
        return max(self.max_y - self.min_y, 0)

    @property
    def shape(self) -> Tuple[int, int]:
        """(rows, cols), numpy order"""
        return (self.height, self.width)

    @property
    def empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def corners(self) -> np.ndarray:
        """Outer corners as a (4, 2) array of (x, y)"""
        return np.array([
            [self.min_x, self.min_y],
            [self.max_x, self.min_y],
            [self.max_x, self.max_y],
            [self.min_x, self.max_y]
        ], dtype=np.float64)

    def intersects(self, other: 'BBox') -> bool:
        return not self.intersection(other).empty

    def intersection(self, other: 'BBox') -> 'BBox':
        min_x = max(self.min_x, other.min_x)
        min_y = max(self.min_y, other.min_y)
        max_x = max(min(self.max_x, other.max_x), min_x)
        max_y = max(min(self.max_y, other.max_y), min_y)
        return BBox(min_x, min_y, max_x, max_y)

    def union(self, other: 'BBox') -> 'BBox':
        if self.empty:
            return other
        if other.empty:
            return self
        return BBox(
            min(self.min_x, other.min_x),
            min(self.min_y, other.min_y),
            max(self.max_x, other.max_x),
            max(self.max_y, other.max_y)
        )

    def expand(self, amount: int) -> 'BBox':
        return BBox(
            self.min_x - amount,
            self.min_y - amount,
            self.max_x + amount,
            self.max_y + amount
        )

    def translate(self, dx: int, dy: int) -> 'BBox':
        return BBox(self.min_x + dx, self.min_y + dy, self.max_x + dx, self.max_y + dy)

    def slices(self) -> Tuple[slice, slice]:
        """Numpy index (rows, cols) for this box"""
        return (slice(self.min_y, self.max_y), slice(self.min_x, self.max_x))

    def to_list(self) -> list:
        return [self.min_x, self.min_y, self.max_x, self.max_y]


class AffineTransform:
    """
    2D affine transform p -> M p + t stored as a 3x3 homogeneous matrix.

    Maps a source image's pixel frame into the canvas frame. Instances are
    immutable; the matrix must be invertible and its inverse is computed
    once on construction.
    """

    def __init__(self, matrix: np.ndarray = None):
        if matrix is None:
            self.matrix = np.eye(3, dtype=np.float64)
        else:
            matrix = np.asarray(matrix, dtype=np.float64)
            if matrix.shape == (2, 3):
                matrix = np.vstack([matrix, [0.0, 0.0, 1.0]])
            if matrix.shape != (3, 3):
                raise ValueError(f"Affine matrix must be 2x3 or 3x3, got {matrix.shape}")
            self.matrix = matrix.copy()
            self.matrix[2] = [0.0, 0.0, 1.0]
        self.matrix.setflags(write=False)
        self._inverse_matrix = np.linalg.inv(self.matrix)
        self._inverse_matrix.setflags(write=False)

    @classmethod
    def identity(cls) -> 'AffineTransform':
        return cls()

    @classmethod
    def from_translation(cls, tx: float, ty: float) -> 'AffineTransform':
        m = np.eye(3)
        m[0, 2] = tx
        m[1, 2] = ty
        return cls(m)

    @property
    def linear(self) -> np.ndarray:
        """The 2x2 linear part M"""
        return self.matrix[:2, :2]

    @property
    def translation(self) -> np.ndarray:
        """The translation vector t"""
        return self.matrix[:2, 2]

    def is_identity(self, atol: float = 1e-12) -> bool:
        return np.allclose(self.matrix, np.eye(3), atol=atol)

    def inverse(self) -> 'AffineTransform':
        return AffineTransform(self._inverse_matrix)

    def compose(self, other: 'AffineTransform') -> 'AffineTransform':
        """Apply `other` first, then this transform"""
        return AffineTransform(self.matrix @ other.matrix)

    def __matmul__(self, other: 'AffineTransform') -> 'AffineTransform':
        return self.compose(other)

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Transform an (N, 2) array of (x, y) points"""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        return points @ self.linear.T + self.translation

    def forward_bbox(self, bbox: BBox) -> BBox:
        """Bounding box of `bbox` after the forward transform"""
        return BBox.from_points(self.transform_points(bbox.corners()))

    def reverse_bbox(self, bbox: BBox) -> BBox:
        """Bounding box of `bbox` pulled back through the inverse transform"""
        return self.inverse().forward_bbox(bbox)

    def to_dict(self) -> dict:
        return {
            'matrix': self.matrix.tolist(),
            'translation': [float(v) for v in self.translation]
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'AffineTransform':
        return cls(np.array(data['matrix']))

    def __eq__(self, other) -> bool:
        if not isinstance(other, AffineTransform):
            return NotImplemented
        return np.array_equal(self.matrix, other.matrix)

    def __hash__(self):
        return hash(self.matrix.tobytes())

    def __repr__(self) -> str:
        m = self.matrix
        return (
            f"AffineTransform([[{m[0, 0]:.6g}, {m[0, 1]:.6g}, {m[0, 2]:.6g}], "
            f"[{m[1, 0]:.6g}, {m[1, 1]:.6g}, {m[1, 2]:.6g}]])"
        )
