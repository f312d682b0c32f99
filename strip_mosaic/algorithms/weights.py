"""
Blending weights derived from an image's valid-data footprint
"""

from typing import Optional

import numpy as np

from ..models.geometry import BBox


def centerline_weights(
    valid: np.ndarray,
    hole_fill_value: float = 0.0,
    border_fill_value: float = -1.0,
    roi: Optional[BBox] = None
) -> np.ndarray:
    """
    Centerline distance weighting of a valid/invalid mask.

    Every row and column gets the center and half-width of its valid run.
    A valid pixel's weight is the smaller of its row and column
    confidences, each falling linearly from 1 at the run center towards
    the ends of the run. Invalid pixels lying inside both their row's and
    their column's run are holes and get `hole_fill_value`; all other
    invalid pixels are outside the footprint and get `border_fill_value`.

    If `roi` is given only that sub-rectangle is returned, but the runs
    are still measured over the whole mask.
    """
    valid = np.asarray(valid, dtype=bool)
    if valid.ndim != 2:
        raise ValueError(f"Mask must be 2-D, got shape {valid.shape}")
    rows, cols = valid.shape

    row_has_data = valid.any(axis=1)
    col_has_data = valid.any(axis=0)

    # First and last valid column of each row, first and last valid row of each column.
    # Empty rows/columns get an inverted run so nothing counts as inside it.
    min_in_row = np.where(row_has_data, valid.argmax(axis=1), cols)
    max_in_row = np.where(row_has_data, cols - 1 - valid[:, ::-1].argmax(axis=1), 0)
    min_in_col = np.where(col_has_data, valid.argmax(axis=0), rows)
    max_in_col = np.where(col_has_data, rows - 1 - valid[::-1, :].argmax(axis=0), 0)

    h_center = (min_in_row + max_in_row) / 2.0
    h_half_width = np.maximum(max_in_row - min_in_row, 0) / 2.0
    v_center = (min_in_col + max_in_col) / 2.0
    v_half_width = np.maximum(max_in_col - min_in_col, 0) / 2.0

    box = BBox.from_size(cols, rows) if roi is None else roi.intersection(BBox.from_size(cols, rows))
    ys = np.arange(box.min_y, box.max_y)[:, np.newaxis]
    xs = np.arange(box.min_x, box.max_x)[np.newaxis, :]

    weights = _line_weights(xs, h_center[ys], h_half_width[ys])
    np.minimum(weights, _line_weights(ys, v_center[xs], v_half_width[xs]), out=weights)

    invalid = ~valid[box.slices()]
    if invalid.any():
        inside = (ys >= min_in_col[xs]) & (ys <= max_in_col[xs])
        inside &= (xs >= min_in_row[ys]) & (xs <= max_in_row[ys])
        weights[invalid & inside] = hole_fill_value
        weights[invalid & ~inside] = border_fill_value

    return weights


def _line_weights(
    position: np.ndarray,
    center: np.ndarray,
    half_width: np.ndarray
) -> np.ndarray:
    """Tent falloff: 1 at the center, 1 / (half_width + 1) at the run ends"""
    weights = np.subtract(position, center, dtype=np.float64)
    np.abs(weights, out=weights)
    weights /= half_width + 1.0
    np.subtract(1.0, weights, out=weights)
    return np.clip(weights, 0.0, 1.0, out=weights)


def blend_weight_ceiling(intersection: BBox, blend_radius: int) -> float:
    """
    Largest weight one image may contribute within an intersection.

    Keeps a thin sliver of overlap from dominating the blend.
    """
    dist = min(intersection.height, intersection.width) / 2.0
    if dist + blend_radius <= 0:
        return 1.0
    return blend_radius / (dist + blend_radius)
