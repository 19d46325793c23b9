"""Block correlation matching and the local smoothness filter.

Block matching maps the target image into the source frame with the
expected transform, then searches around every source point for the offset
that maximizes the Pearson correlation (PMCC) of a square block. A match
is accepted when the peak is strong enough, unambiguous with respect to the
second best peak, and well localized (bounded principal curvature ratio).

The local smoothness filter rejects displacements that disagree with a
model fitted to their Gaussian-weighted neighborhood.
"""
import logging
from typing import Optional, Sequence

import numpy as np
from scipy import ndimage
from skimage.feature import match_template
from skimage.feature import peak_local_max
from skimage.transform import warp

from ._models import IllDefinedDataPointsError
from ._models import Model
from ._models import NotEnoughDataPointsError
from ._point_match import Point
from ._point_match import PointMatch
from ._point_match import match_arrays
from ._progress import ProgressSignal
from ._typing_utils import BoolArray
from ._typing_utils import FloatArray

logger = logging.getLogger(__name__)

# Minimal fraction of valid target pixels under a block
MIN_TARGET_COVERAGE = 0.999
# Blocks with less intensity variation are skipped
MIN_BLOCK_STD = 1e-6
# Residuals below this are never rejected by the smoothness filter
MIN_LOCAL_RESIDUAL = 1e-2


def _map_target(
    target: FloatArray, target_mask: Optional[BoolArray], transform: Model, shape: tuple[int, int]
) -> tuple[FloatArray, FloatArray]:
    """Sample target and its mask at ``transform(source pixel)`` for every source pixel."""
    def inverse_map(xy: FloatArray) -> FloatArray:
        return transform.apply(xy)

    mapped = warp(target, inverse_map, output_shape=shape, order=1, cval=0.0, preserve_range=True)
    mask = np.ones(target.shape) if target_mask is None else np.asarray(target_mask, dtype=np.float64)
    mapped_mask = warp(mask, inverse_map, output_shape=shape, order=0, cval=0.0, preserve_range=True)
    return mapped, mapped_mask


def _peak_offset(corr: FloatArray, y: int, x: int) -> Optional[tuple[float, float, float]]:
    """Subpixel offset ``(dx, dy)`` and curvature ratio of the peak at ``(y, x)``.

    None if the peak lies on the border or is not a maximum.
    """
    if y < 1 or x < 1 or y >= corr.shape[0] - 1 or x >= corr.shape[1] - 1:
        return None
    c = corr[y - 1:y + 2, x - 1:x + 2]
    if not np.all(np.isfinite(c)):
        return None
    dxx = c[1, 2] - 2 * c[1, 1] + c[1, 0]
    dyy = c[2, 1] - 2 * c[1, 1] + c[0, 1]
    dxy = (c[2, 2] - c[2, 0] - c[0, 2] + c[0, 0]) / 4.0
    det = dxx * dyy - dxy * dxy
    trace = dxx + dyy
    if det <= 0 or trace >= 0:
        return None
    ratio = trace * trace / det
    gx = (c[1, 2] - c[1, 0]) / 2.0
    gy = (c[2, 1] - c[0, 1]) / 2.0
    dx = -(dyy * gx - dxy * gy) / det
    dy = -(dxx * gy - dxy * gx) / det
    if abs(dx) > 1 or abs(dy) > 1:
        dx = dy = 0.0
    return float(dx), float(dy), float(ratio)


def match_by_maximal_pmcc(
    source: FloatArray,
    source_mask: Optional[BoolArray],
    target: FloatArray,
    target_mask: Optional[BoolArray],
    transform: Model,
    block_radius: int,
    search_radius: int,
    min_r: float,
    rod_r: float,
    max_curvature_r: float,
    points: Sequence[Point],
    progress: Optional[ProgressSignal] = None,
) -> list[PointMatch]:
    """Find the target location of every source point by block correlation.

    Args:
        transform: Expected mapping from source to target pixel coordinates.
        points: Source points; their ``local`` coordinates are source pixels.

    Returns:
        Matches whose ``p1`` is the source point itself and whose ``p2`` is a
        new point at the matched target location.
    """
    source = np.asarray(source, dtype=np.float64)
    h, w = source.shape
    mapped, mapped_mask = _map_target(np.asarray(target, dtype=np.float64), target_mask, transform, (h, w))
    valid_source = np.ones((h, w), dtype=bool) if source_mask is None else np.asarray(source_mask, dtype=bool)

    r = int(block_radius)
    s = int(search_radius)
    size = 2 * r + 1
    max_curvature = (max_curvature_r + 1) ** 2 / max_curvature_r

    matches: list[PointMatch] = []
    for point in points:
        if progress is not None:
            progress.check_cancelled()
        cx, cy = int(round(point.local[0])), int(round(point.local[1]))
        if cx - r < 0 or cy - r < 0 or cx + r >= w or cy + r >= h:
            continue
        block = source[cy - r:cy + r + 1, cx - r:cx + r + 1]
        if not valid_source[cy - r:cy + r + 1, cx - r:cx + r + 1].all() or block.std() < MIN_BLOCK_STD:
            continue

        y0, y1 = max(0, cy - r - s), min(h, cy + r + s + 1)
        x0, x1 = max(0, cx - r - s), min(w, cx + r + s + 1)
        if y1 - y0 < size or x1 - x0 < size:
            continue
        window = mapped[y0:y1, x0:x1]
        coverage = ndimage.uniform_filter(mapped_mask[y0:y1, x0:x1], size=size, mode="constant")
        coverage = coverage[r:r + window.shape[0] - size + 1, r:r + window.shape[1] - size + 1]

        corr = match_template(window, block)
        corr[~np.isfinite(corr) | (coverage < MIN_TARGET_COVERAGE)] = -1.0

        by, bx = np.unravel_index(int(np.argmax(corr)), corr.shape)
        r1 = corr[by, bx]
        if r1 < min_r:
            continue

        peaks = peak_local_max(corr, min_distance=2, exclude_border=False, num_peaks=2)
        if len(peaks) > 1:
            second = max(corr[py, px] for py, px in peaks if (py, px) != (by, bx))
            if second > 0 and second / r1 > rod_r:
                continue

        peak = _peak_offset(corr, by, bx)
        if peak is None:
            continue
        dx, dy, curvature = peak
        if curvature >= max_curvature:
            continue

        matched = np.array([x0 + bx + r + dx, y0 + by + r + dy])
        matches.append(PointMatch(point, Point(transform.apply(matched))))

    logger.debug(f"Block matching accepted {len(matches)} of {len(points)} points")
    return matches


def local_smoothness_filter(
    model: Model,
    candidates: Sequence[PointMatch],
    sigma: float,
    max_epsilon: float,
    max_trust: float,
) -> list[PointMatch]:
    """Drop matches inconsistent with a model of their Gaussian neighborhood.

    For every match, ``model`` is fitted to all other matches weighted by
    ``exp(-d^2 / (2 sigma^2))`` of their distance to it. The match is rejected
    when its residual exceeds ``max_epsilon`` or ``max_trust`` times the
    weighted mean residual of its neighborhood. Repeats until nothing is
    rejected.
    """
    kept = list(candidates)
    two_sigma2 = 2.0 * sigma * sigma
    local = model.copy()
    while len(kept) > local.min_num_matches:
        p, q, w = match_arrays(kept)
        reject = np.zeros(len(kept), dtype=bool)
        for i in range(len(kept)):
            weights = w * np.exp(-((p - p[i]) ** 2).sum(axis=1) / two_sigma2)
            weights[i] = 0.0
            total = weights.sum()
            if total <= 0:
                continue
            try:
                local.fit(p, q, weights)
            except (NotEnoughDataPointsError, IllDefinedDataPointsError):
                continue
            residuals = local.residuals(p, q)
            mean_residual = float((weights * residuals).sum() / total)
            threshold = min(max_epsilon, max(max_trust * mean_residual, MIN_LOCAL_RESIDUAL))
            reject[i] = residuals[i] > threshold
        if not reject.any():
            break
        logger.debug(f"Local smoothness filter rejected {int(reject.sum())} of {len(kept)} matches")
        kept = [pm for pm, r in zip(kept, reject) if not r]
    return kept
