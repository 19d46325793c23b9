"""Randomized consensus (RANSAC) model estimation over point correspondences.

The module includes:

- :func:`ransac`: minimal-sample hypotheses scored by inlier count
- :func:`filter_ransac`: RANSAC followed by iterative trust-based refinement
- :func:`find_model`: consensus search with optional rejection of near-identity results
"""
import logging
from typing import Optional

import numpy as np

from ._models import IllDefinedDataPointsError
from ._models import Model
from ._models import NotEnoughDataPointsError
from ._point_match import PointMatch
from ._point_match import match_arrays

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRIALS = 1000
DEFAULT_MAX_TRUST = 3.0

# Residuals below this are never rejected by the trust filter
MIN_TRUST_RESIDUAL = 1e-6


def ransac(
    model: Model,
    candidates: list[PointMatch],
    max_epsilon: float,
    min_inlier_ratio: float,
    min_num_inliers: int,
    max_trials: int = DEFAULT_MAX_TRIALS,
    rng: Optional[np.random.Generator] = None,
) -> list[PointMatch]:
    """Find the largest consensus set among ``candidates``.

    Every trial fits ``model`` to a random minimal sample and counts the
    candidates within ``max_epsilon``. A hypothesis is only kept when its
    inlier count reaches ``min_num_inliers`` and its inlier ratio reaches
    ``min_inlier_ratio``.

    Returns:
        The inliers of the best hypothesis, empty if none qualified. ``model``
        holds the best hypothesis when inliers are returned.

    Raises:
        NotEnoughDataPointsError: There are fewer candidates than the model needs.
    """
    n_min = model.min_num_matches
    if len(candidates) < n_min:
        raise NotEnoughDataPointsError(
            f"{len(candidates)} candidates cannot estimate a {model.describe()} model"
        )
    rng = np.random.default_rng() if rng is None else rng
    p, q, w = match_arrays(candidates)
    n = len(candidates)

    hypothesis = model.copy()
    best_mask = None
    best_count = 0
    for _ in range(max_trials):
        sample = rng.choice(n, size=n_min, replace=False)
        try:
            hypothesis.fit(p[sample], q[sample], w[sample])
        except IllDefinedDataPointsError:
            continue
        mask = hypothesis.residuals(p, q) < max_epsilon
        count = int(mask.sum())
        if count > best_count and count >= min_num_inliers and count / n >= min_inlier_ratio:
            best_count = count
            best_mask = mask
            model.set(hypothesis)
            if count == n:
                break

    if best_mask is None:
        return []
    return [candidates[i] for i in np.flatnonzero(best_mask)]


def filter_matches(
    model: Model,
    inliers: list[PointMatch],
    max_trust: float = DEFAULT_MAX_TRUST,
) -> list[PointMatch]:
    """Refit ``model`` and drop matches beyond ``max_trust`` times the median residual.

    Repeats until no further match is dropped. ``model.cost`` is set to the
    mean residual of the surviving matches.
    """
    kept = list(inliers)
    while True:
        p, q, w = match_arrays(kept)
        model.fit(p, q, w)
        residuals = model.residuals(p, q)
        threshold = max(max_trust * float(np.median(residuals)), MIN_TRUST_RESIDUAL)
        mask = residuals <= threshold
        if mask.all():
            model.cost = float(residuals.mean())
            return kept
        kept = [pm for pm, keep in zip(kept, mask) if keep]


def filter_ransac(
    model: Model,
    candidates: list[PointMatch],
    max_epsilon: float,
    min_inlier_ratio: float,
    min_num_inliers: int,
    max_trials: int = DEFAULT_MAX_TRIALS,
    max_trust: float = DEFAULT_MAX_TRUST,
    rng: Optional[np.random.Generator] = None,
) -> tuple[bool, list[PointMatch]]:
    """RANSAC followed by trust filtering; returns ``(model found, inliers)``."""
    inliers = ransac(
        model, candidates, max_epsilon, min_inlier_ratio, min_num_inliers, max_trials, rng
    )
    if not inliers:
        return False, []
    try:
        inliers = filter_matches(model, inliers, max_trust)
    except (NotEnoughDataPointsError, IllDefinedDataPointsError):
        return False, []
    if len(inliers) < min_num_inliers:
        return False, []
    return True, inliers


def find_model(
    model: Model,
    candidates: list[PointMatch],
    max_epsilon: float,
    min_inlier_ratio: float,
    min_num_inliers: int,
    reject_identity: bool = False,
    identity_tolerance: float = 0.5,
    max_trials: int = DEFAULT_MAX_TRIALS,
    max_trust: float = DEFAULT_MAX_TRUST,
    rng: Optional[np.random.Generator] = None,
) -> tuple[bool, list[PointMatch]]:
    """Estimate ``model`` from ``candidates``, optionally refusing identity transforms.

    When identity rejection is enabled and the fitted model moves none of the
    inlier source points by more than ``identity_tolerance``, those inliers
    are removed from ``candidates`` (in place) and the search starts over.
    Each rejection removes at least one candidate, so the loop ends after at
    most ``len(candidates)`` rounds.

    Running out of candidates is a negative result, not an error.
    """
    while True:
        try:
            found, inliers = filter_ransac(
                model,
                candidates,
                max_epsilon,
                min_inlier_ratio,
                min_num_inliers,
                max_trials,
                max_trust,
                rng,
            )
        except NotEnoughDataPointsError:
            return False, []

        if not (found and reject_identity):
            return found, inliers

        sources = np.array([pm.p1.local for pm in inliers])
        if not model.is_identity(sources, identity_tolerance):
            return True, inliers

        logger.info(
            f"Rejected identity transform over {len(inliers)} matches, "
            f"{len(candidates) - len(inliers)} candidates remain"
        )
        rejected = {id(pm) for pm in inliers}
        candidates[:] = [pm for pm in candidates if id(pm) not in rejected]
