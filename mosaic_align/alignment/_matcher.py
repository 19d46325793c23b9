"""Correspondences between pairs of tiles or layers.

Matching runs the descriptor ratio test on the features of both tiles and
fits the expected model by consensus search. Results are cached two-sided:
the entry for ``(a, b)`` holds the correspondences and the entry for
``(b, a)`` holds their flips, both validated by the matcher's fingerprint.
"""
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import numpy as np

from ._cache import FingerprintCache
from ._consensus import find_model
from ._features import FeatureExtractor
from ._features import match_features
from ._models import Model
from ._models import create_model
from ._point_match import PointMatch
from ._point_match import flip_matches
from ._point_match import scale_matches
from ._progress import ProgressSignal

if TYPE_CHECKING:
    from ..parameters import AlignParameters

logger = logging.getLogger(__name__)

POINT_MATCHES_CATEGORY = "pointmatches"
LAYER_POINT_MATCHES_CATEGORY = "layerpointmatches"


def pair_key(id_a: str, id_b: str) -> str:
    return f"{id_a}_{id_b}"


def store_two_sided(
    cache: Optional[FingerprintCache],
    category: str,
    id_a: str,
    id_b: str,
    fingerprint: Any,
    matches: list[PointMatch],
) -> bool:
    """Store ``matches`` for ``(a, b)`` and their flips for ``(b, a)``."""
    if cache is None:
        return False
    ok = cache.put(pair_key(id_a, id_b), category, fingerprint, matches)
    ok &= cache.put(pair_key(id_b, id_a), category, fingerprint, flip_matches(matches))
    if not ok:
        logger.warning(f"Could not store correspondences between {id_a} and {id_b}")
    return ok


def load_matches(
    cache: Optional[FingerprintCache], category: str, id_a: str, id_b: str, fingerprint: Any
) -> Optional[list[PointMatch]]:
    if cache is None:
        return None
    return cache.get(pair_key(id_a, id_b), category, fingerprint)


@dataclass
class TilePairMatches:
    """Outcome of matching one tile pair; no inliers means no model was found."""
    id_a: str
    id_b: str
    num_candidates: int
    inliers: list[PointMatch] = field(default_factory=list)
    model: Optional[Model] = None
    from_cache: bool = False

    @property
    def model_found(self) -> bool:
        return len(self.inliers) > 0


class CorrespondenceMatcher:
    """Matches tile pairs through the feature extractor and the correspondence cache."""

    def __init__(
        self,
        params: "AlignParameters",
        extractor: FeatureExtractor,
        cache: Optional[FingerprintCache] = None,
        clear_cache: bool = False,
    ):
        self.params = params
        self.fingerprint = params.fingerprint()
        self.extractor = extractor
        self.cache = cache
        self.clear_cache = clear_cache

    def fit(
        self,
        candidates: list[PointMatch],
        rng: Optional[np.random.Generator] = None,
        epsilon_scale: float = 1.0,
    ) -> tuple[Model, list[PointMatch]]:
        """Consensus search of the expected model; distances scale with ``epsilon_scale``."""
        p = self.fingerprint
        model = create_model(p.expected_model_index)
        found, inliers = find_model(
            model,
            candidates,
            max_epsilon=p.max_epsilon * epsilon_scale,
            min_inlier_ratio=p.min_inlier_ratio,
            min_num_inliers=p.min_num_inliers,
            reject_identity=p.reject_identity,
            identity_tolerance=p.identity_tolerance * epsilon_scale,
            max_trials=p.max_trials,
            rng=rng,
        )
        return model, inliers if found else []

    def match(
        self,
        tile_a,
        tile_b,
        rng: Optional[np.random.Generator] = None,
        progress: Optional[ProgressSignal] = None,
    ) -> Optional[TilePairMatches]:
        """Correspondences from ``tile_a`` to ``tile_b``; None if interrupted before starting."""
        if progress is not None and progress.cancelled:
            return None
        id_a, id_b = str(tile_a.id), str(tile_b.id)
        if not self.clear_cache:
            cached = load_matches(self.cache, POINT_MATCHES_CATEGORY, id_a, id_b, self.fingerprint)
            if cached is not None:
                logger.debug(f"Loaded {len(cached)} cached correspondences {id_a} -> {id_b}")
                return TilePairMatches(id_a, id_b, len(cached), cached, from_cache=True)

        features_a = self.extractor.extract_tile(tile_a)
        features_b = self.extractor.extract_tile(tile_b)
        if progress is not None:
            progress.check_cancelled()

        candidates = match_features(features_a, features_b, self.fingerprint.rod)
        num_candidates = len(candidates)
        model, inliers = self.fit(candidates, rng)
        if inliers:
            logger.info(
                f"{id_a} -> {id_b}: {model.describe()} model found with {len(inliers)} "
                f"correspondences of {num_candidates} candidates, "
                f"average residual error {model.cost:.3f} px"
            )
        else:
            logger.info(f"{id_a} -> {id_b}: no correspondences found ({num_candidates} candidates)")
            model = None

        store_two_sided(self.cache, POINT_MATCHES_CATEGORY, id_a, id_b, self.fingerprint, inliers)
        return TilePairMatches(id_a, id_b, num_candidates, inliers, model)

    def match_layers(
        self,
        layer_a,
        layer_b,
        box,
        scale: float,
        layer_scale: float,
        rng: Optional[np.random.Generator] = None,
        progress: Optional[ProgressSignal] = None,
    ) -> tuple[Optional[Model], list[PointMatch]]:
        """Approximate model from ``layer_b`` to ``layer_a`` at the mesh working scale.

        Features are extracted from both layers rendered for ``box`` at
        ``scale``. The ratio-test candidates are cached before consensus
        search, then rescaled by ``layer_scale / scale``; distance thresholds
        are multiplied by ``layer_scale``.
        """
        if progress is not None:
            progress.check_cancelled()
        id_a, id_b = str(layer_a.id), str(layer_b.id)
        fingerprint = (self.fingerprint, tuple(box), scale)
        candidates = None
        if not self.clear_cache:
            candidates = load_matches(self.cache, LAYER_POINT_MATCHES_CATEGORY, id_b, id_a, fingerprint)
        if candidates is None:
            features_a = self.extractor.extract_layer(layer_a, box, scale)
            features_b = self.extractor.extract_layer(layer_b, box, scale)
            candidates = match_features(features_b, features_a, self.fingerprint.rod)
            store_two_sided(self.cache, LAYER_POINT_MATCHES_CATEGORY, id_b, id_a, fingerprint, candidates)
        if progress is not None:
            progress.check_cancelled()

        scaled = scale_matches(candidates, layer_scale / scale)
        model, inliers = self.fit(scaled, rng, epsilon_scale=layer_scale)
        if inliers:
            logger.info(
                f"{id_b} -> {id_a}: {model.describe()} model found with {len(inliers)} "
                f"correspondences of {len(candidates)} candidates, "
                f"average residual error {model.cost / layer_scale:.3f} px"
            )
            return model, inliers
        logger.info(f"{id_b} -> {id_a}: no correspondences found ({len(candidates)} candidates)")
        return None, []
