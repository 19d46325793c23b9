"""Tests for consensus model estimation and the correspondence matcher fit."""
import numpy as np
import pytest

from mosaic_align.alignment._consensus import filter_matches, find_model, ransac
from mosaic_align.alignment._features import FeatureExtractor
from mosaic_align.alignment._matcher import CorrespondenceMatcher
from mosaic_align.alignment._models import Model, ModelType, NotEnoughDataPointsError
from mosaic_align.alignment._point_match import Point, PointMatch
from mosaic_align.parameters import AlignParameters
from mosaic_align.testutil import translated_matches


def identity_matches(n: int, seed: int = 1) -> list[PointMatch]:
    p = np.random.default_rng(seed).uniform(0, 500, size=(n, 2))
    return [PointMatch(Point(a), Point(a)) for a in p]


def test_translation_scenario_with_matcher():
    params = AlignParameters(
        expected_model_index=0, max_epsilon=2.0, min_inlier_ratio=0.2, min_num_inliers=7
    )
    matcher = CorrespondenceMatcher(params, FeatureExtractor(params.features))
    candidates = translated_matches((12.5, -4.0), n=50, num_outliers=15, noise=0.2, seed=4)

    model, inliers = matcher.fit(candidates, np.random.default_rng(0))

    assert len(inliers) >= 7
    assert model.kind == ModelType.TRANSLATION
    np.testing.assert_allclose(model.matrix[:2, 2], [12.5, -4.0], atol=0.5)
    assert model.cost < 2.0


def test_ransac_needs_minimal_sample():
    with pytest.raises(NotEnoughDataPointsError):
        ransac(Model(ModelType.AFFINE), translated_matches((1, 1), n=2), 1.0, 0.0, 0)


def test_min_num_inliers_is_monotone():
    candidates = translated_matches((30.0, 10.0), n=12, num_outliers=30, seed=2)
    found = []
    for min_num_inliers in range(0, 60, 4):
        inliers = ransac(
            Model(ModelType.TRANSLATION),
            candidates,
            max_epsilon=1.0,
            min_inlier_ratio=0.0,
            min_num_inliers=min_num_inliers,
            max_trials=200,
            rng=np.random.default_rng(11),
        )
        found.append(len(inliers) > 0)
    assert found[0]
    assert not found[-1]
    assert found == sorted(found, reverse=True)


def test_min_inlier_ratio_rejects_sparse_consensus():
    candidates = translated_matches((5.0, 5.0), n=10, num_outliers=40, seed=5)
    model = Model(ModelType.TRANSLATION)
    assert ransac(model, candidates, 1.0, 0.5, 0, rng=np.random.default_rng(0)) == []
    assert len(ransac(model, candidates, 1.0, 0.1, 0, rng=np.random.default_rng(0))) >= 10


def test_filter_matches_drops_untrusted():
    matches = translated_matches((3.0, 0.0), n=20, noise=0.1, seed=6)
    matches.append(PointMatch(Point([10.0, 10.0]), Point([13.0, 16.0])))
    model = Model(ModelType.TRANSLATION)
    kept = filter_matches(model, matches, max_trust=3.0)
    assert matches[-1] not in kept
    assert len(kept) >= 15
    np.testing.assert_allclose(model.matrix[:2, 2], [3.0, 0.0], atol=0.2)


def test_identity_rejection_finds_the_real_shift():
    shifted = translated_matches((10.0, 5.0), n=20, seed=7)
    candidates = identity_matches(30) + shifted
    model = Model(ModelType.TRANSLATION)

    found, inliers = find_model(
        model,
        candidates,
        max_epsilon=1.0,
        min_inlier_ratio=0.0,
        min_num_inliers=7,
        reject_identity=True,
        identity_tolerance=0.5,
        rng=np.random.default_rng(0),
    )

    assert found
    np.testing.assert_allclose(model.matrix[:2, 2], [10.0, 5.0], atol=1e-6)
    assert len(inliers) == 20
    # the identity inliers were removed from the candidates
    assert len(candidates) == 20
    assert all(pm in shifted for pm in candidates)


def test_identity_rejection_terminates_on_identity_only():
    candidates = identity_matches(25)
    found, inliers = find_model(
        Model(ModelType.TRANSLATION),
        candidates,
        max_epsilon=1.0,
        min_inlier_ratio=0.0,
        min_num_inliers=7,
        reject_identity=True,
        rng=np.random.default_rng(0),
    )
    assert not found
    assert inliers == []
    assert len(candidates) < 25


def test_no_candidates_is_negative_result():
    assert find_model(Model(ModelType.RIGID), [], 5.0, 0.0, 0) == (False, [])
