import numpy as np
import pytest

from mosaic_align.alignment._mls import MovingLeastSquaresTransform
from mosaic_align.alignment._models import ModelType


@pytest.fixture
def control_points():
    source = np.array([[x, y] for y in range(0, 101, 25) for x in range(0, 101, 25)], dtype=float)
    return source


def test_affine_control_points_reproduce_affine(control_points):
    linear = np.array([[1.05, 0.1], [-0.05, 0.95]])
    target = control_points @ linear.T + [7.0, -3.0]
    mls = MovingLeastSquaresTransform(control_points, target)

    queries = np.random.default_rng(0).uniform(0, 100, size=(50, 2))
    np.testing.assert_allclose(mls.apply(queries), queries @ linear.T + [7.0, -3.0], atol=1e-6)


def test_control_points_map_exactly(control_points):
    target = control_points + np.random.default_rng(1).normal(0, 2.0, size=control_points.shape)
    mls = MovingLeastSquaresTransform(control_points, target)
    np.testing.assert_allclose(mls.apply(control_points), target, atol=1e-9)
    np.testing.assert_allclose(mls.apply(control_points[3]), target[3], atol=1e-9)


def test_few_control_points_degrade_the_model():
    single = MovingLeastSquaresTransform(np.array([[0.0, 0.0]]), np.array([[2.0, 3.0]]))
    assert single.kind == ModelType.TRANSLATION
    np.testing.assert_allclose(single.apply(np.array([10.0, 10.0])), [12.0, 13.0])

    pair = MovingLeastSquaresTransform(np.array([[0.0, 0.0], [10.0, 0.0]]), np.array([[0.0, 0.0], [0.0, 10.0]]))
    assert pair.kind == ModelType.SIMILARITY
    np.testing.assert_allclose(pair.apply(np.array([5.0, 0.0])), [0.0, 5.0], atol=1e-9)


def test_collinear_control_points_fall_back_to_similarity():
    source = np.array([[0.0, 0.0], [10.0, 0.0], [20.0, 0.0]])
    mls = MovingLeastSquaresTransform(source, source + [1.0, 1.0])
    np.testing.assert_allclose(mls.apply(np.array([5.0, 4.0])), [6.0, 5.0], atol=1e-9)


def test_invalid_control_points():
    with pytest.raises(ValueError):
        MovingLeastSquaresTransform(np.zeros((3, 2)), np.zeros((2, 2)))
    with pytest.raises(ValueError):
        MovingLeastSquaresTransform(np.zeros((0, 2)), np.zeros((0, 2)))
    with pytest.raises(ValueError):
        corners = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        MovingLeastSquaresTransform(corners, corners, kind=ModelType.HOMOGRAPHY)
