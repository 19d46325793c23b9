"""Tests for chained layer alignment and tile collection alignment."""
import numpy as np
import pytest

from mosaic_align.alignment._features import FeatureExtractor, Features
from mosaic_align.alignment.context import AlignmentContext
from mosaic_align.alignment.linear_alignment import (
    align_layers_linearly,
    align_tile_collections,
    box_model_to_world,
    feature_scale,
)
from mosaic_align.parameters import AlignParameters, FeatureParameters
from mosaic_align.sources import ArrayLayerSource, ArrayTileSource, Box, TileCollectionLayer
from mosaic_align.testutil import layer_stack

SIZE = 120


def translation(x: float, y: float) -> np.ndarray:
    matrix = np.eye(3)
    matrix[:2, 2] = (x, y)
    return matrix


class FeatureField:
    """Features at fixed texture positions with unique descriptors.

    A layer showing the texture from ``origin`` sees every field point ``g``
    at ``g - origin``.
    """

    def __init__(self, n: int = 120, extent: float = 200.0, seed: int = 0):
        rng = np.random.default_rng(seed)
        self.points = rng.uniform(0, extent, size=(n, 2))
        self.descriptors = rng.uniform(0, 1, size=(n, 16)).astype(np.float32)

    def features(self, origin, box: Box, scale: float) -> Features:
        local = self.points - np.asarray(origin, dtype=np.float64)
        inside = (
            (local[:, 0] >= box.x) & (local[:, 0] < box.max_x)
            & (local[:, 1] >= box.y) & (local[:, 1] < box.max_y)
        )
        locations = (local[inside] - [box.x, box.y]) * scale
        return Features(locations, self.descriptors[inside])


@pytest.fixture
def context():
    context = AlignmentContext(seed=5)
    yield context
    context.executors.shutdown()


@pytest.fixture
def field_features(monkeypatch):
    """Maps layer ids to ``(field, origin)``; extraction reads features from the field."""
    views = {}

    def extract_layer(self, layer, box, scale):
        field, origin = views[layer.id]
        return field.features(origin, box, scale)

    monkeypatch.setattr(FeatureExtractor, "extract_layer", extract_layer)
    return views


def linear_params(**kwargs) -> AlignParameters:
    settings = dict(
        expected_model_index=0,
        max_epsilon=2.0,
        min_num_inliers=7,
        features=FeatureParameters(max_octave_size=60),
    )
    settings.update(kwargs)
    return AlignParameters(**settings)


class RecordingSink:
    def __init__(self):
        self.applied = {}

    def apply_layer_transform(self, layer, transform) -> None:
        self.applied[layer.id] = transform


def test_feature_scale():
    assert feature_scale(600, Box(0, 0, 300, 200)) == 1.0
    assert feature_scale(600, Box(0, 0, 1200, 300)) == 0.5
    assert feature_scale(100, Box(0, 0, 50, 50), Box(0, 0, 400, 100)) == 0.25


def test_box_model_to_world():
    # a shift of (2, 1) rendering pixels at half scale between offset boxes
    world = box_model_to_world(translation(2.0, 1.0), 0.5, Box(10, 20, 100, 100), Box(30, 0, 100, 100))
    point = np.array([15.0, 25.0, 1.0])
    # source rendering pixel (2.5, 2.5) -> target rendering pixel (4.5, 3.5) -> world (39, 7)
    np.testing.assert_allclose(world @ point, [39.0, 7.0, 1.0])


def test_layers_are_chained(context, field_features):
    origins = [(20.0, 20.0), (26.0, 23.0), (22.0, 28.0), (30.0, 25.0)]
    field = FeatureField()
    layers = [ArrayLayerSource(f"layer{k}", np.ones((SIZE, SIZE))) for k in range(len(origins))]
    for layer, origin in zip(layers, origins):
        field_features[layer.id] = (field, origin)
    sink = RecordingSink()

    transforms = align_layers_linearly(context, linear_params(), layers, sink=sink)

    assert list(transforms) == ["layer0", "layer1", "layer2", "layer3"]
    np.testing.assert_array_equal(transforms["layer0"], np.eye(3))
    for layer, origin in zip(layers, origins):
        expected = np.subtract(origin, origins[0])
        np.testing.assert_allclose(transforms[layer.id][:2, 2], expected, atol=1e-6)
        np.testing.assert_allclose(transforms[layer.id][:2, :2], np.eye(2), atol=1e-9)
    assert set(sink.applied) == {"layer1", "layer2", "layer3"}


def test_unmatched_layer_restarts_the_chain(context, field_features):
    origins = [(20.0, 20.0), (26.0, 23.0), (22.0, 28.0), (30.0, 25.0)]
    field = FeatureField()
    foreign = FeatureField(seed=1)
    layers = [ArrayLayerSource(f"layer{k}", np.ones((SIZE, SIZE))) for k in range(4)]
    layers.insert(2, ArrayLayerSource("gap", None))
    for k, layer in enumerate(l for l in layers if not l.is_empty):
        field_features[layer.id] = (foreign if k == 1 else field, origins[k])
    sink = RecordingSink()

    transforms = align_layers_linearly(context, linear_params(), layers, sink=sink)

    assert "gap" not in transforms
    for layer_id in ("layer0", "layer1", "layer2"):
        np.testing.assert_array_equal(transforms[layer_id], np.eye(3))
    # layer3 is aligned to the layer2 that stayed in place
    np.testing.assert_allclose(transforms["layer3"][:2, 2], np.subtract(origins[3], origins[2]), atol=1e-6)
    assert set(sink.applied) == {"layer3"}


def test_no_layers(context):
    assert align_layers_linearly(context, linear_params(), [ArrayLayerSource("e", None)]) == {}


def tile(id: str, x: float, y: float) -> ArrayTileSource:
    return ArrayTileSource(id, np.ones((100, 100)), translation(x, y))


def test_tile_collection_moves_onto_reference(context, field_features):
    # group a sits 7 px right and 2 px down of where its content belongs
    error = (7.0, 2.0)
    tiles_a = [tile("a0", 10.0, 5.0), tile("a1", 90.0, 5.0)]
    tiles_b = [tile("b0", 0.0, 0.0), tile("b1", 80.0, 0.0)]
    field = FeatureField()
    field_features["a0,a1"] = (field, (-error[0], -error[1]))
    field_features["b0,b1"] = (field, (0.0, 0.0))
    params = linear_params(features=FeatureParameters(max_octave_size=90))

    transform = align_tile_collections(context, params, tiles_a, tiles_b)

    np.testing.assert_allclose(transform[:2, 2], [-7.0, -2.0], atol=1e-6)
    np.testing.assert_allclose(tiles_a[0].transform[:2, 2], [3.0, 3.0], atol=1e-6)
    np.testing.assert_allclose(tiles_a[1].transform[:2, 2], [83.0, 3.0], atol=1e-6)
    np.testing.assert_array_equal(tiles_b[1].transform, translation(80.0, 0.0))


def test_tile_collection_without_model_is_untouched(context, field_features):
    tiles_a = [tile("a0", 0.0, 0.0)]
    tiles_b = [tile("b0", 0.0, 0.0)]
    field_features["a0"] = (FeatureField(seed=2), (0.0, 0.0))
    field_features["b0"] = (FeatureField(seed=3), (0.0, 0.0))

    assert align_tile_collections(context, linear_params(), tiles_a, tiles_b) is None
    np.testing.assert_array_equal(tiles_a[0].transform, np.eye(3))
    with pytest.raises(ValueError):
        align_tile_collections(context, linear_params(), [], tiles_b)


def test_tile_collection_layer_renders_tiles_in_place():
    left = ArrayTileSource("l", np.full((10, 10), 1.0), translation(0.0, 0.0))
    right = ArrayTileSource("r", np.full((10, 10), 2.0), translation(15.0, 0.0))
    layer = TileCollectionLayer("lr", [left, right])
    assert tuple(layer.bounding_box()) == (0.0, 0.0, 25.0, 10.0)

    image, mask = layer.render(layer.bounding_box(), 1.0)
    assert image.shape == (10, 25)
    assert image[5, 5] == 1.0
    assert image[5, 20] == 2.0
    assert not mask[5, 12]
    assert mask[:, :10].all()


@pytest.mark.slow
def test_sift_layers_are_chained(context):
    layers = layer_stack(200, [(10, 10), (16, 13), (12, 18)], seed=7)
    params = AlignParameters(expected_model_index=1, max_epsilon=3.0, min_num_inliers=7)

    transforms = align_layers_linearly(context, params, layers)

    np.testing.assert_allclose(transforms["layer1"][:2, 2], [6.0, 3.0], atol=1.0)
    np.testing.assert_allclose(transforms["layer2"][:2, 2], [2.0, 8.0], atol=1.0)
