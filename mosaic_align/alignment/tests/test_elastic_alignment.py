"""Tests for elastic alignment of layer stacks."""
import numpy as np
import pytest

from mosaic_align.alignment import elastic_alignment
from mosaic_align.alignment._features import FeatureExtractor, Features
from mosaic_align.alignment._matcher import CorrespondenceMatcher
from mosaic_align.alignment._models import Model, ModelType
from mosaic_align.alignment._models import create_model
from mosaic_align.alignment._progress import AlignmentCancelledError
from mosaic_align.alignment._tile import Tile
from mosaic_align.alignment.context import AlignmentContext
from mosaic_align.alignment.elastic_alignment import (
    AlignmentState,
    BlockMatchingSettings,
    ElasticLayerAligner,
    LayerPair,
    alignment_box,
)
from mosaic_align.alignment.executors import ExecutorRegistry, ProcessExecutorProvider
from mosaic_align.parameters import ElasticParameters
from mosaic_align.sources import ArrayLayerSource, Box
from mosaic_align.testutil import layer_stack


def aligned_params(**kwargs) -> ElasticParameters:
    settings = dict(
        is_aligned=True,
        layer_scale=1.0,
        resolution_spring_mesh=6,
        search_radius=8,
        use_local_smoothness_filter=False,
        max_epsilon=0.05,
        max_num_threads=2,
        max_num_threads_sift=2,
    )
    settings.update(kwargs)
    return ElasticParameters(**settings)


@pytest.fixture
def context():
    context = AlignmentContext(seed=3)
    yield context
    context.executors.shutdown()


class RecordingSink:
    def __init__(self):
        self.applied = {}

    def apply_layer_transform(self, layer, transform) -> None:
        self.applied[layer.id] = transform


def test_box_excludes_empty_layers_and_clips_to_view():
    layers = [
        ArrayLayerSource("a", np.zeros((10, 20)), offset=(5.0, 5.0)),
        ArrayLayerSource("b", None),
        ArrayLayerSource("c", np.zeros((10, 10)), offset=(20.0, 0.0)),
    ]
    assert tuple(alignment_box(layers)) == (5.0, 0.0, 25.0, 15.0)
    assert tuple(alignment_box(layers, Box(0.0, 0.0, 10.0, 10.0))) == (5.0, 0.0, 5.0, 10.0)
    with pytest.raises(ValueError, match="Bounding box empty"):
        alignment_box(layers, Box(100.0, 100.0, 5.0, 5.0))
    with pytest.raises(ValueError):
        alignment_box([ArrayLayerSource("x", None)])


def test_preconditions(context):
    aligner = ElasticLayerAligner(aligned_params(), context)
    with pytest.raises(ValueError):
        aligner.run([])
    with pytest.raises(ValueError):
        aligner.run(layer_stack(64, [(0, 0), (0, 0)], empty=[1]))
    assert aligner.state == AlignmentState.UNALIGNED


def test_block_radius_defaults_to_half_mesh_spacing():
    box = Box(0.0, 0.0, 2000.0, 1000.0)
    settings = BlockMatchingSettings.from_parameters(ElasticParameters(layer_scale=0.1), box)
    assert settings.block_radius == 16
    assert settings.search_radius == 20
    settings = BlockMatchingSettings.from_parameters(ElasticParameters(layer_scale=0.5, block_radius=100), box)
    assert settings.block_radius == 50
    assert settings.local_region_sigma == 100.0


def test_elastic_alignment_recovers_shift(context):
    # layer1 shows the texture 3 px right and 2 px down of layer0
    layers = layer_stack(120, [(20, 20), (23, 22)], seed=4)
    sink = RecordingSink()
    aligner = ElasticLayerAligner(aligned_params(), context)

    result = aligner.run(layers, fixed_layers=[0], sink=sink)

    assert aligner.state == AlignmentState.DONE
    assert result.layer_ids == ["layer0", "layer1"]
    assert set(sink.applied) == {"layer0", "layer1"}
    points = np.array([[40.0, 40.0], [60.0, 70.0], [80.0, 50.0]])
    np.testing.assert_allclose(result.transforms["layer0"].apply(points), points, atol=1e-6)
    np.testing.assert_allclose(result.transforms["layer1"].apply(points), points + [3.0, 2.0], atol=1.0)
    assert result.error < 1.0


def test_neighbor_layers_share_deformations(context):
    layers = layer_stack(120, [(20, 20), (23, 22)], seed=4)
    before = [ArrayLayerSource("before", None)]
    after = [ArrayLayerSource("after", None)]
    sink = RecordingSink()
    result = ElasticLayerAligner(aligned_params(), context).run(
        layers, fixed_layers=[0], layers_before=before, layers_after=after, sink=sink
    )
    assert sink.applied["before"] is result.transforms["layer0"]
    assert sink.applied["after"] is result.transforms["layer1"]


def test_fixed_layers_do_not_move(context):
    layers = layer_stack(120, [(20, 20), (23, 22)], seed=4)
    result = ElasticLayerAligner(aligned_params(), context).run(layers, fixed_layers=[1])
    points = np.array([[50.0, 50.0]])
    np.testing.assert_allclose(result.transforms["layer1"].apply(points), points, atol=1e-6)
    np.testing.assert_allclose(result.transforms["layer0"].apply(points), points - [3.0, 2.0], atol=1.0)


def test_unmatchable_layers_give_no_result(context):
    layers = [ArrayLayerSource(f"l{k}", np.zeros((120, 120))) for k in range(2)]
    assert ElasticLayerAligner(aligned_params(), context).run(layers, fixed_layers=[0]) is None


def test_cancelled_run_raises(context):
    context.progress.cancel()
    layers = layer_stack(120, [(20, 20), (23, 22)], seed=4)
    with pytest.raises(AlignmentCancelledError):
        ElasticLayerAligner(aligned_params(), context).run(layers, fixed_layers=[0])


def test_failure_streak_spans_the_neighbor_search(monkeypatch, context):
    calls = []
    successes = {("l0", "l1"), ("l2", "l3")}

    def match_layers(self, layer_a, layer_b, box, scale, layer_scale, rng=None, progress=None):
        calls.append((layer_a.id, layer_b.id))
        if (layer_a.id, layer_b.id) in successes:
            return Model(ModelType.RIGID), []
        return None, []

    monkeypatch.setattr(CorrespondenceMatcher, "match_layers", match_layers)
    monkeypatch.setattr(FeatureExtractor, "extract_layer", lambda self, layer, box, scale: Features.empty())
    layers = [ArrayLayerSource(f"l{k}", np.zeros((64, 64))) for k in range(5)]
    params = aligned_params(is_aligned=False, max_num_neighbors=3, max_num_failures=1, max_num_threads=1)

    pairs = ElasticLayerAligner(params, context).gather_candidates(layers, alignment_box(layers), 1.0)

    assert [(p.index_a, p.index_b) for p in pairs] == [(0, 1), (2, 3)]
    assert calls == [
        ("l0", "l1"), ("l0", "l2"), ("l0", "l3"),
        ("l1", "l2"),
        ("l2", "l3"), ("l2", "l4"),
        ("l3", "l4"),
    ]


def test_aligned_layers_pair_all_neighbors(context):
    layers = [ArrayLayerSource(f"l{k}", np.zeros((8, 8))) for k in range(4)]
    aligner = ElasticLayerAligner(aligned_params(max_num_neighbors=2), context)
    pairs = aligner.gather_candidates(layers, alignment_box(layers), 1.0)
    assert [(p.index_a, p.index_b) for p in pairs] == [(0, 1), (0, 2), (1, 2), (1, 3), (2, 3)]
    assert all(p.model.kind == ModelType.TRANSLATION for p in pairs)


@pytest.fixture
def process_context():
    context = AlignmentContext(executors=ExecutorRegistry(ProcessExecutorProvider(n_cpus=2)), seed=3)
    yield context
    context.executors.shutdown()


@pytest.mark.slow
def test_block_matches_from_worker_processes_merge_into_mesh_vertices(process_context):
    layers = layer_stack(120, [(20, 20), (23, 22)], seed=4)
    aligner = ElasticLayerAligner(aligned_params(), process_context)
    box = alignment_box(layers)
    meshes = aligner.create_meshes(2, box, fixed={0})
    tiles = [Tile(create_model(1), layer) for layer in layers]
    pairs = [LayerPair(0, 1, Model(ModelType.TRANSLATION))]

    aligner.block_match(layers, box, pairs, meshes, tiles, fixed={0})

    matches = tiles[1].connections[tiles[0]]
    assert len(matches) > 0
    for pm in matches:
        assert pm.p1 is meshes[1].vertices[pm.p1.index]
    assert meshes[0].external_springs == []
    assert len(meshes[1].external_springs) == len(matches)
    for _, partner, passive_index, _ in meshes[1].external_springs:
        assert partner is meshes[0]
        assert passive_index < meshes[0].num_passive_vertices
    assert len(process_context.point_cache) == 0


@pytest.mark.slow
def test_elastic_alignment_in_worker_processes(process_context):
    layers = layer_stack(120, [(20, 20), (23, 22)], seed=4)
    result = ElasticLayerAligner(aligned_params(), process_context).run(layers, fixed_layers=[0])
    points = np.array([[40.0, 40.0], [60.0, 70.0], [80.0, 50.0]])
    np.testing.assert_allclose(result.transforms["layer1"].apply(points), points + [3.0, 2.0], atol=1.0)
