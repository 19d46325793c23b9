"""Tests for tiles, their connections and the global optimizer."""
import threading

import numpy as np
import pytest

from mosaic_align.alignment._models import Model, ModelType
from mosaic_align.alignment._point_match import Point, PointMatch
from mosaic_align.alignment._progress import AlignmentCancelledError, ProgressSignal
from mosaic_align.alignment._tile import (
    OptimizationError,
    Tile,
    TileConfiguration,
    connect_tiles,
    locked_pair,
)


def rigid(theta: float, tx: float, ty: float) -> np.ndarray:
    c, s = np.cos(theta), np.sin(theta)
    return np.array([[c, -s, tx], [s, c, ty], [0.0, 0.0, 1.0]])


def apply(matrix: np.ndarray, p: np.ndarray) -> np.ndarray:
    return p @ matrix[:2, :2].T + matrix[:2, 2]


def correspondences(
    world_a: np.ndarray, world_b: np.ndarray, n: int = 20, seed: int = 0
) -> list[PointMatch]:
    """Matches from tile a to tile b for tiles whose true world transforms are given."""
    p = np.random.default_rng(seed).uniform(0, 100, size=(n, 2))
    q = apply(np.linalg.inv(world_b), apply(world_a, p))
    return [PointMatch(Point(a), Point(b)) for a, b in zip(p, q)]


@pytest.fixture
def chain():
    truth = [np.eye(3), rigid(0.0, 80.0, 5.0), rigid(0.1, 160.0, -3.0)]
    tiles = [Tile(Model(ModelType.RIGID)) for _ in truth]
    tiles[1].connect(tiles[0], correspondences(truth[1], truth[0], seed=1))
    tiles[2].connect(tiles[1], correspondences(truth[2], truth[1], seed=2))
    config = TileConfiguration()
    config.add_tiles(tiles)
    config.fix_tile(tiles[0])
    return config, tiles, truth


def test_connect_adds_flipped_matches():
    a, b = Tile(Model()), Tile(Model())
    matches = correspondences(np.eye(3), rigid(0, 5, 5), n=5)
    a.connect(b, matches)
    assert a.connections[b] == matches
    for forward, backward in zip(a.connections[b], b.connections[a]):
        assert backward.p1 is forward.p2
        assert backward.p2 is forward.p1
    assert a.connected_tiles == [b]
    assert len(b.matches) == 5


def test_connect_tiles_replaces_and_weights():
    a, b = Tile(Model()), Tile(Model())
    connect_tiles(a, b, correspondences(np.eye(3), np.eye(3), n=3), weight=1.0)
    replacement = correspondences(np.eye(3), np.eye(3), n=4, seed=5)
    connect_tiles(a, b, replacement, weight=2.5)
    assert len(a.connections[b]) == 4
    assert all(pm.weight == 2.5 for pm in b.connections[a])

    connect_tiles(a, b, [], weight=1.0)
    assert b not in a.connections and a not in b.connections


def test_locked_pair_holds_both_locks():
    a, b = Tile(Model()), Tile(Model())
    acquired = []

    def try_lock(tile):
        acquired.append(tile.lock.acquire(blocking=False))
        if acquired[-1]:
            tile.lock.release()

    with locked_pair(b, a):
        for tile in (a, b):
            thread = threading.Thread(target=try_lock, args=(tile,))
            thread.start()
            thread.join()
    assert acquired == [False, False]
    with locked_pair(a, a):
        pass


def test_three_tile_chain_composes(chain):
    config, tiles, truth = chain
    config.optimize(max_epsilon=0.005, max_iterations=5000, max_plateau_width=500)

    points = np.array([[0.0, 0.0], [50.0, 80.0], [100.0, 10.0]])
    for tile, world in zip(tiles, truth):
        np.testing.assert_allclose(tile.model.apply(points), apply(world, points), atol=0.1)
    np.testing.assert_array_equal(tiles[0].model.matrix, np.eye(3))


def test_pre_align_follows_spanning_tree(chain):
    config, tiles, truth = chain
    aligned = config.pre_align()
    assert aligned == [tiles[1], tiles[2]]
    for tile, world in zip(tiles, truth):
        np.testing.assert_allclose(tile.model.matrix, world, atol=1e-6)
    assert config.compute_error() < 1e-6


def test_optimizer_is_idempotent(chain):
    config, tiles, _ = chain
    config.optimize(0.01, 5000, 500)
    before = [tile.model.matrix.copy() for tile in tiles]
    config.optimize(0.01, 5000, 500)
    for tile, matrix in zip(tiles, before):
        np.testing.assert_array_equal(tile.model.matrix, matrix)


def test_no_movable_tiles_is_noop(chain):
    config, tiles, _ = chain
    for tile in tiles:
        config.fix_tile(tile)
    config.optimize(0.01, 100, 10)
    for tile in tiles:
        np.testing.assert_array_equal(tile.model.matrix, np.eye(3))


def test_fixing_a_foreign_tile_is_ignored(chain):
    config, _, _ = chain
    stranger = Tile(Model())
    config.fix_tile(stranger)
    assert stranger not in config.fixed_tiles
    assert stranger not in config


def test_fitting_failure_restores_models():
    fixed, loose = Tile(Model(ModelType.RIGID)), Tile(Model(ModelType.RIGID))
    start = rigid(0.2, 3.0, 4.0)
    loose.model.matrix = start.copy()
    loose.connect(fixed, [PointMatch(Point([0.0, 0.0]), Point([50.0, 50.0]))])
    config = TileConfiguration()
    config.add_tiles([fixed, loose])
    config.fix_tile(fixed)

    with pytest.raises(OptimizationError):
        config.optimize(0.01, 100, 10)
    np.testing.assert_array_equal(loose.model.matrix, start)


def test_cancellation_restores_models(chain):
    config, tiles, _ = chain
    progress = ProgressSignal()
    progress.cancel()
    with pytest.raises(AlignmentCancelledError):
        config.optimize(0.01, 100, 10, progress)
    np.testing.assert_array_equal(tiles[2].model.matrix, np.eye(3))


def test_outlier_filter_removes_bad_correspondence():
    fixed, loose = Tile(Model(ModelType.TRANSLATION)), Tile(Model(ModelType.TRANSLATION))
    matches = correspondences(rigid(0, 10.0, 0.0), np.eye(3), n=20, seed=3)
    outlier = PointMatch(Point([20.0, 20.0]), Point([130.0, 20.0]))
    loose.connect(fixed, matches + [outlier])
    config = TileConfiguration()
    config.add_tiles([fixed, loose])
    config.fix_tile(fixed)

    config.optimize_and_filter(0.01, 1000, 100, mean_factor=3.0)

    assert outlier not in loose.connections[fixed]
    assert len(loose.connections[fixed]) == 20
    np.testing.assert_allclose(loose.model.matrix[:2, 2], [10.0, 0.0], atol=1e-6)


def test_graph_weights_are_match_counts(chain):
    config, tiles, _ = chain
    graph = config.graph()
    assert graph.number_of_edges() == 2
    assert graph[tiles[0]][tiles[1]]["weight"] == 20
