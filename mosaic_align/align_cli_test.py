import pathlib

import numpy as np
import pandas as pd
import pytest
import tifffile

from . import align_cli
from .alignment._features import FeatureExtractor, Features
from .alignment._matcher import CorrespondenceMatcher, TilePairMatches
from .alignment._models import Model, ModelType
from .alignment._point_match import Point, PointMatch
from .parameters import AlignmentJobParameters, AlignParameters, ElasticParameters, OptimizeParameters
from .testutil import random_texture, shifted_crops

STEP = 48


def tile_offset(tile_id: str) -> np.ndarray:
    return np.array([int(pathlib.Path(tile_id).stem.removeprefix("tile")) * STEP, 0.0])


@pytest.fixture
def exact_matcher(monkeypatch):
    def match(self, tile_a, tile_b, rng=None, progress=None):
        p = np.random.default_rng(0).uniform(0, 40, size=(12, 2))
        q = p + tile_offset(tile_a.id) - tile_offset(tile_b.id)
        inliers = [PointMatch(Point(a), Point(b)) for a, b in zip(p, q)]
        return TilePairMatches(tile_a.id, tile_b.id, len(inliers), inliers, Model(ModelType.TRANSLATION))

    monkeypatch.setattr(CorrespondenceMatcher, "match", match)
    monkeypatch.setattr(FeatureExtractor, "extract_tile", lambda self, tile: Features.empty())


def write_montage(folder: pathlib.Path, errors: list[tuple[float, float]]) -> None:
    texture = random_texture((64, 64 + STEP * len(errors)))
    rows = []
    for k, crop in enumerate(shifted_crops(texture, 64, [(k * STEP, 0) for k in range(len(errors))])):
        name = f"tile{k}.tif"
        tifffile.imwrite(folder / name, crop.astype(np.float32))
        rows.append({"filename": name, "x": k * STEP + errors[k][0], "y": errors[k][1]})
    pd.DataFrame(rows).to_csv(folder / align_cli.COORDINATES_FILE, index=False)


def test_montage_run_writes_transforms(tmp_path, exact_matcher):
    write_montage(tmp_path, [(0.0, 0.0), (3.0, -2.0), (5.0, 1.0)])
    params = AlignmentJobParameters(
        input_folder=str(tmp_path),
        mode="montage",
        output_folder=str(tmp_path / "out"),
        montage=OptimizeParameters(desired_model_index=0, max_epsilon=0.01),
        show_progress=False,
    )

    output_path = align_cli.run(params)

    assert output_path == str(tmp_path / "out" / align_cli.TRANSFORMS_FILE)
    table = pd.read_csv(output_path)
    assert list(table["id"]) == ["tile0.tif", "tile1.tif", "tile2.tif"]
    np.testing.assert_allclose(table["m02"], [0.0, STEP, 2 * STEP], atol=0.05)
    np.testing.assert_allclose(table["m12"], 0.0, atol=0.05)


def test_montage_needs_coordinates(tmp_path):
    params = AlignmentJobParameters(input_folder=str(tmp_path), mode="montage")
    with pytest.raises(ValueError, match="coordinates.csv"):
        align_cli.read_tile_sources(params)

    pd.DataFrame({"filename": ["a.tif"], "x": [0]}).to_csv(tmp_path / align_cli.COORDINATES_FILE, index=False)
    with pytest.raises(ValueError, match="lacks the columns"):
        align_cli.read_tile_sources(params)


def test_elastic_run_writes_control_points(tmp_path):
    texture = random_texture((150, 150), seed=4)
    for k, crop in enumerate(shifted_crops(texture, 120, [(20, 20), (23, 22)])):
        tifffile.imwrite(tmp_path / f"layer{k}.tif", crop.astype(np.float32))
    params = AlignmentJobParameters(
        input_folder=str(tmp_path),
        elastic=ElasticParameters(
            is_aligned=True,
            layer_scale=1.0,
            resolution_spring_mesh=6,
            search_radius=8,
            use_local_smoothness_filter=False,
            max_epsilon=0.05,
            max_num_threads=2,
            max_num_threads_sift=2,
        ),
        show_progress=False,
    )

    output_path = align_cli.run(params)

    assert output_path == str(tmp_path) + "_aligned/" + align_cli.TRANSFORMS_FILE
    table = pd.read_csv(output_path)
    assert list(table.columns) == ["layer", "source_x", "source_y", "target_x", "target_y"]
    assert set(table["layer"]) == {"layer0.tif", "layer1.tif"}
    moved = table[table["layer"] == "layer1.tif"]
    inside = (moved["source_x"].between(30, 90)) & (moved["source_y"].between(30, 90))
    np.testing.assert_allclose(moved["target_x"][inside] - moved["source_x"][inside], 3.0, atol=1.0)
    np.testing.assert_allclose(moved["target_y"][inside] - moved["source_y"][inside], 2.0, atol=1.0)


def test_elastic_needs_images(tmp_path):
    with pytest.raises(ValueError, match="No images"):
        align_cli.read_layer_sources(AlignmentJobParameters(input_folder=str(tmp_path)))


def test_main_exits_on_failed_alignment(tmp_path, monkeypatch):
    write_montage(tmp_path, [(0.0, 0.0), (2.0, 0.0)])
    monkeypatch.setattr(
        CorrespondenceMatcher,
        "match",
        lambda self, a, b, rng=None, progress=None: TilePairMatches(a.id, b.id, 0),
    )
    monkeypatch.setattr(FeatureExtractor, "extract_tile", lambda self, tile: Features.empty())

    with pytest.raises(SystemExit) as exit_info:
        align_cli.main(["--input_folder", str(tmp_path), "--mode", "montage"])
    assert exit_info.value.code == 1
    assert not (pathlib.Path(str(tmp_path) + "_aligned") / align_cli.TRANSFORMS_FILE).exists()


def test_linear_run_writes_chained_transforms(tmp_path, monkeypatch):
    origins = {"layer0.tif": (0.0, 0.0), "layer1.tif": (4.0, 1.0), "layer2.tif": (6.0, -3.0)}
    for name in origins:
        tifffile.imwrite(tmp_path / name, np.ones((64, 64), dtype=np.float32))
    rng = np.random.default_rng(1)
    points = rng.uniform(0, 64, size=(60, 2))
    descriptors = rng.uniform(0, 1, size=(60, 16)).astype(np.float32)

    def extract_layer(self, layer, box, scale):
        return Features((points - origins[layer.id]) * scale, descriptors)

    monkeypatch.setattr(FeatureExtractor, "extract_layer", extract_layer)
    params = AlignmentJobParameters(
        input_folder=str(tmp_path),
        mode="linear",
        linear=AlignParameters(expected_model_index=0, max_epsilon=1.0),
        show_progress=False,
    )

    table = pd.read_csv(align_cli.run(params))

    assert list(table["id"]) == ["layer0.tif", "layer1.tif", "layer2.tif"]
    np.testing.assert_allclose(table["m02"], [0.0, 4.0, 6.0], atol=1e-6)
    np.testing.assert_allclose(table["m12"], [0.0, 1.0, -3.0], atol=1e-6)
