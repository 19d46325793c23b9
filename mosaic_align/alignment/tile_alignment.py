"""Rigid alignment of overlapping image tiles.

This module aligns the tiles of a montage into one consistent coordinate
system without rendering or storing any image. It includes:

- Tile creation from tile sources, with optional model regularization
- Pairing of all tiles or of tiles whose bounding boxes overlap
- Parallel feature extraction and pairwise correspondence matching
- Global optimization of the tile models, optionally with outlier filtering
- Export of the fitted transforms as matrices or as a pandas DataFrame

Extraction and matching tasks run on pools from the context's executor
registry. Results are reconciled into the tile graph by the orchestrator as
tasks complete, in completion order.
"""
import contextlib
import itertools
import logging
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from ..benchmarking_util import debug_timing
from ._features import FeatureExtractor
from ._matcher import CorrespondenceMatcher
from ._matcher import TilePairMatches
from ._models import create_model
from ._progress import ProgressSignal
from ._tile import OptimizationError
from ._tile import Tile
from ._tile import TileConfiguration
from ._tile import connect_tiles
from ._typing_utils import Matrix
from .context import FEATURES_NAMESPACE
from .context import POINT_MATCHES_NAMESPACE
from .context import AlignmentContext
from .context import iter_completed

if TYPE_CHECKING:
    from ..parameters import AlignParameters, OptimizeParameters

logger = logging.getLogger(__name__)

TilePair = tuple[Tile, Tile]


class ExtractFeaturesTask:
    def __init__(self, extractor: FeatureExtractor, source):
        self.extractor = extractor
        self.source = source

    def __call__(self) -> str:
        features = self.extractor.extract_tile(self.source)
        return f"{self.source.id}: {len(features)} features"


class MatchTilePairTask:
    def __init__(
        self,
        matcher: CorrespondenceMatcher,
        pair_index: int,
        source_a,
        source_b,
        rng: np.random.Generator,
        progress: ProgressSignal,
    ):
        self.matcher = matcher
        self.pair_index = pair_index
        self.source_a = source_a
        self.source_b = source_b
        self.rng = rng
        self.progress = progress

    def __call__(self) -> tuple[int, Optional[TilePairMatches]]:
        return self.pair_index, self.matcher.match(
            self.source_a, self.source_b, self.rng, self.progress
        )


def tiles_from_sources(
    params: "AlignParameters", sources: Iterable, fixed_ids: Iterable[str] = ()
) -> tuple[list[Tile], list[Tile]]:
    """One tile per source, starting from the source's transform.

    Locked sources and sources listed in ``fixed_ids`` become fixed tiles.
    """
    fixed_ids = {str(i) for i in fixed_ids}
    tiles: list[Tile] = []
    fixed: list[Tile] = []
    for source in sources:
        if params.regularize:
            model = create_model(
                params.desired_model_index, params.regularizer_model_index, params.lambda_
            )
        else:
            model = create_model(params.desired_model_index)
        model.matrix = np.array(source.transform, dtype=np.float64)
        tile = Tile(model, source)
        tiles.append(tile)
        if getattr(source, "locked", False) or str(source.id) in fixed_ids:
            fixed.append(tile)
    return tiles, fixed


def pair_tiles(tiles: Sequence[Tile]) -> list[TilePair]:
    return list(itertools.combinations(tiles, 2))


def pair_overlapping_tiles(tiles: Sequence[Tile]) -> list[TilePair]:
    boxes = [tile.source.bounding_box() for tile in tiles]
    return [
        (tiles[i], tiles[j])
        for i, j in itertools.combinations(range(len(tiles)), 2)
        if boxes[i].overlaps(boxes[j])
    ]


def connect_tile_pairs(
    context: AlignmentContext,
    params: "AlignParameters",
    tiles: Sequence[Tile],
    pairs: Sequence[TilePair],
    clear_cache: bool = False,
) -> list[TilePairMatches]:
    """Extract features, match every pair and connect the tiles of matched pairs.

    Raises:
        AlignmentCancelledError: A task failed or the run was interrupted.
    """
    extractor = FeatureExtractor(params.features, context.cache(FEATURES_NAMESPACE), clear_cache)
    paired = list({id(t): t for pair in pairs for t in pair}.values())

    with debug_timing("feature extraction"):
        executor = context.executors.acquire("align.features", 1)
        futures = [executor.submit(ExtractFeaturesTask(extractor, t.source)) for t in paired]
        for message in iter_completed(futures, context.progress, "Extracting features"):
            logger.debug(message)

    matcher = CorrespondenceMatcher(
        params, extractor, context.cache(POINT_MATCHES_NAMESPACE), clear_cache
    )
    results: list[TilePairMatches] = []
    with debug_timing("pairwise matching"):
        executor = context.executors.acquire("align.match", 1)
        futures = [
            executor.submit(
                MatchTilePairTask(
                    matcher,
                    k,
                    tile_a.source,
                    tile_b.source,
                    context.rng_for(f"{tile_a.id}_{tile_b.id}"),
                    context.progress,
                )
            )
            for k, (tile_a, tile_b) in enumerate(pairs)
        ]
        with contextlib.closing(iter_completed(futures, context.progress, "Matching tile pairs")) as completed:
            for k, result in completed:
                if result is None:
                    continue
                tile_a, tile_b = pairs[k]
                if result.model_found:
                    connect_tiles(tile_a, tile_b, result.inliers, params.correspondence_weight)
                else:
                    logger.info(f"Excluding pair {tile_a.id} / {tile_b.id} from the tile graph")
                results.append(result)

    connected = sum(1 for r in results if r.model_found)
    logger.info(f"Connected {connected} of {len(pairs)} tile pairs")
    return results


def build_configuration(tiles: Iterable[Tile], fixed_tiles: Iterable[Tile]) -> TileConfiguration:
    """Configuration of all tiles with at least one connection."""
    config = TileConfiguration()
    for tile in tiles:
        if tile.connections:
            config.add_tile(tile)
    for tile in fixed_tiles:
        config.fix_tile(tile)
    return config


def optimize_tile_configuration(
    params: "OptimizeParameters",
    tiles: Iterable[Tile],
    fixed_tiles: Iterable[Tile],
    pre_align: bool = False,
    progress: Optional[ProgressSignal] = None,
) -> bool:
    """Globally relax the connected tiles; returns False if optimization failed."""
    config = build_configuration(tiles, fixed_tiles)
    if not config.tiles:
        logger.warning("No tile has any correspondences, nothing to optimize")
        return False

    logger.info(
        f"Optimizing {len(config.tiles)} tiles, {len(config.fixed_tiles)} fixed"
    )
    try:
        with debug_timing("tile optimization"):
            if pre_align:
                config.pre_align()
            if params.filter_outliers:
                config.optimize_and_filter(
                    params.max_epsilon,
                    params.max_iterations,
                    params.max_plateau_width,
                    params.mean_factor,
                    progress,
                )
            else:
                config.optimize(
                    params.max_epsilon, params.max_iterations, params.max_plateau_width, progress
                )
    except OptimizationError as e:
        logger.error(f"{e}")
        return False
    return True


def align_tiles(
    context: AlignmentContext,
    params: "OptimizeParameters",
    tiles: Sequence[Tile],
    fixed_tiles: Iterable[Tile],
    tiles_are_in_place: bool = True,
    clear_cache: bool = False,
) -> bool:
    """Match and optimize ``tiles``.

    Tiles that are roughly in place are only paired with the tiles they
    overlap. Otherwise every pair is matched and the configuration is
    pre-aligned before optimization.
    """
    pairs = pair_overlapping_tiles(tiles) if tiles_are_in_place else pair_tiles(tiles)
    logger.info(f"Aligning {len(tiles)} tiles over {len(pairs)} candidate pairs")
    connect_tile_pairs(context, params, tiles, pairs, clear_cache)
    return optimize_tile_configuration(
        params, tiles, fixed_tiles, pre_align=not tiles_are_in_place, progress=context.progress
    )


def fitted_transforms(tiles: Iterable[Tile]) -> dict[str, Matrix]:
    return {tile.id: tile.model.matrix.copy() for tile in tiles}


def transforms_to_dataframe(transforms: dict[str, Matrix]) -> pd.DataFrame:
    """One row per tile with the matrix coefficients; ``m20`` and ``m21`` are zero unless projective."""
    rows = []
    for id, matrix in transforms.items():
        row = {"id": id}
        for r in range(2):
            for c in range(3):
                row[f"m{r}{c}"] = float(matrix[r, c])
        row["m20"] = float(matrix[2, 0])
        row["m21"] = float(matrix[2, 1])
        rows.append(row)
    return pd.DataFrame(rows, columns=["id", "m00", "m01", "m02", "m10", "m11", "m12", "m20", "m21"])


def align_tile_sources(
    context: AlignmentContext,
    params: "OptimizeParameters",
    sources: Sequence,
    fixed_ids: Iterable[str] = (),
    tiles_are_in_place: bool = True,
) -> Optional[dict[str, Matrix]]:
    """Align tile sources and return the fitted transform of every tile.

    Returns None when the optimization failed; nothing is applied to the sources.
    """
    tiles, fixed = tiles_from_sources(params, sources, fixed_ids)
    if not align_tiles(context, params, tiles, fixed, tiles_are_in_place):
        return None
    return fitted_transforms(tiles)
