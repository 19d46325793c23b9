"""Elastic alignment of a stack of layers.

The aligner moves through the states of :class:`AlignmentState`:

1. Candidate gathering: coarse feature matching between every layer and its
   following neighbors fits an approximate model per layer pair, unless the
   layers are declared aligned already.
2. Relaxation: block matching in both directions turns each layer pair
   into springs between the layers' spring meshes. A rigid pre-alignment of
   per-layer tiles initializes the meshes, then all meshes are relaxed
   together.
3. Propagation: the relaxed meshes are scaled back to full resolution and
   turned into moving least squares deformations, optionally reused for
   layers before and after the aligned range.
4. Done: the deformations are handed to a :class:`DeformationSink`.

All parallel phases run on the context's executor pools. An interruption
or a failed task aborts the run with :class:`AlignmentCancelledError`.
"""
import contextlib
import enum
import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

import numpy as np

from ..benchmarking_util import debug_timing
from ..sources import Box
from ._block_matching import local_smoothness_filter
from ._block_matching import match_by_maximal_pmcc
from ._features import FeatureExtractor
from ._matcher import CorrespondenceMatcher
from ._mls import MovingLeastSquaresTransform
from ._models import Model
from ._models import ModelType
from ._models import NotEnoughDataPointsError
from ._models import create_model
from ._point_match import PointMatch
from ._progress import ProgressSignal
from ._spring_mesh import SpringMesh
from ._spring_mesh import Vertex
from ._spring_mesh import optimize_meshes
from ._tile import OptimizationError
from ._tile import Tile
from ._tile import TileConfiguration
from .context import FEATURES_NAMESPACE
from .context import POINT_MATCHES_NAMESPACE
from .context import AlignmentContext
from .context import iter_completed

if TYPE_CHECKING:
    from ..parameters import ElasticParameters
    from ..sources import DeformationSink

logger = logging.getLogger(__name__)

# Smallest block radius used for block matching, in mesh pixels
MIN_BLOCK_RADIUS = 16
MLS_ALPHA = 2.0


class AlignmentState(enum.Enum):
    UNALIGNED = "unaligned"
    CANDIDATES_GATHERED = "candidates gathered"
    RELAXED = "relaxed"
    PROPAGATED = "propagated"
    DONE = "done"


@dataclass
class LayerPair:
    """Two layers of the aligned range and the model mapping ``b`` onto ``a``.

    Models work in mesh coordinates: box-relative pixels at the layer scale.
    """
    index_a: int
    index_b: int
    model: Model


@dataclass
class BlockMatchResult:
    pair_index: int
    matches_ab: list[PointMatch] = field(default_factory=list)
    matches_ba: list[PointMatch] = field(default_factory=list)


@dataclass
class ElasticAlignmentResult:
    layer_ids: list[str]
    transforms: dict[str, MovingLeastSquaresTransform]
    pairs: list[LayerPair]
    box: Box
    error: float
    before: Optional[MovingLeastSquaresTransform] = None
    after: Optional[MovingLeastSquaresTransform] = None


@dataclass
class BlockMatchingSettings:
    """Block matching settings in mesh pixels."""
    block_radius: int
    search_radius: int
    min_r: float
    rod_r: float
    max_curvature_r: float
    use_local_smoothness_filter: bool
    local_model_index: int
    local_region_sigma: float
    max_local_epsilon: float
    max_local_trust: float

    @classmethod
    def from_parameters(cls, params: "ElasticParameters", box: Box) -> "BlockMatchingSettings":
        scale = params.layer_scale
        block_radius = params.block_radius
        if block_radius < 0:
            block_radius = box.width / params.resolution_spring_mesh / 2
        return cls(
            block_radius=max(MIN_BLOCK_RADIUS, round(scale * block_radius)),
            search_radius=round(scale * params.search_radius),
            min_r=params.min_r,
            rod_r=params.rod_r,
            max_curvature_r=params.max_curvature_r,
            use_local_smoothness_filter=params.use_local_smoothness_filter,
            local_model_index=params.local_model_index,
            local_region_sigma=scale * params.local_region_sigma,
            max_local_epsilon=scale * params.max_local_epsilon,
            max_local_trust=params.max_local_trust,
        )


class ExtractLayerFeaturesTask:
    def __init__(self, extractor: FeatureExtractor, layer, box: Box, scale: float):
        self.extractor = extractor
        self.layer = layer
        self.box = box
        self.scale = scale

    def __call__(self) -> str:
        features = self.extractor.extract_layer(self.layer, self.box, self.scale)
        return f"{self.layer.id}: {len(features)} features"


class MatchLayerPairTask:
    def __init__(
        self,
        matcher: CorrespondenceMatcher,
        index_b: int,
        layer_a,
        layer_b,
        box: Box,
        scale: float,
        layer_scale: float,
        rng: np.random.Generator,
        progress: ProgressSignal,
    ):
        self.matcher = matcher
        self.index_b = index_b
        self.layer_a = layer_a
        self.layer_b = layer_b
        self.box = box
        self.scale = scale
        self.layer_scale = layer_scale
        self.rng = rng
        self.progress = progress

    def __call__(self) -> tuple[int, Optional[Model]]:
        model, _ = self.matcher.match_layers(
            self.layer_a,
            self.layer_b,
            self.box,
            self.scale,
            self.layer_scale,
            self.rng,
            self.progress,
        )
        return self.index_b, model


class BlockMatchPairTask:
    """Block matching of one layer pair in both directions.

    ``vertices_a`` are matched into layer b with the inverse pair model and
    ``vertices_b`` into layer a with the pair model; either may be None to
    skip that direction.
    """

    def __init__(
        self,
        pair_index: int,
        layer_a,
        layer_b,
        box: Box,
        layer_scale: float,
        model: Model,
        vertices_a: Optional[list[Vertex]],
        vertices_b: Optional[list[Vertex]],
        settings: BlockMatchingSettings,
        progress: ProgressSignal,
    ):
        self.pair_index = pair_index
        self.layer_a = layer_a
        self.layer_b = layer_b
        self.box = box
        self.layer_scale = layer_scale
        self.model = model
        self.vertices_a = vertices_a
        self.vertices_b = vertices_b
        self.settings = settings
        self.progress = progress

    def _match(self, source, target, transform: Model, vertices: list[Vertex]) -> list[PointMatch]:
        s = self.settings
        matches = match_by_maximal_pmcc(
            source[0],
            source[1],
            target[0],
            target[1],
            transform,
            s.block_radius,
            s.search_radius,
            s.min_r,
            s.rod_r,
            s.max_curvature_r,
            vertices,
            self.progress,
        )
        if s.use_local_smoothness_filter and matches:
            before = len(matches)
            matches = local_smoothness_filter(
                create_model(s.local_model_index),
                matches,
                s.local_region_sigma,
                s.max_local_epsilon,
                s.max_local_trust,
            )
            logger.debug(f"Local smoothness filter kept {len(matches)} of {before} matches")
        return matches

    def __call__(self) -> BlockMatchResult:
        raster_a = self.layer_a.render(self.box, self.layer_scale)
        raster_b = self.layer_b.render(self.box, self.layer_scale)
        self.progress.check_cancelled()

        result = BlockMatchResult(self.pair_index)
        if self.vertices_a is not None:
            result.matches_ab = self._match(raster_a, raster_b, self.model.inverse(), self.vertices_a)
        if self.vertices_b is not None:
            result.matches_ba = self._match(raster_b, raster_a, self.model, self.vertices_b)
        logger.info(
            f"{self.layer_a.id} <-> {self.layer_b.id}: "
            f"{len(result.matches_ab)} + {len(result.matches_ba)} block matches"
        )
        return result


def alignment_box(layers: Sequence, fov: Optional[Box] = None) -> Box:
    """Union of the non-empty layers' boxes, clipped to ``fov``.

    Raises:
        ValueError: All layers are empty or the box is empty.
    """
    boxes = [layer.bounding_box() for layer in layers if not layer.is_empty]
    if not boxes:
        raise ValueError("All layers in range are empty!")
    box = boxes[0]
    for other in boxes[1:]:
        box = box.union(other)
    if fov is not None:
        box = box.intersection(fov)
    if box.is_empty:
        raise ValueError("Bounding box empty.")
    return box


class ElasticLayerAligner:
    """Elastic alignment of one contiguous range of layers."""

    def __init__(self, params: "ElasticParameters", context: Optional[AlignmentContext] = None):
        self.params = params
        self.context = context or AlignmentContext()
        self.state = AlignmentState.UNALIGNED

    # ========================================================================
    # CANDIDATE GATHERING
    # ========================================================================

    def neighbor_window(self, index: int, num_layers: int) -> range:
        return range(index + 1, min(num_layers, index + 1 + self.params.max_num_neighbors))

    def gather_candidates(self, layers: Sequence, box: Box, scale: float) -> list[LayerPair]:
        """Approximate models for every layer pair within the neighbor window.

        The consecutive failure count is shared by the whole search and is
        only reset by a successful pair; once it exceeds ``max_num_failures``
        the remaining neighbors of the current layer are skipped.
        """
        p = self.params
        n = len(layers)
        if p.is_aligned:
            return [
                LayerPair(i, j, Model(ModelType.TRANSLATION))
                for i in range(n)
                for j in self.neighbor_window(i, n)
            ]

        context = self.context
        extractor = FeatureExtractor(p.features, context.cache(FEATURES_NAMESPACE), p.clear_cache)
        with debug_timing("layer feature extraction"):
            executor = context.executors.acquire("elastic.features", 1)
            context.progress.start(n, "Extracting layer features")
            try:
                for start in range(0, n, p.max_num_threads_sift):
                    futures = [
                        executor.submit(ExtractLayerFeaturesTask(extractor, layer, box, scale))
                        for layer in layers[start:start + p.max_num_threads_sift]
                    ]
                    for message in iter_completed(
                        futures, context.progress, "Extracting layer features", track=False
                    ):
                        logger.debug(message)
            finally:
                context.progress.finish()

        matcher = CorrespondenceMatcher(
            p, extractor, context.cache(POINT_MATCHES_NAMESPACE), p.clear_cache
        )
        pairs: list[LayerPair] = []
        num_failures = 0
        total = sum(len(self.neighbor_window(i, n)) for i in range(n))
        executor = context.executors.acquire("elastic.match", 1)
        context.progress.start(total, "Matching layer pairs")
        try:
            with debug_timing("layer matching"):
                for i in range(n):
                    window = list(self.neighbor_window(i, n))
                    give_up = False
                    for start in range(0, len(window), p.max_num_threads):
                        futures = [
                            executor.submit(
                                MatchLayerPairTask(
                                    matcher,
                                    j,
                                    layers[i],
                                    layers[j],
                                    box,
                                    scale,
                                    p.layer_scale,
                                    context.rng_for(f"{layers[i].id}_{layers[j].id}"),
                                    context.progress,
                                )
                            )
                            for j in window[start:start + p.max_num_threads]
                        ]
                        batch = sorted(
                            iter_completed(futures, context.progress, "Matching layer pairs", track=False),
                            key=lambda r: r[0],
                        )
                        for j, model in batch:
                            if model is not None:
                                pairs.append(LayerPair(i, j, model))
                                num_failures = 0
                            else:
                                num_failures += 1
                                if num_failures > p.max_num_failures:
                                    give_up = True
                                    break
                        if give_up:
                            break
        finally:
            context.progress.finish()
        return pairs

    # ========================================================================
    # RELAXATION
    # ========================================================================

    def create_meshes(self, num_layers: int, box: Box, fixed: set[int]) -> list[SpringMesh]:
        p = self.params
        width = math.ceil(box.width * p.layer_scale)
        height = math.ceil(box.height * p.layer_scale)
        meshes = []
        for k in range(num_layers):
            mesh = SpringMesh(
                p.resolution_spring_mesh,
                width,
                height,
                p.stiffness_spring_mesh,
                p.max_stretch_spring_mesh * p.layer_scale,
                p.damp_spring_mesh,
            )
            mesh.fixed = k in fixed
            meshes.append(mesh)
        return meshes

    def block_match(
        self,
        layers: Sequence,
        box: Box,
        pairs: list[LayerPair],
        meshes: list[SpringMesh],
        tiles: list[Tile],
        fixed: set[int],
    ) -> TileConfiguration:
        """Turn block matches into mesh springs and connect the per-layer tiles."""
        p = self.params
        context = self.context
        settings = BlockMatchingSettings.from_parameters(p, box)
        logger.info(
            f"Block matching with radius {settings.block_radius} and search radius "
            f"{settings.search_radius} mesh pixels"
        )

        point_cache = context.point_cache
        for mesh in meshes:
            point_cache.register(mesh.vertices)

        init_meshes = TileConfiguration()
        try:
            executor = context.executors.acquire("elastic.blockmatch", 1.0)
            futures = [
                executor.submit(
                    BlockMatchPairTask(
                        k,
                        layers[pair.index_a],
                        layers[pair.index_b],
                        box,
                        p.layer_scale,
                        pair.model,
                        None if pair.index_a in fixed else meshes[pair.index_a].vertices,
                        None if pair.index_b in fixed else meshes[pair.index_b].vertices,
                        settings,
                        context.progress,
                    )
                )
                for k, pair in enumerate(pairs)
                if not (pair.index_a in fixed and pair.index_b in fixed)
            ]
            with debug_timing("block matching"):
                with contextlib.closing(iter_completed(futures, context.progress, "Block matching")) as completed:
                    for result in completed:
                        pair = pairs[result.pair_index]
                        point_cache.synchronize(result.matches_ab)
                        point_cache.synchronize(result.matches_ba)
                        self._add_springs(pair, result, meshes, tiles, init_meshes, fixed)
        finally:
            point_cache.clear()

        for k in fixed:
            init_meshes.fix_tile(tiles[k])
        return init_meshes

    @staticmethod
    def _add_springs(
        pair: LayerPair,
        result: BlockMatchResult,
        meshes: list[SpringMesh],
        tiles: list[Tile],
        init_meshes: TileConfiguration,
        fixed: set[int],
    ) -> None:
        a, b = pair.index_a, pair.index_b
        constant = 1.0 / (b - a)
        min_matches = pair.model.min_num_matches
        for source, target, matches in ((a, b, result.matches_ab), (b, a, result.matches_ba)):
            if source in fixed:
                continue
            for pm in matches:
                passive = meshes[target].add_passive_vertex(pm.p2)
                meshes[source].add_spring(pm.p1, meshes[target], passive, constant)
            if len(matches) > min_matches:
                init_meshes.add_tile(tiles[source])
                init_meshes.add_tile(tiles[target])
                tiles[source].connect(tiles[target], matches)

    def relax(
        self,
        meshes: list[SpringMesh],
        tiles: list[Tile],
        init_meshes: TileConfiguration,
    ) -> float:
        """Pre-align the meshes with their tiles, then relax all meshes together.

        Raises:
            OptimizationError: The rigid pre-alignment failed.
            NotEnoughDataPointsError: No springs connect the meshes.
        """
        p = self.params
        progress = self.context.progress
        with debug_timing("mesh pre-alignment"):
            init_meshes.optimize(
                p.max_epsilon * p.layer_scale,
                p.max_iterations_optimize,
                p.max_plateau_width_optimize,
                progress,
            )
        for mesh, tile in zip(meshes, tiles):
            mesh.init(tile.model)
        with debug_timing("mesh relaxation"):
            return optimize_meshes(
                meshes,
                p.max_epsilon * p.layer_scale,
                p.max_iterations_spring_mesh,
                p.max_plateau_width_spring_mesh,
                progress,
            )

    # ========================================================================
    # PROPAGATION
    # ========================================================================

    def deformations(
        self, layers: Sequence, meshes: list[SpringMesh], box: Box
    ) -> dict[str, MovingLeastSquaresTransform]:
        """Moving least squares transform per layer in full resolution world coordinates."""
        offset = np.array([box.x, box.y])
        scale = self.params.layer_scale
        transforms = {}
        for layer, mesh in zip(layers, meshes):
            source = mesh.local_coordinates / scale + offset
            target = mesh.world_coordinates / scale + offset
            transforms[str(layer.id)] = MovingLeastSquaresTransform(
                source, target, kind=ModelType.AFFINE, alpha=MLS_ALPHA
            )
        return transforms

    def run(
        self,
        layers: Sequence,
        fixed_layers: Iterable[int] = (),
        fov: Optional[Box] = None,
        layers_before: Sequence = (),
        layers_after: Sequence = (),
        sink: Optional["DeformationSink"] = None,
    ) -> Optional[ElasticAlignmentResult]:
        """Elastically align ``layers``.

        Args:
            layers: The contiguous range of layers, in stack order.
            fixed_layers: Indices into ``layers`` of reference layers that stay in place.
            fov: Optional field of view the alignment box is clipped to.
            layers_before: Layers before the range, deformed like the first layer.
            layers_after: Layers after the range, deformed like the last layer.
            sink: Receives every deformation; nothing is applied without it.

        Returns:
            The result, or None if the relaxation had too few correspondences.

        Raises:
            ValueError: Configuration errors such as an empty bounding box.
            AlignmentCancelledError: The run was interrupted or a task failed.
        """
        self.state = AlignmentState.UNALIGNED
        p = self.params
        if len(layers) == 0:
            raise ValueError("No layers to align")
        box = alignment_box(layers, fov)
        fixed_input = set(fixed_layers)
        aligned = [(k, layer) for k, layer in enumerate(layers) if not layer.is_empty]
        if len(aligned) < 2:
            raise ValueError("At least two non-empty layers are required")
        aligned_layers = [layer for _, layer in aligned]
        fixed = {pos for pos, (k, _) in enumerate(aligned) if k in fixed_input}
        scale = min(1.0, p.features.max_octave_size / box.width, p.features.max_octave_size / box.height)
        logger.info(
            f"Aligning {len(aligned_layers)} layers in box {tuple(round(v, 1) for v in box)}, "
            f"{len(fixed)} fixed, feature scale {scale:.3f}"
        )

        pairs = self.gather_candidates(aligned_layers, box, scale)
        self.state = AlignmentState.CANDIDATES_GATHERED
        logger.info(f"{len(pairs)} layer pairs with approximate models")

        tiles = [Tile(create_model(p.desired_model_index), layer) for layer in aligned_layers]
        meshes = self.create_meshes(len(aligned_layers), box, fixed)
        init_meshes = self.block_match(aligned_layers, box, pairs, meshes, tiles, fixed)
        try:
            error = self.relax(meshes, tiles, init_meshes)
        except (NotEnoughDataPointsError, OptimizationError) as e:
            logger.error(f"Elastic alignment aborted: {e}")
            return None
        self.state = AlignmentState.RELAXED

        transforms = self.deformations(aligned_layers, meshes, box)
        result = ElasticAlignmentResult(
            layer_ids=[str(layer.id) for layer in aligned_layers],
            transforms=transforms,
            pairs=pairs,
            box=box,
            error=error / p.layer_scale,
        )
        if layers_before:
            result.before = transforms[result.layer_ids[0]]
        if layers_after:
            result.after = transforms[result.layer_ids[-1]]
        self.state = AlignmentState.PROPAGATED

        if sink is not None:
            for layer in aligned_layers:
                sink.apply_layer_transform(layer, transforms[str(layer.id)])
            for layer in layers_before:
                sink.apply_layer_transform(layer, result.before)
            for layer in layers_after:
                sink.apply_layer_transform(layer, result.after)
        self.state = AlignmentState.DONE
        return result
