"""Alignment by chaining pairwise models, without global relaxation.

Two operations live here:

- :func:`align_layers_linearly` matches every layer of a stack against the
  previous non-empty layer and composes the fitted models along the stack.
  A layer without a model stays in place and restarts the chain.
- :func:`align_tile_collections` fits one model between two groups of tiles
  and pre-transforms the first group onto the second.

Features are extracted from flattened renderings at a reduced scale, so the
fitted models work in scaled, box-relative pixels. :func:`box_model_to_world`
lifts them back to full resolution world coordinates.
"""
import contextlib
import logging
from typing import TYPE_CHECKING, Optional, Sequence

import numpy as np

from ..benchmarking_util import debug_timing
from ..sources import Box
from ..sources import TileCollectionLayer
from ._consensus import find_model
from ._features import FeatureExtractor
from ._features import Features
from ._features import match_features
from ._models import create_model
from ._typing_utils import Matrix
from .context import FEATURES_NAMESPACE
from .context import AlignmentContext
from .context import iter_completed

if TYPE_CHECKING:
    from ..parameters import AlignParameters
    from ..sources import DeformationSink

logger = logging.getLogger(__name__)


def feature_scale(max_octave_size: int, *boxes: Box) -> float:
    """Largest scale, at most 1, at which every box fits into ``max_octave_size``."""
    return min([1.0] + [max_octave_size / side for box in boxes for side in (box.width, box.height)])


def box_model_to_world(model_matrix: Matrix, scale: float, source_box: Box, target_box: Box) -> Matrix:
    """World transform of a model fitted between renderings of two boxes at ``scale``.

    The model maps pixels of the ``source_box`` rendering to pixels of the
    ``target_box`` rendering; the result maps world coordinates of the
    source content onto the world coordinates of the target content.
    """
    to_scaled = np.array(
        [[scale, 0.0, -scale * source_box.x], [0.0, scale, -scale * source_box.y], [0.0, 0.0, 1.0]]
    )
    from_scaled = np.array(
        [[1.0 / scale, 0.0, target_box.x], [0.0, 1.0 / scale, target_box.y], [0.0, 0.0, 1.0]]
    )
    return from_scaled @ model_matrix @ to_scaled


def fit_features(
    params: "AlignParameters",
    features_from: Features,
    features_to: Features,
    scale: float,
    rng: Optional[np.random.Generator] = None,
) -> Optional[Matrix]:
    """Model matrix from ``features_from`` to ``features_to`` or None.

    Distance thresholds are given in full resolution pixels and scaled
    with the features.
    """
    candidates = match_features(features_from, features_to, params.rod)
    model = create_model(params.expected_model_index)
    found, inliers = find_model(
        model,
        candidates,
        max_epsilon=params.max_epsilon * scale,
        min_inlier_ratio=params.min_inlier_ratio,
        min_num_inliers=params.min_num_inliers,
        reject_identity=params.reject_identity,
        identity_tolerance=params.identity_tolerance * scale,
        max_trials=params.max_trials,
        rng=rng,
    )
    if not found:
        logger.info(f"No model found ({len(candidates)} correspondence candidates)")
        return None
    logger.info(
        f"{model.describe()} model found with {len(inliers)} correspondences of "
        f"{len(candidates)} candidates, average residual error {model.cost / scale:.3f} px"
    )
    return model.matrix.copy()


class ExtractLayerTask:
    def __init__(self, extractor: FeatureExtractor, index: int, layer, scale: float):
        self.extractor = extractor
        self.index = index
        self.layer = layer
        self.scale = scale

    def __call__(self) -> tuple[int, Features]:
        return self.index, self.extractor.extract_layer(self.layer, self.layer.bounding_box(), self.scale)


def align_layers_linearly(
    context: AlignmentContext,
    params: "AlignParameters",
    layers: Sequence,
    sink: Optional["DeformationSink"] = None,
    clear_cache: bool = False,
) -> dict[str, Matrix]:
    """Align each layer to its predecessor and accumulate the transforms.

    Every non-empty layer is rendered over its own bounding box at one
    common feature scale. Empty layers are skipped; the next layer is
    matched against the last non-empty one.

    Returns:
        The world transform of every non-empty layer, identity for the first
        layer and for layers that stayed in place. The sink only receives
        transforms of layers for which a model was found.

    Raises:
        AlignmentCancelledError: Feature extraction failed or the run was interrupted.
    """
    aligned = [layer for layer in layers if not layer.is_empty]
    if not aligned:
        return {}
    boxes = [layer.bounding_box() for layer in aligned]
    union = boxes[0]
    for box in boxes[1:]:
        union = union.union(box)
    scale = feature_scale(params.features.max_octave_size, union)
    logger.info(f"Aligning {len(aligned)} layers linearly at feature scale {scale:.3f}")

    extractor = FeatureExtractor(params.features, context.cache(FEATURES_NAMESPACE), clear_cache)
    features: list[Optional[Features]] = [None] * len(aligned)
    with debug_timing("linear feature extraction"):
        executor = context.executors.acquire("linear.features", 1)
        futures = [
            executor.submit(ExtractLayerTask(extractor, k, layer, scale))
            for k, layer in enumerate(aligned)
        ]
        with contextlib.closing(iter_completed(futures, context.progress, "Extracting layer features")) as completed:
            for k, layer_features in completed:
                features[k] = layer_features

    transforms = {str(aligned[0].id): np.eye(3)}
    accumulated = np.eye(3)
    context.progress.start(len(aligned) - 1, "Matching consecutive layers")
    try:
        for k in range(1, len(aligned)):
            context.progress.check_cancelled()
            layer = aligned[k]
            previous = aligned[k - 1]
            logger.info(f"Matching layer {layer.id} against {previous.id}")
            matrix = fit_features(
                params,
                features[k],
                features[k - 1],
                scale,
                context.rng_for(f"{layer.id}_{previous.id}"),
            )
            if matrix is None:
                accumulated = np.eye(3)
            else:
                accumulated = accumulated @ box_model_to_world(matrix, scale, boxes[k], boxes[k - 1])
                if sink is not None:
                    sink.apply_layer_transform(layer, accumulated.copy())
            transforms[str(layer.id)] = accumulated.copy()
            context.progress.advance()
    finally:
        context.progress.finish()
    return transforms


def align_tile_collections(
    context: AlignmentContext,
    params: "AlignParameters",
    tiles_a: Sequence,
    tiles_b: Sequence,
    pre_transform: bool = True,
) -> Optional[Matrix]:
    """Fit one model that moves the tiles of ``tiles_a`` onto ``tiles_b``.

    Both groups are flattened over their own bounding boxes at a common
    scale. With ``pre_transform`` every tile of ``tiles_a`` gets the found
    transform prepended to its own.

    Returns:
        The world transform for group a, or None if no model was found.
    """
    if not tiles_a or not tiles_b:
        raise ValueError("Both tile collections must contain tiles")
    layer_a = TileCollectionLayer(",".join(str(t.id) for t in tiles_a), list(tiles_a))
    layer_b = TileCollectionLayer(",".join(str(t.id) for t in tiles_b), list(tiles_b))
    box_a = layer_a.bounding_box()
    box_b = layer_b.bounding_box()
    scale = feature_scale(params.features.max_octave_size, box_a, box_b)

    # tile transforms change what a collection shows, so nothing is cached on disk
    extractor = FeatureExtractor(params.features)
    with debug_timing("collection feature extraction"):
        features_a = extractor.extract_layer(layer_a, box_a, scale)
        context.progress.check_cancelled()
        features_b = extractor.extract_layer(layer_b, box_b, scale)
    logger.info(f"{len(features_a)} features in collection a, {len(features_b)} in collection b")
    if len(features_a) == 0 or len(features_b) == 0:
        return None

    matrix = fit_features(params, features_a, features_b, scale, context.rng_for(f"{layer_a.id}_{layer_b.id}"))
    if matrix is None:
        return None
    transform = box_model_to_world(matrix, scale, box_a, box_b)
    if pre_transform:
        for tile in tiles_a:
            tile.transform = transform @ tile.transform
    return transform
