"""Scale-invariant feature extraction and descriptor matching.

Features are computed with scikit-image's SIFT on a normalized, optionally
masked grey raster and cached per source identity. A cached result is only
reused when it was computed with equal :class:`FeatureParameters`.

Matching pairs every feature with its nearest neighbor in descriptor space,
keeps pairs whose nearest/next-nearest distance ratio is below ``rod`` and
drops targets claimed by more than one source feature.
"""
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterator, NamedTuple, Optional

import numpy as np
from scipy.spatial import cKDTree
from skimage.feature import SIFT
from skimage.transform import rescale

from ._cache import FingerprintCache
from ._memory import register_releasable
from ._memory import release_all_caches
from ._point_match import Point
from ._point_match import PointMatch
from ._typing_utils import BoolArray
from ._typing_utils import FloatArray

if TYPE_CHECKING:
    from ..parameters import FeatureParameters

logger = logging.getLogger(__name__)

FEATURES_CATEGORY = "features"
LAYER_FEATURES_CATEGORY = "layerfeatures"

Raster = tuple[FloatArray, Optional[BoolArray]]


class Feature(NamedTuple):
    location: FloatArray
    descriptor: FloatArray


@dataclass
class Features:
    """Feature locations ``(N, 2)`` as ``(x, y)`` with their descriptors ``(N, D)``."""
    locations: FloatArray
    descriptors: FloatArray

    @classmethod
    def empty(cls, descriptor_size: int = 0) -> "Features":
        return cls(np.empty((0, 2)), np.empty((0, descriptor_size), dtype=np.float32))

    def __len__(self) -> int:
        return len(self.locations)

    def __iter__(self) -> Iterator[Feature]:
        for location, descriptor in zip(self.locations, self.descriptors):
            yield Feature(location, descriptor)


def descriptor_size(params: "FeatureParameters") -> int:
    return params.fd_size * params.fd_size * params.fd_bins


def compute_sift_features(
    image: FloatArray, mask: Optional[BoolArray], params: "FeatureParameters"
) -> Features:
    """Detect SIFT features; locations are returned in the coordinates of ``image``."""
    image = np.asarray(image, dtype=np.float64)
    if image.size == 0:
        return Features.empty(descriptor_size(params))
    lo, hi = float(image.min()), float(image.max())
    if hi - lo <= 0:
        logger.debug("Constant image, no features")
        return Features.empty(descriptor_size(params))
    image = (image - lo) / (hi - lo)

    scale = min(1.0, params.max_octave_size / max(image.shape))
    if scale < 1.0:
        image = rescale(image, scale, anti_aliasing=True)
        if mask is not None:
            mask = rescale(np.asarray(mask, dtype=np.float64), scale, order=0, anti_aliasing=False) > 0.5

    min_side = min(image.shape)
    if min_side < params.min_octave_size:
        logger.debug(f"Image side {min_side} below the minimal octave size, no features")
        return Features.empty(descriptor_size(params))
    n_octaves = int(np.floor(np.log2(min_side / params.min_octave_size))) + 1

    sift = SIFT(
        upsampling=1,
        n_octaves=n_octaves,
        n_scales=params.steps,
        sigma_min=params.initial_sigma,
        n_hist=params.fd_size,
        n_ori=params.fd_bins,
    )
    try:
        sift.detect_and_extract(image)
    except RuntimeError as e:
        if "no features" not in str(e).lower():
            raise
        logger.debug("SIFT found no features")
        return Features.empty(descriptor_size(params))

    rows_cols = np.asarray(sift.keypoints, dtype=np.float64)
    descriptors = np.asarray(sift.descriptors, dtype=np.float32)
    if mask is not None and len(rows_cols):
        idx = np.clip(np.round(rows_cols).astype(int), 0, np.array(mask.shape) - 1)
        keep = np.asarray(mask)[idx[:, 0], idx[:, 1]] > 0
        rows_cols = rows_cols[keep]
        descriptors = descriptors[keep]
    return Features(rows_cols[:, ::-1] / scale, descriptors)


def match_features(features1: Features, features2: Features, rod: float) -> list[PointMatch]:
    """Candidate correspondences from ``features1`` to ``features2`` by ratio test."""
    if len(features1) == 0 or len(features2) < 2:
        return []
    tree = cKDTree(features2.descriptors)
    distances, indices = tree.query(features1.descriptors, k=2)
    accepted = np.flatnonzero(distances[:, 0] < rod * distances[:, 1])
    targets = indices[accepted, 0]

    # a target claimed by several sources is ambiguous
    claims = np.bincount(targets, minlength=len(features2))
    accepted = accepted[claims[targets] == 1]

    return [
        PointMatch(Point(features1.locations[i]), Point(features2.locations[indices[i, 0]]))
        for i in accepted
    ]


class FeatureExtractor:
    """Extracts features for tiles and layers through a memory and disk cache.

    An out-of-memory error during extraction releases all registered caches
    and retries the same extraction.
    """

    def __init__(
        self,
        params: "FeatureParameters",
        cache: Optional[FingerprintCache] = None,
        clear_cache: bool = False,
    ):
        self.params = params
        self.cache = cache
        self.clear_cache = clear_cache
        self._memory: dict[tuple[str, str, Any], Features] = {}
        self._lock = threading.Lock()
        register_releasable(self.release)

    def release(self) -> None:
        with self._lock:
            self._memory.clear()

    def compute(self, image: FloatArray, mask: Optional[BoolArray]) -> Features:
        return compute_sift_features(image, mask, self.params)

    def extract(
        self,
        id: str,
        render: Callable[[], Raster],
        category: str = FEATURES_CATEGORY,
        fingerprint: Any = None,
    ) -> Features:
        """Features of the raster produced by ``render``, cached under ``id``.

        ``fingerprint`` defaults to the extraction parameters; callers add
        whatever else determines the raster, such as a bounding box.
        """
        fingerprint = self.params if fingerprint is None else fingerprint
        key = (id, category, fingerprint)
        if not self.clear_cache:
            with self._lock:
                features = self._memory.get(key)
            if features is not None:
                return features
            if self.cache is not None:
                features = self.cache.get(id, category, fingerprint)
                if features is not None:
                    logger.debug(f"Loaded {len(features)} cached features for {id}")
                    with self._lock:
                        self._memory[key] = features
                    return features

        while True:
            try:
                image, mask = render()
                features = self.compute(image, mask)
                break
            except MemoryError:
                logger.warning(f"Out of memory extracting features for {id}, releasing caches")
                release_all_caches()

        logger.info(f"{len(features)} features extracted for {id}")
        with self._lock:
            self._memory[key] = features
        if self.cache is not None and not self.cache.put(id, category, fingerprint, features):
            logger.warning(f"Could not store features of {id}")
        return features

    def extract_tile(self, tile) -> Features:
        return self.extract(tile.id, lambda: tile.render(1.0))

    def extract_layer(self, layer, box, scale: float) -> Features:
        return self.extract(
            layer.id,
            lambda: layer.render(box, scale),
            category=LAYER_FEATURES_CATEGORY,
            fingerprint=(self.params, tuple(box), scale),
        )

    def __getstate__(self):
        return {"params": self.params, "cache": self.cache, "clear_cache": self.clear_cache}

    def __setstate__(self, state) -> None:
        self.__init__(state["params"], state["cache"], state["clear_cache"])
