"""Parametric 2D transformation models used by the alignment pipeline.

A single :class:`Model` type covers every transformation family. The family
is chosen by :class:`ModelType` rather than by subclassing, and a model can be
regularized by blending it with a second family. The module includes:

- Weighted closed-form fits for translation, rigid, similarity and affine models
- A normalized direct linear transform for homographies
- Forward and inverse application on ``(N, 2)`` point arrays
- Identity testing over a point set
"""
import enum
import logging
from typing import Callable, Optional

import numpy as np

from ._typing_utils import Float
from ._typing_utils import FloatArray
from ._typing_utils import Matrix
from ._typing_utils import PointArray

logger = logging.getLogger(__name__)

# Determinants and norms below this are treated as degenerate
DEGENERACY_EPS = 1e-12


class NotEnoughDataPointsError(RuntimeError):
    """Raised when fewer correspondences are available than a model requires."""


class IllDefinedDataPointsError(RuntimeError):
    """Raised when the correspondences do not determine a unique model."""


class ModelType(enum.IntEnum):
    """Transformation families, indexed the way parameter files refer to them."""
    TRANSLATION = 0
    RIGID = 1
    SIMILARITY = 2
    AFFINE = 3
    HOMOGRAPHY = 4

    @property
    def min_num_matches(self) -> int:
        return _MIN_NUM_MATCHES[self]

    @classmethod
    def from_index(cls, index: int) -> "ModelType":
        try:
            return cls(index)
        except ValueError:
            raise ValueError(
                f"Unrecognized model index {index}, "
                f"expected one of {[m.value for m in cls]}"
            ) from None


_MIN_NUM_MATCHES = {
    ModelType.TRANSLATION: 1,
    ModelType.RIGID: 2,
    ModelType.SIMILARITY: 2,
    ModelType.AFFINE: 3,
    ModelType.HOMOGRAPHY: 4,
}


# ============================================================================
# CLOSED-FORM FITS
# ============================================================================

def _homogeneous(linear: FloatArray, translation: FloatArray) -> Matrix:
    matrix = np.eye(3)
    matrix[:2, :2] = linear
    matrix[:2, 2] = translation
    return matrix


def _weighted_centroids(
    p: FloatArray, q: FloatArray, w: FloatArray
) -> tuple[FloatArray, FloatArray]:
    total = w.sum()
    if total <= 0:
        raise IllDefinedDataPointsError("Correspondence weights sum to zero.")
    return (w[:, None] * p).sum(axis=0) / total, (w[:, None] * q).sum(axis=0) / total


def _rotation_sums(
    p: FloatArray, q: FloatArray, w: FloatArray
) -> tuple[float, float, FloatArray, FloatArray, FloatArray, FloatArray]:
    pc, qc = _weighted_centroids(p, q, w)
    pp = p - pc
    qq = q - qc
    cos_sum = float(np.sum(w * (pp[:, 0] * qq[:, 0] + pp[:, 1] * qq[:, 1])))
    sin_sum = float(np.sum(w * (pp[:, 0] * qq[:, 1] - pp[:, 1] * qq[:, 0])))
    return cos_sum, sin_sum, pc, qc, pp, qq


def _fit_translation(p: PointArray, q: PointArray, w: FloatArray) -> Matrix:
    pc, qc = _weighted_centroids(p, q, w)
    return _homogeneous(np.eye(2), qc - pc)


def _fit_rigid(p: PointArray, q: PointArray, w: FloatArray) -> Matrix:
    cos_sum, sin_sum, pc, qc, _, _ = _rotation_sums(p, q, w)
    if abs(cos_sum) < DEGENERACY_EPS and abs(sin_sum) < DEGENERACY_EPS:
        raise IllDefinedDataPointsError("Rotation is undetermined by coincident points.")
    theta = np.arctan2(sin_sum, cos_sum)
    c, s = np.cos(theta), np.sin(theta)
    rotation = np.array([[c, -s], [s, c]])
    return _homogeneous(rotation, qc - rotation @ pc)


def _fit_similarity(p: PointArray, q: PointArray, w: FloatArray) -> Matrix:
    cos_sum, sin_sum, pc, qc, pp, _ = _rotation_sums(p, q, w)
    norm = float(np.sum(w * (pp ** 2).sum(axis=1)))
    if norm < DEGENERACY_EPS:
        raise IllDefinedDataPointsError("Scale is undetermined by coincident points.")
    a = cos_sum / norm
    b = sin_sum / norm
    linear = np.array([[a, -b], [b, a]])
    return _homogeneous(linear, qc - linear @ pc)


def _fit_affine(p: PointArray, q: PointArray, w: FloatArray) -> Matrix:
    pc, qc = _weighted_centroids(p, q, w)
    pp = p - pc
    qq = q - qc
    a = np.einsum("n,ni,nj->ij", w, pp, pp)
    b = np.einsum("n,ni,nj->ij", w, qq, pp)
    if abs(np.linalg.det(a)) < DEGENERACY_EPS:
        raise IllDefinedDataPointsError("Affine model is undetermined by collinear points.")
    linear = b @ np.linalg.inv(a)
    return _homogeneous(linear, qc - linear @ pc)


def _normalizing_transform(points: FloatArray) -> FloatArray:
    """Hartley normalization: centroid to the origin, mean distance sqrt(2)."""
    centroid = points.mean(axis=0)
    mean_distance = np.linalg.norm(points - centroid, axis=1).mean()
    if mean_distance < DEGENERACY_EPS:
        raise IllDefinedDataPointsError("Homography is undetermined by coincident points.")
    s = np.sqrt(2.0) / mean_distance
    return np.array([[s, 0.0, -s * centroid[0]], [0.0, s, -s * centroid[1]], [0.0, 0.0, 1.0]])


def _fit_homography(p: PointArray, q: PointArray, w: FloatArray) -> Matrix:
    tp = _normalizing_transform(p)
    tq = _normalizing_transform(q)
    pn = p @ tp[:2, :2].T + tp[:2, 2]
    qn = q @ tq[:2, :2].T + tq[:2, 2]

    n = len(p)
    x, y = pn[:, 0], pn[:, 1]
    u, v = qn[:, 0], qn[:, 1]
    zeros = np.zeros(n)
    ones = np.ones(n)
    rows_u = np.stack([-x, -y, -ones, zeros, zeros, zeros, u * x, u * y, u], axis=1)
    rows_v = np.stack([zeros, zeros, zeros, -x, -y, -ones, v * x, v * y, v], axis=1)
    sqrt_w = np.sqrt(w)[:, None]
    design = np.concatenate([rows_u * sqrt_w, rows_v * sqrt_w])

    _, singular_values, vt = np.linalg.svd(design)
    if len(singular_values) >= 8 and singular_values[7] < DEGENERACY_EPS:
        raise IllDefinedDataPointsError("Homography is undetermined by collinear points.")
    h = vt[-1].reshape(3, 3)
    matrix = np.linalg.inv(tq) @ h @ tp
    if abs(matrix[2, 2]) < DEGENERACY_EPS:
        raise IllDefinedDataPointsError("Homography maps the origin to infinity.")
    return matrix / matrix[2, 2]


_FITTERS: dict[ModelType, Callable[[FloatArray, FloatArray, FloatArray], FloatArray]] = {
    ModelType.TRANSLATION: _fit_translation,
    ModelType.RIGID: _fit_rigid,
    ModelType.SIMILARITY: _fit_similarity,
    ModelType.AFFINE: _fit_affine,
    ModelType.HOMOGRAPHY: _fit_homography,
}


# ============================================================================
# MODEL
# ============================================================================

class Model:
    """A 2D transformation of one :class:`ModelType`, optionally regularized.

    The transformation is a 3x3 homogeneous matrix mapping source to target
    coordinates. A regularized model fits its own family and the regularizer
    family to the same correspondences and blends the two matrices as
    ``(1 - lambda_) * own + lambda_ * regularizer``.
    """

    def __init__(
        self,
        kind: ModelType = ModelType.RIGID,
        matrix: Optional[Matrix] = None,
        regularizer: Optional[ModelType] = None,
        lambda_: Float = 0.0,
    ):
        self.kind = ModelType(kind)
        self.regularizer = None if regularizer is None else ModelType(regularizer)
        self.lambda_ = float(lambda_)
        if self.regularizer is not None:
            if not 0.0 <= self.lambda_ <= 1.0:
                raise ValueError(f"Interpolation weight must lie in [0, 1], got {lambda_}")
            if ModelType.HOMOGRAPHY in (self.kind, self.regularizer) and self.kind != self.regularizer:
                raise ValueError("A homography can only be interpolated with another homography")
        self.matrix = np.eye(3) if matrix is None else np.array(matrix, dtype=np.float64)
        if self.matrix.shape != (3, 3):
            raise ValueError(f"Expected a 3x3 matrix, got shape {self.matrix.shape}")
        self.cost = np.inf

    @classmethod
    def from_index(cls, index: int) -> "Model":
        return cls(ModelType.from_index(index))

    @classmethod
    def interpolated(cls, kind: ModelType, regularizer: ModelType, lambda_: Float) -> "Model":
        return cls(kind, regularizer=regularizer, lambda_=lambda_)

    @property
    def min_num_matches(self) -> int:
        if self.regularizer is None:
            return self.kind.min_num_matches
        return max(self.kind.min_num_matches, self.regularizer.min_num_matches)

    @property
    def is_projective(self) -> bool:
        return not np.array_equal(self.matrix[2], (0.0, 0.0, 1.0))

    def copy(self) -> "Model":
        model = Model(self.kind, self.matrix, self.regularizer, self.lambda_)
        model.cost = self.cost
        return model

    def set(self, other: "Model") -> None:
        """Copy the transformation and cost of ``other`` into this model."""
        self.matrix = other.matrix.copy()
        self.cost = other.cost

    def apply(self, points: PointArray) -> PointArray:
        """Transform a single ``(2,)`` point or an ``(N, 2)`` array of points."""
        pts = np.asarray(points, dtype=np.float64)
        single = pts.ndim == 1
        pts = np.atleast_2d(pts)
        out = pts @ self.matrix[:2, :2].T + self.matrix[:2, 2]
        if self.is_projective:
            w = pts @ self.matrix[2, :2] + self.matrix[2, 2]
            out = out / w[:, None]
        return out[0] if single else out

    def inverse(self) -> "Model":
        try:
            inverted = np.linalg.inv(self.matrix)
        except np.linalg.LinAlgError:
            raise IllDefinedDataPointsError(f"{self.describe()} model is not invertible") from None
        model = Model(self.kind, inverted, self.regularizer, self.lambda_)
        model.cost = self.cost
        return model

    def apply_inverse(self, points: PointArray) -> PointArray:
        return self.inverse().apply(points)

    def fit(
        self, p: FloatArray, q: FloatArray, weights: Optional[FloatArray] = None
    ) -> "Model":
        """Fit the model mapping source points ``p`` onto target points ``q``.

        Raises:
            NotEnoughDataPointsError: Fewer points than :attr:`min_num_matches`.
            IllDefinedDataPointsError: The points do not determine the model.
        """
        p = np.asarray(p, dtype=np.float64).reshape(-1, 2)
        q = np.asarray(q, dtype=np.float64).reshape(-1, 2)
        if len(p) != len(q):
            raise ValueError(f"Point count mismatch: {len(p)} source vs {len(q)} target")
        if len(p) < self.min_num_matches:
            raise NotEnoughDataPointsError(
                f"{len(p)} data points are not enough to estimate a {self.describe()} "
                f"model, at least {self.min_num_matches} required"
            )
        w = np.ones(len(p)) if weights is None else np.asarray(weights, dtype=np.float64)

        matrix = _FITTERS[self.kind](p, q, w)
        if self.regularizer is not None:
            regularizing = _FITTERS[self.regularizer](p, q, w)
            matrix = (1.0 - self.lambda_) * matrix + self.lambda_ * regularizing
        self.matrix = matrix
        return self

    def residuals(self, p: FloatArray, q: FloatArray) -> FloatArray:
        """Euclidean distance between the transformed ``p`` and ``q``."""
        return np.linalg.norm(self.apply(np.atleast_2d(p)) - np.atleast_2d(q), axis=1)

    def is_identity(self, points: FloatArray, tolerance: Float) -> bool:
        """True if no point moves by more than ``tolerance`` under this model."""
        pts = np.atleast_2d(np.asarray(points, dtype=np.float64))
        if len(pts) == 0:
            return True
        return bool(np.all(self.residuals(pts, pts) <= tolerance))

    def describe(self) -> str:
        name = self.kind.name.capitalize()
        if self.regularizer is None:
            return name
        return f"Interpolated({name}, {self.regularizer.name.capitalize()}, {self.lambda_:g})"

    def __repr__(self) -> str:
        return f"Model({self.describe()}, matrix={self.matrix.tolist()})"


def create_model(
    index: int,
    regularizer_index: Optional[int] = None,
    lambda_: Float = 0.0,
) -> Model:
    """Build a model from parameter-file indices, raising ``ValueError`` on unknown ones."""
    kind = ModelType.from_index(index)
    if regularizer_index is None:
        return Model(kind)
    return Model.interpolated(kind, ModelType.from_index(regularizer_index), lambda_)
