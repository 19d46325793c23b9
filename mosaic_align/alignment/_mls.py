"""Moving least squares deformation from control point correspondences.

Every query point gets its own model, fitted to all control points with
weights ``w_i / |p_i - x|^(2 alpha)``. A query point on a control point maps
exactly onto that control point's target.
"""
import logging
from typing import Optional

import numpy as np

from ._models import DEGENERACY_EPS
from ._models import ModelType
from ._typing_utils import FloatArray
from ._typing_utils import PointArray

logger = logging.getLogger(__name__)

# Query points transformed per vectorized batch
BATCH_SIZE = 1024


class MovingLeastSquaresTransform:
    """Affine (or simpler) moving least squares transform.

    With a single control point the transform is a translation, with two a
    similarity; otherwise ``kind`` is used.
    """

    def __init__(
        self,
        source: PointArray,
        target: PointArray,
        weights: Optional[FloatArray] = None,
        kind: ModelType = ModelType.AFFINE,
        alpha: float = 2.0,
    ):
        self.source = np.asarray(source, dtype=np.float64).reshape(-1, 2)
        self.target = np.asarray(target, dtype=np.float64).reshape(-1, 2)
        if len(self.source) != len(self.target):
            raise ValueError("Source and target control points differ in number")
        if len(self.source) == 0:
            raise ValueError("Moving least squares needs at least one control point")
        self.weights = np.ones(len(self.source)) if weights is None else np.asarray(weights, dtype=np.float64)
        if len(self.source) == 1:
            kind = ModelType.TRANSLATION
        elif len(self.source) == 2 and kind in (ModelType.AFFINE, ModelType.HOMOGRAPHY):
            kind = ModelType.SIMILARITY
        if kind == ModelType.HOMOGRAPHY:
            raise ValueError("Moving least squares does not support homographies")
        self.kind = kind
        self.alpha = alpha

    def apply(self, points: PointArray) -> PointArray:
        pts = np.asarray(points, dtype=np.float64)
        single = pts.ndim == 1
        pts = np.atleast_2d(pts)
        out = np.empty_like(pts)
        for start in range(0, len(pts), BATCH_SIZE):
            out[start:start + BATCH_SIZE] = self._apply_batch(pts[start:start + BATCH_SIZE])
        return out[0] if single else out

    def _apply_batch(self, x: FloatArray) -> FloatArray:
        d2 = ((x[:, None, :] - self.source[None, :, :]) ** 2).sum(axis=2)
        exact = d2 <= DEGENERACY_EPS
        with np.errstate(divide="ignore"):
            w = self.weights[None, :] / np.power(np.maximum(d2, DEGENERACY_EPS), self.alpha)
        total = w.sum(axis=1, keepdims=True)
        pc = (w @ self.source) / total
        qc = (w @ self.target) / total
        pp = self.source[None, :, :] - pc[:, None, :]
        qq = self.target[None, :, :] - qc[:, None, :]
        xc = x - pc

        if self.kind == ModelType.TRANSLATION:
            result = x + (qc - pc)
        elif self.kind == ModelType.AFFINE:
            result = self._affine(w, pp, qq, xc, qc)
        else:
            result = self._similarity(w, pp, qq, xc, qc, rigid=self.kind == ModelType.RIGID)

        hits = exact.any(axis=1)
        if hits.any():
            result[hits] = self.target[np.argmax(exact[hits], axis=1)]
        return result

    @staticmethod
    def _similarity(w, pp, qq, xc, qc, rigid: bool) -> FloatArray:
        cos_sum = (w * (pp[..., 0] * qq[..., 0] + pp[..., 1] * qq[..., 1])).sum(axis=1)
        sin_sum = (w * (pp[..., 0] * qq[..., 1] - pp[..., 1] * qq[..., 0])).sum(axis=1)
        if rigid:
            theta = np.arctan2(sin_sum, cos_sum)
            a, b = np.cos(theta), np.sin(theta)
        else:
            norm = np.maximum((w * (pp ** 2).sum(axis=2)).sum(axis=1), DEGENERACY_EPS)
            a, b = cos_sum / norm, sin_sum / norm
        return np.column_stack(
            [a * xc[:, 0] - b * xc[:, 1], b * xc[:, 0] + a * xc[:, 1]]
        ) + qc

    @classmethod
    def _affine(cls, w, pp, qq, xc, qc) -> FloatArray:
        a = np.einsum("mn,mni,mnj->mij", w, pp, pp)
        b = np.einsum("mn,mni,mnj->mij", w, qq, pp)
        det = a[:, 0, 0] * a[:, 1, 1] - a[:, 0, 1] * a[:, 1, 0]
        degenerate = np.abs(det) <= DEGENERACY_EPS * np.maximum(1.0, np.abs(a).max(axis=(1, 2)) ** 2)
        safe_det = np.where(degenerate, 1.0, det)
        inv = np.empty_like(a)
        inv[:, 0, 0] = a[:, 1, 1] / safe_det
        inv[:, 1, 1] = a[:, 0, 0] / safe_det
        inv[:, 0, 1] = -a[:, 0, 1] / safe_det
        inv[:, 1, 0] = -a[:, 1, 0] / safe_det
        linear = np.einsum("mij,mjk->mik", b, inv)
        result = np.einsum("mij,mj->mi", linear, xc) + qc
        if degenerate.any():
            result[degenerate] = cls._similarity(
                w[degenerate], pp[degenerate], qq[degenerate], xc[degenerate], qc[degenerate], rigid=False
            )
        return result
