"""Points and point correspondences.

A :class:`Point` carries local (source image) and world (transformed)
coordinates. A :class:`PointMatch` pairs two points that depict the same
physical location; the model of the tile owning ``p1`` is fitted so that
``p1.local`` lands on ``p2.world``.

Coordinates are updated in place. Mesh vertices hand out views into their
mesh's coordinate arrays, so in-place updates are visible to the mesh.
"""
from typing import Iterable, Optional, Sequence

import numpy as np

from ._models import Model
from ._typing_utils import FloatArray


class Point:
    """A 2D point with local and world coordinates and a global identity.

    ``id`` is 0 until the point is registered with a point identity cache.
    """
    __slots__ = ("local", "world", "id")

    def __init__(self, local: FloatArray, world: Optional[FloatArray] = None, id: int = 0):
        self.local = np.array(local, dtype=np.float64).reshape(2)
        self.world = self.local.copy() if world is None else np.array(world, dtype=np.float64).reshape(2)
        self.id = id

    def apply(self, model: Model) -> None:
        self.world[:] = model.apply(self.local)

    def set(self, other: "Point") -> None:
        """Copy the coordinates of ``other`` into this point's own arrays."""
        self.local[:] = other.local
        self.world[:] = other.world

    def distance(self, other: "Point") -> float:
        return float(np.linalg.norm(self.world - other.world))

    def __getstate__(self):
        return {"local": np.array(self.local), "world": np.array(self.world), "id": self.id}

    def __setstate__(self, state) -> None:
        self.local = state["local"]
        self.world = state["world"]
        self.id = state["id"]

    def __repr__(self) -> str:
        return f"Point(id={self.id}, local={self.local.tolist()}, world={self.world.tolist()})"


class PointMatch:
    """An ordered correspondence between two points with a scalar weight."""
    __slots__ = ("p1", "p2", "weight")

    def __init__(self, p1: Point, p2: Point, weight: float = 1.0):
        self.p1 = p1
        self.p2 = p2
        self.weight = float(weight)

    @property
    def distance(self) -> float:
        return self.p1.distance(self.p2)

    def flipped(self) -> "PointMatch":
        return PointMatch(self.p2, self.p1, self.weight)

    def __getstate__(self):
        return {"p1": self.p1, "p2": self.p2, "weight": self.weight}

    def __setstate__(self, state) -> None:
        self.p1 = state["p1"]
        self.p2 = state["p2"]
        self.weight = state["weight"]

    def __repr__(self) -> str:
        return f"PointMatch({self.p1!r}, {self.p2!r}, weight={self.weight:g})"


def flip_matches(matches: Iterable[PointMatch]) -> list[PointMatch]:
    """Swap source and target of every match; the points themselves are shared."""
    return [pm.flipped() for pm in matches]


def match_arrays(matches: Sequence[PointMatch]) -> tuple[FloatArray, FloatArray, FloatArray]:
    """Return ``(p1 local, p2 world, weights)`` as arrays for model fitting."""
    if len(matches) == 0:
        return np.empty((0, 2)), np.empty((0, 2)), np.empty(0)
    p = np.array([pm.p1.local for pm in matches])
    q = np.array([pm.p2.world for pm in matches])
    w = np.array([pm.weight for pm in matches])
    return p, q, w


def apply_model(matches: Iterable[PointMatch], model: Model) -> None:
    """Transform the ``p1`` world coordinates of all matches with ``model``."""
    for pm in matches:
        pm.p1.apply(model)


def mean_distance(matches: Sequence[PointMatch]) -> float:
    """Weighted mean world distance between the two points of each match."""
    if len(matches) == 0:
        return 0.0
    distances = np.array([pm.distance for pm in matches])
    weights = np.array([pm.weight for pm in matches])
    total = weights.sum()
    if total <= 0:
        return float(distances.mean())
    return float((distances * weights).sum() / total)


def scale_matches(matches: Iterable[PointMatch], scale: float) -> list[PointMatch]:
    """Return copies of ``matches`` with both points' coordinates multiplied by ``scale``."""
    scaled = []
    for pm in matches:
        p1 = Point(pm.p1.local * scale, pm.p1.world * scale)
        p2 = Point(pm.p2.local * scale, pm.p2.world * scale)
        scaled.append(PointMatch(p1, p2, pm.weight))
    return scaled
