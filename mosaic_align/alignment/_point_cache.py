"""Stable identities for shared mesh vertices.

Block matching tasks may run on private copies of the mesh vertices. Before
dispatch every vertex is registered here and receives a global id; after a
task returns, each point carrying a known id is merged back into the
canonical vertex. Merging copies coordinates onto the canonical instance,
so objects already holding that vertex stay valid.
"""
import itertools
import logging
import threading
from typing import Iterable, Optional, Sequence

from ._point_match import Point
from ._point_match import PointMatch

logger = logging.getLogger(__name__)

_id_lock = threading.Lock()
_next_id = itertools.count(1)


def _new_id() -> int:
    with _id_lock:
        return next(_next_id)


class PointIdentityCache:
    """Maps global point ids to canonical point instances."""

    def __init__(self):
        self._points: dict[int, Point] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._points)

    def __contains__(self, id: int) -> bool:
        return id in self._points

    def get(self, id: int) -> Optional[Point]:
        with self._lock:
            return self._points.get(id)

    def register(self, points: Iterable[Point]) -> None:
        """Assign ids to unregistered points and make every point canonical for its id."""
        with self._lock:
            for point in points:
                if point.id == 0:
                    point.id = _new_id()
                self._points.setdefault(point.id, point)

    def canonical(self, point: Point) -> Point:
        """The canonical instance for ``point``, updated with its coordinates.

        An unregistered point (id 0) receives a fresh id on first sight and
        becomes canonical itself.
        """
        with self._lock:
            if point.id == 0:
                point.id = _new_id()
                self._points[point.id] = point
                return point
            cached = self._points.get(point.id)
        if cached is None:
            logger.debug(f"Point {point.id} is not registered")
            return point
        if cached is not point:
            cached.set(point)
        return cached

    def synchronize(self, matches: Sequence[PointMatch]) -> None:
        """Point both sides of every match at their canonical instances."""
        for pm in matches:
            pm.p1 = self.canonical(pm.p1)
            pm.p2 = self.canonical(pm.p2)

    @staticmethod
    def sync_points(canonical: Sequence[Point], returned: Sequence[Point]) -> None:
        """Copy returned coordinates onto the canonical points at the same positions."""
        if len(canonical) != len(returned):
            raise ValueError(
                f"Cannot synchronize {len(returned)} returned points onto {len(canonical)}"
            )
        for target, source in zip(canonical, returned):
            if target is not source:
                target.set(source)

    def clear(self) -> None:
        with self._lock:
            self._points.clear()
