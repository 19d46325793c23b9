"""Tiles and the global tile optimizer.

A :class:`Tile` owns a mutable :class:`Model` and the correspondences to each
of its partner tiles. A :class:`TileConfiguration` relaxes the models of all
member tiles so that every correspondence lands as close as possible to its
partner point, keeping fixed tiles untouched.

The module includes:
- Correspondence bookkeeping stored symmetrically on both tiles of a pair
- Deadlock-free locking of tile pairs (lower index first)
- Iterative optimization with epsilon, iteration and plateau termination
- Outlier filtering by mean plus a multiple of the residual standard deviation
- Pre-alignment along a maximum spanning tree of the correspondence graph
"""
import contextlib
import itertools
import logging
import threading
from collections import deque
from typing import Any, Generator, Iterable, Optional, Sequence

import networkx as nx
import numpy as np

from ._convergence import ConvergenceMonitor
from ._models import IllDefinedDataPointsError
from ._models import Model
from ._models import NotEnoughDataPointsError
from ._point_match import PointMatch
from ._point_match import apply_model
from ._point_match import flip_matches
from ._point_match import match_arrays
from ._point_match import mean_distance
from ._progress import ProgressSignal

logger = logging.getLogger(__name__)

_tile_index = itertools.count()

# Correspondences closer than this are never outliers, in pixels
MIN_OUTLIER_DISTANCE = 1e-3


class OptimizationError(RuntimeError):
    """Raised when a tile model cannot be fitted during optimization."""


class Tile:
    """An alignment unit: a source handle, its model and its correspondences."""

    def __init__(self, model: Model, source: Any = None):
        self.model = model
        self.source = source
        self.connections: dict["Tile", list[PointMatch]] = {}
        self.distance = 0.0
        self.index = next(_tile_index)
        self.lock = threading.RLock()

    @property
    def id(self) -> str:
        return str(self.source.id) if self.source is not None else f"tile-{self.index}"

    @property
    def matches(self) -> list[PointMatch]:
        return [pm for matches in self.connections.values() for pm in matches]

    @property
    def connected_tiles(self) -> list["Tile"]:
        return list(self.connections)

    def connect(self, other: "Tile", matches: Sequence[PointMatch]) -> None:
        """Add ``matches`` to this tile and their flips to ``other``."""
        self.connections.setdefault(other, []).extend(matches)
        other.connections.setdefault(self, []).extend(flip_matches(matches))

    def replace_connection(self, other: "Tile", matches: Sequence[PointMatch]) -> None:
        """Replace all correspondences between this tile and ``other``."""
        if not matches:
            self.disconnect(other)
            return
        self.connections[other] = list(matches)
        other.connections[self] = flip_matches(matches)

    def disconnect(self, other: "Tile") -> None:
        self.connections.pop(other, None)
        other.connections.pop(self, None)

    def fit_model(self) -> None:
        p, q, w = match_arrays(self.matches)
        self.model.fit(p, q, w)

    def apply(self) -> None:
        apply_model(self.matches, self.model)

    def update_cost(self) -> float:
        self.apply()
        self.distance = mean_distance(self.matches)
        return self.distance

    def __getstate__(self):
        state = self.__dict__.copy()
        del state["lock"]
        return state

    def __setstate__(self, state) -> None:
        self.__dict__.update(state)
        self.lock = threading.RLock()

    def __repr__(self) -> str:
        return f"Tile({self.id}, {self.model.describe()}, {len(self.connections)} connections)"


@contextlib.contextmanager
def locked_pair(tile_a: Tile, tile_b: Tile) -> Generator[None, None, None]:
    """Hold the locks of both tiles, always acquiring the lower index first."""
    first, second = sorted((tile_a, tile_b), key=lambda t: t.index)
    with first.lock:
        if second is first:
            yield
            return
        with second.lock:
            yield


def connect_tiles(
    tile_a: Tile, tile_b: Tile, matches: Sequence[PointMatch], weight: float = 1.0
) -> None:
    """Weight ``matches`` and make them the only correspondences between the tiles."""
    for pm in matches:
        pm.weight = weight
    with locked_pair(tile_a, tile_b):
        tile_a.replace_connection(tile_b, matches)


class TileConfiguration:
    """Member tiles, the fixed subset, and the optimizer that relaxes them."""

    def __init__(self):
        self.tiles: list[Tile] = []
        self.fixed_tiles: set[Tile] = set()
        self._members: set[Tile] = set()

    def add_tile(self, tile: Tile) -> None:
        if tile not in self._members:
            self._members.add(tile)
            self.tiles.append(tile)

    def add_tiles(self, tiles: Iterable[Tile]) -> None:
        for tile in tiles:
            self.add_tile(tile)

    def remove_tile(self, tile: Tile) -> None:
        if tile in self._members:
            self._members.remove(tile)
            self.tiles.remove(tile)
            self.fixed_tiles.discard(tile)

    def fix_tile(self, tile: Tile) -> None:
        """Exclude a member tile from updates; tiles outside the configuration are ignored."""
        if tile not in self._members:
            logger.debug(f"{tile} is not part of the configuration and cannot be fixed")
            return
        self.fixed_tiles.add(tile)

    def __contains__(self, tile: Tile) -> bool:
        return tile in self._members

    @property
    def movable_tiles(self) -> list[Tile]:
        return [t for t in self.tiles if t not in self.fixed_tiles]

    def graph(self) -> nx.Graph:
        """Correspondence graph over the member tiles, weighted by match count."""
        graph = nx.Graph()
        graph.add_nodes_from(self.tiles)
        for tile in self.tiles:
            for other, matches in tile.connections.items():
                if other in self._members and matches:
                    graph.add_edge(tile, other, weight=len(matches))
        return graph

    def compute_error(self) -> float:
        """Mean over tiles of each tile's weighted mean correspondence distance."""
        if not self.tiles:
            return 0.0
        return float(np.mean([tile.update_cost() for tile in self.tiles]))

    def _restore(self, snapshot: dict[Tile, Model]) -> None:
        for tile, model in snapshot.items():
            tile.model.set(model)
        for tile in self.tiles:
            tile.apply()

    def optimize(
        self,
        max_epsilon: float,
        max_iterations: int,
        max_plateau_width: int,
        progress: Optional[ProgressSignal] = None,
    ) -> float:
        """Relax all movable tiles and return the final mean error in pixels.

        Nothing moves if the configuration already has an error below
        ``max_epsilon`` or has no movable tile. A fitting failure restores
        every model to its state before the call and raises
        :class:`OptimizationError`.
        """
        for tile in self.tiles:
            tile.apply()
        error = self.compute_error()
        movable = self.movable_tiles
        if not movable:
            logger.info("No movable tiles, nothing to optimize")
            return error
        if error < max_epsilon:
            logger.info(f"Configuration already converged, mean error {error:.3f} px")
            return error

        components = nx.number_connected_components(self.graph())
        if components > 1:
            logger.warning(f"Tile graph has {components} disconnected components")

        snapshot = {tile: tile.model.copy() for tile in movable}
        monitor = ConvergenceMonitor(max_epsilon, max_iterations, max_plateau_width)
        try:
            while True:
                if progress is not None:
                    progress.check_cancelled()
                for tile in movable:
                    tile.fit_model()
                    tile.apply()
                error = self.compute_error()
                if not monitor.update(error):
                    break
        except (NotEnoughDataPointsError, IllDefinedDataPointsError) as e:
            self._restore(snapshot)
            raise OptimizationError(f"Tile optimization failed: {e}") from e
        except BaseException:
            self._restore(snapshot)
            raise

        logger.info(
            f"Optimized {len(movable)} tiles in {monitor.iterations} iterations, "
            f"mean error {error:.3f} px"
        )
        return error

    def optimize_and_filter(
        self,
        max_epsilon: float,
        max_iterations: int,
        max_plateau_width: int,
        mean_factor: float,
        progress: Optional[ProgressSignal] = None,
    ) -> float:
        """Optimize, drop outlier correspondences, and repeat until none are dropped.

        A correspondence is an outlier when its distance exceeds the mean
        distance plus ``mean_factor`` standard deviations.
        """
        while True:
            error = self.optimize(max_epsilon, max_iterations, max_plateau_width, progress)
            distances = np.array([pm.distance for tile in self.tiles for pm in tile.matches])
            if len(distances) == 0:
                return error
            threshold = max(distances.mean() + mean_factor * distances.std(), MIN_OUTLIER_DISTANCE)

            removed = 0
            for tile in list(self.tiles):
                for other, matches in list(tile.connections.items()):
                    kept = [pm for pm in matches if pm.distance <= threshold]
                    if len(kept) < len(matches):
                        removed += len(matches) - len(kept)
                        with locked_pair(tile, other):
                            tile.replace_connection(other, kept)
            if removed == 0:
                return error

            logger.info(f"Removed {removed} outlier correspondences above {threshold:.3f} px")
            for tile in list(self.tiles):
                if not tile.connections:
                    logger.warning(f"{tile} lost all correspondences and leaves the configuration")
                    self.remove_tile(tile)

    def pre_align(self) -> list[Tile]:
        """Fit each tile to its parent along a maximum spanning tree of the graph.

        Each connected component starts from its fixed tiles, or from its
        first member if none is fixed. Returns the tiles that were aligned.
        """
        tree = nx.maximum_spanning_tree(self.graph())
        aligned: list[Tile] = []
        for component in nx.connected_components(tree):
            roots = [t for t in self.tiles if t in component and t in self.fixed_tiles]
            if not roots:
                roots = [next(t for t in self.tiles if t in component)]
            visited = set(roots)
            queue = deque(roots)
            for root in roots:
                root.apply()
            while queue:
                parent = queue.popleft()
                for child in tree.neighbors(parent):
                    if child in visited:
                        continue
                    visited.add(child)
                    queue.append(child)
                    if child in self.fixed_tiles:
                        continue
                    matches = child.connections.get(parent, [])
                    parent.apply()
                    try:
                        p, q, w = match_arrays(matches)
                        child.model.fit(p, q, w)
                    except (NotEnoughDataPointsError, IllDefinedDataPointsError) as e:
                        logger.warning(f"Could not pre-align {child} to {parent}: {e}")
                        continue
                    child.apply()
                    aligned.append(child)
        return aligned
