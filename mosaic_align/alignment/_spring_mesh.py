"""Spring meshes for elastic layer alignment.

Each layer gets a triangular grid of vertices connected by springs whose
rest lengths are the initial edge lengths. Correspondences found by block
matching add springs of rest length zero from an active vertex of one mesh
to a passive vertex injected into the partner mesh. A passive vertex moves
with the piecewise affine deformation of the mesh that owns it.

:func:`optimize_meshes` relaxes all meshes together with a damped explicit
integration until the mean correspondence spring length converges.
"""
import logging
import math
from typing import Optional, Sequence

import numpy as np
from scipy.spatial import Delaunay
from scipy.spatial import cKDTree

from ._convergence import ConvergenceMonitor
from ._models import Model
from ._models import NotEnoughDataPointsError
from ._point_match import Point
from ._progress import ProgressSignal
from ._typing_utils import FloatArray
from ._typing_utils import IntArray

logger = logging.getLogger(__name__)


class Vertex(Point):
    """A mesh vertex whose coordinates are views into its mesh's arrays."""
    __slots__ = ("index",)

    def __init__(self, local: FloatArray, world: FloatArray, index: int):
        self.local = local
        self.world = world
        self.id = 0
        self.index = index

    def __getstate__(self):
        state = super().__getstate__()
        state["index"] = self.index
        return state

    def __setstate__(self, state) -> None:
        super().__setstate__(state)
        self.index = state["index"]


def triangular_grid(resolution: int, width: float, height: float) -> FloatArray:
    """Vertex positions of a grid with ``resolution`` columns and offset odd rows."""
    num_x = max(2, resolution)
    dx = width / (num_x - 1)
    num_y = max(2, int(round(height / (dx * math.sqrt(3) / 2))) + 1)
    dy = height / (num_y - 1)
    rows = []
    for row in range(num_y):
        if row % 2 == 0:
            xs = np.arange(num_x) * dx
        else:
            xs = np.concatenate([[0.0], (np.arange(num_x - 1) + 0.5) * dx, [width]])
        rows.append(np.column_stack([xs, np.full(len(xs), row * dy)]))
    return np.concatenate(rows)


class SpringMesh:
    """Deformable grid covering one layer at the mesh working scale."""

    def __init__(
        self,
        resolution: int,
        width: float,
        height: float,
        stiffness: float,
        max_stretch: float,
        damp: float,
    ):
        if width <= 0 or height <= 0:
            raise ValueError(f"Mesh needs a positive size, got {width} x {height}")
        self.width = width
        self.height = height
        self.stiffness = stiffness
        self.max_stretch = max_stretch
        self.damp = damp
        self.fixed = False

        self._local = triangular_grid(resolution, width, height)
        self._world = self._local.copy()
        self._velocity = np.zeros_like(self._local)
        self.vertices = [
            Vertex(self._local[i], self._world[i], i) for i in range(len(self._local))
        ]

        self._delaunay = Delaunay(self._local)
        edges = np.concatenate(
            [self._delaunay.simplices[:, [a, b]] for a, b in ((0, 1), (1, 2), (2, 0))]
        )
        edges = np.unique(np.sort(edges, axis=1), axis=0)
        self.spring_i: IntArray = edges[:, 0]
        self.spring_j: IntArray = edges[:, 1]
        self.rest_lengths = np.linalg.norm(
            self._local[self.spring_j] - self._local[self.spring_i], axis=1
        )

        self._passive_local: list[FloatArray] = []
        self.external_springs: list[tuple[int, "SpringMesh", int, float]] = []

    def __len__(self) -> int:
        return len(self.vertices)

    @property
    def num_passive_vertices(self) -> int:
        return len(self._passive_local)

    @property
    def local_coordinates(self) -> FloatArray:
        return self._local

    @property
    def world_coordinates(self) -> FloatArray:
        return self._world

    def init(self, model: Model) -> None:
        """Place every vertex at ``model(local)`` and reset velocities."""
        self._world[:] = model.apply(self._local)
        self._velocity[:] = 0.0

    def add_passive_vertex(self, point: Point) -> int:
        """Inject a point of this layer, in mesh-local coordinates; returns its index."""
        self._passive_local.append(np.array(point.local, dtype=np.float64))
        return len(self._passive_local) - 1

    def add_spring(
        self, vertex: Vertex, partner: "SpringMesh", passive_index: int, constant: float
    ) -> None:
        """Connect an own vertex to a passive vertex of ``partner``."""
        if self.vertices[vertex.index] is not vertex:
            raise ValueError(f"Vertex {vertex.index} does not belong to this mesh")
        self.external_springs.append((vertex.index, partner, passive_index, constant))

    def passive_interpolation(self) -> tuple[IntArray, FloatArray]:
        """Triangle vertex indices and barycentric weights of every passive vertex.

        Passive vertices outside the grid extrapolate from the triangle of
        their nearest grid vertex.
        """
        if not self._passive_local:
            return np.empty((0, 3), dtype=int), np.empty((0, 3))
        points = np.array(self._passive_local)
        simplex = self._delaunay.find_simplex(points)
        outside = simplex < 0
        if outside.any():
            nearest = cKDTree(self._local).query(points[outside])[1]
            simplex[outside] = self._delaunay.vertex_to_simplex[nearest]
        transform = self._delaunay.transform[simplex]
        b = np.einsum("mij,mj->mi", transform[:, :2], points - transform[:, 2])
        return self._delaunay.simplices[simplex], np.column_stack([b, 1.0 - b.sum(axis=1)])

    def passive_world(self) -> FloatArray:
        triangles, bary = self.passive_interpolation()
        return np.einsum("mk,mkd->md", bary, self._world[triangles])


def optimize_meshes(
    meshes: Sequence[SpringMesh],
    max_epsilon: float,
    max_iterations: int,
    max_plateau_width: int,
    progress: Optional[ProgressSignal] = None,
) -> float:
    """Relax all meshes simultaneously; returns the final mean correspondence length.

    Raises:
        NotEnoughDataPointsError: No correspondence spring connects the meshes.
    """
    mesh_index = {id(mesh): k for k, mesh in enumerate(meshes)}
    offsets = np.cumsum([0] + [len(m) for m in meshes])
    passive_offsets = np.cumsum([0] + [m.num_passive_vertices for m in meshes])

    world = np.concatenate([m.world_coordinates for m in meshes])
    velocity = np.zeros_like(world)
    fixed = np.concatenate([np.full(len(m), m.fixed) for m in meshes])
    damp = np.concatenate([np.full(len(m), m.damp) for m in meshes])

    spring_i = np.concatenate([m.spring_i + offsets[k] for k, m in enumerate(meshes)])
    spring_j = np.concatenate([m.spring_j + offsets[k] for k, m in enumerate(meshes)])
    rest = np.concatenate([m.rest_lengths for m in meshes])
    k_int = np.concatenate([np.full(len(m.rest_lengths), m.stiffness) for m in meshes])
    max_int = np.concatenate([np.full(len(m.rest_lengths), m.max_stretch) for m in meshes])

    interpolations = [m.passive_interpolation() for m in meshes]
    passive_triangles = np.concatenate(
        [tri + offsets[k] for k, (tri, _) in enumerate(interpolations)]
    ).astype(int)
    passive_bary = np.concatenate([bary for _, bary in interpolations])

    src, dst, k_ext, max_ext = [], [], [], []
    for k, mesh in enumerate(meshes):
        for vertex_index, partner, passive_index, constant in mesh.external_springs:
            if id(partner) not in mesh_index:
                raise ValueError("A spring connects to a mesh outside the optimized set")
            src.append(offsets[k] + vertex_index)
            dst.append(passive_offsets[mesh_index[id(partner)]] + passive_index)
            k_ext.append(constant)
            max_ext.append(mesh.max_stretch)
    if not src:
        raise NotEnoughDataPointsError("No correspondences connect the spring meshes")
    src = np.array(src)
    dst = np.array(dst)
    k_ext = np.array(k_ext)
    max_ext = np.array(max_ext)

    total_stiffness = np.zeros(len(world))
    np.add.at(total_stiffness, spring_i, k_int)
    np.add.at(total_stiffness, spring_j, k_int)
    np.add.at(total_stiffness, src, k_ext)
    step = 1.0 / np.maximum(1.0, total_stiffness)

    monitor = ConvergenceMonitor(max_epsilon, max_iterations, max_plateau_width)
    error = np.inf
    while True:
        if progress is not None:
            progress.check_cancelled()
        passive = np.einsum("mk,mkd->md", passive_bary, world[passive_triangles])
        force = np.zeros_like(world)

        d = world[spring_j] - world[spring_i]
        length = np.linalg.norm(d, axis=1)
        stretch = np.clip(length - rest, -max_int, max_int)
        f = (k_int * stretch / np.maximum(length, 1e-12))[:, None] * d
        np.add.at(force, spring_i, f)
        np.add.at(force, spring_j, -f)

        e = passive[dst] - world[src]
        length_ext = np.linalg.norm(e, axis=1)
        stretch_ext = np.minimum(length_ext, max_ext)
        f_ext = (k_ext * stretch_ext / np.maximum(length_ext, 1e-12))[:, None] * e
        np.add.at(force, src, f_ext)

        error = float(np.average(length_ext, weights=k_ext))
        if not monitor.update(error):
            break

        force[fixed] = 0.0
        velocity = (velocity + force * step[:, None]) * damp[:, None]
        velocity[fixed] = 0.0
        world += velocity

    for k, mesh in enumerate(meshes):
        mesh.world_coordinates[:] = world[offsets[k]:offsets[k + 1]]
    logger.info(
        f"Relaxed {len(meshes)} spring meshes in {monitor.iterations} iterations, "
        f"mean correspondence length {error:.3f}"
    )
    return error
