from typing import Optional

import numpy as np
from scipy import ndimage

from .alignment._point_match import Point, PointMatch
from .sources import ArrayLayerSource, ArrayTileSource


def random_texture(
    shape: tuple[int, int], sigma: float = 1.5, seed: int = 0
) -> np.ndarray:
    """Smoothed white noise scaled to [0, 1]; correlates well and has plenty of blobs."""
    rng = np.random.default_rng(seed)
    texture = ndimage.gaussian_filter(rng.random(shape), sigma)
    texture -= texture.min()
    return texture / texture.max()


def translated_matches(
    shift: tuple[float, float],
    n: int = 50,
    num_outliers: int = 0,
    noise: float = 0.0,
    extent: float = 500.0,
    seed: int = 0,
) -> list[PointMatch]:
    """Correspondences ``p -> p + shift`` with optional noise and random outliers."""
    rng = np.random.default_rng(seed)
    p = rng.uniform(0, extent, size=(n + num_outliers, 2))
    q = p + np.asarray(shift, dtype=np.float64)
    if noise > 0:
        q[:n] += rng.normal(0, noise, size=(n, 2))
    q[n:] = rng.uniform(0, extent, size=(num_outliers, 2))
    return [PointMatch(Point(a), Point(b)) for a, b in zip(p, q)]


def transformed_matches(matrix: np.ndarray, n: int = 20, extent: float = 100.0, seed: int = 0) -> list[PointMatch]:
    """Exact correspondences under a 3x3 affine ``matrix``."""
    rng = np.random.default_rng(seed)
    p = rng.uniform(0, extent, size=(n, 2))
    q = p @ matrix[:2, :2].T + matrix[:2, 2]
    return [PointMatch(Point(a), Point(b)) for a, b in zip(p, q)]


def shifted_crops(
    texture: np.ndarray, size: int, origins: list[tuple[int, int]]
) -> list[np.ndarray]:
    """Square crops of ``texture`` with top-left corners at the ``(x, y)`` origins."""
    return [texture[y:y + size, x:x + size].copy() for x, y in origins]


def layer_stack(
    size: int,
    origins: list[tuple[int, int]],
    empty: Optional[list[int]] = None,
    seed: int = 0,
) -> list[ArrayLayerSource]:
    """Layers cut from one texture; layer ``k`` shows the texture from ``origins[k]``."""
    margin = max(max(x, y) for x, y in origins)
    texture = random_texture((size + margin + 1, size + margin + 1), seed=seed)
    empty = empty or []
    return [
        ArrayLayerSource(f"layer{k}", None if k in empty else crop)
        for k, crop in enumerate(shifted_crops(texture, size, origins))
    ]


def tile_row(
    size: int,
    step: int,
    count: int,
    position_error: Optional[list[tuple[float, float]]] = None,
    seed: int = 0,
) -> list[ArrayTileSource]:
    """A row of overlapping tiles cut from one texture.

    Tile ``k`` covers the texture from ``(k * step, 0)``; its transform places
    it there plus ``position_error[k]``.
    """
    texture = random_texture((size, (count - 1) * step + size), seed=seed)
    position_error = position_error or [(0.0, 0.0)] * count
    tiles = []
    for k in range(count):
        transform = np.eye(3)
        transform[0, 2] = k * step + position_error[k][0]
        transform[1, 2] = position_error[k][1]
        tiles.append(
            ArrayTileSource(f"tile{k}", texture[:, k * step:k * step + size].copy(), transform)
        )
    return tiles
