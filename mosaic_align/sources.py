"""Tiles and layers as seen by the alignment pipeline.

The pipeline does not load, flatten or store images itself. It talks to
tile and layer sources through the protocols in this module:

- :class:`TileSource`: one image tile with an identity and a world transform
- :class:`LayerSource`: one section of a stack, rendered for a bounding box and scale
- :class:`DeformationSink`: receives the per-layer deformations of an elastic run

:class:`ArrayTileSource` and :class:`ArrayLayerSource` implement the protocols
for images held in memory. :class:`TileCollectionLayer` presents a group of
tile sources as one layer.
"""
import math
from dataclasses import dataclass, field
from typing import NamedTuple, Optional, Protocol

import numpy as np
from skimage.filters import gaussian
from skimage.transform import AffineTransform, ProjectiveTransform, rescale, warp

from .alignment._typing_utils import BoolArray, FloatArray, NumArray


class Box(NamedTuple):
    """Axis-aligned rectangle in world coordinates."""
    x: float
    y: float
    width: float
    height: float

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @property
    def max_x(self) -> float:
        return self.x + self.width

    @property
    def max_y(self) -> float:
        return self.y + self.height

    @classmethod
    def from_corners(cls, min_x: float, min_y: float, max_x: float, max_y: float) -> "Box":
        return cls(min_x, min_y, max_x - min_x, max_y - min_y)

    def intersection(self, other: "Box") -> "Box":
        return Box.from_corners(
            max(self.x, other.x),
            max(self.y, other.y),
            min(self.max_x, other.max_x),
            min(self.max_y, other.max_y),
        )

    def union(self, other: "Box") -> "Box":
        return Box.from_corners(
            min(self.x, other.x),
            min(self.y, other.y),
            max(self.max_x, other.max_x),
            max(self.max_y, other.max_y),
        )

    def overlaps(self, other: "Box") -> bool:
        return not self.intersection(other).is_empty


class TileSource(Protocol):
    id: str
    locked: bool

    @property
    def transform(self) -> FloatArray:
        """3x3 matrix from tile pixel coordinates to world coordinates."""
        ...

    def bounding_box(self) -> Box:
        ...

    def render(self, scale: float = 1.0) -> tuple[FloatArray, Optional[BoolArray]]:
        """Tile raster in tile coordinates at ``scale`` and its valid-pixel mask."""
        ...


class LayerSource(Protocol):
    id: str

    @property
    def is_empty(self) -> bool:
        ...

    def bounding_box(self) -> Box:
        ...

    def render(self, box: Box, scale: float) -> tuple[FloatArray, Optional[BoolArray]]:
        """Flattened layer content inside ``box`` at ``scale`` and its valid-pixel mask."""
        ...


class DeformationSink(Protocol):
    def apply_layer_transform(self, layer: LayerSource, transform) -> None:
        ...


def to_float_image(image: NumArray) -> FloatArray:
    """Grey float raster; color channels are averaged and alpha is dropped."""
    image = np.asarray(image)
    if image.ndim == 3:
        channels = image.shape[2]
        image = image[..., :3].mean(axis=2) if channels >= 3 else image[..., 0]
    return image.astype(np.float64)


def alpha_mask(image: NumArray) -> Optional[FloatArray]:
    """Alpha channel scaled to [0, 1] for RGBA rasters, None otherwise."""
    image = np.asarray(image)
    if image.ndim == 3 and image.shape[2] == 4:
        return image[..., 3].astype(np.float64) / 255.0
    return None


@dataclass
class ArrayTileSource:
    """A tile backed by an in-memory image."""
    id: str
    image: NumArray
    transform: FloatArray = field(default_factory=lambda: np.eye(3))
    locked: bool = False
    mask: Optional[NumArray] = None

    def __post_init__(self) -> None:
        self.transform = np.asarray(self.transform, dtype=np.float64)
        if self.mask is None:
            alpha = alpha_mask(self.image)
            if alpha is not None:
                self.mask = alpha > 0
        self.image = to_float_image(self.image)

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]

    def bounding_box(self) -> Box:
        corners = np.array(
            [[0, 0, 1], [self.width, 0, 1], [0, self.height, 1], [self.width, self.height, 1]],
            dtype=np.float64,
        )
        world = corners @ self.transform.T
        world = world[:, :2] / world[:, 2:]
        return Box.from_corners(*world.min(axis=0), *world.max(axis=0))

    def render(self, scale: float = 1.0) -> tuple[FloatArray, Optional[BoolArray]]:
        mask = None if self.mask is None else np.asarray(self.mask, dtype=bool)
        if scale == 1.0:
            return self.image, mask
        image = rescale(self.image, scale, anti_aliasing=scale < 1, preserve_range=True)
        if mask is not None:
            mask = rescale(mask.astype(np.float64), scale, order=0, anti_aliasing=False) > 0.5
        return image, mask


@dataclass
class ArrayLayerSource:
    """A layer backed by one in-memory image placed at ``offset`` in world coordinates."""
    id: str
    image: Optional[NumArray]
    offset: tuple[float, float] = (0.0, 0.0)

    def __post_init__(self) -> None:
        if self.image is not None:
            self.image = to_float_image(self.image)

    @property
    def is_empty(self) -> bool:
        return self.image is None or self.image.size == 0

    def bounding_box(self) -> Box:
        if self.is_empty:
            return Box(0.0, 0.0, 0.0, 0.0)
        return Box(self.offset[0], self.offset[1], self.image.shape[1], self.image.shape[0])

    def render(self, box: Box, scale: float) -> tuple[FloatArray, Optional[BoolArray]]:
        shape = (max(1, math.ceil(box.height * scale)), max(1, math.ceil(box.width * scale)))
        if self.is_empty:
            return np.zeros(shape), np.zeros(shape, dtype=bool)
        # output pixel -> layer image pixel
        inverse_map = AffineTransform(
            matrix=np.array(
                [
                    [1.0 / scale, 0.0, box.x - self.offset[0]],
                    [0.0, 1.0 / scale, box.y - self.offset[1]],
                    [0.0, 0.0, 1.0],
                ]
            )
        )
        source = self.image
        if scale < 1:
            source = gaussian(source, sigma=(1.0 / scale - 1.0) / 2.0, preserve_range=True)
        image = warp(
            source, inverse_map, output_shape=shape, order=1, cval=0.0, preserve_range=True
        )
        mask = warp(
            np.ones_like(self.image), inverse_map, output_shape=shape, order=0, cval=0.0
        ) > 0.5
        return image, mask


@dataclass
class TileCollectionLayer:
    """A group of tiles flattened into one layer; later tiles cover earlier ones."""
    id: str
    tiles: list

    @property
    def is_empty(self) -> bool:
        return len(self.tiles) == 0

    def bounding_box(self) -> Box:
        if self.is_empty:
            return Box(0.0, 0.0, 0.0, 0.0)
        box = self.tiles[0].bounding_box()
        for tile in self.tiles[1:]:
            box = box.union(tile.bounding_box())
        return box

    def render(self, box: Box, scale: float) -> tuple[FloatArray, Optional[BoolArray]]:
        shape = (max(1, math.ceil(box.height * scale)), max(1, math.ceil(box.width * scale)))
        image = np.zeros(shape)
        mask = np.zeros(shape, dtype=bool)
        output_to_world = np.array(
            [[1.0 / scale, 0.0, box.x], [0.0, 1.0 / scale, box.y], [0.0, 0.0, 1.0]]
        )
        for tile in self.tiles:
            source, source_mask = tile.render(1.0)
            # output pixel -> tile pixel
            inverse_map = ProjectiveTransform(matrix=np.linalg.inv(tile.transform) @ output_to_world)
            if scale < 1:
                source = gaussian(source, sigma=(1.0 / scale - 1.0) / 2.0, preserve_range=True)
            warped = warp(
                source, inverse_map, output_shape=shape, order=1, cval=0.0, preserve_range=True
            )
            valid = np.ones(source.shape) if source_mask is None else source_mask.astype(np.float64)
            covered = warp(valid, inverse_map, output_shape=shape, order=0, cval=0.0) > 0.5
            image[covered] = warped[covered]
            mask |= covered
        return image, mask
