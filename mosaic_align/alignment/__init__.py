"""Alignment module for tile montages and layer stacks.

This module computes transforms for image tiles and layers without
rendering or storing any image.
"""

from .context import AlignmentContext
from ._models import Model, ModelType, create_model
from ._progress import AlignmentCancelledError, ProgressCallbacks, ProgressSignal
from ._tile import OptimizationError, Tile, TileConfiguration
from .tile_alignment import (
    align_tile_sources,
    align_tiles,
    transforms_to_dataframe,
)
from .elastic_alignment import ElasticAlignmentResult, ElasticLayerAligner
from .linear_alignment import align_layers_linearly, align_tile_collections

__all__ = [
    'AlignmentContext',
    'Model',
    'ModelType',
    'create_model',
    'AlignmentCancelledError',
    'ProgressCallbacks',
    'ProgressSignal',
    'OptimizationError',
    'Tile',
    'TileConfiguration',
    'align_tile_sources',
    'align_tiles',
    'transforms_to_dataframe',
    'ElasticAlignmentResult',
    'ElasticLayerAligner',
    'align_layers_linearly',
    'align_tile_collections',
]
