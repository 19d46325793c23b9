"""Mosaic Align Package.

This package aligns microscope image tiles into montages and elastically
aligns stacks of serial sections.

Main functionality:
- Montage alignment: Feature based rigid registration of overlapping tiles
- Elastic alignment: Spring mesh relaxation of block matched layers
- Disk caching of features and correspondences between runs

The package exposes the main entry points at the top level for convenience.
"""

from .alignment import (
    AlignmentContext,
    ElasticLayerAligner,
    align_tile_sources,
    transforms_to_dataframe,
)
from .parameters import AlignmentJobParameters, ElasticParameters, OptimizeParameters
from .sources import ArrayLayerSource, ArrayTileSource, Box
