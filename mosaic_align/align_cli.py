"""Command line entry point for montage and elastic alignment of an image folder.

Montage mode reads ``coordinates.csv`` from the input folder and writes the
fitted tile matrices to ``transforms.csv``. Elastic mode treats every image
as one layer, ordered by file name, and writes the relaxed mesh control
points of every layer to ``transforms.csv``. Linear mode reads layers the same
way and writes one chained matrix per layer.
"""
import logging
import os
import pathlib
import sys
from typing import Optional

import numpy as np
import pandas as pd
import skimage.io
import tifffile
from pydantic_settings import CliApp

from .alignment import AlignmentContext
from .alignment import ElasticAlignmentResult
from .alignment import ElasticLayerAligner
from .alignment import align_layers_linearly
from .alignment import align_tile_sources
from .alignment import transforms_to_dataframe
from .alignment._progress import ProgressSignal
from .parameters import AlignmentJobParameters
from .parameters import AlignmentMode
from .sources import ArrayLayerSource
from .sources import ArrayTileSource

logger = logging.getLogger(__name__)

COORDINATES_FILE = "coordinates.csv"
TRANSFORMS_FILE = "transforms.csv"
IMAGE_EXTENSIONS = (".tif", ".tiff", ".png", ".jpg", ".jpeg", ".bmp")


def read_image(path: pathlib.Path) -> np.ndarray:
    if path.suffix.lower() in (".tif", ".tiff"):
        return tifffile.imread(path)
    return skimage.io.imread(path)


def list_images(folder: pathlib.Path) -> list[pathlib.Path]:
    return sorted(p for p in folder.iterdir() if p.suffix.lower() in IMAGE_EXTENSIONS)


def read_tile_sources(params: AlignmentJobParameters) -> list[ArrayTileSource]:
    folder = pathlib.Path(params.input_folder)
    coordinates_path = folder / COORDINATES_FILE
    if not coordinates_path.exists():
        raise ValueError(f"Montage alignment needs {coordinates_path}")
    coordinates = pd.read_csv(coordinates_path)
    missing = {"filename", "x", "y"} - set(coordinates.columns)
    if missing:
        raise ValueError(f"{coordinates_path} lacks the columns {sorted(missing)}")

    sources = []
    for row in coordinates.itertuples(index=False):
        transform = np.eye(3)
        transform[0, 2] = row.x
        transform[1, 2] = row.y
        sources.append(
            ArrayTileSource(str(row.filename), read_image(folder / row.filename), transform)
        )
    return sources


def read_layer_sources(params: AlignmentJobParameters) -> list[ArrayLayerSource]:
    paths = list_images(pathlib.Path(params.input_folder))
    if not paths:
        raise ValueError(f"No images found in {params.input_folder}")
    return [ArrayLayerSource(p.name, read_image(p)) for p in paths]


def control_points_dataframe(result: ElasticAlignmentResult) -> pd.DataFrame:
    """One row per mesh vertex: its layer and its full resolution source and target positions."""
    frames = []
    for layer_id in result.layer_ids:
        transform = result.transforms[layer_id]
        frames.append(
            pd.DataFrame(
                {
                    "layer": layer_id,
                    "source_x": transform.source[:, 0],
                    "source_y": transform.source[:, 1],
                    "target_x": transform.target[:, 0],
                    "target_y": transform.target[:, 1],
                }
            )
        )
    return pd.concat(frames, ignore_index=True)


def run_montage(params: AlignmentJobParameters, context: AlignmentContext) -> Optional[pd.DataFrame]:
    sources = read_tile_sources(params)
    fixed_ids = [sources[i].id for i in params.fixed if 0 <= i < len(sources)]
    transforms = align_tile_sources(context, params.montage, sources, fixed_ids)
    if transforms is None:
        return None
    return transforms_to_dataframe(transforms)


def run_elastic(params: AlignmentJobParameters, context: AlignmentContext) -> Optional[pd.DataFrame]:
    layers = read_layer_sources(params)
    result = ElasticLayerAligner(params.elastic, context).run(layers, fixed_layers=params.fixed)
    if result is None:
        return None
    logger.info(f"Elastic alignment converged with mean spring length {result.error:.2f}px")
    return control_points_dataframe(result)


def run_linear(params: AlignmentJobParameters, context: AlignmentContext) -> Optional[pd.DataFrame]:
    layers = read_layer_sources(params)
    transforms = align_layers_linearly(context, params.linear, layers)
    return transforms_to_dataframe(transforms)


def run(params: AlignmentJobParameters) -> Optional[str]:
    """Align the input folder; returns the written transforms file or None on failure."""
    progress = ProgressSignal(show_progress_bar=params.show_progress)
    if params.cache_folder:
        context = AlignmentContext.with_disk_cache(params.cache_folder, progress=progress)
    else:
        context = AlignmentContext(progress=progress)

    try:
        if params.mode == AlignmentMode.montage:
            table = run_montage(params, context)
        elif params.mode == AlignmentMode.linear:
            table = run_linear(params, context)
        else:
            table = run_elastic(params, context)
    finally:
        context.executors.shutdown()

    if table is None:
        logger.error("Alignment failed, no transforms written")
        return None
    output_folder = params.resolved_output_folder
    os.makedirs(output_folder, exist_ok=True)
    output_path = os.path.join(output_folder, TRANSFORMS_FILE)
    table.to_csv(output_path, index=False)
    logger.info(f"Wrote {len(table)} rows to {output_path}")
    return output_path


def main(args: list[str]) -> None:
    params = CliApp.run(AlignmentJobParameters, cli_args=args)
    log_level = logging.DEBUG if params.verbose else logging.INFO
    logging.basicConfig(level=log_level)
    # PIL debug logs are very spammy
    logging.getLogger("PIL").setLevel(logging.INFO)
    if run(params) is None:
        sys.exit(1)


def run_cli() -> None:
    main(sys.argv[1:])


if __name__ == "__main__":
    run_cli()
