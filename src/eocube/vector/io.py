# src/eocube/vector/io.py

"""
This module reads and writes masking polygons with GeoPandas (pyogrio engine).
"""

from pathlib import Path
from typing import Optional, Tuple, Union
import logging

import geopandas as gpd

from eocube.vector.layer import Vector

log = logging.getLogger(__name__)

__all__ = [
    "load_vector",
    "save_vector"
]

def load_vector(
    path: Union[str, Path],
    layer: Optional[Union[str, int]] = None,
    bbox: Optional[Tuple[float, float, float, float]] = None,
    engine: str = "pyogrio",
    **kwargs
) -> Vector:
    """
    Load masking features from a vector file.

    Args:
        path: GeoPackage, Shapefile, GeoJSON or any format supported by GDAL.
        layer: Layer name or index for multi-layer sources.
        bbox: Optional (left, bottom, right, top) in the file CRS; only
            intersecting features are read.
        engine: GeoPandas I/O engine.

    Returns:
        Vector: The loaded features.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Vector file not found: {path}")

    if layer is not None:
        kwargs["layer"] = layer
    if bbox is not None:
        kwargs["bbox"] = tuple(bbox)
    gdf = gpd.read_file(path, engine=engine, **kwargs)

    log.debug(f"Loaded {len(gdf)} feature(s) from {path.name}")
    return Vector(gdf)

def save_vector(vector: Vector, path: Union[str, Path], driver: Optional[str] = None, engine: str = "pyogrio", **kwargs):
    """Write features to disk, creating parent directories as needed."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    vector.data.to_file(path, driver=driver, engine=engine, **kwargs)
    log.debug(f"Wrote {len(vector)} feature(s) to {path}")
