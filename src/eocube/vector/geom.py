# src/eocube/vector/geom.py

"""
This module turns the polygon inputs accepted by geometric cube filters into a
single valid shapely geometry in the cube CRS.
"""

from pathlib import Path
from typing import Any, Mapping, Optional, Union
import logging

import geopandas as gpd
from rasterio.crs import CRS
from rasterio.errors import CRSError
from rasterio.warp import transform_geom
from shapely.geometry import mapping, shape
from shapely.geometry.base import BaseGeometry

from eocube.exceptions import ConfigurationError, ReprojectionError
from eocube.vector.io import load_vector
from eocube.vector.layer import POLYGONAL_TYPES, Vector

log = logging.getLogger(__name__)

__all__ = [
    "to_crs",
    "validate",
    "union_geometry",
    "as_geometry"
]

def to_crs(vector: Vector, target_crs) -> Vector:
    if vector.crs is None:
        raise ValueError("Vector has no CRS. Cannot reproject.")
    return Vector(vector.data.to_crs(target_crs))

def validate(vector: Vector, drop_invalid: bool = True) -> Vector:
    gdf = vector.data.copy()
    invalid_mask = ~gdf.is_valid

    if not invalid_mask.any():
        return Vector(gdf)

    gdf.loc[invalid_mask, 'geometry'] = gdf.loc[invalid_mask, 'geometry'].buffer(0)
    if drop_invalid:
        gdf = gdf[gdf.is_valid]
    return Vector(gdf)

def union_geometry(vector: Vector) -> BaseGeometry:
    """Union of all (repaired) features of a Vector."""
    gdf = validate(vector).data
    if gdf.empty:
        raise ConfigurationError("Vector contains no valid geometry.")
    return gdf.geometry.union_all()

def _reproject(geom: BaseGeometry, src_crs, dst_crs) -> BaseGeometry:
    src = CRS.from_user_input(src_crs)
    dst = CRS.from_user_input(dst_crs)
    if src == dst:
        return geom
    try:
        return shape(transform_geom(src, dst, mapping(geom)))
    except (CRSError, ValueError) as e:
        raise ReprojectionError(f"Failed to transform geometry from {src} to {dst}: {e}") from e

def as_geometry(
    obj: Union[BaseGeometry, Mapping[str, Any], str, Path, Vector, gpd.GeoDataFrame],
    target_crs,
    crs: Optional[Any] = None
) -> BaseGeometry:
    """
    Resolve a polygon input into one geometry in the target CRS.

    Args:
        obj: shapely geometry, GeoJSON mapping (geometry, Feature or
            FeatureCollection), path to a vector file, Vector or GeoDataFrame.
        target_crs: CRS of the cube.
        crs: CRS of obj when it carries none (shapely and GeoJSON inputs).
            Defaults to the target CRS.

    Returns:
        BaseGeometry: Valid geometry in target_crs.
    """
    if isinstance(obj, (str, Path)):
        obj = load_vector(obj)
    if isinstance(obj, gpd.GeoDataFrame):
        obj = Vector(obj)

    if isinstance(obj, Vector):
        if obj.crs is None and crs is None:
            raise ConfigurationError("Vector has no CRS; pass crs explicitly.")
        vector = obj if obj.crs is not None else Vector(obj.data.set_crs(crs))
        geom = union_geometry(to_crs(vector, target_crs))
    else:
        if isinstance(obj, BaseGeometry):
            geom = obj
        elif isinstance(obj, Mapping):
            geom = _geojson_geometry(obj)
        else:
            raise TypeError(f"Cannot interpret {type(obj).__name__} as a geometry")
        if not geom.is_valid:
            geom = geom.buffer(0)
        geom = _reproject(geom, crs if crs is not None else target_crs, target_crs)

    if geom.is_empty:
        raise ConfigurationError("Masking geometry is empty.")
    if geom.geom_type not in POLYGONAL_TYPES:
        raise ConfigurationError(f"Masking geometry must be polygonal, got {geom.geom_type}")
    log.debug(f"Resolved masking geometry {geom.geom_type} with bounds {geom.bounds}")
    return geom

def _geojson_geometry(obj: Mapping[str, Any]) -> BaseGeometry:
    kind = obj.get("type")
    if kind == "FeatureCollection":
        gdf = gpd.GeoDataFrame.from_features(obj["features"])
        return gdf.geometry.union_all()
    if kind == "Feature":
        return shape(obj["geometry"])
    return shape(obj)
