# src/eocube/vector/layer.py

"""
This module defines the container for polygon inputs used to mask cubes.
"""

import logging
from typing import Any, Iterable, Optional

import geopandas as gpd

log = logging.getLogger(__name__)

__all__ = [
    "Vector",
    "POLYGONAL_TYPES"
]

POLYGONAL_TYPES = ("Polygon", "MultiPolygon")

class Vector:
    """
    Polygon features delimiting the area of interest of a cube.

    Args:
        data: GeoDataFrame of the features. Empty geometries are dropped.
    """
    def __init__(self, data: gpd.GeoDataFrame):
        if not isinstance(data, gpd.GeoDataFrame):
            raise TypeError(f"Expected GeoDataFrame, got {type(data)}")
        empty = data.geometry.isna() | data.geometry.is_empty
        if empty.any():
            log.debug(f"Dropping {int(empty.sum())} empty feature(s)")
            data = data[~empty]
        self._data = data

    @classmethod
    def from_geometries(cls, geometries: Iterable[Any], crs: Optional[Any] = None) -> "Vector":
        """Build a Vector from shapely geometries."""
        return cls(gpd.GeoDataFrame(geometry=list(geometries), crs=crs))

    @property
    def data(self) -> gpd.GeoDataFrame:
        return self._data

    @property
    def crs(self):
        return self._data.crs

    @property
    def bounds(self):
        return self._data.total_bounds

    @property
    def geometries(self):
        return self._data.geometry

    @property
    def is_polygonal(self) -> bool:
        """True when every feature has an area (usable as a mask)."""
        return bool(self._data.geom_type.isin(POLYGONAL_TYPES).all())

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self):
        return f"<Vector features={len(self._data)} crs={self.crs}>"
