# src/eocube/collection/image.py

"""
This module defines the immutable descriptors of indexed source images.

An Image references its pixels (one BandAsset per band) but never holds them:
the collection index is metadata only.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

import pandas as pd
from rasterio.crs import CRS
from shapely.geometry import box, shape
from shapely.geometry.base import BaseGeometry

log = logging.getLogger(__name__)

__all__ = [
    "BandAsset",
    "Image",
    "to_naive_utc"
]

@dataclass(frozen=True)
class BandAsset:
    """
    Pointer to the remote (or local) raster holding one band of an image.

    Args:
        href: Path or URL readable by GDAL (s3://, https:// and local paths).
        nodata: Value flagging missing pixels, overriding the file's own nodata.
        scale: Multiplier applied to raw values on read.
        offset: Added to scaled values on read.
        band_index: 1-based band within the asset file.
    """
    href: str
    nodata: Optional[float] = None
    scale: float = 1.0
    offset: float = 0.0
    band_index: int = 1

    @property
    def gdal_path(self) -> str:
        """Translate cloud URLs into GDAL virtual file system paths."""
        href = self.href
        if href.startswith("s3://"):
            return "/vsis3/" + href[len("s3://"):]
        if href.startswith("gs://"):
            return "/vsigs/" + href[len("gs://"):]
        if href.startswith(("http://", "https://")):
            return "/vsicurl/" + href
        return href

@dataclass(frozen=True)
class Image:
    """
    A single observation at one timestamp.

    Attributes:
        id (str): Unique image identifier.
        datetime (datetime): Acquisition time as naive UTC.
        footprint (BaseGeometry): Bounding geometry of the valid image area.
        crs (CRS): Coordinate reference system of the footprint.
        bands (Mapping[str, BandAsset]): Band name to asset mapping.
        metadata (Mapping[str, Any]): Free-form properties such as 'eo:cloud_cover'.
    """
    id: str
    datetime: datetime
    footprint: BaseGeometry
    crs: CRS
    bands: Mapping[str, BandAsset]
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Freeze mappings so the image stays immutable once indexed
        object.__setattr__(self, "bands", MappingProxyType(dict(self.bands)))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))
        object.__setattr__(self, "datetime", to_naive_utc(self.datetime))
        if not isinstance(self.crs, CRS):
            object.__setattr__(self, "crs", CRS.from_user_input(self.crs))
        if not isinstance(self.footprint, BaseGeometry):
            object.__setattr__(self, "footprint", _to_geometry(self.footprint))

    @classmethod
    def create(
        cls,
        id: str,
        datetime: Union[datetime, str],
        footprint: Any,
        crs: Union[str, int, CRS],
        bands: Mapping[str, Union[str, BandAsset]],
        metadata: Optional[Mapping[str, Any]] = None
    ) -> "Image":
        """
        Convenience constructor accepting plain strings for assets and time.

        Args:
            id: Image identifier.
            datetime: datetime or ISO-8601 string.
            footprint: shapely geometry, GeoJSON mapping or (left, bottom, right, top) bounds.
            crs: Footprint CRS in any form accepted by rasterio.
            bands: Band name to href string or BandAsset.
            metadata: Optional free-form properties.
        """
        assets = {
            name: asset if isinstance(asset, BandAsset) else BandAsset(href=str(asset))
            for name, asset in bands.items()
        }
        return cls(
            id=id,
            datetime=_parse_datetime(datetime),
            footprint=_to_geometry(footprint),
            crs=crs,
            bands=assets,
            metadata=metadata or {}
        )

    @property
    def band_names(self):
        return tuple(self.bands.keys())

    def with_bands(self, bands: Mapping[str, BandAsset]) -> "Image":
        """Returns a copy of the image restricted to the given bands."""
        return replace(self, bands=dict(bands))

    def __hash__(self) -> int:
        return hash((self.id, self.datetime))

    def __repr__(self) -> str:
        return f"<Image id={self.id} datetime={self.datetime.isoformat()} bands={list(self.bands)}>"

def to_naive_utc(value: datetime) -> datetime:
    """Normalize aware datetimes to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        offset = value.utcoffset()
        value = (value - offset).replace(tzinfo=None)
    return value

def _parse_datetime(value: Union[datetime, str]) -> datetime:
    if isinstance(value, datetime):
        return value
    return pd.Timestamp(str(value).strip()).to_pydatetime()

def _to_geometry(value: Any) -> BaseGeometry:
    if isinstance(value, BaseGeometry):
        return value
    if isinstance(value, dict):
        return shape(value)
    if isinstance(value, (list, tuple)) and len(value) == 4:
        return box(*value)
    if isinstance(value, (list, tuple)) and len(value) == 6:
        # 3-D bbox: (minx, miny, minz, maxx, maxy, maxz)
        return box(value[0], value[1], value[3], value[4])
    raise TypeError(f"Cannot interpret footprint of type {type(value).__name__}")
