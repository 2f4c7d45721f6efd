# src/eocube/collection/stac.py

"""
This module converts STAC items returned by an external catalog search into Images.

No network I/O happens here: items are either pystac objects or the GeoJSON
dictionaries of an already executed search (for example a saved ItemCollection).
"""

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, Union

import pystac

from .image import BandAsset, Image

log = logging.getLogger(__name__)

__all__ = [
    "images_from_stac",
    "load_item_collection",
    "cloud_cover_below"
]

STAC_CRS = "EPSG:4326"

# Media types GDAL can open as georeferenced rasters
RASTER_MEDIA_TYPES = ("image/tiff", "image/jp2", "application/x-netcdf", "application/x-hdf")

def _as_item(item: Any) -> pystac.Item:
    if isinstance(item, pystac.Item):
        return item
    if isinstance(item, Mapping):
        return pystac.Item.from_dict(dict(item))
    raise TypeError(f"Expected a STAC item dict or pystac.Item, got {type(item).__name__}")

def _asset_property(asset: pystac.Asset, field: str) -> Optional[Any]:
    """
    Read a property set on the asset itself or, failing that, on its first band
    (`raster:bands` in STAC 1.0, `bands` in STAC 1.1).
    """
    fields = asset.to_dict()
    if field in fields:
        return fields[field]
    for key, name in (("raster:bands", field.replace("raster:", "")), ("bands", field)):
        bands = fields.get(key) or []
        if bands and bands[0].get(name) is not None:
            return bands[0][name]
    return None

def _is_raster_data(asset: pystac.Asset) -> bool:
    """Geospatial raster assets: a raster media type, or no type but the 'data' role."""
    media_type = (asset.media_type or "").lower()
    if media_type:
        return any(media_type.startswith(t) for t in RASTER_MEDIA_TYPES)
    return "data" in (asset.roles or [])

def _band_asset(asset: pystac.Asset) -> BandAsset:
    nodata = _asset_property(asset, "nodata")
    scale = _asset_property(asset, "raster:scale")
    offset = _asset_property(asset, "raster:offset")
    return BandAsset(
        href=asset.href,
        nodata=float(nodata) if nodata is not None else None,
        scale=float(scale) if scale is not None else 1.0,
        offset=float(offset) if offset is not None else 0.0
    )

def images_from_stac(
    items: Iterable[Any],
    assets: Optional[Sequence[str]] = None
) -> List[Image]:
    """
    Convert STAC items into Image descriptors.

    Args:
        items: pystac.Item objects or STAC item dictionaries.
        assets: Asset keys to index. Defaults to every raster data asset
            (GeoTIFF/COG, JPEG2000, NetCDF or HDF media type, or an untyped
            asset with the 'data' role); thumbnails and metadata are left out.

    Returns:
        List[Image]: One Image per item that has a datetime and at least one asset.
    """
    images = []
    for raw in items:
        item = _as_item(raw)

        dt = item.datetime or item.common_metadata.start_datetime
        if dt is None:
            log.warning(f"Skipping STAC item {item.id}: no datetime")
            continue

        footprint = item.geometry or item.bbox
        if footprint is None:
            log.warning(f"Skipping STAC item {item.id}: no geometry")
            continue

        if assets is None:
            keys = [key for key, asset in item.assets.items() if _is_raster_data(asset)]
        else:
            keys = [key for key in assets if key in item.assets]

        bands = {key: _band_asset(item.assets[key]) for key in keys}
        if not bands:
            log.warning(f"Skipping STAC item {item.id}: none of the requested assets present")
            continue

        images.append(Image.create(
            id=item.id,
            datetime=dt,
            footprint=footprint,
            crs=STAC_CRS,
            bands=bands,
            metadata=item.properties
        ))

    log.info(f"Converted {len(images)} STAC items into images")
    return images

def load_item_collection(path: Union[str, Path]) -> List[pystac.Item]:
    """
    Read the items of a saved STAC ItemCollection (or of a single STAC item file).

    Args:
        path: Path to the JSON file.

    Returns:
        List of pystac.Item.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"ItemCollection file not found: {path}")

    payload = pystac.StacIO.default().read_json(str(path))
    if payload.get("type") == "FeatureCollection":
        return list(pystac.ItemCollection.from_dict(payload))
    if payload.get("type") == "Feature":
        return [pystac.Item.from_dict(payload)]
    raise ValueError(f"{path} is neither a STAC ItemCollection nor a STAC item")

def cloud_cover_below(threshold: float, key: str = "eo:cloud_cover") -> Callable[[Mapping], bool]:
    """
    Quality predicate keeping images whose cloud cover is below a threshold.

    Images without the property are kept.
    """
    def predicate(metadata: Mapping) -> bool:
        value = metadata.get(key)
        return value is None or float(value) < threshold
    return predicate
