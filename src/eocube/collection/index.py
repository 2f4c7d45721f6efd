# src/eocube/collection/index.py

"""
This module builds the normalized, metadata-only registry of source images.

The ImageCollection is shared read-only by every cube built from it. Filtering
happens once, at build time: band selection/renaming and quality predicates.
"""

import logging
import math
from datetime import datetime
from typing import (
    Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union
)

from rasterio.crs import CRS
from rasterio.warp import transform_geom
from shapely.geometry import box, mapping, shape
from shapely.geometry.base import BaseGeometry

from eocube.exceptions import EmptyCollectionError, ReprojectionError
from .image import Image, to_naive_utc

log = logging.getLogger(__name__)

__all__ = [
    "ImageCollection",
    "build_collection",
    "transform_footprint"
]

BandFilter = Union[Sequence[str], Mapping[str, str]]
QualityPredicate = Callable[[Mapping], bool]

class ImageCollection:
    """
    Time-ordered set of images plus their band-name vocabulary.

    Args:
        images: Indexed images. Sorted by (datetime, id) on construction.
        band_names: Band vocabulary. Defaults to the union of image bands
            in order of first appearance.
    """
    def __init__(self, images: Iterable[Image], band_names: Optional[Sequence[str]] = None):
        self._images = tuple(sorted(images, key=lambda img: (img.datetime, img.id)))
        if band_names is None:
            seen = {}
            for img in self._images:
                for name in img.bands:
                    seen.setdefault(name, None)
            band_names = list(seen)
        self._band_names = tuple(band_names)

    @property
    def images(self) -> Tuple[Image, ...]:
        return self._images

    @property
    def band_names(self) -> Tuple[str, ...]:
        return self._band_names

    def __len__(self) -> int:
        return len(self._images)

    def __iter__(self) -> Iterator[Image]:
        return iter(self._images)

    def __getitem__(self, idx: int) -> Image:
        return self._images[idx]

    def __repr__(self) -> str:
        if not self._images:
            return "<ImageCollection images=0>"
        return (f"<ImageCollection images={len(self)} bands={list(self._band_names)} "
                f"time={self._images[0].datetime.isoformat()}..{self._images[-1].datetime.isoformat()}>")

    def filter(
        self,
        bbox: Optional[Tuple[float, float, float, float]] = None,
        bbox_crs: Union[str, CRS] = "EPSG:4326",
        t0: Optional[datetime] = None,
        t1: Optional[datetime] = None
    ) -> "ImageCollection":
        """
        Returns a sub-collection of images intersecting a bbox and/or time range.

        Args:
            bbox: (left, bottom, right, top) in bbox_crs.
            bbox_crs: CRS of the bbox.
            t0: Inclusive start time.
            t1: Inclusive end time.

        Raises:
            EmptyCollectionError: If no image matches.
        """
        query = box(*bbox) if bbox is not None else None
        t0 = to_naive_utc(t0) if t0 is not None else None
        t1 = to_naive_utc(t1) if t1 is not None else None

        kept = []
        for img in self._images:
            if t0 is not None and img.datetime < t0:
                continue
            if t1 is not None and img.datetime > t1:
                continue
            if query is not None:
                try:
                    footprint = transform_footprint(img, bbox_crs)
                except ReprojectionError as e:
                    log.warning(f"Skipping image {img.id}: {e}")
                    continue
                if not footprint.intersects(query):
                    continue
            kept.append(img)

        if not kept:
            raise EmptyCollectionError("No image in the collection matches the filter.")
        return ImageCollection(kept, band_names=self._band_names)

    def extent(self, crs: Union[str, CRS] = "EPSG:4326") -> Dict[str, object]:
        """
        Union extent of all footprints in a CRS plus the acquisition time range.

        Returns:
            Dict with keys left, right, bottom, top, t0, t1.
        """
        bounds = []
        for img in self._images:
            try:
                bounds.append(transform_footprint(img, crs).bounds)
            except ReprojectionError as e:
                log.warning(f"Ignoring image {img.id} in extent: {e}")

        if not bounds:
            raise EmptyCollectionError("No image footprint could be transformed to compute an extent.")

        return {
            "left": min(b[0] for b in bounds),
            "bottom": min(b[1] for b in bounds),
            "right": max(b[2] for b in bounds),
            "top": max(b[3] for b in bounds),
            "t0": self._images[0].datetime,
            "t1": self._images[-1].datetime
        }

def transform_footprint(image: Image, dst_crs: Union[str, CRS]) -> BaseGeometry:
    """
    Transform an image footprint into another CRS.

    Raises:
        ReprojectionError: If the footprint is empty/degenerate or the transform fails.
    """
    footprint = image.footprint
    if footprint.is_empty or footprint.area <= 0:
        raise ReprojectionError(f"Degenerate footprint for image {image.id}")

    dst_crs = dst_crs if isinstance(dst_crs, CRS) else CRS.from_user_input(dst_crs)
    if dst_crs == image.crs:
        return footprint

    try:
        transformed = shape(transform_geom(image.crs, dst_crs, mapping(footprint)))
    except Exception as e:
        raise ReprojectionError(f"Failed to transform footprint of image {image.id}: {e}") from e

    if transformed.is_empty or not transformed.is_valid or transformed.area <= 0:
        raise ReprojectionError(f"Footprint of image {image.id} is degenerate in {dst_crs}")

    bounds = transformed.bounds
    if not all(map(math.isfinite, bounds)):
        raise ReprojectionError(f"Footprint of image {image.id} has non-finite bounds in {dst_crs}")
    return transformed

def build_collection(
    images: Iterable[Image],
    band_filter: Optional[BandFilter] = None,
    quality_predicate: Optional[QualityPredicate] = None
) -> ImageCollection:
    """
    Build a normalized image collection from already resolved image descriptors.

    Args:
        images: Image descriptors, e.g. converted from a STAC search.
        band_filter: Asset keys to keep, or {band_name: asset_key} to keep and rename.
            Images lacking a required band are dropped with a warning.
        quality_predicate: Pure function over image metadata; False excludes the image.

    Returns:
        ImageCollection: Filtered, time-ordered collection.

    Raises:
        EmptyCollectionError: If zero images remain after filtering.
    """
    if band_filter is None:
        rename = None
    elif isinstance(band_filter, Mapping):
        rename = dict(band_filter)
    else:
        rename = {key: key for key in band_filter}

    kept: List[Image] = []
    n_quality = 0
    n_bands = 0

    for img in images:
        if quality_predicate is not None and not quality_predicate(img.metadata):
            log.debug(f"Image {img.id} rejected by quality predicate")
            n_quality += 1
            continue

        if rename is not None:
            missing = [key for key in rename.values() if key not in img.bands]
            if missing:
                log.warning(f"Dropping image {img.id}: missing required band(s) {missing}")
                n_bands += 1
                continue
            img = img.with_bands({name: img.bands[key] for name, key in rename.items()})

        if not img.bands:
            log.warning(f"Dropping image {img.id}: no band retained")
            n_bands += 1
            continue

        kept.append(img)

    if not kept:
        raise EmptyCollectionError(
            f"Image collection is empty after filtering "
            f"({n_quality} rejected by quality, {n_bands} by bands)."
        )

    log.info(f"Indexed {len(kept)} images ({n_quality} rejected by quality, {n_bands} by bands)")
    band_names = list(rename) if rename is not None else None
    return ImageCollection(kept, band_names=band_names)
