# src/eocube/cube/reader.py

"""
This module implements the read/warp stage of cube construction.

For one chunk it selects the contributing images, reads only the source window
covering the chunk (decimated so GDAL can serve overviews when the target grid
is coarser) and warps each block onto the chunk grid.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.enums import Resampling
from rasterio.errors import CRSError, WindowError
from rasterio.transform import Affine
from rasterio.warp import reproject, transform_bounds
from rasterio.windows import Window, from_bounds
from shapely import STRtree
from shapely.geometry import box

from eocube.collection.image import BandAsset, Image
from eocube.collection.index import ImageCollection, transform_footprint
from eocube.config import ExecutionConfig
from eocube.exceptions import ReprojectionError
from .aggregate import ImageMask
from .partition import Chunk
from .retry import IOThrottle, fetch_with_retry
from .view import CubeView, resolve_resampling

log = logging.getLogger(__name__)

__all__ = [
    "FootprintIndex",
    "ImageReading",
    "ChunkReading",
    "read_chunk",
    "read_warped"
]

class FootprintIndex:
    """
    Image footprints transformed once into the view CRS, with a spatial index.

    Images whose footprint cannot be transformed are skipped and listed in
    `skipped` as (image_id, reason); this is never fatal.
    """
    def __init__(self, collection: ImageCollection, view: CubeView):
        self.collection = collection
        self.crs = view.crs
        self.skipped: List[Tuple[str, str]] = []

        images, geoms = [], []
        for img in collection:
            try:
                geoms.append(transform_footprint(img, view.crs))
                images.append(img)
            except ReprojectionError as e:
                log.warning(f"Skipping image {img.id}: {e}")
                self.skipped.append((img.id, str(e)))

        self._images = images
        self._geoms = geoms
        self._tree = STRtree(geoms) if geoms else None

    def __len__(self) -> int:
        return len(self._images)

    def query(self, bounds: Tuple[float, float, float, float]) -> List[Image]:
        """Images whose footprint overlaps the bounds with a non-zero area, in collection order."""
        if self._tree is None:
            return []
        query = box(*bounds)
        hits = sorted(int(i) for i in self._tree.query(query, predicate="intersects"))
        return [self._images[i] for i in hits if self._geoms[i].intersection(query).area > 0]

@dataclass
class ImageReading:
    """Warped values of one image on a chunk grid."""
    image: Image
    slice_index: int
    bands: Dict[str, np.ndarray]
    invalid: Optional[np.ndarray] = None

@dataclass
class ChunkReading:
    """All image readings of one chunk plus non-fatal warnings."""
    chunk: Chunk
    images: List[ImageReading] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

def _decimation(window: Window, chunk: Chunk) -> int:
    """Whole number of source pixels per target cell, used to read from overviews."""
    _, ny, nx = chunk.size
    ratio = min(abs(window.width) / nx, abs(window.height) / ny)
    return max(1, int(math.floor(ratio + 1e-6)))

def _overview_resampling(resampling: Resampling, factor: int) -> Resampling:
    """Resampling used when GDAL decimates a read; categorical nearest reads stay nearest."""
    if factor == 1 or resampling == Resampling.nearest:
        return Resampling.nearest
    return Resampling.average

def read_warped(
    asset: BandAsset,
    view: CubeView,
    chunk: Chunk,
    resampling: Resampling,
    config: ExecutionConfig,
    throttle: Optional[IOThrottle] = None
) -> Optional[np.ndarray]:
    """
    Read the part of one asset covering a chunk and warp it onto the chunk grid.

    Args:
        asset: Band asset to read.
        view: Cube view defining the target grid.
        chunk: Target chunk.
        resampling: Spatial resampling method.
        config: Execution configuration (GDAL options, retries).
        throttle: Shared remote I/O limiter.

    Returns:
        np.ndarray (ny, nx) float64 with NaN where the asset does not contribute,
        or None if the asset does not overlap the chunk at all.

    Raises:
        ChunkIOError: When the read fails permanently or after retries.
        ReprojectionError: When the chunk cannot be expressed in the asset CRS.
    """
    chunk_bounds = chunk.bounds(view)
    _, ny, nx = chunk.size

    def _fetch():
        with rasterio.Env(**config.gdal_options):
            with rasterio.open(asset.gdal_path) as src:
                if src.crs is None:
                    raise ReprojectionError(f"{asset.href} has no coordinate reference system")
                try:
                    src_bounds = transform_bounds(view.crs, src.crs, *chunk_bounds, densify_pts=21)
                except (CRSError, ValueError) as e:
                    raise ReprojectionError(f"Cannot transform chunk bounds into {src.crs}: {e}") from e
                if not all(map(math.isfinite, src_bounds)):
                    raise ReprojectionError(f"Chunk bounds are not representable in {src.crs}")

                covered = from_bounds(*src_bounds, transform=src.transform)
                # Pad one pixel so interpolating kernels see their neighbours
                requested = Window(covered.col_off - 1, covered.row_off - 1,
                                   covered.width + 2, covered.height + 2)
                col0 = math.floor(requested.col_off)
                row0 = math.floor(requested.row_off)
                col1 = math.ceil(requested.col_off + requested.width)
                row1 = math.ceil(requested.row_off + requested.height)
                requested = Window(col0, row0, col1 - col0, row1 - row0)
                try:
                    window = requested.intersection(Window(0, 0, src.width, src.height))
                except WindowError:
                    return None
                if window.width <= 0 or window.height <= 0:
                    return None

                factor = _decimation(covered, chunk)
                out_h = max(1, int(math.ceil(window.height / factor)))
                out_w = max(1, int(math.ceil(window.width / factor)))

                data = src.read(
                    asset.band_index,
                    window=window,
                    out_shape=(out_h, out_w),
                    resampling=_overview_resampling(resampling, factor)
                ).astype(np.float64)

                nodata = asset.nodata if asset.nodata is not None else src.nodata
                transform = src.window_transform(window) * Affine.scale(
                    window.width / out_w, window.height / out_h
                )
                return data, transform, src.crs, nodata

    fetched = fetch_with_retry(
        _fetch,
        description=asset.href,
        max_retries=config.max_retries,
        initial_backoff=config.retry_backoff,
        max_backoff=config.max_backoff,
        throttle=throttle
    )
    if fetched is None:
        return None

    data, src_transform, src_crs, nodata = fetched
    if nodata is not None and not np.isnan(nodata):
        data[data == nodata] = np.nan
    if asset.scale != 1.0 or asset.offset != 0.0:
        data = data * asset.scale + asset.offset

    destination = np.full((ny, nx), np.nan, dtype=np.float64)
    try:
        reproject(
            source=data,
            destination=destination,
            src_transform=src_transform,
            src_crs=src_crs,
            dst_transform=chunk.transform(view),
            dst_crs=view.crs,
            src_nodata=np.nan,
            dst_nodata=np.nan,
            resampling=resampling
        )
    except (CRSError, ValueError) as e:
        raise ReprojectionError(f"Failed to warp {asset.href}: {e}") from e
    return destination

def read_chunk(
    collection: ImageCollection,
    view: CubeView,
    chunk: Chunk,
    bands: Sequence[str],
    mask: Optional[ImageMask] = None,
    config: Optional[ExecutionConfig] = None,
    footprints: Optional[FootprintIndex] = None,
    throttle: Optional[IOThrottle] = None
) -> ChunkReading:
    """
    Read and warp every image contributing to a chunk.

    Images are selected when their footprint overlaps the chunk and their
    timestamp falls inside the chunk's time window. Images that only partly
    overlap leave the rest of the chunk as NaN. A band that cannot be
    reprojected is skipped with a warning, the image's other bands are kept.

    Args:
        collection: Source image collection (shared, read-only).
        view: Target cube view.
        chunk: Chunk to read.
        bands: Band names to read.
        mask: Optional mask; its band is read with nearest resampling.
        config: Execution configuration.
        footprints: Prebuilt footprint index for the view (built on demand otherwise).
        throttle: Shared remote I/O limiter.

    Returns:
        ChunkReading: Per-image warped layers with their time slice (relative to the chunk).
    """
    config = config or ExecutionConfig()
    footprints = footprints or FootprintIndex(collection, view)
    resampling = resolve_resampling(view.resampling)
    t_start, t_end = chunk.time_window(view)
    t_off = chunk.offset[0]

    reading = ChunkReading(chunk=chunk)
    candidates = [
        img for img in footprints.query(chunk.bounds(view))
        if t_start <= img.datetime < t_end
    ]
    log.debug(f"{chunk}: {len(candidates)} contributing image(s)")

    for img in candidates:
        layers = {}
        for band in bands:
            asset = img.bands.get(band)
            if asset is None:
                continue
            try:
                warped = read_warped(asset, view, chunk, resampling, config, throttle)
            except ReprojectionError as e:
                message = f"Skipping band {band} of image {img.id} in {chunk}: {e}"
                log.warning(message)
                reading.warnings.append(message)
                continue
            if warped is not None:
                layers[band] = warped

        invalid = None
        try:
            if mask is not None and layers:
                mask_asset = img.bands.get(mask.band)
                if mask_asset is None:
                    log.debug(f"Image {img.id} has no mask band '{mask.band}'; left unmasked")
                else:
                    mask_layer = read_warped(mask_asset, view, chunk, Resampling.nearest, config, throttle)
                    if mask_layer is not None:
                        invalid = mask.invalid(mask_layer)
        except ReprojectionError as e:
            # Values that cannot be masked are not used
            message = f"Skipping image {img.id} in {chunk}, mask band unreadable: {e}"
            log.warning(message)
            reading.warnings.append(message)
            continue

        if layers:
            slice_index = view.slice_index(img.datetime) - t_off
            reading.images.append(ImageReading(img, slice_index, layers, invalid))

    return reading
