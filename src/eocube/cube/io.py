# src/eocube/cube/io.py

"""
This module handles all disk-based operations for evaluated cubes.

A cube is written as one multi-band GeoTIFF per time slice; band descriptions
carry the band names and a dataset tag carries the slice start, so a written
cube can be read back into the same (bands, t, y, x) layout.
"""

import logging
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import rasterio
import xarray as xr
from rasterio.crs import CRS
from rasterio.transform import Affine
from tqdm import tqdm

from eocube.config import ExecutionConfig
from eocube.exceptions import ConfigurationError
from .engine import CancelToken, ExecutionReport

log = logging.getLogger(__name__)

__all__ = [
    "TIME_TAG",
    "Pack",
    "TifCube",
    "write_cube",
    "read_tif_cube",
    "cube_to_xarray"
]

TIME_TAG = "EOCUBE_TIME"

_LABEL_FORMATS = {
    "Y": "%Y",
    "M": "%Y-%m",
    "W": "%Y-%m-%d",
    "D": "%Y-%m-%d"
}

@dataclass(frozen=True)
class Pack:
    """
    Storage packing of written values: stored = round((value - offset) / scale).

    Args:
        dtype: Storage data type, e.g. 'uint16', 'int16' or 'float32'.
        scale: Scale factor, non-zero.
        offset: Offset.
        nodata: Stored value of missing cells. Defaults to the dtype maximum
            (unsigned), minimum (signed) or NaN (float).
    """
    dtype: str
    scale: float = 1.0
    offset: float = 0.0
    nodata: Optional[float] = None

    def __post_init__(self):
        try:
            dtype = np.dtype(self.dtype)
        except TypeError as e:
            raise ConfigurationError(f"Invalid pack dtype '{self.dtype}': {e}") from e
        if dtype.kind not in "uif":
            raise ConfigurationError(f"Pack dtype must be numeric, got '{dtype}'")
        if self.scale == 0:
            raise ConfigurationError("Pack scale must be non-zero.")
        object.__setattr__(self, "dtype", dtype.name)

        if self.nodata is None:
            if dtype.kind == "u":
                nodata = float(np.iinfo(dtype).max)
            elif dtype.kind == "i":
                nodata = float(np.iinfo(dtype).min)
            else:
                nodata = float("nan")
            object.__setattr__(self, "nodata", nodata)

    @classmethod
    def coerce(cls, value: Union["Pack", Mapping[str, Any], None]) -> Optional["Pack"]:
        if value is None or isinstance(value, Pack):
            return value
        if isinstance(value, Mapping):
            return cls(**value)
        raise TypeError(f"Expected Pack or mapping, got {type(value).__name__}")

    def encode(self, values: np.ndarray) -> np.ndarray:
        dtype = np.dtype(self.dtype)
        missing = np.isnan(values)
        with np.errstate(invalid="ignore"):
            scaled = (values - self.offset) / self.scale
            if dtype.kind in "ui":
                info = np.iinfo(dtype)
                scaled = np.clip(np.rint(scaled), info.min, info.max)
                collisions = ~missing & (scaled == self.nodata)
                n_collisions = int(np.count_nonzero(collisions))
                if n_collisions:
                    # Valid values never encode as nodata
                    nearest = self.nodata - 1 if self.nodata > info.min else self.nodata + 1
                    scaled[collisions] = nearest
                    log.warning(f"{n_collisions} value(s) stored as {nearest:g} "
                                f"to keep them apart from nodata {self.nodata:g}")
        scaled = np.where(missing, self.nodata, scaled)
        return scaled.astype(dtype)

@dataclass
class TifCube:
    """
    A cube read back from GeoTIFF files.

    Attributes:
        data (np.ndarray): (bands, t, y, x) float64 values, NaN as no data.
        bands (Tuple[str, ...]): Band names.
        times (Tuple[datetime, ...]): Slice starts.
        transform (Affine): Grid transform.
        crs (CRS): Grid CRS.
    """
    data: np.ndarray
    bands: Tuple[str, ...]
    times: Tuple[datetime, ...]
    transform: Affine
    crs: CRS

def _label(time: datetime, unit: str) -> str:
    fmt = _LABEL_FORMATS.get(unit, "%Y-%m-%dT%H%M%S")
    return time.strftime(fmt)

def _profile(cube, pack: Optional[Pack], compression: Optional[str], zlevel: int) -> dict:
    _, ny, nx = cube.shape
    profile = {
        "driver": "GTiff",
        "width": nx,
        "height": ny,
        "count": len(cube.bands),
        "crs": cube.crs,
        "transform": cube.transform,
        "dtype": pack.dtype if pack else "float64",
        "nodata": pack.nodata if pack else float("nan")
    }
    if nx >= 256 and ny >= 256:
        profile.update(tiled=True, blockxsize=256, blockysize=256)
    if compression and compression.upper() != "NONE":
        profile["compress"] = compression.upper()
        if compression.upper() in ("DEFLATE", "ZSTD"):
            if not 1 <= zlevel <= 9:
                raise ConfigurationError(f"zlevel must be between 1 and 9, got {zlevel}")
            profile["zlevel"] = zlevel
    return profile

def write_cube(
    cube,
    directory: Union[str, Path],
    prefix: str = "cube_",
    compression: Optional[str] = "DEFLATE",
    zlevel: int = 6,
    pack: Optional[Union[Pack, Mapping[str, Any]]] = None,
    config: Optional[ExecutionConfig] = None,
    cancel: Optional[CancelToken] = None,
    report: Optional[ExecutionReport] = None
) -> List[Path]:
    """
    Evaluate a cube chunk by chunk and write one GeoTIFF per time slice.

    Files are named <prefix><slice label>.tif, where the label precision
    follows the time step (year, month, day or second). Chunks are written as
    they complete; failed chunks are written as nodata.

    Args:
        cube: Cube to evaluate.
        directory: Output directory, created if missing.
        prefix: File name prefix.
        compression: GDAL compression (DEFLATE, LZW, ZSTD, ...) or None.
        zlevel: Compression level for DEFLATE/ZSTD.
        pack: Optional packing into an integer or smaller float type.
        config: Execution configuration; config.progress shows a progress bar.
        cancel: Optional cancel token.
        report: Optional execution report.

    Returns:
        List[Path]: Written files in time order.
    """
    config = config or ExecutionConfig()
    pack = Pack.coerce(pack)
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    profile = _profile(cube, pack, compression, zlevel)
    unit = cube.view.dt.unit
    paths = [directory / f"{prefix}{_label(t, unit)}.tif" for t in cube.time_labels]
    if len(set(paths)) != len(paths):
        raise ConfigurationError("Time slice labels collide; cannot name one file per slice.")

    log.info(f"Writing cube {cube.shape} with {len(cube.bands)} band(s) to {len(paths)} file(s) in {directory}")

    try:
        with ExitStack() as stack:
            datasets = []
            for path, time in zip(paths, cube.time_labels):
                dst = stack.enter_context(rasterio.open(path, "w", **profile))
                for idx, name in enumerate(cube.bands, start=1):
                    dst.set_band_description(idx, name)
                dst.update_tags(**{TIME_TAG: time.isoformat()})
                if pack is not None:
                    dst.scales = (pack.scale,) * len(cube.bands)
                    dst.offsets = (pack.offset,) * len(cube.bands)
                datasets.append(dst)

            n_chunks = int(np.prod(cube.chunk_counts))
            with tqdm(total=n_chunks, desc="Writing cube", unit="chunk", disable=not config.progress) as pbar:
                for result in cube.iter_chunks(config, cancel, report):
                    chunk = result.chunk
                    data = result.data
                    if data is None:
                        data = np.full((len(cube.bands),) + tuple(chunk.size), np.nan)
                    t_off = chunk.offset[0]
                    for i in range(chunk.size[0]):
                        block = data[:, i]
                        if pack is not None:
                            block = pack.encode(block)
                        datasets[t_off + i].write(block, window=chunk.window)
                    pbar.update(1)

    except rasterio.RasterioIOError as e:
        raise IOError(f"Failed to write cube to {directory}: {e}") from e

    return paths

def read_tif_cube(
    source: Union[str, Path, Sequence[Union[str, Path]]],
    prefix: str = "cube_"
) -> TifCube:
    """
    Read a cube written by `write_cube` back into memory.

    Packed values are unpacked with the stored scale/offset and nodata cells
    become NaN.

    Args:
        source: Output directory of write_cube, or an explicit list of files.
        prefix: File name prefix used when source is a directory.

    Returns:
        TifCube: The cube data, ordered by time.
    """
    if isinstance(source, (str, Path)):
        directory = Path(source)
        if not directory.is_dir():
            raise FileNotFoundError(f"Cube directory not found: {directory}")
        paths = sorted(directory.glob(f"{prefix}*.tif"))
    else:
        paths = [Path(p) for p in source]
    if not paths:
        raise FileNotFoundError(f"No cube files found in {source}")

    slices = []
    bands, transform, crs = None, None, None
    for path in paths:
        try:
            with rasterio.open(path) as src:
                values = src.read().astype(np.float64)
                if src.nodata is not None and not np.isnan(src.nodata):
                    values[values == src.nodata] = np.nan
                scales = np.asarray(src.scales, dtype=np.float64)[:, None, None]
                offsets = np.asarray(src.offsets, dtype=np.float64)[:, None, None]
                values = values * scales + offsets

                names = tuple(d or f"band{i}" for i, d in enumerate(src.descriptions, start=1))
                time_tag = src.tags().get(TIME_TAG)
                if bands is None:
                    bands, transform, crs = names, src.transform, src.crs
                elif names != bands or src.transform != transform:
                    raise ValueError(f"{path.name} does not match the bands or grid of the other slices")
        except rasterio.RasterioIOError as e:
            raise IOError(f"Failed to read cube slice {path}: {e}") from e

        time = pd.Timestamp(time_tag).to_pydatetime() if time_tag else None
        slices.append((time, path.name, values))

    slices.sort(key=lambda s: (s[0] is None, s[0] or datetime.min, s[1]))
    data = np.stack([values for _, _, values in slices], axis=1)
    times = tuple(time for time, _, _ in slices)

    log.debug(f"Read cube {data.shape} from {len(paths)} file(s)")
    return TifCube(data=data, bands=bands, times=times, transform=transform, crs=crs)

def cube_to_xarray(cube, data: np.ndarray) -> xr.DataArray:
    """
    Label evaluated cube values with their band, time and cell-center coordinates.

    Args:
        cube: The evaluated cube (provides bands, time labels, grid and CRS).
        data: (bands, t, y, x) values as returned by compute().

    Returns:
        xr.DataArray: Dimensions ('band', 'time', 'y', 'x').
    """
    _, ny, nx = cube.shape
    t = cube.transform
    x = t.c + t.a * (np.arange(nx) + 0.5)
    y = t.f + t.e * (np.arange(ny) + 0.5)

    return xr.DataArray(
        data,
        dims=("band", "time", "y", "x"),
        coords={
            "band": list(cube.bands),
            "time": pd.DatetimeIndex(cube.time_labels),
            "y": y,
            "x": x
        },
        attrs={
            "crs": cube.crs.to_wkt(),
            "transform": tuple(t)[:6],
            "nodata": float("nan")
        },
        name="eocube"
    )
