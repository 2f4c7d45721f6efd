# src/eocube/cube/graph.py

"""
This module defines the lazy operator graph of a data cube.

Every operation returns a new node referencing its parent(s); nothing is read
until a terminal consumer (compute, iter_chunks, write_tif, to_xarray) pulls
chunks. A node produces any chunk of its own grid on request, as a float64
array of shape (bands, t, y, x) with NaN as no data. Nodes whose output chunk
depends on a larger region of their parent (time or space reductions, moving
windows) request that region chunk by chunk from the parent.
"""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numexpr as ne
import numpy as np
from rasterio.features import geometry_mask
from rasterio.transform import Affine, array_bounds
from shapely.geometry import box

from eocube.collection.image import to_naive_utc
from eocube.collection.index import ImageCollection
from eocube.config import ExecutionConfig
from eocube.exceptions import ConfigurationError
from eocube.vector.geom import as_geometry
from .aggregate import REDUCER_METHODS, ImageMask, make_accumulator, reduce_array
from .engine import CancelToken, ChunkResult, ExecutionContext, ExecutionReport, execute
from .io import cube_to_xarray, write_cube
from .partition import DEFAULT_CHUNK_SHAPE, Chunk, chunk_counts, chunks_in_region, plan
from .reader import FootprintIndex, ImageReading, read_chunk as read_images
from .resources import estimate_chunk_memory
from .udf import UserFunction
from .view import CubeView, as_datetime

log = logging.getLogger(__name__)

__all__ = [
    "Cube",
    "ImageCollectionCube",
    "SelectBands",
    "RenameBands",
    "ApplyPixel",
    "FilterPixel",
    "ReduceTime",
    "ReduceSpace",
    "FilterGeom",
    "WindowTime",
    "JoinBands",
    "SelectTime",
    "image_collection_cube"
]

_REDUCER_RE = re.compile(r"^\s*([a-z_0-9]+)\s*\(\s*([A-Za-z_]\w*)\s*\)\s*$")

class Cube:
    """
    A lazily evaluated data cube: one immutable node of an operator graph.

    Attributes:
        view (CubeView): Grid geometry the node derives from.
        bands (Tuple[str, ...]): Output band names.
        chunk_shape (Tuple[int, int, int]): (nt, ny, nx) of the node's chunks.
        parents (Tuple[Cube, ...]): Input nodes.
    """
    def __init__(
        self,
        view: CubeView,
        bands: Sequence[str],
        chunk_shape: Sequence[int],
        parents: Sequence["Cube"] = ()
    ):
        bands = tuple(bands)
        if not bands:
            raise ConfigurationError("A cube must have at least one band.")
        duplicates = sorted({b for b in bands if bands.count(b) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate band name(s): {duplicates}")

        self._view = view
        self._bands = bands
        self._chunk_shape = tuple(int(c) for c in chunk_shape)
        self._parents = tuple(parents)

    @property
    def view(self) -> CubeView:
        return self._view

    @property
    def bands(self) -> Tuple[str, ...]:
        return self._bands

    @property
    def chunk_shape(self) -> Tuple[int, int, int]:
        return self._chunk_shape

    @property
    def parents(self) -> Tuple["Cube", ...]:
        return self._parents

    @property
    def parent(self) -> "Cube":
        return self._parents[0]

    @property
    def crs(self):
        return self._view.crs

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Returns (nt, ny, nx) of this node's grid."""
        return self.parent.shape if self._parents else self._view.shape

    @property
    def transform(self) -> Affine:
        return self.parent.transform if self._parents else self._view.transform

    @property
    def time_labels(self) -> Tuple[datetime, ...]:
        return self.parent.time_labels if self._parents else self._view.time_labels

    @property
    def chunk_counts(self) -> Tuple[int, int, int]:
        return chunk_counts(self.shape, self.chunk_shape)

    def chunk_transform(self, chunk: Chunk) -> Affine:
        _, y_off, x_off = chunk.offset
        return self.transform * Affine.translation(x_off, y_off)

    def chunk_bounds(self, chunk: Chunk) -> Tuple[float, float, float, float]:
        _, ny, nx = chunk.size
        return array_bounds(ny, nx, self.chunk_transform(chunk))

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        """Compute one chunk of this node as a (bands, t, y, x) array."""
        raise NotImplementedError

    def read_region(
        self,
        offset: Sequence[int],
        size: Sequence[int],
        ctx: ExecutionContext
    ) -> np.ndarray:
        """
        Assemble an arbitrary (t, y, x) region from the chunks overlapping it.

        Args:
            offset: First cell (t, y, x).
            size: Number of cells (nt, ny, nx).
            ctx: Execution context of the running evaluation.

        Returns:
            np.ndarray: (bands, nt, ny, nx) values.
        """
        out = np.full((len(self.bands),) + tuple(size), np.nan, dtype=np.float64)
        for chunk in chunks_in_region(self.shape, self.chunk_shape, offset, size):
            ctx.check_cancelled()
            data = self.read_chunk(chunk, ctx)
            src, dst = [slice(None)], [slice(None)]
            for o, n, co, cn in zip(offset, size, chunk.offset, chunk.size):
                lo, hi = max(o, co), min(o + n, co + cn)
                src.append(slice(lo - co, hi - co))
                dst.append(slice(lo - o, hi - o))
            out[tuple(dst)] = data[tuple(src)]
        return out

    def sources(self) -> List["ImageCollectionCube"]:
        """Source nodes feeding this node, each listed once."""
        found, stack = {}, [self]
        while stack:
            node = stack.pop()
            if isinstance(node, ImageCollectionCube):
                found[id(node)] = node
            stack.extend(node.parents)
        return list(found.values())

    # Operators

    def select_bands(self, bands: Union[str, Sequence[str]]) -> "SelectBands":
        return SelectBands(self, bands)

    def rename_bands(self, mapping: Optional[Mapping[str, str]] = None, **names: str) -> "RenameBands":
        return RenameBands(self, {**(mapping or {}), **names})

    def apply_pixel(
        self,
        expr: Union[str, Sequence[str], Callable, UserFunction],
        names: Optional[Sequence[str]] = None,
        keep_bands: bool = False
    ) -> "ApplyPixel":
        return ApplyPixel(self, expr, names=names, keep_bands=keep_bands)

    def filter_pixel(self, predicate: str) -> "FilterPixel":
        return FilterPixel(self, predicate)

    def reduce_time(
        self,
        reducers: Union[str, Sequence[str], Callable, UserFunction],
        names: Optional[Sequence[str]] = None
    ) -> "ReduceTime":
        return ReduceTime(self, reducers, names=names)

    def reduce_space(
        self,
        reducers: Union[str, Sequence[str], Callable, UserFunction],
        names: Optional[Sequence[str]] = None
    ) -> "ReduceSpace":
        return ReduceSpace(self, reducers, names=names)

    def filter_geom(self, geometry: Any, crs: Optional[Any] = None) -> "FilterGeom":
        return FilterGeom(self, geometry, crs=crs)

    def window_time(
        self,
        reducers: Optional[Union[str, Sequence[str]]] = None,
        kernel: Optional[Sequence[float]] = None,
        window: Tuple[int, int] = (1, 1)
    ) -> "WindowTime":
        return WindowTime(self, reducers=reducers, kernel=kernel, window=window)

    def join_bands(self, other: "Cube", prefixes: Optional[Tuple[str, str]] = None) -> "JoinBands":
        return JoinBands(self, other, prefixes=prefixes)

    def select_time(self, times: Sequence[Union[str, datetime]]) -> "SelectTime":
        return SelectTime(self, times)

    # Terminal consumers

    def iter_chunks(
        self,
        config: Optional[ExecutionConfig] = None,
        cancel: Optional[CancelToken] = None,
        report: Optional[ExecutionReport] = None
    ) -> Iterator[ChunkResult]:
        """
        Evaluate the cube and yield its chunks in completion order.

        Args:
            config: Execution configuration (workers, retries, failure policy).
            cancel: Optional token to stop the evaluation between chunks.
            report: Optional report filled with completed/failed chunks and warnings.

        Yields:
            ChunkResult: One per chunk; failed chunks carry data=None.
        """
        ctx = ExecutionContext(config, cancel, report)
        for source in self.sources():
            for image_id, reason in source.footprints.skipped:
                ctx.report.warn(f"Image {image_id} skipped: {reason}")

        estimate = estimate_chunk_memory(len(self.bands), self.chunk_shape, ctx.config.workers)
        if not estimate.is_safe:
            log.warning(f"Concurrent chunks may not fit in memory ({estimate.reason}); "
                        f"consider a smaller chunk_shape or fewer workers.")

        chunks = plan(self.shape, self.chunk_shape)
        log.info(f"Evaluating {self!r} in {len(chunks)} chunk(s)")

        def compute_chunk(chunk: Chunk) -> np.ndarray:
            ctx.check_cancelled()
            return self.read_chunk(chunk, ctx)

        with ctx:
            yield from execute(chunks, compute_chunk, ctx.config, ctx.cancel, ctx.report)

    def compute(
        self,
        config: Optional[ExecutionConfig] = None,
        cancel: Optional[CancelToken] = None,
        report: Optional[ExecutionReport] = None
    ) -> np.ndarray:
        """
        Evaluate the whole cube into memory.

        Returns:
            np.ndarray: (bands, nt, ny, nx) float64 values; cells of failed
            chunks are NaN.
        """
        out = np.full((len(self.bands),) + self.shape, np.nan, dtype=np.float64)
        for result in self.iter_chunks(config, cancel, report):
            if result.data is not None:
                out[(slice(None),) + result.chunk.slices] = result.data
        return out

    def write_tif(
        self,
        directory: Union[str, Path],
        prefix: str = "cube_",
        compression: Optional[str] = "DEFLATE",
        zlevel: int = 6,
        pack: Optional[Any] = None,
        config: Optional[ExecutionConfig] = None,
        cancel: Optional[CancelToken] = None,
        report: Optional[ExecutionReport] = None
    ) -> List[Path]:
        """Write one multi-band GeoTIFF per time slice. See `write_cube`."""
        return write_cube(
            self, directory, prefix=prefix, compression=compression, zlevel=zlevel,
            pack=pack, config=config, cancel=cancel, report=report
        )

    def to_xarray(
        self,
        config: Optional[ExecutionConfig] = None,
        cancel: Optional[CancelToken] = None,
        report: Optional[ExecutionReport] = None
    ):
        """Evaluate the cube into a labelled xarray.DataArray (band, time, y, x)."""
        return cube_to_xarray(self, self.compute(config, cancel, report))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} bands={list(self.bands)} shape={self.shape}>"

class ImageCollectionCube(Cube):
    """
    Source node: an image collection resampled onto a cube view.

    Images falling into the same time slice are merged with the view's
    aggregation after masked pixels are removed.

    Args:
        collection: Indexed images.
        view: Target grid.
        chunk_shape: (nt, ny, nx) per chunk, clipped to the grid.
        mask: Optional ImageMask excluding flagged pixels.
        bands: Bands to read; defaults to every band of the collection.
    """
    def __init__(
        self,
        collection: ImageCollection,
        view: CubeView,
        chunk_shape: Optional[Sequence[int]] = None,
        mask: Optional[ImageMask] = None,
        bands: Optional[Sequence[str]] = None
    ):
        if not isinstance(collection, ImageCollection):
            raise TypeError(f"Expected ImageCollection, got {type(collection).__name__}")
        if not isinstance(view, CubeView):
            raise TypeError(f"Expected CubeView, got {type(view).__name__}")

        bands = tuple(bands) if bands is not None else collection.band_names
        unknown = [b for b in bands if b not in collection.band_names]
        if unknown:
            raise ConfigurationError(f"Unknown band(s) {unknown}; collection has {list(collection.band_names)}")
        if mask is not None and mask.band not in collection.band_names:
            raise ConfigurationError(f"Mask band '{mask.band}' is not in the collection")

        requested = tuple(chunk_shape) if chunk_shape is not None else DEFAULT_CHUNK_SHAPE
        chunk_counts(view, requested)
        chunk_shape = tuple(min(int(c), n) for c, n in zip(requested, view.shape))

        super().__init__(view, bands, chunk_shape)
        self.collection = collection
        self.mask = mask
        self.footprints = FootprintIndex(collection, view)

        log.info(f"Image collection cube over {len(collection)} image(s): "
                 f"grid {view.shape}, chunks {self.chunk_shape}, bands {list(bands)}")

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        ctx.check_cancelled()
        reading = read_images(
            self.collection, self.view, chunk, self.bands,
            mask=self.mask, config=ctx.config, footprints=self.footprints, throttle=ctx.throttle
        )
        for message in reading.warnings:
            ctx.report.warn(message)

        nt, ny, nx = chunk.size
        out = np.full((len(self.bands), nt, ny, nx), np.nan, dtype=np.float64)

        by_slice: Dict[int, List[ImageReading]] = {}
        for image_reading in reading.images:
            by_slice.setdefault(image_reading.slice_index, []).append(image_reading)

        for it, readings in by_slice.items():
            for b, band in enumerate(self.bands):
                acc = make_accumulator(self.view.aggregation, (ny, nx))
                for image_reading in readings:
                    layer = image_reading.bands.get(band)
                    if layer is None:
                        continue
                    if image_reading.invalid is not None:
                        layer = np.where(image_reading.invalid, np.nan, layer)
                    acc.add(layer)
                out[b, it] = acc.result()
        return out

    def __repr__(self) -> str:
        return (f"<ImageCollectionCube images={len(self.collection)} bands={list(self.bands)} "
                f"shape={self.shape} chunks={self.chunk_shape}>")

class SelectBands(Cube):
    def __init__(self, parent: Cube, bands: Union[str, Sequence[str]]):
        bands = [bands] if isinstance(bands, str) else list(bands)
        missing = [b for b in bands if b not in parent.bands]
        if missing:
            raise ConfigurationError(f"Unknown band(s) {missing}; cube has {list(parent.bands)}")
        super().__init__(parent.view, bands, parent.chunk_shape, (parent,))
        self._index = [parent.bands.index(b) for b in bands]

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        return self.parent.read_chunk(chunk, ctx)[self._index]

class RenameBands(Cube):
    def __init__(self, parent: Cube, mapping: Mapping[str, str]):
        unknown = [b for b in mapping if b not in parent.bands]
        if unknown:
            raise ConfigurationError(f"Cannot rename unknown band(s) {unknown}")
        super().__init__(parent.view, [mapping.get(b, b) for b in parent.bands], parent.chunk_shape, (parent,))

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        return self.parent.read_chunk(chunk, ctx)

class ApplyPixel(Cube):
    """
    Per-pixel band arithmetic.

    Either numexpr expressions over band names (one output band each) or a
    user function mapping the band vector of one pixel to len(names) values.
    """
    def __init__(
        self,
        parent: Cube,
        expr: Union[str, Sequence[str], Callable, UserFunction],
        names: Optional[Sequence[str]] = None,
        keep_bands: bool = False
    ):
        self._udf: Optional[UserFunction] = None
        self._exprs: List[str] = []

        if callable(expr):
            self._udf = _user_function(expr, names, "pixel")
            out = list(self._udf.names)
        else:
            self._exprs = [expr] if isinstance(expr, str) else list(expr)
            if not self._exprs:
                raise ConfigurationError("apply_pixel requires at least one expression.")
            out = list(names) if names is not None else [f"band{i + 1}" for i in range(len(self._exprs))]
            if len(out) != len(self._exprs):
                raise ConfigurationError(f"Got {len(self._exprs)} expression(s) but {len(out)} name(s)")
            for e in self._exprs:
                _check_expression(e, parent.bands)

        self._keep_bands = keep_bands
        if keep_bands:
            out = list(parent.bands) + out
        super().__init__(parent.view, out, parent.chunk_shape, (parent,))

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        data = self.parent.read_chunk(chunk, ctx)
        cells = data.shape[1:]

        if self._udf is not None:
            pixels = data.reshape(data.shape[0], -1).T
            result = self._udf(pixels, ctx.udf_pool).T.reshape((self._udf.n_out,) + cells)
        else:
            env = dict(zip(self.parent.bands, data))
            result = np.stack([_evaluate(e, env, cells) for e in self._exprs])

        if self._keep_bands:
            result = np.concatenate([data, result])
        return result

class FilterPixel(Cube):
    """Sets every band to NaN where a numexpr predicate over band names is false."""
    def __init__(self, parent: Cube, predicate: str):
        _check_expression(predicate, parent.bands)
        super().__init__(parent.view, parent.bands, parent.chunk_shape, (parent,))
        self.predicate = predicate

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        data = self.parent.read_chunk(chunk, ctx)
        keep = _evaluate(self.predicate, dict(zip(self.parent.bands, data)), data.shape[1:], dtype=bool)
        return np.where(keep[None], data, np.nan)

class ReduceTime(Cube):
    """
    Reduces every pixel time series to a single time slice.

    Reducers are strings such as "median(ndvi)"; alternatively a user function
    maps the (bands, t) matrix of one pixel to len(names) values.
    """
    def __init__(
        self,
        parent: Cube,
        reducers: Union[str, Sequence[str], Callable, UserFunction],
        names: Optional[Sequence[str]] = None
    ):
        self._udf, self._reducers, out = _reduction(parent, reducers, names, "time")
        chunk_shape = (1,) + tuple(parent.chunk_shape[1:])
        super().__init__(parent.view, out, chunk_shape, (parent,))

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (1,) + tuple(self.parent.shape[1:])

    @property
    def time_labels(self) -> Tuple[datetime, ...]:
        return self.parent.time_labels[:1]

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        _, y_off, x_off = chunk.offset
        _, ny, nx = chunk.size
        nt = self.parent.shape[0]
        series = self.parent.read_region((0, y_off, x_off), (nt, ny, nx), ctx)

        if self._udf is not None:
            batch = series.transpose(2, 3, 0, 1).reshape(ny * nx, series.shape[0], nt)
            return self._udf(batch, ctx.udf_pool).T.reshape(self._udf.n_out, 1, ny, nx)
        return np.stack([reduce_array(series[b], method, axis=0) for method, b in self._reducers])[:, None]

class ReduceSpace(Cube):
    """
    Reduces every time slice to a single cell covering the whole extent.

    Reducers are strings such as "mean(ndvi)"; alternatively a user function
    maps the (bands, y, x) array of one time slice to len(names) values.
    """
    def __init__(
        self,
        parent: Cube,
        reducers: Union[str, Sequence[str], Callable, UserFunction],
        names: Optional[Sequence[str]] = None
    ):
        self._udf, self._reducers, out = _reduction(parent, reducers, names, "space")
        super().__init__(parent.view, out, (parent.chunk_shape[0], 1, 1), (parent,))

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (self.parent.shape[0], 1, 1)

    @property
    def transform(self) -> Affine:
        t = self.parent.transform
        _, ny, nx = self.parent.shape
        return Affine(t.a * nx, t.b, t.c, t.d, t.e * ny, t.f)

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        t_off, ct = chunk.offset[0], chunk.size[0]
        _, ny, nx = self.parent.shape
        block = self.parent.read_region((t_off, 0, 0), (ct, ny, nx), ctx)

        if self._udf is not None:
            batch = block.transpose(1, 0, 2, 3)
            return self._udf(batch, ctx.udf_pool).T.reshape(self._udf.n_out, ct, 1, 1)

        flat = block.reshape(block.shape[0], ct, ny * nx)
        reduced = np.stack([reduce_array(flat[b], method, axis=1) for method, b in self._reducers])
        return reduced.reshape(len(self._reducers), ct, 1, 1)

class FilterGeom(Cube):
    """
    Sets cells whose center lies outside a polygon to NaN.

    Accepts a shapely geometry, a GeoJSON mapping, a vector file path, a
    Vector or a GeoDataFrame. Chunks entirely outside the polygon are not read.
    """
    def __init__(self, parent: Cube, geometry: Any, crs: Optional[Any] = None):
        super().__init__(parent.view, parent.bands, parent.chunk_shape, (parent,))
        self.geometry = as_geometry(geometry, parent.crs, crs=crs)

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        nt, ny, nx = chunk.size
        if not self.geometry.intersects(box(*self.chunk_bounds(chunk))):
            log.debug(f"{chunk} lies outside the filter geometry")
            return np.full((len(self.bands), nt, ny, nx), np.nan, dtype=np.float64)

        data = self.parent.read_chunk(chunk, ctx)
        inside = geometry_mask(
            [self.geometry], out_shape=(ny, nx), transform=self.chunk_transform(chunk), invert=True
        )
        data[:, :, ~inside] = np.nan
        return data

class WindowTime(Cube):
    """
    Moving-window operation along time.

    With reducers ("mean(ndvi)"), each output slice reduces the slices
    [t - before, t + after] clipped to the series. With a kernel of length
    before + after + 1, every band is convolved along time; windows reaching
    past either end of the series are NaN.
    """
    def __init__(
        self,
        parent: Cube,
        reducers: Optional[Union[str, Sequence[str]]] = None,
        kernel: Optional[Sequence[float]] = None,
        window: Tuple[int, int] = (1, 1)
    ):
        if (reducers is None) == (kernel is None):
            raise ConfigurationError("window_time requires exactly one of reducers or kernel.")
        before, after = (int(w) for w in window)
        if before < 0 or after < 0:
            raise ConfigurationError(f"Window sizes must be non-negative, got {tuple(window)}")
        self.window = (before, after)

        self._kernel: Optional[np.ndarray] = None
        self._reducers: List[Tuple[str, int]] = []
        if kernel is not None:
            self._kernel = np.asarray(kernel, dtype=np.float64)
            if self._kernel.ndim != 1 or self._kernel.size != before + after + 1:
                raise ConfigurationError(
                    f"Kernel length {self._kernel.size} does not match window {self.window}"
                )
            out = list(parent.bands)
        else:
            self._reducers = _parse_reducers(reducers, parent.bands)
            out = [f"{parent.bands[b]}_{method}" for method, b in self._reducers]
        super().__init__(parent.view, out, parent.chunk_shape, (parent,))

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        before, after = self.window
        t_off, y_off, x_off = chunk.offset
        ct, ny, nx = chunk.size
        nt = self.parent.shape[0]

        lo = max(0, t_off - before)
        hi = min(nt, t_off + ct + after)
        series = self.parent.read_region((lo, y_off, x_off), (hi - lo, ny, nx), ctx)

        out = np.full((len(self.bands), ct, ny, nx), np.nan, dtype=np.float64)
        for i in range(ct):
            t = t_off + i
            start, stop = t - before, t + after + 1
            if self._kernel is not None:
                if start < 0 or stop > nt:
                    continue
                block = series[:, start - lo:stop - lo]
                out[:, i] = np.tensordot(self._kernel, block, axes=([0], [1]))
            else:
                block = series[:, max(start, 0) - lo:min(stop, nt) - lo]
                for k, (method, b) in enumerate(self._reducers):
                    out[k, i] = reduce_array(block[b], method, axis=0)
        return out

class JoinBands(Cube):
    """
    Combines the bands of two cubes sharing the same grid.

    Clashing band names require prefixes; joined names become
    "<prefix>_<band>".
    """
    def __init__(self, left: Cube, right: Cube, prefixes: Optional[Tuple[str, str]] = None):
        if left.shape != right.shape or left.view != right.view or left.transform != right.transform:
            raise ConfigurationError(
                f"Cannot join cubes with different grids: {left.shape} vs {right.shape}"
            )
        if prefixes is not None:
            if len(prefixes) != 2:
                raise ConfigurationError(f"prefixes must be a pair, got {prefixes!r}")
            names = [f"{prefixes[0]}_{b}" for b in left.bands] + [f"{prefixes[1]}_{b}" for b in right.bands]
        else:
            clash = sorted(set(left.bands) & set(right.bands))
            if clash:
                raise ConfigurationError(f"Band name(s) {clash} exist in both cubes; pass prefixes")
            names = list(left.bands) + list(right.bands)
        super().__init__(left.view, names, left.chunk_shape, (left, right))

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        left, right = self.parents
        ldata = left.read_chunk(chunk, ctx)
        if right.chunk_shape == left.chunk_shape:
            rdata = right.read_chunk(chunk, ctx)
        else:
            rdata = right.read_region(chunk.offset, chunk.size, ctx)
        return np.concatenate([ldata, rdata])

class SelectTime(Cube):
    """Keeps the time slices containing the given datetimes, in the given order."""
    def __init__(self, parent: Cube, times: Sequence[Union[str, datetime]]):
        if isinstance(times, (str, datetime)):
            times = [times]
        if not times:
            raise ConfigurationError("select_time requires at least one time.")

        labels = parent.time_labels
        slice_lookup = parent.shape[0] == parent.view.nt
        indices = []
        for value in times:
            t = to_naive_utc(as_datetime(value))
            if t in labels:
                idx = labels.index(t)
            else:
                idx = parent.view.slice_index(t) if slice_lookup else None
            if idx is None:
                raise ConfigurationError(f"Time {value} is outside the cube's time axis")
            indices.append(idx)

        self._indices = indices
        chunk_shape = (min(parent.chunk_shape[0], len(indices)),) + tuple(parent.chunk_shape[1:])
        super().__init__(parent.view, parent.bands, chunk_shape, (parent,))

    @property
    def shape(self) -> Tuple[int, int, int]:
        return (len(self._indices),) + tuple(self.parent.shape[1:])

    @property
    def time_labels(self) -> Tuple[datetime, ...]:
        labels = self.parent.time_labels
        return tuple(labels[i] for i in self._indices)

    def read_chunk(self, chunk: Chunk, ctx: ExecutionContext) -> np.ndarray:
        t_off, y_off, x_off = chunk.offset
        ct, ny, nx = chunk.size
        wanted = self._indices[t_off:t_off + ct]
        lo, hi = min(wanted), max(wanted) + 1
        series = self.parent.read_region((lo, y_off, x_off), (hi - lo, ny, nx), ctx)
        return series[:, [i - lo for i in wanted]]

def image_collection_cube(
    collection: ImageCollection,
    view: CubeView,
    chunk_shape: Optional[Sequence[int]] = None,
    mask: Optional[ImageMask] = None,
    bands: Optional[Sequence[str]] = None
) -> ImageCollectionCube:
    """Create the source cube of a pipeline from a collection and a view."""
    return ImageCollectionCube(collection, view, chunk_shape=chunk_shape, mask=mask, bands=bands)

def _user_function(
    func: Union[Callable, UserFunction],
    names: Optional[Sequence[str]],
    kind: str
) -> UserFunction:
    if isinstance(func, UserFunction):
        if func.kind != kind:
            raise ConfigurationError(f"Expected a '{kind}' user function, got '{func.kind}'")
        return func
    if not names:
        raise ConfigurationError("A user function requires the names of its outputs.")
    return UserFunction(func, names, kind)

def _parse_reducers(reducers: Union[str, Sequence[str]], bands: Sequence[str]) -> List[Tuple[str, int]]:
    """Parse "method(band)" strings into (method, band index) pairs."""
    reducers = [reducers] if isinstance(reducers, str) else list(reducers)
    if not reducers:
        raise ConfigurationError("At least one reducer is required.")

    parsed = []
    for text in reducers:
        match = _REDUCER_RE.match(text)
        if match is None:
            raise ConfigurationError(f"Invalid reducer '{text}'; expected 'method(band)'")
        method, band = match.groups()
        if method not in REDUCER_METHODS:
            raise ConfigurationError(f"Invalid reducer '{method}'. Must be one of: {list(REDUCER_METHODS)}")
        if band not in bands:
            raise ConfigurationError(f"Reducer '{text}' refers to unknown band '{band}'")
        parsed.append((method, list(bands).index(band)))
    return parsed

def _reduction(parent: Cube, reducers, names, kind: str):
    """Resolve reduce_time/reduce_space arguments to (udf, reducers, output names)."""
    if callable(reducers):
        udf = _user_function(reducers, names, kind)
        return udf, [], list(udf.names)

    parsed = _parse_reducers(reducers, parent.bands)
    if names is None:
        out = [f"{parent.bands[b]}_{method}" for method, b in parsed]
    else:
        out = list(names)
        if len(out) != len(parsed):
            raise ConfigurationError(f"Got {len(parsed)} reducer(s) but {len(out)} name(s)")
    return None, parsed, out

def _check_expression(expr: str, bands: Sequence[str]):
    sample = {b: np.ones(1) for b in bands}
    try:
        ne.evaluate(expr, local_dict=sample, global_dict={})
    except (KeyError, SyntaxError, ValueError, TypeError, NotImplementedError) as e:
        raise ConfigurationError(f"Invalid band expression '{expr}': {e}") from e

def _evaluate(expr: str, env: Dict[str, np.ndarray], shape: Tuple[int, ...], dtype=np.float64) -> np.ndarray:
    result = ne.evaluate(expr, local_dict=env, global_dict={})
    return np.broadcast_to(np.asarray(result, dtype=dtype), shape)
