# src/eocube/cube/partition.py

"""
This module partitions the target grid of a cube into chunks.

A chunk is a rectangular (t, y, x) block holding all bands. It is the unit of
independent computation and of memory allocation. The partition is a pure
function of the grid shape and the chunk shape.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Sequence, Tuple, Union

from rasterio.transform import Affine
from rasterio.windows import Window

from eocube.exceptions import ConfigurationError

log = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_CHUNK_SHAPE",
    "Chunk",
    "chunk_counts",
    "plan",
    "iter_chunks",
    "chunk_at",
    "chunks_in_region"
]

DEFAULT_CHUNK_SHAPE = (16, 256, 256)

Shape3 = Tuple[int, int, int]

@dataclass(frozen=True)
class Chunk:
    """
    Descriptor of one sub-block of the (t, y, x) grid.

    Attributes:
        id (Tuple[int, int, int]): Chunk index (it, iy, ix) in the chunk grid.
        offset (Tuple[int, int, int]): First cell (t, y, x) covered by the chunk.
        size (Tuple[int, int, int]): Number of cells (nt, ny, nx); trailing chunks may be smaller.
    """
    id: Shape3
    offset: Shape3
    size: Shape3

    @property
    def shape(self) -> Shape3:
        return self.size

    @property
    def slices(self) -> Tuple[slice, slice, slice]:
        """Index expressions selecting this chunk from a full (t, y, x) array."""
        return tuple(slice(o, o + n) for o, n in zip(self.offset, self.size))

    @property
    def window(self) -> Window:
        """Spatial rasterio Window of the chunk within the cube grid."""
        _, y_off, x_off = self.offset
        _, ny, nx = self.size
        return Window(x_off, y_off, nx, ny)

    def bounds(self, view) -> Tuple[float, float, float, float]:
        """Returns (left, bottom, right, top) of the chunk in view CRS units."""
        _, y_off, x_off = self.offset
        _, ny, nx = self.size
        left = view.left + x_off * view.dx
        top = view.top - y_off * view.dy
        return (left, top - ny * view.dy, left + nx * view.dx, top)

    def transform(self, view) -> Affine:
        left, _, _, top = self.bounds(view)
        return Affine(view.dx, 0.0, left, 0.0, -view.dy, top)

    def time_window(self, view) -> Tuple[datetime, datetime]:
        """Half-open [start, end) period covered by the chunk's time slices."""
        t_off = self.offset[0]
        edges = view.time_edges
        return edges[t_off], edges[t_off + self.size[0]]

    def __repr__(self) -> str:
        return f"<Chunk id={self.id} offset={self.offset} size={self.size}>"

def _validate_chunk_shape(chunk_shape: Sequence[int]) -> Shape3:
    if len(chunk_shape) != 3:
        raise ConfigurationError(f"chunk_shape must be (nt, ny, nx), got {tuple(chunk_shape)}")
    shape = tuple(int(n) for n in chunk_shape)
    if any(n <= 0 for n in shape):
        raise ConfigurationError(f"chunk_shape entries must be positive, got {shape}")
    return shape

def _grid_shape(grid) -> Shape3:
    shape = grid.shape if hasattr(grid, "shape") else grid
    if len(shape) != 3 or any(int(n) <= 0 for n in shape):
        raise ConfigurationError(f"Grid shape must be three positive sizes, got {tuple(shape)}")
    return tuple(int(n) for n in shape)

def chunk_counts(grid, chunk_shape: Sequence[int]) -> Shape3:
    """Number of chunks along t, y and x."""
    shape = _grid_shape(grid)
    cshape = _validate_chunk_shape(chunk_shape)
    return tuple(-(-n // c) for n, c in zip(shape, cshape))

def chunk_at(grid, chunk_shape: Sequence[int], idx: Sequence[int]) -> Chunk:
    """Chunk with index (it, iy, ix) of the partition of a grid."""
    shape = _grid_shape(grid)
    cshape = _validate_chunk_shape(chunk_shape)
    idx = tuple(int(i) for i in idx)
    offset = tuple(i * c for i, c in zip(idx, cshape))
    if any(i < 0 or o >= n for i, o, n in zip(idx, offset, shape)):
        raise IndexError(f"Chunk index {idx} out of range for grid {shape} and chunk shape {cshape}")
    size = tuple(min(c, n - o) for c, n, o in zip(cshape, shape, offset))
    return Chunk(id=idx, offset=offset, size=size)

def iter_chunks(grid, chunk_shape: Sequence[int] = DEFAULT_CHUNK_SHAPE) -> Iterator[Chunk]:
    """
    Lazily yield the chunks of a grid in row-major (t, y, x) order.

    Args:
        grid: A CubeView (or anything with a (nt, ny, nx) shape) or the shape itself.
        chunk_shape: Requested (nt, ny, nx) per chunk.
    """
    counts = chunk_counts(grid, chunk_shape)
    for it in range(counts[0]):
        for iy in range(counts[1]):
            for ix in range(counts[2]):
                yield chunk_at(grid, chunk_shape, (it, iy, ix))

def chunks_in_region(
    grid,
    chunk_shape: Sequence[int],
    offset: Sequence[int],
    size: Sequence[int]
) -> Iterator[Chunk]:
    """
    Yield the chunks overlapping a (t, y, x) cell region, in row-major order.

    Args:
        grid: Grid or grid shape.
        chunk_shape: Chunk shape of the partition.
        offset: First cell (t, y, x) of the region.
        size: Number of cells (nt, ny, nx) of the region.
    """
    shape = _grid_shape(grid)
    cshape = _validate_chunk_shape(chunk_shape)
    if any(o < 0 or n <= 0 or o + n > g for o, n, g in zip(offset, size, shape)):
        raise IndexError(f"Region offset={tuple(offset)} size={tuple(size)} exceeds grid {shape}")

    ranges = [range(o // c, (o + n - 1) // c + 1) for o, n, c in zip(offset, size, cshape)]
    for it in ranges[0]:
        for iy in ranges[1]:
            for ix in ranges[2]:
                yield chunk_at(shape, cshape, (it, iy, ix))

def plan(grid, chunk_shape: Sequence[int] = DEFAULT_CHUNK_SHAPE) -> List[Chunk]:
    """
    Partition a grid into contiguous, non-overlapping chunks covering it exactly once.

    Args:
        grid: A CubeView (or anything with a (nt, ny, nx) shape) or the shape itself.
        chunk_shape: Requested (nt, ny, nx) per chunk. The last chunk along an
            axis is smaller when the grid is not an exact multiple.

    Returns:
        List[Chunk]: Chunks in row-major order.
    """
    chunks = list(iter_chunks(grid, chunk_shape))
    log.debug(f"Planned {len(chunks)} chunks of up to {tuple(chunk_shape)} cells over {_grid_shape(grid)}")
    return chunks
