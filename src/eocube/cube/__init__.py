# src/eocube/cube/__init__.py
#
# Copyright (c) The eocube project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The cube subpackage provides the construction engine: target views, chunk
partitioning, the read/warp stage, aggregation, the worker pool and the lazy
operator graph with its terminal consumers.
"""
# Target grid
from .view import (
    TimeStep,
    ViewAdjustment,
    CubeView,
    derive,
    resolve_resampling
)

# Partitioning and scheduling
from .partition import (
    DEFAULT_CHUNK_SHAPE,
    Chunk,
    chunk_counts,
    plan,
    iter_chunks
)

from .engine import (
    CancelToken,
    ChunkResult,
    ExecutionReport,
    ExecutionContext,
    execute
)

from .resources import (
    MemoryEstimate,
    estimate_chunk_memory
)

# Reading and aggregation
from .reader import (
    FootprintIndex,
    read_chunk
)

from .aggregate import (
    AGGREGATION_METHODS,
    REDUCER_METHODS,
    ImageMask,
    aggregate,
    reduce_array
)

from .udf import (
    UserFunction
)

# Operator graph
from .graph import (
    Cube,
    ImageCollectionCube,
    image_collection_cube
)

# I/O operations
from .io import (
    Pack,
    TifCube,
    write_cube,
    read_tif_cube,
    cube_to_xarray
)

__all__ = [
    # Target grid
    "TimeStep",
    "ViewAdjustment",
    "CubeView",
    "derive",
    "resolve_resampling",

    # Partitioning and scheduling
    "DEFAULT_CHUNK_SHAPE",
    "Chunk",
    "chunk_counts",
    "plan",
    "iter_chunks",
    "CancelToken",
    "ChunkResult",
    "ExecutionReport",
    "ExecutionContext",
    "execute",
    "MemoryEstimate",
    "estimate_chunk_memory",

    # Reading and aggregation
    "FootprintIndex",
    "read_chunk",
    "AGGREGATION_METHODS",
    "REDUCER_METHODS",
    "ImageMask",
    "aggregate",
    "reduce_array",
    "UserFunction",

    # Operator graph
    "Cube",
    "ImageCollectionCube",
    "image_collection_cube",

    # I/O operations
    "Pack",
    "TifCube",
    "write_cube",
    "read_tif_cube",
    "cube_to_xarray"
]
