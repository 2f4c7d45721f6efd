# src/eocube/__init__.py

"""
eocube builds regular (band, time, y, x) data cubes on demand from irregular
collections of satellite images.
"""

from .exceptions import (
    EOCubeError,
    ConfigurationError,
    EmptyCollectionError,
    ChunkIOError,
    ReprojectionError,
    ReducerContractViolationError,
    ComputationCancelled
)

from .config import ExecutionConfig

from .collection import (
    BandAsset,
    Image,
    ImageCollection,
    build_collection,
    images_from_stac,
    load_item_collection,
    cloud_cover_below
)

from .cube import (
    CubeView,
    derive,
    ImageMask,
    Chunk,
    plan,
    CancelToken,
    ExecutionReport,
    Cube,
    image_collection_cube,
    Pack,
    read_tif_cube
)

__version__ = "0.1.0"

__all__ = [
    "EOCubeError",
    "ConfigurationError",
    "EmptyCollectionError",
    "ChunkIOError",
    "ReprojectionError",
    "ReducerContractViolationError",
    "ComputationCancelled",
    "ExecutionConfig",
    "BandAsset",
    "Image",
    "ImageCollection",
    "build_collection",
    "images_from_stac",
    "load_item_collection",
    "cloud_cover_below",
    "CubeView",
    "derive",
    "ImageMask",
    "Chunk",
    "plan",
    "CancelToken",
    "ExecutionReport",
    "Cube",
    "image_collection_cube",
    "Pack",
    "read_tif_cube"
]
