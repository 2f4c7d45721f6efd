# src/eocube/collection/__init__.py
#
# Copyright (c) The eocube project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The collection subpackage indexes source images: immutable image descriptors,
the filtered image collection and the STAC item adapter.
"""

from .image import (
    BandAsset,
    Image
)

from .index import (
    ImageCollection,
    build_collection,
    transform_footprint
)

from .stac import (
    images_from_stac,
    load_item_collection,
    cloud_cover_below
)

__all__ = [
    # Descriptors
    "BandAsset",
    "Image",

    # Index
    "ImageCollection",
    "build_collection",
    "transform_footprint",

    # STAC adapter
    "images_from_stac",
    "load_item_collection",
    "cloud_cover_below"
]
