# src/eocube/vector/__init__.py
#
# Copyright (c) The eocube project contributors
# This software is distributed under the Apache-2.0 license.
# See the NOTICE file for more information

"""
The vector subpackage handles polygon inputs used to mask cubes geometrically.
"""

# I/O and data structure
from .layer import (
    Vector
)

from .io import (
    load_vector,
    save_vector
)

# Geometry resolution

from .geom import (
    to_crs,
    validate,
    union_geometry,
    as_geometry
)

__all__ = [
    # I/O and data structure
    "Vector",
    "load_vector",
    "save_vector",

    # Geometry resolution
    "to_crs",
    "validate",
    "union_geometry",
    "as_geometry"
]
