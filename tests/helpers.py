# tests/helpers.py

from datetime import datetime, timedelta

import numpy as np
import rasterio
from rasterio.transform import from_origin
from shapely.geometry import box, mapping

from eocube.cube.graph import Cube
from eocube.cube.view import CubeView

def write_geotiff(path, data, left=0.0, top=2.0, res=1.0, crs="EPSG:32633", nodata=None, dtype="float32"):
    """Write a north-up GeoTIFF from a (y, x) or (bands, y, x) array."""
    data = np.asarray(data, dtype=dtype)
    if data.ndim == 2:
        data = data[None]
    profile = {
        'driver': 'GTiff',
        'height': data.shape[1],
        'width': data.shape[2],
        'count': data.shape[0],
        'dtype': dtype,
        'crs': crs,
        'transform': from_origin(left, top, res, res),
        'nodata': nodata
    }
    with rasterio.open(path, 'w', **profile) as dst:
        dst.write(data)
    return str(path)

def stac_item(item_id, when, assets, bounds=(10.0, 45.0, 11.0, 46.0), properties=None):
    """STAC 1.0 item dictionary with a rectangular WGS84 footprint."""
    return {
        "type": "Feature",
        "stac_version": "1.0.0",
        "stac_extensions": [],
        "id": item_id,
        "bbox": list(bounds),
        "geometry": mapping(box(*bounds)),
        "properties": dict(properties or {}, datetime=when),
        "links": [],
        "assets": assets
    }

def make_view(nt=1, ny=2, nx=2, dt="P1D", crs="EPSG:32633", **kwargs) -> CubeView:
    """Daily view of unit cells with its origin at (0, 0) starting 2020-01-01."""
    t0 = datetime(2020, 1, 1)
    t1 = t0 + timedelta(days=nt - 1)
    return CubeView.create(crs, (0, 0, nx, ny, t0, t1), dt=dt, dx=1, **kwargs)

class ArrayCube(Cube):
    """In-memory source node serving chunks of a fixed (bands, t, y, x) array."""
    def __init__(self, data, view=None, bands=None, chunk_shape=(1, 2, 2)):
        data = np.asarray(data, dtype=np.float64)
        view = view or make_view(*data.shape[1:])
        bands = bands or [f"b{i}" for i in range(data.shape[0])]
        super().__init__(view, bands, chunk_shape)
        self.data = data
        self.reads = 0

    def read_chunk(self, chunk, ctx):
        self.reads += 1
        return self.data[(slice(None),) + chunk.slices].copy()

def assert_all_nan(values):
    values = np.asarray(values)
    assert np.isnan(values).all(), f"{np.count_nonzero(~np.isnan(values))} cell(s) hold data"

def assert_cube_equal(current, reference, atol=1e-9):
    """Compare cube arrays cell by cell, treating NaN as equal."""
    assert current.shape == reference.shape, \
        f"Shape mismatch: {current.shape} != {reference.shape}"
    assert np.array_equal(np.isnan(current), np.isnan(reference)), \
        "No-data pattern mismatch"
    assert np.allclose(current, reference, atol=atol, equal_nan=True), \
        f"Max difference {np.nanmax(np.abs(current - reference))}"
