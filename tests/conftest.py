# tests/conftest.py

import pytest
from shapely.geometry import box

from eocube.collection import BandAsset, Image, build_collection
from helpers import write_geotiff

@pytest.fixture
def geotiff_factory(tmp_path):
    """
    Fixture: Returns a function writing synthetic GeoTIFFs into tmp_path.
    Defaults describe 1 m cells in UTM 33N with the top-left corner at (0, 2).
    """
    def _make(name, data, **kwargs):
        return write_geotiff(tmp_path / name, data, **kwargs)
    return _make

@pytest.fixture
def image_factory():
    """Fixture: Builds single-band-per-asset Images over a footprint in UTM 33N."""
    def _make(image_id, when, footprint, bands, crs="EPSG:32633", metadata=None):
        return Image.create(
            id=image_id,
            datetime=when,
            footprint=footprint,
            crs=crs,
            bands=bands,
            metadata=metadata
        )
    return _make

@pytest.fixture
def halves_collection(geotiff_factory, image_factory):
    """
    Two images taken on the same day covering the disjoint left and right
    halves of the 2 x 2 m square [0, 2] x [0, 2]: the left one holds 1.0,
    the right one 2.0.
    """
    left = geotiff_factory("left.tif", [[1.0], [1.0]], left=0.0)
    right = geotiff_factory("right.tif", [[2.0], [2.0]], left=1.0)
    images = [
        image_factory("left", "2020-01-01T10:00:00Z", box(0, 0, 1, 2), {"B04": left}),
        image_factory("right", "2020-01-01T11:00:00Z", box(1, 0, 2, 2), {"B04": right})
    ]
    return build_collection(images)

@pytest.fixture
def two_day_collection(geotiff_factory, image_factory):
    """Full-coverage images on 2020-01-01 (value 4.0) and 2020-01-02 (value 8.0)."""
    day1 = geotiff_factory("day1.tif", [[4.0, 4.0], [4.0, 4.0]])
    day2 = geotiff_factory("day2.tif", [[8.0, 8.0], [8.0, 8.0]])
    images = [
        image_factory("d2", "2020-01-02T10:00:00", box(0, 0, 2, 2), {"B04": BandAsset(day2)}),
        image_factory("d1", "2020-01-01T10:00:00", box(0, 0, 2, 2), {"B04": BandAsset(day1)})
    ]
    return build_collection(images)
