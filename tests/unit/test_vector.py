# tests/unit/test_vector.py

import geopandas as gpd
import pytest
from shapely.geometry import Point, Polygon, box, mapping

from eocube.exceptions import ConfigurationError
from eocube.vector import Vector, as_geometry, load_vector, save_vector, to_crs, union_geometry, validate

@pytest.fixture
def fields_gdf():
    """Two adjacent parcels in UTM 33N."""
    return gpd.GeoDataFrame(
        {"name": ["north", "south"]},
        geometry=[box(0, 5, 10, 10), box(0, 0, 10, 5)],
        crs="EPSG:32633"
    )

@pytest.fixture
def bowtie():
    """Self-intersecting polygon."""
    return Polygon([(0, 0), (2, 2), (2, 0), (0, 2), (0, 0)])

# --- Container & I/O ---

def test_init_invalid_type():
    with pytest.raises(TypeError):
        Vector("not a dataframe")

def test_properties(fields_gdf):
    v = Vector(fields_gdf)
    assert len(v) == 2
    assert v.crs == fields_gdf.crs
    assert list(v.bounds) == [0, 0, 10, 10]
    assert "features=2" in repr(v)

def test_save_and_load(tmp_path, fields_gdf):
    path = tmp_path / "fields.gpkg"
    save_vector(Vector(fields_gdf), path, driver="GPKG")

    loaded = load_vector(path)
    assert len(loaded) == 2
    assert loaded.crs.to_epsg() == 32633

def test_load_missing_file():
    with pytest.raises(FileNotFoundError):
        load_vector("ghost.gpkg")

# --- Geometry helpers ---

def test_to_crs(fields_gdf):
    reprojected = to_crs(Vector(fields_gdf), "EPSG:4326")
    assert reprojected.crs.to_epsg() == 4326

def test_to_crs_without_crs():
    v = Vector(gpd.GeoDataFrame(geometry=[box(0, 0, 1, 1)]))
    with pytest.raises(ValueError):
        to_crs(v, "EPSG:4326")

def test_validate_repairs_invalid_polygons(bowtie):
    v = Vector(gpd.GeoDataFrame(geometry=[bowtie, box(5, 5, 6, 6)], crs="EPSG:32633"))
    repaired = validate(v)
    assert repaired.data.is_valid.all()
    assert len(repaired) == 2

def test_union_geometry(fields_gdf):
    union = union_geometry(Vector(fields_gdf))
    assert union.area == pytest.approx(100.0)
    assert union.bounds == (0.0, 0.0, 10.0, 10.0)

# --- as_geometry ---

def test_shapely_input_defaults_to_target_crs():
    geom = as_geometry(box(0, 0, 2, 2), "EPSG:32633")
    assert geom.equals(box(0, 0, 2, 2))

def test_geojson_inputs():
    polygon = box(0, 0, 2, 2)
    feature = {"type": "Feature", "properties": {}, "geometry": mapping(polygon)}
    collection = {
        "type": "FeatureCollection",
        "features": [feature, {"type": "Feature", "properties": {}, "geometry": mapping(box(2, 0, 4, 2))}]
    }

    assert as_geometry(mapping(polygon), "EPSG:32633").equals(polygon)
    assert as_geometry(feature, "EPSG:32633").equals(polygon)
    assert as_geometry(collection, "EPSG:32633").area == pytest.approx(8.0)

def test_invalid_input_is_repaired(bowtie):
    geom = as_geometry(bowtie, "EPSG:32633")
    assert geom.is_valid
    assert geom.area > 0

def test_reprojection_from_explicit_crs():
    lonlat = box(14.99, 45.0, 15.01, 45.01)
    geom = as_geometry(lonlat, "EPSG:32633", crs="EPSG:4326")
    left, bottom, right, top = geom.bounds
    assert 499000 < left < 500000 < right < 501000
    assert 4980000 < bottom < top < 5000000

def test_path_and_dataframe_inputs(tmp_path, fields_gdf):
    path = tmp_path / "fields.gpkg"
    fields_gdf.to_file(path, driver="GPKG")

    from_path = as_geometry(path, "EPSG:32633")
    from_frame = as_geometry(fields_gdf, "EPSG:32633")

    assert from_path.area == pytest.approx(100.0)
    assert from_frame.equals(from_path)

def test_vector_without_crs_needs_explicit_crs():
    v = Vector(gpd.GeoDataFrame(geometry=[box(0, 0, 1, 1)]))
    with pytest.raises(ConfigurationError):
        as_geometry(v, "EPSG:32633")
    assert as_geometry(v, "EPSG:32633", crs="EPSG:32633").area == pytest.approx(1.0)

def test_empty_geometry_is_rejected():
    with pytest.raises(ConfigurationError):
        as_geometry(Polygon(), "EPSG:32633")

def test_non_polygonal_input_is_rejected():
    with pytest.raises(ConfigurationError):
        as_geometry(Point(1, 1), "EPSG:32633")

def test_from_geometries_drops_empty_features():
    v = Vector.from_geometries([box(0, 0, 1, 1), Polygon()], crs="EPSG:32633")
    assert len(v) == 1
    assert v.is_polygonal
    assert not Vector.from_geometries([Point(0, 0)]).is_polygonal

def test_load_with_bbox(tmp_path, fields_gdf):
    path = tmp_path / "fields.gpkg"
    save_vector(Vector(fields_gdf), path, driver="GPKG")
    loaded = load_vector(path, bbox=(2, 6, 3, 8))
    assert loaded.data["name"].tolist() == ["north"]

def test_unsupported_input():
    with pytest.raises(TypeError):
        as_geometry(42, "EPSG:32633")
