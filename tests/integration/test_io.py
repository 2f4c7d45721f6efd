# tests/integration/test_io.py

import numpy as np
import pytest
import rasterio

from eocube.config import ExecutionConfig
from eocube.cube import CubeView, Pack, read_tif_cube
from eocube.cube.io import TIME_TAG
from eocube.exceptions import ChunkIOError, ConfigurationError
from helpers import ArrayCube, assert_all_nan, assert_cube_equal

SERIAL = ExecutionConfig(workers=1)

@pytest.fixture
def sample_cube():
    """Two bands over two daily slices of a 2 x 2 grid with one missing cell."""
    data = np.arange(16.0).reshape(2, 2, 2, 2) / 10.0
    data[1, 0, 0, 0] = np.nan
    return ArrayCube(data, bands=["red", "nir"])

def test_write_one_file_per_slice(tmp_path, sample_cube):
    paths = sample_cube.write_tif(tmp_path / "out", config=SERIAL)

    assert [p.name for p in paths] == ["cube_2020-01-01.tif", "cube_2020-01-02.tif"]
    with rasterio.open(paths[1]) as src:
        assert src.count == 2
        assert src.descriptions == ("red", "nir")
        assert src.tags()[TIME_TAG] == "2020-01-02T00:00:00"
        assert src.crs.to_epsg() == 32633
        assert src.transform == sample_cube.transform
        assert src.profile["compress"].lower() == "deflate"

def test_round_trip(tmp_path, sample_cube):
    sample_cube.write_tif(tmp_path, prefix="s2_", config=SERIAL)
    restored = read_tif_cube(tmp_path, prefix="s2_")

    assert restored.bands == ("red", "nir")
    assert [t.day for t in restored.times] == [1, 2]
    assert restored.transform == sample_cube.transform
    assert_cube_equal(restored.data, sample_cube.data)

def test_rewrite_is_idempotent(tmp_path, sample_cube):
    sample_cube.write_tif(tmp_path, config=SERIAL)
    first = read_tif_cube(tmp_path).data
    sample_cube.write_tif(tmp_path, config=SERIAL)
    second = read_tif_cube(tmp_path).data

    assert_cube_equal(second, first)

def test_packed_output(tmp_path, sample_cube):
    paths = sample_cube.write_tif(tmp_path, pack={"dtype": "uint16", "scale": 0.01}, config=SERIAL)

    with rasterio.open(paths[0]) as src:
        assert src.dtypes[0] == "uint16"
        assert src.nodata == 65535
        assert src.scales == (0.01, 0.01)
        raw = src.read(2)
    assert raw[0, 0] == 65535
    assert raw[0, 1] == 90

    restored = read_tif_cube(tmp_path)
    assert_cube_equal(restored.data, sample_cube.data, atol=0.005)

def test_signed_pack_defaults(tmp_path):
    pack = Pack("int16", scale=0.5, offset=-10.0)
    assert pack.nodata == -32768
    encoded = pack.encode(np.array([-10.0, 0.0, np.nan, 1e9]))
    assert encoded.tolist() == [0, 20, -32768, 32767]

def test_valid_values_are_kept_apart_from_nodata(caplog):
    unsigned = Pack("uint16")
    encoded = unsigned.encode(np.array([65535.0, 70000.0, 65534.0, np.nan]))
    assert encoded.tolist() == [65534, 65534, 65534, 65535]
    assert "2 value(s) stored as 65534" in caplog.text

    signed = Pack("int16")
    assert signed.encode(np.array([-1e9, np.nan])).tolist() == [-32767, -32768]

@pytest.mark.parametrize("kwargs", [
    {"dtype": "bool"},
    {"dtype": "uint8", "scale": 0}
])
def test_invalid_pack(kwargs):
    with pytest.raises(ConfigurationError):
        Pack(**kwargs)

def test_compression_options(tmp_path, sample_cube):
    paths = sample_cube.write_tif(tmp_path / "lzw", compression="LZW", config=SERIAL)
    with rasterio.open(paths[0]) as src:
        assert src.profile["compress"].lower() == "lzw"

    paths = sample_cube.write_tif(tmp_path / "raw", compression=None, config=SERIAL)
    with rasterio.open(paths[0]) as src:
        assert "compress" not in src.profile

    with pytest.raises(ConfigurationError):
        sample_cube.write_tif(tmp_path / "bad", zlevel=12, config=SERIAL)

def test_monthly_labels(tmp_path):
    view = CubeView.create("EPSG:32633", (0, 0, 2, 2, "2020-01-15", "2020-03-01"), dt="P1M", dx=1)
    cube = ArrayCube(np.ones((1, 3, 2, 2)), view=view)

    paths = cube.write_tif(tmp_path, config=SERIAL)

    assert [p.name for p in paths] == ["cube_2020-01.tif", "cube_2020-02.tif", "cube_2020-03.tif"]

def test_failed_chunks_are_written_as_nodata(tmp_path):
    class FlakyCube(ArrayCube):
        def read_chunk(self, chunk, ctx):
            if chunk.id == (0, 0, 0):
                raise ChunkIOError("gone", chunk_id=chunk.id)
            return super().read_chunk(chunk, ctx)

    cube = FlakyCube(np.ones((1, 1, 2, 4)))
    cube.write_tif(tmp_path, pack={"dtype": "uint8"}, config=SERIAL)
    restored = read_tif_cube(tmp_path)

    assert_all_nan(restored.data[0, 0, :, :2])
    assert np.allclose(restored.data[0, 0, :, 2:], 1.0)

def test_progress_bar(tmp_path, sample_cube, capsys):
    sample_cube.write_tif(tmp_path, config=ExecutionConfig(workers=1, progress=True))
    assert "Writing cube" in capsys.readouterr().err

def test_read_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_tif_cube(tmp_path / "nothing")
    with pytest.raises(FileNotFoundError):
        read_tif_cube(tmp_path)

def test_read_explicit_files_sorted_by_time(tmp_path, sample_cube):
    paths = sample_cube.write_tif(tmp_path, config=SERIAL)
    restored = read_tif_cube(list(reversed(paths)))
    assert [t.day for t in restored.times] == [1, 2]
