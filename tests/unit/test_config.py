# tests/unit/test_config.py

import pytest

from eocube.config import DEFAULT_GDAL_OPTIONS, ExecutionConfig
from eocube.exceptions import ConfigurationError

ENV_KEYS = [
    "EOCUBE_WORKERS", "EOCUBE_MAX_IO_CONCURRENCY", "EOCUBE_MAX_RETRIES",
    "EOCUBE_RETRY_BACKOFF", "EOCUBE_MAX_BACKOFF", "EOCUBE_FAIL_FAST", "EOCUBE_UDF_ISOLATION"
]

@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in ENV_KEYS:
        # setenv first so values loaded from .env files are undone as well
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    return monkeypatch

def test_defaults():
    config = ExecutionConfig()
    assert config.workers >= 1
    assert config.max_io_concurrency == 8
    assert config.max_retries == 3
    assert config.fail_fast is False
    assert config.udf_isolation == "inline"
    assert config.gdal_options == DEFAULT_GDAL_OPTIONS

def test_gdal_options_are_copied():
    options = {"VSI_CACHE": "FALSE"}
    config = ExecutionConfig(gdal_options=options)
    config.gdal_options["EXTRA"] = "1"
    assert options == {"VSI_CACHE": "FALSE"}

@pytest.mark.parametrize("kwargs", [
    {"workers": 0},
    {"max_io_concurrency": 0},
    {"max_retries": -1},
    {"retry_backoff": -0.1},
    {"udf_isolation": "thread"}
])
def test_invalid_configuration(kwargs):
    with pytest.raises(ConfigurationError):
        ExecutionConfig(**kwargs)

def test_from_env(clean_env):
    clean_env.setenv("EOCUBE_WORKERS", "3")
    clean_env.setenv("EOCUBE_MAX_RETRIES", "1")
    clean_env.setenv("EOCUBE_MAX_BACKOFF", "12.5")
    clean_env.setenv("EOCUBE_FAIL_FAST", "yes")
    clean_env.setenv("EOCUBE_UDF_ISOLATION", " Process ")

    config = ExecutionConfig.from_env()

    assert config.workers == 3
    assert config.max_retries == 1
    assert config.max_backoff == 12.5
    assert config.fail_fast is True
    assert config.udf_isolation == "process"

def test_overrides_win_over_environment(clean_env):
    clean_env.setenv("EOCUBE_WORKERS", "3")
    config = ExecutionConfig.from_env(workers=5)
    assert config.workers == 5

def test_dotenv_file_is_loaded(clean_env, tmp_path):
    (tmp_path / ".env").write_text("EOCUBE_MAX_IO_CONCURRENCY=2\nEOCUBE_RETRY_BACKOFF=0.25\n")

    config = ExecutionConfig.from_env()

    assert config.max_io_concurrency == 2
    assert config.retry_backoff == 0.25

def test_invalid_environment_value_is_rejected(clean_env):
    clean_env.setenv("EOCUBE_UDF_ISOLATION", "gpu")
    with pytest.raises(ConfigurationError):
        ExecutionConfig.from_env(dotenv=False)
