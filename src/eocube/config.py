# src/eocube/config.py

"""
This module defines the explicit execution configuration passed to the scheduler.

There is no module-level thread or GDAL state: every knob that influences how
chunks are computed lives on an ExecutionConfig instance handed to the cube.
"""

import logging
import os
from typing import Dict, Optional, Union

import psutil
from dotenv import load_dotenv, find_dotenv

from .exceptions import ConfigurationError

log = logging.getLogger(__name__)

__all__ = [
    "UDF_ISOLATION_MODES",
    "DEFAULT_GDAL_OPTIONS",
    "ExecutionConfig",
    "default_workers"
]

UDF_ISOLATION_MODES = ("inline", "process")

# Options favouring partial reads of cloud-optimized GeoTIFFs
DEFAULT_GDAL_OPTIONS = {
    "GDAL_DISABLE_READDIR_ON_OPEN": "EMPTY_DIR",
    "CPL_VSIL_CURL_ALLOWED_EXTENSIONS": ".tif,.tiff,.TIF,.TIFF,.jp2",
    "GDAL_HTTP_MULTIRANGE": "YES",
    "GDAL_HTTP_MERGE_CONSECUTIVE_RANGES": "YES",
    "VSI_CACHE": "TRUE"
}

def default_workers() -> int:
    """Worker pool size bounded by the available processors."""
    return psutil.cpu_count(logical=True) or 1

class ExecutionConfig:
    """Configuration object for the chunk scheduler and reader.

    Args:
        workers: Size of the chunk worker pool. Defaults to the number of CPUs.
        max_io_concurrency: Cap on simultaneous remote reads shared by all workers. Default=8.
        max_retries: Retries for transient read failures before a chunk is failed. Default=3.
        retry_backoff: Initial backoff in seconds, doubled on each retry. Default=0.5.
        max_backoff: Upper bound for a single backoff sleep in seconds. Default=30.
        fail_fast: Escalate a failed chunk to a fatal error instead of missing data.
        udf_isolation: 'inline' or 'process'; where user functions are invoked.
        gdal_options: GDAL configuration options applied around every read.
        progress: Show a progress bar in terminal writers.
    """
    def __init__(
        self,
        workers: Optional[int] = None,
        max_io_concurrency: int = 8,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        max_backoff: float = 30.0,
        fail_fast: bool = False,
        udf_isolation: str = "inline",
        gdal_options: Optional[Dict[str, str]] = None,
        progress: bool = False
    ):
        self.workers = workers if workers is not None else default_workers()
        self.max_io_concurrency = max_io_concurrency
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.max_backoff = max_backoff
        self.fail_fast = fail_fast
        self.udf_isolation = udf_isolation
        self.gdal_options = dict(DEFAULT_GDAL_OPTIONS if gdal_options is None else gdal_options)
        self.progress = progress
        self.validate()

    def validate(self):
        if self.workers < 1:
            raise ConfigurationError(f"workers must be >= 1, got {self.workers}")
        if self.max_io_concurrency < 1:
            raise ConfigurationError(f"max_io_concurrency must be >= 1, got {self.max_io_concurrency}")
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_backoff < 0 or self.max_backoff < 0:
            raise ConfigurationError("Backoff durations must be non-negative.")
        if self.udf_isolation not in UDF_ISOLATION_MODES:
            raise ConfigurationError(
                f"Invalid udf_isolation '{self.udf_isolation}'. Must be one of: {list(UDF_ISOLATION_MODES)}"
            )

    @classmethod
    def from_env(cls, dotenv: bool = True, **overrides) -> "ExecutionConfig":
        """
        Build a configuration from EOCUBE_* environment variables.

        Recognized variables: EOCUBE_WORKERS, EOCUBE_MAX_IO_CONCURRENCY,
        EOCUBE_MAX_RETRIES, EOCUBE_RETRY_BACKOFF, EOCUBE_MAX_BACKOFF,
        EOCUBE_FAIL_FAST and EOCUBE_UDF_ISOLATION. Keyword overrides win over the environment.

        Args:
            dotenv: Load a .env file found from the working directory first.
            **overrides: Explicit values for any constructor argument.

        Returns:
            ExecutionConfig: The resolved configuration.
        """
        if dotenv:
            env_path = find_dotenv(usecwd=True)
            if env_path:
                log.debug(f"Loading environment from {env_path}")
                load_dotenv(env_path)

        values = {}
        workers = os.getenv("EOCUBE_WORKERS")
        if workers:
            values["workers"] = int(workers)
        io_cap = os.getenv("EOCUBE_MAX_IO_CONCURRENCY")
        if io_cap:
            values["max_io_concurrency"] = int(io_cap)
        retries = os.getenv("EOCUBE_MAX_RETRIES")
        if retries:
            values["max_retries"] = int(retries)
        backoff = os.getenv("EOCUBE_RETRY_BACKOFF")
        if backoff:
            values["retry_backoff"] = float(backoff)
        max_backoff = os.getenv("EOCUBE_MAX_BACKOFF")
        if max_backoff:
            values["max_backoff"] = float(max_backoff)
        fail_fast = os.getenv("EOCUBE_FAIL_FAST")
        if fail_fast:
            values["fail_fast"] = _parse_bool(fail_fast)
        isolation = os.getenv("EOCUBE_UDF_ISOLATION")
        if isolation:
            values["udf_isolation"] = isolation.strip().lower()

        values.update(overrides)
        return cls(**values)

    def __repr__(self) -> str:
        return (f"<ExecutionConfig workers={self.workers} io={self.max_io_concurrency} "
                f"retries={self.max_retries} fail_fast={self.fail_fast} udf={self.udf_isolation}>")

def _parse_bool(raw: Union[str, bool]) -> bool:
    if isinstance(raw, bool):
        return raw
    return raw.strip().lower() in ("true", "1", "yes", "y", "on")
