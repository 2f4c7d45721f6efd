# src/eocube/cube/retry.py

"""
This module retries transient remote read failures with exponential backoff.

Retries happen at byte-range fetch granularity (one windowed read) and all
workers share an IOThrottle capping simultaneous requests to the remote store.
"""

import logging
import random
import re
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from eocube.exceptions import ChunkIOError, EOCubeError

log = logging.getLogger(__name__)

__all__ = [
    "IOThrottle",
    "is_transient_error",
    "fetch_with_retry"
]

T = TypeVar("T")

_TRANSIENT_CODES = re.compile(r"\b(408|429|500|502|503|504)\b")
_TRANSIENT_KEYWORDS = (
    "timeout", "timed out", "connection", "reset by peer", "temporar",
    "throttl", "rate limit", "too many requests", "service unavailable",
    "bad gateway", "internal server error", "curl error"
)

class IOThrottle:
    """Bounded semaphore shared by the workers reading from remote storage."""
    def __init__(self, max_concurrency: int):
        self.max_concurrency = max_concurrency
        self._semaphore = threading.BoundedSemaphore(max_concurrency)

    @contextmanager
    def slot(self) -> Iterator[None]:
        with self._semaphore:
            yield

def is_transient_error(exc: BaseException) -> bool:
    """Classify an exception as retryable based on type and message."""
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    text = str(exc).lower()
    if _TRANSIENT_CODES.search(text):
        return True
    return any(keyword in text for keyword in _TRANSIENT_KEYWORDS)

def fetch_with_retry(
    operation: Callable[[], T],
    description: str,
    max_retries: int = 3,
    initial_backoff: float = 0.5,
    max_backoff: float = 30.0,
    throttle: IOThrottle = None,
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """
    Execute one remote fetch, retrying transient failures with backoff.

    Args:
        operation: Zero-argument callable performing the read.
        description: Label used in log messages and errors (usually the href).
        max_retries: Retries after the first attempt.
        initial_backoff: Sleep before the first retry, doubled afterwards.
        max_backoff: Cap for a single sleep.
        throttle: Optional shared concurrency limiter.
        sleep: Sleep function (injectable for tests).

    Returns:
        The operation result.

    Raises:
        ChunkIOError: If the failure is permanent or retries are exhausted.
    """
    attempts = max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            if throttle is not None:
                with throttle.slot():
                    return operation()
            return operation()
        except EOCubeError:
            raise
        except Exception as e:
            if not is_transient_error(e):
                raise ChunkIOError(f"Read of {description} failed: {e}", href=description) from e
            if attempt == attempts:
                log.error(f"Read of {description} failed after {attempts} attempts: {e}")
                raise ChunkIOError(
                    f"Read of {description} failed after {attempts} attempts: {e}",
                    href=description
                ) from e

            delay = min(max_backoff, initial_backoff * (2 ** (attempt - 1)))
            delay += random.uniform(0, delay * 0.1)
            log.warning(f"Transient error reading {description} (attempt {attempt}/{attempts}): {e}; "
                        f"retrying in {delay:.2f}s")
            sleep(delay)
