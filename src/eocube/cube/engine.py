# src/eocube/cube/engine.py

"""
This module schedules chunk computations on a fixed-size worker pool.

It serves as the core dispatch mechanism for cube evaluation. Chunks are
independent: results are yielded in completion order, a failed read downgrades
its chunk to missing data (unless configured fatal) and cancellation is
cooperative at chunk boundaries.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np

from eocube.config import ExecutionConfig
from eocube.exceptions import ChunkIOError, ComputationCancelled
from .partition import Chunk
from .retry import IOThrottle

log = logging.getLogger(__name__)

__all__ = [
    "CancelToken",
    "ChunkFailure",
    "ChunkResult",
    "ExecutionReport",
    "ExecutionContext",
    "execute"
]

class CancelToken:
    """Cooperative cancellation flag checked between chunks."""
    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

@dataclass(frozen=True)
class ChunkFailure:
    chunk_id: Tuple[int, int, int]
    error: str

@dataclass
class ChunkResult:
    """
    Outcome of one chunk.

    Attributes:
        chunk (Chunk): The computed chunk.
        data (np.ndarray | None): (bands, t, y, x) values, None if the chunk failed.
        error (Exception | None): The recorded failure, if any.
    """
    chunk: Chunk
    data: Optional[np.ndarray]
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

@dataclass
class ExecutionReport:
    """Thread-safe record of what happened during one evaluation."""
    total: int = 0
    completed: int = 0
    failures: List[ChunkFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_success(self, chunk: Chunk):
        with self._lock:
            self.completed += 1

    def record_failure(self, chunk: Chunk, error: Exception):
        with self._lock:
            self.failures.append(ChunkFailure(chunk.id, str(error)))

    def warn(self, message: str):
        with self._lock:
            self.warnings.append(message)

    @property
    def failed_chunks(self) -> List[Tuple[int, int, int]]:
        return [f.chunk_id for f in self.failures]

    def __str__(self) -> str:
        return (f"{self.completed}/{self.total} chunks computed, "
                f"{len(self.failures)} failed, {len(self.warnings)} warning(s)")

class ExecutionContext:
    """
    Per-evaluation state handed down the operator graph.

    Holds only the explicit configuration, the shared I/O throttle, the
    cancel token and the report; no chunk data is shared.
    """
    def __init__(
        self,
        config: Optional[ExecutionConfig] = None,
        cancel: Optional[CancelToken] = None,
        report: Optional[ExecutionReport] = None
    ):
        self.config = config or ExecutionConfig()
        self.cancel = cancel or CancelToken()
        self.report = report or ExecutionReport()
        self.throttle = IOThrottle(self.config.max_io_concurrency)
        self._udf_pool: Optional[ProcessPoolExecutor] = None
        self._pool_lock = threading.Lock()

    @property
    def udf_pool(self) -> Optional[ProcessPoolExecutor]:
        """Process pool for isolated user functions, created on first use."""
        if self.config.udf_isolation != "process":
            return None
        with self._pool_lock:
            if self._udf_pool is None:
                self._udf_pool = ProcessPoolExecutor(max_workers=self.config.workers)
            return self._udf_pool

    def close(self):
        if self._udf_pool is not None:
            self._udf_pool.shutdown(wait=True)
            self._udf_pool = None

    def __enter__(self) -> "ExecutionContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def check_cancelled(self):
        if self.cancel.cancelled:
            raise ComputationCancelled("Cube computation was cancelled.")

def execute(
    chunks: Iterable[Chunk],
    compute_fn: Callable[[Chunk], np.ndarray],
    config: Optional[ExecutionConfig] = None,
    cancel: Optional[CancelToken] = None,
    report: Optional[ExecutionReport] = None
) -> Iterator[ChunkResult]:
    """
    Dispatch chunks to the worker pool and yield results as they complete.

    Args:
        chunks: Chunk descriptors to compute.
        compute_fn: Function computing one chunk; must not share mutable state.
        config: Execution configuration (pool size, failure policy).
        cancel: Optional token; checked before each chunk starts and after each completes.
        report: Optional report collecting successes, failures and warnings.

    Yields:
        ChunkResult: In completion order. Failed chunks carry data=None.

    Raises:
        ChunkIOError: If fail_fast is configured, or if every chunk failed.
        ComputationCancelled: When the cancel token is triggered.
        ReducerContractViolationError: Always fatal, propagated as is.
    """
    config = config or ExecutionConfig()
    cancel = cancel or CancelToken()
    chunks = list(chunks)
    report = report if report is not None else ExecutionReport()
    report.total += len(chunks)

    if not chunks:
        return
    if cancel.cancelled:
        raise ComputationCancelled("Cube computation was cancelled before it started.")

    log.info(f"Engine dispatching {len(chunks)} chunks on {config.workers} worker(s)")

    def _run(chunk: Chunk) -> np.ndarray:
        if cancel.cancelled:
            raise ComputationCancelled("Cube computation was cancelled.")
        return compute_fn(chunk)

    pending = iter(chunks)
    max_in_flight = config.workers * 2
    n_failed = 0

    with ThreadPoolExecutor(max_workers=config.workers, thread_name_prefix="eocube") as pool:
        futures: Dict[Future, Chunk] = {}

        def submit_next() -> bool:
            if cancel.cancelled:
                return False
            chunk = next(pending, None)
            if chunk is None:
                return False
            futures[pool.submit(_run, chunk)] = chunk
            return True

        for _ in range(max_in_flight):
            if not submit_next():
                break

        try:
            while futures:
                done, _ = wait(futures, return_when=FIRST_COMPLETED)
                for fut in done:
                    chunk = futures.pop(fut)
                    try:
                        data = fut.result()
                    except ChunkIOError as e:
                        n_failed += 1
                        report.record_failure(chunk, e)
                        if config.fail_fast:
                            log.error(f"Chunk {chunk.id} failed: {e}")
                            raise
                        log.warning(f"Chunk {chunk.id} failed, treated as missing data: {e}")
                        result = ChunkResult(chunk, None, e)
                    else:
                        report.record_success(chunk)
                        result = ChunkResult(chunk, data)

                    yield result
                    submit_next()

                if cancel.cancelled:
                    raise ComputationCancelled(
                        f"Cube computation cancelled after {report.completed} of {report.total} chunks."
                    )
        finally:
            for fut in futures:
                fut.cancel()

    if n_failed == len(chunks):
        raise ChunkIOError(f"All {n_failed} chunks failed; the cube could not be read.")
    log.info(f"Engine finished: {report}")
