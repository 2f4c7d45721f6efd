# tests/unit/test_engine.py

import threading

import numpy as np
import pytest

from eocube.config import ExecutionConfig
from eocube.cube.engine import CancelToken, ExecutionContext, ExecutionReport, execute
from eocube.cube.partition import plan
from eocube.exceptions import ChunkIOError, ComputationCancelled, ReducerContractViolationError

GRID = (2, 4, 4)
CHUNK = (1, 2, 2)

def fill_with_id(chunk):
    it, iy, ix = chunk.id
    return np.full((1,) + chunk.size, it * 100 + iy * 10 + ix, dtype=np.float64)

def test_every_chunk_is_yielded_once():
    chunks = plan(GRID, CHUNK)
    report = ExecutionReport()

    results = list(execute(chunks, fill_with_id, ExecutionConfig(workers=3), report=report))

    assert sorted(r.chunk.id for r in results) == sorted(c.id for c in chunks)
    assert all(r.ok for r in results)
    assert report.total == report.completed == 8
    for r in results:
        it, iy, ix = r.chunk.id
        assert (r.data == it * 100 + iy * 10 + ix).all()

def test_single_worker_preserves_plan_order():
    chunks = plan(GRID, CHUNK)
    results = list(execute(chunks, fill_with_id, ExecutionConfig(workers=1)))
    assert [r.chunk.id for r in results] == [c.id for c in chunks]

def test_failed_chunk_becomes_missing_data():
    chunks = plan(GRID, CHUNK)
    report = ExecutionReport()

    def compute(chunk):
        if chunk.id == (0, 1, 1):
            raise ChunkIOError("gone", chunk_id=chunk.id)
        return fill_with_id(chunk)

    results = list(execute(chunks, compute, ExecutionConfig(workers=2), report=report))
    failed = [r for r in results if not r.ok]

    assert len(results) == 8
    assert [r.chunk.id for r in failed] == [(0, 1, 1)]
    assert failed[0].data is None
    assert report.failed_chunks == [(0, 1, 1)]
    assert report.completed == 7

def test_fail_fast_escalates():
    def compute(chunk):
        raise ChunkIOError("gone")

    with pytest.raises(ChunkIOError):
        list(execute(plan(GRID, CHUNK), compute, ExecutionConfig(workers=2, fail_fast=True)))

def test_all_chunks_failing_is_fatal():
    def compute(chunk):
        raise ChunkIOError("gone")

    report = ExecutionReport()
    with pytest.raises(ChunkIOError, match="All 8 chunks failed"):
        list(execute(plan(GRID, CHUNK), compute, ExecutionConfig(workers=2), report=report))
    assert len(report.failures) == 8

def test_contract_violation_is_never_downgraded():
    def compute(chunk):
        raise ReducerContractViolationError("wrong arity", expected=2, received=3)

    with pytest.raises(ReducerContractViolationError):
        list(execute(plan(GRID, CHUNK), compute, ExecutionConfig(workers=2)))

def test_cancel_between_chunks():
    token = CancelToken()
    seen = []

    with pytest.raises(ComputationCancelled):
        for result in execute(plan(GRID, CHUNK), fill_with_id, ExecutionConfig(workers=1), cancel=token):
            seen.append(result.chunk.id)
            token.cancel()

    assert 1 <= len(seen) < 8

def test_cancelled_token_stops_before_start():
    token = CancelToken()
    token.cancel()
    calls = []

    def compute(chunk):
        calls.append(chunk)
        return fill_with_id(chunk)

    with pytest.raises(ComputationCancelled):
        list(execute(plan(GRID, CHUNK), compute, ExecutionConfig(workers=2), cancel=token))
    assert calls == []

def test_in_flight_chunks_are_bounded():
    active, peak = [0], [0]
    lock = threading.Lock()

    def compute(chunk):
        with lock:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        with lock:
            active[0] -= 1
        return fill_with_id(chunk)

    list(execute(plan((4, 4, 4), CHUNK), compute, ExecutionConfig(workers=2)))
    assert peak[0] <= 2

def test_empty_plan_yields_nothing():
    report = ExecutionReport()
    assert list(execute([], fill_with_id, report=report)) == []
    assert report.total == 0

def test_report_is_summarized():
    report = ExecutionReport()
    list(execute(plan(GRID, CHUNK), fill_with_id, ExecutionConfig(workers=2), report=report))
    report.warn("image skipped")
    assert str(report) == "8/8 chunks computed, 0 failed, 1 warning(s)"

def test_context_without_isolation_has_no_pool():
    with ExecutionContext(ExecutionConfig(workers=1)) as ctx:
        assert ctx.udf_pool is None
        ctx.check_cancelled()

def test_context_process_pool_is_shared_and_closed():
    ctx = ExecutionContext(ExecutionConfig(workers=1, udf_isolation="process"))
    pool = ctx.udf_pool
    assert pool is not None
    assert ctx.udf_pool is pool
    ctx.close()
    assert ctx._udf_pool is None

def test_context_check_cancelled():
    ctx = ExecutionContext(ExecutionConfig(workers=1))
    ctx.cancel.cancel()
    with pytest.raises(ComputationCancelled):
        ctx.check_cancelled()
