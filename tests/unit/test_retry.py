# tests/unit/test_retry.py

import threading

import pytest

from eocube.cube.retry import IOThrottle, fetch_with_retry, is_transient_error
from eocube.exceptions import ChunkIOError, ReprojectionError

class FlakyRead:
    """Fails with the given errors, then returns a value."""
    def __init__(self, errors, value=42):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value

@pytest.mark.parametrize("error, expected", [
    (TimeoutError("read timed out"), True),
    (ConnectionError("peer closed"), True),
    (OSError("HTTP response code: 503"), True),
    (OSError("CURL error: Could not resolve host"), True),
    (OSError("HTTP response code: 429 Too Many Requests"), True),
    (OSError("HTTP response code: 404"), False),
    (ValueError("not a supported file format"), False)
])
def test_transient_error_classification(error, expected):
    assert is_transient_error(error) is expected

def test_transient_errors_are_retried_with_backoff():
    sleeps = []
    read = FlakyRead([TimeoutError("timed out"), OSError("HTTP 503")])

    assert fetch_with_retry(read, "s3://bucket/a.tif", max_retries=3, initial_backoff=0.5, sleep=sleeps.append) == 42
    assert read.calls == 3
    assert len(sleeps) == 2
    assert 0.5 <= sleeps[0] <= 0.55
    assert 1.0 <= sleeps[1] <= 1.1

def test_backoff_is_capped():
    sleeps = []
    read = FlakyRead([TimeoutError("timed out")] * 4)
    fetch_with_retry(read, "a.tif", max_retries=4, initial_backoff=1.0, max_backoff=2.0, sleep=sleeps.append)
    assert max(sleeps) <= 2.2

def test_exhausted_retries_raise_chunk_io_error():
    read = FlakyRead([ConnectionError("reset by peer")] * 10)
    with pytest.raises(ChunkIOError) as exc:
        fetch_with_retry(read, "https://example.com/b.tif", max_retries=2, sleep=lambda s: None)

    assert read.calls == 3
    assert exc.value.href == "https://example.com/b.tif"

def test_permanent_errors_fail_immediately():
    read = FlakyRead([ValueError("not a supported file format")])
    with pytest.raises(ChunkIOError):
        fetch_with_retry(read, "c.tif", max_retries=5, sleep=lambda s: pytest.fail("should not sleep"))
    assert read.calls == 1

def test_library_errors_pass_through_unchanged():
    read = FlakyRead([ReprojectionError("bad footprint")])
    with pytest.raises(ReprojectionError):
        fetch_with_retry(read, "d.tif", sleep=lambda s: None)

def test_throttle_bounds_concurrent_reads():
    throttle = IOThrottle(2)
    active, peak = [0], [0]
    lock = threading.Lock()
    gate = threading.Barrier(2, timeout=5)

    def read():
        with lock:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        try:
            gate.wait()
        except threading.BrokenBarrierError:
            pass
        with lock:
            active[0] -= 1
        return True

    threads = [
        threading.Thread(target=fetch_with_retry, args=(read, "x"), kwargs={"throttle": throttle})
        for _ in range(4)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert peak[0] <= 2
