# src/eocube/cube/resources.py

"""
This module performs static analysis of chunk memory needs against system hardware.

Every worker holds one output chunk plus the per-image warped layers feeding
it, so the estimate scales with the chunk shape, band count and pool size.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import psutil

log = logging.getLogger(__name__)

__all__ = [
    "MemoryEstimate",
    "estimate_chunk_memory"
]

DEFAULT_SAFETY_FACTOR = 3.0
MIN_FREE_GB = 2.0
CELL_BYTES = np.dtype(np.float64).itemsize

@dataclass(frozen=True)
class MemoryEstimate:
    """Estimation of memory requirements and safety for computing a cube.

    Args:
        total_required_bytes: Bytes required by all concurrently computed chunks (with overhead)
        available_system_bytes: Currently available system memory in bytes
        is_safe: Boolean indicating if the computation is considered safe
        reason: Explanation for the safety assessment (e.g. "Req: 10GB, Avail: 4GB")
    """
    total_required_bytes: int
    available_system_bytes: int
    is_safe: bool
    reason: str

def estimate_chunk_memory(
    n_bands: int,
    chunk_shape: Sequence[int],
    workers: int,
    safety_factor: float = DEFAULT_SAFETY_FACTOR,
    min_free_gb: float = MIN_FREE_GB
) -> MemoryEstimate:
    """
    Checks if the chunks computed concurrently by the worker pool fit in RAM.

    Args:
        n_bands: Bands held per chunk.
        chunk_shape: (nt, ny, nx) of one chunk.
        workers: Number of chunks in flight.
        safety_factor: Multiplier to account for warped per-image layers (default 3.0)
        min_free_gb: Minimum free GB to leave available (default 2.0)

    Returns:
        MemoryEstimate: Contains total required bytes, available bytes, safety boolean, and reason.
    """
    nt, ny, nx = chunk_shape
    raw_bytes = int(n_bands) * int(nt) * int(ny) * int(nx) * CELL_BYTES * int(workers)
    total_required = int(raw_bytes * safety_factor)

    mem = psutil.virtual_memory()
    min_free_bytes = int(min_free_gb * (1024**3))
    is_safe = (total_required + min_free_bytes) <= mem.available

    reason = f"Req: {total_required/1e9:.2f}GB, Avail: {mem.available/1e9:.2f}GB"
    return MemoryEstimate(total_required, mem.available, is_safe, reason)
