# src/eocube/cube/udf.py

"""
This module runs user-supplied functions under a fixed-arity contract.

A user function receives one input of a well-defined shape per call and must
return exactly `n_out` values, whatever the input content (including all-NaN
input). Inputs and outputs cross the boundary as serialized arrays, so the
function can run inline or in a separate process without shared memory.

Input shape per kind:
    pixel: vector (n_bands,)
    time:  matrix (n_bands, n_time)
    space: array  (n_bands, ny, nx)
"""

import io
import logging
from concurrent.futures import ProcessPoolExecutor
from typing import Callable, Optional, Sequence

import numpy as np

from eocube.exceptions import ReducerContractViolationError

log = logging.getLogger(__name__)

__all__ = [
    "UDF_KINDS",
    "serialize_array",
    "deserialize_array",
    "apply_batch",
    "UserFunction"
]

UDF_KINDS = ("pixel", "time", "space")

def serialize_array(array: np.ndarray) -> bytes:
    """Encode an array as .npy bytes (no pickling)."""
    buffer = io.BytesIO()
    np.save(buffer, np.ascontiguousarray(array), allow_pickle=False)
    return buffer.getvalue()

def deserialize_array(payload: bytes) -> np.ndarray:
    return np.load(io.BytesIO(payload), allow_pickle=False)

def apply_batch(func: Callable, payload: bytes, n_out: int, name: str) -> bytes:
    """
    Apply a user function to every input of a serialized batch.

    Runs on the worker side of the message boundary: decodes the batch
    (n_inputs, ...), calls func once per input, validates the arity and
    returns the encoded (n_inputs, n_out) result.

    Raises:
        ReducerContractViolationError: On the first output of the wrong length.
    """
    batch = deserialize_array(payload)
    out = np.empty((batch.shape[0], n_out), dtype=np.float64)
    for i in range(batch.shape[0]):
        result = np.asarray(func(batch[i]), dtype=np.float64).ravel()
        if result.size != n_out:
            raise ReducerContractViolationError(
                f"User function '{name}' returned {result.size} value(s), expected {n_out}",
                expected=n_out,
                received=result.size
            )
        out[i] = result
    return serialize_array(out)

class UserFunction:
    """
    A user-supplied function plus its output contract.

    Args:
        func: Callable mapping one input (see module docstring) to n_out values.
            Must be a module-level function when run in a separate process.
        names: Names of the output bands; len(names) is the required arity.
        kind: One of 'pixel', 'time' or 'space'.
    """
    def __init__(self, func: Callable, names: Sequence[str], kind: str):
        if not callable(func):
            raise TypeError(f"User function must be callable, got {type(func).__name__}")
        if kind not in UDF_KINDS:
            raise ValueError(f"Invalid user function kind '{kind}'. Must be one of: {list(UDF_KINDS)}")
        if not names:
            raise ValueError("A user function must declare at least one output name.")
        self.func = func
        self.names = tuple(names)
        self.kind = kind

    @property
    def n_out(self) -> int:
        return len(self.names)

    @property
    def name(self) -> str:
        return getattr(self.func, "__name__", repr(self.func))

    def __call__(self, batch: np.ndarray, pool: Optional[ProcessPoolExecutor] = None) -> np.ndarray:
        """
        Evaluate the function over a batch of inputs.

        Args:
            batch: Array (n_inputs, ...) of inputs of this function's kind.
            pool: Optional process pool; the batch is sent there as a message.

        Returns:
            np.ndarray: (n_inputs, n_out) outputs.
        """
        batch = np.asarray(batch, dtype=np.float64)
        if batch.shape[0] == 0:
            return np.empty((0, self.n_out), dtype=np.float64)

        payload = serialize_array(batch)
        if pool is None:
            result = apply_batch(self.func, payload, self.n_out, self.name)
        else:
            log.debug(f"Sending {batch.shape[0]} input(s) of '{self.name}' to a worker process")
            result = pool.submit(apply_batch, self.func, payload, self.n_out, self.name).result()
        return deserialize_array(result)

    def __repr__(self) -> str:
        return f"<UserFunction {self.name} kind={self.kind} outputs={list(self.names)}>"
