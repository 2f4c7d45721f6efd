# src/eocube/exceptions.py

"""
This module defines the error taxonomy shared by every eocube component.

Recoverable conditions (a single unreadable chunk, a single image with a
degenerate footprint) are absorbed at the smallest scope by the engine;
everything else propagates to the caller.
"""

from typing import Optional, Tuple

__all__ = [
    "EOCubeError",
    "ConfigurationError",
    "EmptyCollectionError",
    "ChunkIOError",
    "ReprojectionError",
    "ReducerContractViolationError",
    "ComputationCancelled"
]

class EOCubeError(Exception):
    """Base class for all eocube errors."""

class ConfigurationError(EOCubeError, ValueError):
    """Invalid cube view or execution parameters. Always fatal."""

class EmptyCollectionError(EOCubeError):
    """No image survived collection filtering, so there is nothing to compute."""

class ChunkIOError(EOCubeError, IOError):
    """
    A remote read failed after all retries were exhausted.

    Args:
        message: Human readable description.
        chunk_id: Index (it, iy, ix) of the affected chunk, if known.
        href: Asset location that could not be read, if known.
    """
    def __init__(
        self,
        message: str,
        chunk_id: Optional[Tuple[int, int, int]] = None,
        href: Optional[str] = None
    ):
        super().__init__(message)
        self.chunk_id = chunk_id
        self.href = href

    def __reduce__(self):
        return (self.__class__, (str(self), self.chunk_id, self.href))

class ReprojectionError(EOCubeError):
    """A source footprint could not be transformed into the target CRS."""

class ReducerContractViolationError(EOCubeError):
    """
    A user function returned an output of the wrong length.

    This corrupts the memory layout of the output chunk and is never downgraded.
    """
    def __init__(self, message: str, expected: int, received: int):
        super().__init__(message)
        self.expected = expected
        self.received = received

    def __reduce__(self):
        return (self.__class__, (str(self), self.expected, self.received))

class ComputationCancelled(EOCubeError):
    """Raised to the consumer when a cancel token is triggered between chunks."""
