# src/eocube/cube/aggregate.py

"""
This module merges multiple observations of the same cell into one value.

Masked pixels are removed before any statistic runs and cells without a single
valid contribution are NaN ("no data"), never zero. All statistics are order
independent, and the moment-based accumulators can be merged so that partial
aggregation over subsets equals aggregation over the whole set.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Tuple

import numpy as np

log = logging.getLogger(__name__)

__all__ = [
    "AGGREGATION_METHODS",
    "REDUCER_METHODS",
    "ImageMask",
    "MomentAccumulator",
    "MedianAccumulator",
    "make_accumulator",
    "aggregate",
    "reduce_array"
]

AGGREGATION_METHODS = ("median", "mean", "min", "max", "count", "sum", "var", "sd")
REDUCER_METHODS = AGGREGATION_METHODS + ("prod", "q1", "q3", "which_min", "which_max")

@dataclass(frozen=True)
class ImageMask:
    """
    Band-value mask excluding flagged pixels from aggregation.

    The engine only knows "mask band + excluded values"; which codes are
    excluded is a caller choice (e.g. Sentinel-2 SCL classes 3, 8 and 9).

    Args:
        band: Name of the mask band in the image collection.
        values: Values flagging a pixel as invalid.
        value_range: Optional inclusive (min, max) range also flagging pixels.
        invert: Treat values/range as the VALID pixels instead.
    """
    band: str
    values: FrozenSet[float] = frozenset()
    value_range: Optional[Tuple[float, float]] = None
    invert: bool = False

    def __post_init__(self):
        object.__setattr__(self, "values", frozenset(float(v) for v in self.values))
        if not self.values and self.value_range is None:
            raise ValueError("ImageMask requires values and/or a value_range.")
        if self.value_range is not None:
            lo, hi = self.value_range
            if lo > hi:
                raise ValueError(f"Invalid mask range {self.value_range}: min > max")

    def invalid(self, mask_data: np.ndarray) -> np.ndarray:
        """
        Boolean array, True where a pixel must be excluded.

        Args:
            mask_data: Mask band values on the target grid.
        """
        mask_data = np.asarray(mask_data)
        flagged = np.zeros(mask_data.shape, dtype=bool)
        if self.values:
            flagged |= np.isin(mask_data, np.array(sorted(self.values)))
        if self.value_range is not None:
            lo, hi = self.value_range
            with np.errstate(invalid="ignore"):
                flagged |= (mask_data >= lo) & (mask_data <= hi)
        return ~flagged if self.invert else flagged

class MomentAccumulator:
    """
    Streaming statistics for mean, sum, count, min, max, var and sd.

    Uses per-cell Welford updates and Chan's parallel merge, so layers can be
    folded in any order and partial accumulators combined.
    """
    def __init__(self, method: str, shape: Tuple[int, ...]):
        self.method = method
        self.n = np.zeros(shape, dtype=np.int64)
        self.total = np.zeros(shape, dtype=np.float64)
        self.mean = np.zeros(shape, dtype=np.float64)
        self.m2 = np.zeros(shape, dtype=np.float64)
        self.minimum = np.full(shape, np.nan, dtype=np.float64)
        self.maximum = np.full(shape, np.nan, dtype=np.float64)

    def add(self, layer: np.ndarray):
        layer = np.asarray(layer, dtype=np.float64)
        valid = ~np.isnan(layer)
        x = np.where(valid, layer, 0.0)

        n_new = self.n + valid
        delta = np.where(valid, x - self.mean, 0.0)
        safe_n = np.where(n_new > 0, n_new, 1)
        mean_new = self.mean + delta / safe_n
        self.m2 = self.m2 + np.where(valid, delta * (x - mean_new), 0.0)
        self.mean = mean_new
        self.n = n_new
        self.total = self.total + x
        self.minimum = np.fmin(self.minimum, layer)
        self.maximum = np.fmax(self.maximum, layer)

    def merge(self, other: "MomentAccumulator") -> "MomentAccumulator":
        merged = MomentAccumulator(self.method, self.n.shape)
        n = self.n + other.n
        safe_n = np.where(n > 0, n, 1)
        delta = other.mean - self.mean
        merged.n = n
        merged.total = self.total + other.total
        merged.mean = np.where(n > 0, (self.mean * self.n + other.mean * other.n) / safe_n, 0.0)
        merged.m2 = self.m2 + other.m2 + delta ** 2 * self.n * other.n / safe_n
        merged.minimum = np.fmin(self.minimum, other.minimum)
        merged.maximum = np.fmax(self.maximum, other.maximum)
        return merged

    def result(self) -> np.ndarray:
        empty = self.n == 0
        if self.method == "count":
            out = self.n.astype(np.float64)
        elif self.method == "sum":
            out = self.total.copy()
        elif self.method == "mean":
            out = self.mean.copy()
        elif self.method == "min":
            out = self.minimum.copy()
        elif self.method == "max":
            out = self.maximum.copy()
        elif self.method in ("var", "sd"):
            # Sample variance, undefined below two observations
            with np.errstate(invalid="ignore", divide="ignore"):
                out = np.where(self.n > 1, self.m2 / (self.n - 1), np.nan)
            out = np.maximum(out, 0.0, where=~np.isnan(out), out=out)
            if self.method == "sd":
                out = np.sqrt(out)
        else:
            raise ValueError(f"Unsupported moment statistic '{self.method}'")
        out[empty] = np.nan
        return out

class MedianAccumulator:
    """Buffers layers; the median needs every contribution at once."""
    def __init__(self, shape: Tuple[int, ...]):
        self.method = "median"
        self.shape = shape
        self.layers: List[np.ndarray] = []

    def add(self, layer: np.ndarray):
        self.layers.append(np.asarray(layer, dtype=np.float64))

    def merge(self, other: "MedianAccumulator") -> "MedianAccumulator":
        merged = MedianAccumulator(self.shape)
        merged.layers = self.layers + other.layers
        return merged

    def result(self) -> np.ndarray:
        if not self.layers:
            return np.full(self.shape, np.nan, dtype=np.float64)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            return np.nanmedian(np.stack(self.layers), axis=0)

def make_accumulator(method: str, shape: Tuple[int, ...]):
    """Create the accumulator implementing an aggregation method."""
    if method not in AGGREGATION_METHODS:
        raise ValueError(f"Invalid aggregation '{method}'. Must be one of: {list(AGGREGATION_METHODS)}")
    if method == "median":
        return MedianAccumulator(shape)
    return MomentAccumulator(method, shape)

def aggregate(
    values: Iterable[np.ndarray],
    method: str,
    invalid: Optional[Iterable[np.ndarray]] = None,
    shape: Optional[Tuple[int, ...]] = None
) -> np.ndarray:
    """
    Aggregate per-image values of the same cells into one value per cell.

    Args:
        values: Stack (n_images, ...) or iterable of equally shaped layers. NaN is no data.
        method: One of AGGREGATION_METHODS.
        invalid: Optional matching boolean layers, True where a pixel is masked.
        shape: Cell shape, required only when values is empty.

    Returns:
        np.ndarray: Aggregated cells, NaN where nothing valid contributed.
    """
    layers = [np.asarray(v, dtype=np.float64) for v in values]
    if shape is None:
        if not layers:
            raise ValueError("Cannot infer the output shape of an empty aggregation.")
        shape = layers[0].shape

    masks = list(invalid) if invalid is not None else [None] * len(layers)
    if len(masks) != len(layers):
        raise ValueError(f"Got {len(layers)} value layers but {len(masks)} mask layers")

    acc = make_accumulator(method, shape)
    for layer, flagged in zip(layers, masks):
        if flagged is not None:
            layer = np.where(flagged, np.nan, layer)
        acc.add(layer)
    return acc.result()

def reduce_array(values: np.ndarray, method: str, axis: int = 0) -> np.ndarray:
    """
    Reduce an array along one axis with a named reducer, ignoring NaN.

    Supports every aggregation method plus prod, q1, q3, which_min and
    which_max, with the same no-data rules as `aggregate`: lanes without a
    valid value reduce to NaN, var and sd need two values.
    """
    if method not in REDUCER_METHODS:
        raise ValueError(f"Invalid reducer '{method}'. Must be one of: {list(REDUCER_METHODS)}")

    values = np.moveaxis(np.asarray(values, dtype=np.float64), axis, 0)
    if values.shape[0] == 0:
        return np.full(values.shape[1:], np.nan)

    valid = ~np.isnan(values)
    n = valid.sum(axis=0)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        if method == "count":
            out = n.astype(np.float64)
        elif method == "sum":
            out = np.nansum(values, axis=0)
        elif method == "prod":
            out = np.nanprod(values, axis=0)
        elif method == "mean":
            out = np.nanmean(values, axis=0)
        elif method == "median":
            out = np.nanmedian(values, axis=0)
        elif method == "min":
            out = np.nanmin(values, axis=0)
        elif method == "max":
            out = np.nanmax(values, axis=0)
        elif method in ("var", "sd"):
            out = np.where(n > 1, np.nanvar(values, axis=0, ddof=1), np.nan)
            if method == "sd":
                out = np.sqrt(out)
        elif method == "q1":
            out = np.nanquantile(values, 0.25, axis=0)
        elif method == "q3":
            out = np.nanquantile(values, 0.75, axis=0)
        elif method == "which_min":
            out = np.argmin(np.where(valid, values, np.inf), axis=0).astype(np.float64)
        else:
            out = np.argmax(np.where(valid, values, -np.inf), axis=0).astype(np.float64)

    out = np.array(out, dtype=np.float64)
    out[n == 0] = np.nan
    return out
