# src/eocube/cube/view.py

"""
This module defines the target geometry of a data cube.

A CubeView is a regular space/time grid: CRS, cell size, time step and extent,
plus how source pixels are resampled in space and aggregated in time. Views are
immutable; related views are produced with derive(). Extents are always
expanded (never shrunk) to whole cells and every adjustment is recorded.
"""

import logging
import math
import re
from bisect import bisect_right
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from functools import cached_property
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.errors import CRSError
from rasterio.transform import Affine

from eocube.exceptions import ConfigurationError
from eocube.collection.image import to_naive_utc
from .aggregate import AGGREGATION_METHODS

log = logging.getLogger(__name__)

__all__ = [
    "TimeStep",
    "ViewAdjustment",
    "CubeView",
    "derive",
    "resolve_resampling",
    "as_datetime"
]

# Fraction of a cell below which an edge is considered already aligned
SNAP_TOLERANCE = 1e-9

_DURATION_RE = re.compile(
    r"^P(?:(?P<Y>\d+)Y)?(?:(?P<M>\d+)M)?(?:(?P<W>\d+)W)?(?:(?P<D>\d+)D)?"
    r"(?:T(?:(?P<h>\d+)H)?(?:(?P<m>\d+)M)?(?:(?P<s>\d+)S)?)?$"
)

_RESAMPLING_ALIASES = {
    "near": "nearest",
    "avg": "average",
    "area": "average",
    "median": "med"
}

def resolve_resampling(name: Union[str, Resampling]) -> Resampling:
    """Map a resampling name (rasterio names plus gdal aliases) to a Resampling enum."""
    if isinstance(name, Resampling):
        return name
    key = _RESAMPLING_ALIASES.get(str(name).lower(), str(name).lower())
    try:
        return Resampling[key]
    except KeyError:
        valid = [r.name for r in Resampling] + list(_RESAMPLING_ALIASES)
        raise ConfigurationError(f"Invalid resampling '{name}'. Must be one of: {valid}")

@dataclass(frozen=True)
class TimeStep:
    """
    Single-component ISO-8601 duration, e.g. P1M, P16D, P1Y or PT6H.

    Attributes:
        count (int): Number of units per step, > 0.
        unit (str): One of 'Y', 'M', 'W', 'D', 'h', 'm', 's'.
    """
    count: int
    unit: str

    @classmethod
    def parse(cls, value: Union[str, "TimeStep"]) -> "TimeStep":
        if isinstance(value, TimeStep):
            return value
        match = _DURATION_RE.match(str(value).strip())
        if not match:
            raise ConfigurationError(f"Invalid time step '{value}'. Expected an ISO-8601 duration such as 'P1M'.")

        parts = [(unit, int(count)) for unit, count in match.groupdict().items() if count is not None]
        if len(parts) != 1:
            raise ConfigurationError(f"Time step '{value}' must have exactly one component.")

        unit, count = parts[0]
        if count <= 0:
            raise ConfigurationError(f"Time step must be positive, got '{value}'.")
        return cls(count=count, unit=unit)

    @property
    def offset(self) -> pd.DateOffset:
        kwargs = {
            "Y": "years", "M": "months", "W": "weeks", "D": "days",
            "h": "hours", "m": "minutes", "s": "seconds"
        }
        return pd.DateOffset(**{kwargs[self.unit]: self.count})

    def floor(self, value: datetime) -> datetime:
        """Truncate a datetime to the start of this step's unit."""
        if self.unit == "Y":
            return datetime(value.year, 1, 1)
        if self.unit == "M":
            return datetime(value.year, value.month, 1)
        if self.unit in ("W", "D"):
            return datetime(value.year, value.month, value.day)
        if self.unit == "h":
            return value.replace(minute=0, second=0, microsecond=0)
        if self.unit == "m":
            return value.replace(second=0, microsecond=0)
        return value.replace(microsecond=0)

    def __str__(self) -> str:
        if self.unit in ("h", "m", "s"):
            return f"PT{self.count}{self.unit.upper()}"
        return f"P{self.count}{self.unit}"

@dataclass(frozen=True)
class ViewAdjustment:
    """A recorded change made to a view while aligning it to whole cells."""
    field: str
    before: Any
    after: Any

    def __str__(self) -> str:
        return f"{self.field}: {self.before} -> {self.after}"

@dataclass(frozen=True)
class CubeView:
    """
    Regular target grid of a data cube.

    Spatial extent is (left, right, bottom, top) in the view CRS; the temporal
    extent is (t0, t1) with t1 inclusive. After alignment t0 is the start of the
    first time slice and t1 the start of the last one.

    Attributes:
        crs (CRS): Target spatial reference system.
        left, right, bottom, top (float): Spatial extent, multiples of dx/dy.
        t0, t1 (datetime): Temporal extent.
        dx, dy (float): Cell size in CRS units.
        dt (TimeStep): Time step.
        resampling (str): Spatial resampling of source pixels.
        aggregation (str): Temporal aggregation of images within one slice.
        adjustments (tuple): Alignment events recorded when this view was built.
    """
    crs: CRS
    left: float
    right: float
    bottom: float
    top: float
    t0: datetime
    t1: datetime
    dx: float
    dy: float
    dt: TimeStep
    resampling: str = "nearest"
    aggregation: str = "median"
    adjustments: Tuple[ViewAdjustment, ...] = field(default=(), compare=False)

    def __post_init__(self):
        try:
            crs = self.crs if isinstance(self.crs, CRS) else CRS.from_user_input(self.crs)
        except CRSError as e:
            raise ConfigurationError(f"Invalid CRS '{self.crs}': {e}") from e
        object.__setattr__(self, "crs", crs)
        object.__setattr__(self, "dt", TimeStep.parse(self.dt))
        object.__setattr__(self, "t0", to_naive_utc(as_datetime(self.t0)))
        object.__setattr__(self, "t1", to_naive_utc(as_datetime(self.t1)))
        for name in ("left", "right", "bottom", "top", "dx", "dy"):
            object.__setattr__(self, name, float(getattr(self, name)))

        self._validate()

        adjustments = list(self.adjustments)
        adjustments.extend(self._snap_space())
        adjustments.extend(self._snap_time())
        object.__setattr__(self, "adjustments", tuple(adjustments))

        for adj in adjustments:
            log.info(f"Cube view extent adjusted to whole cells: {adj}")

    def _validate(self):
        if not (self.dx > 0 and self.dy > 0):
            raise ConfigurationError(f"Cell size must be positive, got dx={self.dx}, dy={self.dy}")
        if not self.right > self.left:
            raise ConfigurationError(f"right ({self.right}) must be greater than left ({self.left})")
        if not self.top > self.bottom:
            raise ConfigurationError(f"top ({self.top}) must be greater than bottom ({self.bottom})")
        if self.t1 < self.t0:
            raise ConfigurationError(f"t1 ({self.t1}) must not precede t0 ({self.t0})")
        resampling = resolve_resampling(self.resampling).name
        object.__setattr__(self, "resampling", resampling)
        if self.aggregation not in AGGREGATION_METHODS:
            raise ConfigurationError(
                f"Invalid aggregation '{self.aggregation}'. Must be one of: {list(AGGREGATION_METHODS)}"
            )

    def _snap_space(self) -> List[ViewAdjustment]:
        events = []
        targets = (
            ("left", _snap_down, self.dx),
            ("right", _snap_up, self.dx),
            ("bottom", _snap_down, self.dy),
            ("top", _snap_up, self.dy)
        )
        for name, snap, step in targets:
            before = getattr(self, name)
            after = snap(before, step)
            if after != before:
                object.__setattr__(self, name, after)
                events.append(ViewAdjustment(name, before, after))
        return events

    def _snap_time(self) -> List[ViewAdjustment]:
        events = []
        t0 = self.dt.floor(self.t0)
        if t0 != self.t0:
            events.append(ViewAdjustment("t0", self.t0, t0))
            object.__setattr__(self, "t0", t0)

        starts = pd.date_range(start=self.t0, end=self.t1, freq=self.dt.offset)
        last = starts[-1].to_pydatetime()
        if last != self.t1:
            events.append(ViewAdjustment("t1", self.t1, last))
            object.__setattr__(self, "t1", last)
        return events

    @classmethod
    def create(
        cls,
        crs: Union[str, int, CRS],
        extent: Union[Mapping[str, Any], Sequence[Any]],
        dt: Union[str, TimeStep],
        dx: Optional[float] = None,
        dy: Optional[float] = None,
        nx: Optional[int] = None,
        ny: Optional[int] = None,
        resampling: str = "nearest",
        aggregation: str = "median"
    ) -> "CubeView":
        """
        Build a view from an extent and either cell sizes or cell counts.

        Args:
            crs: Target CRS.
            extent: Mapping with left/right/bottom/top/t0/t1, or a sequence
                (left, bottom, right, top, t0, t1).
            dt: Time step as ISO-8601 duration.
            dx, dy: Cell size. dy defaults to dx.
            nx, ny: Cell counts, used when dx/dy are not given.
            resampling: Spatial resampling method.
            aggregation: Temporal aggregation method.
        """
        if isinstance(extent, Mapping):
            ext = dict(extent)
        else:
            if len(extent) != 6:
                raise ConfigurationError("Extent sequence must be (left, bottom, right, top, t0, t1).")
            left, bottom, right, top, t0, t1 = extent
            ext = dict(left=left, bottom=bottom, right=right, top=top, t0=t0, t1=t1)

        missing = {"left", "right", "bottom", "top", "t0", "t1"} - set(ext)
        if missing:
            raise ConfigurationError(f"Extent is missing {sorted(missing)}")

        if dx is None:
            if nx is None:
                raise ConfigurationError("Either dx or nx must be given.")
            if nx <= 0:
                raise ConfigurationError(f"nx must be positive, got {nx}")
            dx = (ext["right"] - ext["left"]) / nx
        if dy is None:
            if ny is not None:
                if ny <= 0:
                    raise ConfigurationError(f"ny must be positive, got {ny}")
                dy = (ext["top"] - ext["bottom"]) / ny
            else:
                dy = dx

        return cls(
            crs=crs,
            left=ext["left"], right=ext["right"], bottom=ext["bottom"], top=ext["top"],
            t0=ext["t0"], t1=ext["t1"],
            dx=dx, dy=dy, dt=dt,
            resampling=resampling,
            aggregation=aggregation
        )

    # Grid properties

    @property
    def nx(self) -> int:
        return int(round((self.right - self.left) / self.dx))

    @property
    def ny(self) -> int:
        return int(round((self.top - self.bottom) / self.dy))

    @property
    def nt(self) -> int:
        return len(self.time_labels)

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Returns (nt, ny, nx)."""
        return (self.nt, self.ny, self.nx)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """Returns (left, bottom, right, top) in view CRS units."""
        return (self.left, self.bottom, self.right, self.top)

    @property
    def transform(self) -> Affine:
        return Affine(self.dx, 0.0, self.left, 0.0, -self.dy, self.top)

    @property
    def extent(self) -> Dict[str, Any]:
        return {
            "left": self.left, "right": self.right,
            "bottom": self.bottom, "top": self.top,
            "t0": self.t0, "t1": self.t1
        }

    @cached_property
    def time_edges(self) -> Tuple[datetime, ...]:
        """Slice boundaries: nt + 1 datetimes, slice i is [edges[i], edges[i+1])."""
        starts = pd.date_range(start=self.t0, end=self.t1, freq=self.dt.offset)
        edges = pd.date_range(start=self.t0, periods=len(starts) + 1, freq=self.dt.offset)
        return tuple(ts.to_pydatetime() for ts in edges)

    @property
    def time_labels(self) -> Tuple[datetime, ...]:
        return self.time_edges[:-1]

    def slice_window(self, it: int) -> Tuple[datetime, datetime]:
        """Returns the half-open [start, end) period of time slice it."""
        if not 0 <= it < self.nt:
            raise IndexError(f"Time slice {it} out of range (0-{self.nt - 1})")
        return self.time_edges[it], self.time_edges[it + 1]

    def slice_index(self, value: datetime) -> Optional[int]:
        """Index of the time slice containing value, or None outside the view."""
        value = to_naive_utc(value)
        edges = self.time_edges
        if value < edges[0] or value >= edges[-1]:
            return None
        return bisect_right(edges, value) - 1

    def __hash__(self) -> int:
        return hash((self.crs.to_wkt(), self.bounds, self.t0, self.t1,
                     self.dx, self.dy, self.dt, self.resampling, self.aggregation))

    def __repr__(self) -> str:
        return (f"<CubeView crs={self.crs} bounds={self.bounds} dx={self.dx} dy={self.dy} "
                f"time={self.t0.isoformat()}..{self.t1.isoformat()} dt={self.dt} "
                f"shape={self.shape} resampling={self.resampling} aggregation={self.aggregation}>")

def derive(base_view: CubeView, **overrides) -> CubeView:
    """
    Produce a new view from an existing one, overriding selected fields.

    The base view is never mutated. The returned view is validated and aligned
    again; its adjustments only record the alignment caused by the overrides.

    Args:
        base_view: View to copy.
        **overrides: Any CubeView field (crs, left, right, bottom, top, t0, t1,
            dx, dy, dt, resampling, aggregation).

    Returns:
        CubeView: The derived view.
    """
    unknown = set(overrides) - {f for f in base_view.__dataclass_fields__ if f != "adjustments"}
    if unknown:
        raise ConfigurationError(f"Unknown view field(s): {sorted(unknown)}")
    return replace(base_view, adjustments=(), **overrides)

def _snap_down(value: float, step: float) -> float:
    k = math.floor(value / step + SNAP_TOLERANCE)
    snapped = k * step
    return value if math.isclose(snapped, value, rel_tol=0.0, abs_tol=step * SNAP_TOLERANCE) else snapped

def _snap_up(value: float, step: float) -> float:
    k = math.ceil(value / step - SNAP_TOLERANCE)
    snapped = k * step
    return value if math.isclose(snapped, value, rel_tol=0.0, abs_tol=step * SNAP_TOLERANCE) else snapped

def as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return pd.Timestamp(value).to_pydatetime()
    if hasattr(value, "to_pydatetime"):
        return value.to_pydatetime()
    if hasattr(value, "year") and hasattr(value, "month"):
        return datetime(value.year, value.month, value.day)
    raise ConfigurationError(f"Cannot interpret {value!r} as a datetime")
