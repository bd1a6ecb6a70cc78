from __future__ import annotations
from typing import Any, Optional, Tuple
from datetime import date, datetime, timedelta
import math

from eventmetrics.config import settings
from eventmetrics.errors import UnsupportedTimeSliceError
from eventmetrics.schemas import QueryOptions, RangedResult, TimeSlice
from eventmetrics.timeutil import as_utc, now_utc

# group(1) is the referrer host; shared by both engines so derived keys agree
REFERRER_HOST_PATTERN = r"^https?://([^/?#:]+)"

_TIME_SLICE_FORMATS = {
    TimeSlice.YEAR: "%Y",
    TimeSlice.MONTH: "%Y-%m",
    TimeSlice.DAY: "%Y-%m-%d",
    TimeSlice.HOUR: "%Y-%m-%d %H:00:00",
    TimeSlice.MINUTE: "%Y-%m-%d %H:%M:00",
}


def get_format_for_time_slice(time_slice: Any) -> str:
    """Return the strftime pattern used to key time buckets.

    Both DuckDB ``strftime`` and Mongo ``$dateToString`` accept the same
    pattern. Anything outside the five declared slices is a configuration
    error; there is no fallback granularity.
    """
    if isinstance(time_slice, TimeSlice):
        return _TIME_SLICE_FORMATS[time_slice]
    if isinstance(time_slice, str) and time_slice in TimeSlice.__members__:
        return _TIME_SLICE_FORMATS[TimeSlice[time_slice]]
    raise UnsupportedTimeSliceError(time_slice)


def include_buffer(to: datetime, now: Optional[datetime] = None, buffer_hours: Optional[int] = None) -> bool:
    """True when ``to`` is recent enough that unpartitioned streaming rows may still matter."""
    if buffer_hours is None:
        buffer_hours = settings.buffer_hours
    now = as_utc(now) if now is not None else now_utc()
    return as_utc(to) > now - timedelta(hours=buffer_hours)


def partition_window(options: QueryOptions) -> Tuple[date, date]:
    fo = options.filter_options
    return as_utc(fo.from_).date(), as_utc(fo.to).date()


def round_half_up(value: Optional[float]) -> int:
    if value is None:
        return 0
    return int(math.floor(float(value) + 0.5))


def with_range(options: QueryOptions, result: Any) -> RangedResult:
    fo = options.filter_options
    return RangedResult(result=result, from_=fo.from_, to=fo.to)
