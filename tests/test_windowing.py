from datetime import date, datetime, timedelta, timezone
import pytest

from conftest import options
from eventmetrics.config import settings
from eventmetrics.errors import UnsupportedTimeSliceError
from eventmetrics.schemas import FilterOptions, QueryOptions, TimeSlice
from eventmetrics.timeutil import parse_dt
from eventmetrics.windowing import get_format_for_time_slice, include_buffer, partition_window, round_half_up, with_range

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_every_time_slice_has_a_format():
    assert get_format_for_time_slice(TimeSlice.YEAR) == "%Y"
    assert get_format_for_time_slice(TimeSlice.MONTH) == "%Y-%m"
    assert get_format_for_time_slice(TimeSlice.DAY) == "%Y-%m-%d"
    assert get_format_for_time_slice(TimeSlice.HOUR) == "%Y-%m-%d %H:00:00"
    assert get_format_for_time_slice("MINUTE") == "%Y-%m-%d %H:%M:00"


@pytest.mark.parametrize("bad", ["WEEK", "day", None, 3])
def test_unknown_time_slice_raises(bad):
    with pytest.raises(UnsupportedTimeSliceError):
        get_format_for_time_slice(bad)


def test_include_buffer_boundary():
    assert include_buffer(NOW - timedelta(hours=24), now=NOW)
    assert not include_buffer(NOW - timedelta(hours=25), now=NOW)
    assert not include_buffer(NOW - timedelta(days=3), now=NOW)
    assert include_buffer(NOW - timedelta(hours=30), now=NOW, buffer_hours=48)


def test_round_half_up():
    assert round_half_up(0.5) == 1
    assert round_half_up(1.49) == 1
    assert round_half_up(2.5) == 3
    assert round_half_up(0.0) == 0
    assert round_half_up(None) == 0


def test_partition_window_uses_utc_dates():
    tz = timezone(timedelta(hours=-5))
    opts = options(frm=datetime(2026, 3, 1, 21, 0, tzinfo=tz), to=datetime(2026, 3, 2, 12, 0, tzinfo=tz))
    assert partition_window(opts) == (date(2026, 3, 2), date(2026, 3, 2))


def test_with_range_echoes_window():
    opts = options()
    res = with_range(opts, 7)
    assert res.result == 7
    assert res.model_dump(by_alias=True, mode="json")["from"].startswith("2026-03-01T00:00:00")


def test_filter_window_must_be_ordered():
    with pytest.raises(ValueError):
        FilterOptions(from_=NOW, to=NOW - timedelta(seconds=1))


def test_empty_window_is_allowed():
    fo = FilterOptions(from_=NOW, to=NOW)
    assert fo.from_ == fo.to


def test_naive_and_aware_bounds_mix_as_utc():
    fo = FilterOptions(from_=datetime(2026, 3, 1), to=datetime(2026, 3, 4, tzinfo=timezone.utc))
    assert fo.to > fo.from_.replace(tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        FilterOptions(from_=datetime(2026, 3, 4, 1), to=datetime(2026, 3, 4, tzinfo=timezone.utc))
    # 03:00+02:00 is 01:00 UTC, after a naive 00:30
    FilterOptions(from_=datetime(2026, 3, 4, 0, 30), to=datetime(2026, 3, 4, 3, tzinfo=timezone(timedelta(hours=2))))


def test_defaults_follow_settings(monkeypatch):
    monkeypatch.setattr(settings, "default_limit", 50)
    monkeypatch.setattr(settings, "buffer_hours", 72)
    opts = QueryOptions(filter_options=FilterOptions(from_=NOW - timedelta(days=1), to=NOW))
    assert opts.limit == 50
    assert include_buffer(NOW - timedelta(hours=48), now=NOW)


def test_parse_dt_defaults_to_utc():
    assert parse_dt("2026-03-01T10:00:00") == datetime(2026, 3, 1, 10, tzinfo=timezone.utc)
    assert parse_dt("2026-03-01T12:00:00+02:00") == datetime(2026, 3, 1, 10, tzinfo=timezone.utc)
