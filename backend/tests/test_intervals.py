import os
import sys
from datetime import date, datetime, time

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from timeswap.errors import ExchangeValidationError
from timeswap.models import Interval
from timeswap.services import intervals


def _iv(start_hour: int, end_hour: int, day: int = 15) -> Interval:
    return Interval(start=datetime(2026, 6, day, start_hour), end=datetime(2026, 6, day, end_hour))


def test_require_valid_rejects_empty_and_inverted():
    with pytest.raises(ExchangeValidationError):
        intervals.require_valid(_iv(10, 10))
    with pytest.raises(ExchangeValidationError):
        intervals.require_valid(_iv(11, 10))
    with pytest.raises(ExchangeValidationError):
        intervals.require_valid(None)


def test_touching_intervals_do_not_overlap():
    assert not intervals.overlaps(_iv(9, 12), _iv(12, 13))
    assert intervals.overlaps(_iv(9, 12), _iv(11, 13))


def test_merge_unions_overlapping_and_touching():
    merged = intervals.merge([_iv(13, 14), _iv(9, 11), _iv(10, 12), _iv(12, 13), _iv(16, 17)])
    assert merged == [_iv(9, 14), _iv(16, 17)]


def test_subtract_splits_and_drops_fully_covered_pieces():
    free = intervals.subtract([_iv(9, 17)], [_iv(12, 13), _iv(15, 18)])
    assert free == [_iv(9, 12), _iv(13, 15)]
    assert intervals.subtract([_iv(9, 10)], [_iv(8, 11)]) == []


def test_wall_clock_window_midnight_end_means_end_of_day():
    window = intervals.wall_clock_window(date(2026, 6, 15), time(18, 0), time(0, 0))
    assert window.start == datetime(2026, 6, 15, 18)
    assert window.end == datetime(2026, 6, 16, 0)


def test_wall_clock_validation():
    intervals.require_valid_wall_clock(time(9), time(0))
    with pytest.raises(ExchangeValidationError):
        intervals.require_valid_wall_clock(time(17), time(9))


def test_day_of_week_starts_on_sunday():
    assert intervals.day_of_week(date(2026, 6, 14)) == 0
    assert intervals.day_of_week(date(2026, 6, 15)) == 1
    assert intervals.day_of_week(date(2026, 6, 20)) == 6


def test_aware_timestamps_are_normalized_to_naive_utc():
    interval = Interval(start="2026-06-15T11:00:00+02:00", end="2026-06-15T12:00:00Z")
    assert interval.start == datetime(2026, 6, 15, 9)
    assert interval.end == datetime(2026, 6, 15, 12)
    assert interval.start.tzinfo is None
