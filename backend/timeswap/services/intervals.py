"""Helpers for half-open ``[start, end)`` intervals.

Every function here is pure and works on :class:`Interval` values. Lists
returned by :func:`merge` and :func:`subtract` are sorted by start and
never contain overlapping or zero-length members.
"""

from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, List, Optional

from timeswap.errors import ExchangeValidationError
from timeswap.models import Interval


def require_valid(interval: Optional[Interval], *, field: str = "interval") -> Interval:
    if interval is None:
        raise ExchangeValidationError(f"{field} is required")
    if interval.end <= interval.start:
        raise ExchangeValidationError(f"Invalid {field}; end must be after start")
    return interval


def overlaps(a: Interval, b: Interval) -> bool:
    # Touching boundaries do not overlap.
    return a.start < b.end and b.start < a.end


def contains(outer: Interval, inner: Interval) -> bool:
    return outer.start <= inner.start and inner.end <= outer.end


def merge(intervals: Iterable[Interval]) -> List[Interval]:
    ordered = sorted((i for i in intervals if i.start < i.end), key=lambda i: (i.start, i.end))
    merged: List[Interval] = []
    for current in ordered:
        if merged and current.start <= merged[-1].end:
            if current.end > merged[-1].end:
                merged[-1] = Interval(start=merged[-1].start, end=current.end)
            continue
        merged.append(Interval(start=current.start, end=current.end))
    return merged


def subtract(base: Iterable[Interval], cuts: Iterable[Interval]) -> List[Interval]:
    remaining = merge(base)
    for cut in merge(cuts):
        pieces: List[Interval] = []
        for piece in remaining:
            if not overlaps(piece, cut):
                pieces.append(piece)
                continue
            if piece.start < cut.start:
                pieces.append(Interval(start=piece.start, end=cut.start))
            if cut.end < piece.end:
                pieces.append(Interval(start=cut.end, end=piece.end))
        remaining = pieces
    return remaining


def day_window(day: date) -> Interval:
    start = datetime.combine(day, time.min)
    return Interval(start=start, end=start + timedelta(days=1))


def wall_clock_window(day: date, start_time: time, end_time: time) -> Interval:
    """Place a wall-clock ``start_time``-``end_time`` range on ``day``.

    An ``end_time`` of midnight means the end of that day.
    """
    start = datetime.combine(day, start_time)
    if end_time == time.min:
        end = datetime.combine(day + timedelta(days=1), time.min)
    else:
        end = datetime.combine(day, end_time)
    return Interval(start=start, end=end)


def require_valid_wall_clock(start_time: time, end_time: time) -> None:
    if end_time == time.min:
        return
    if end_time <= start_time:
        raise ExchangeValidationError("Invalid time range; end_time must be after start_time")


def iter_dates(date_from: date, date_to: date) -> Iterator[date]:
    current = date_from
    while current <= date_to:
        yield current
        current += timedelta(days=1)


def duration_minutes(interval: Interval) -> int:
    return int((interval.end - interval.start).total_seconds() // 60)


def day_of_week(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7
