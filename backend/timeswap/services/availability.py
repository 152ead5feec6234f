"""Resolve a subject's free time from its availability configuration.

Precedence, highest first: blocked periods, date overrides, weekly rules,
and finally the default of "unavailable". A date override replaces the
weekly result for its date; blocked periods are subtracted afterwards and
therefore also cut into override windows.

Recurring blocked periods are templates. Their occurrences are generated
on demand for the window being resolved and are never stored.
"""

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, Iterator, List, Sequence

from dateutil.relativedelta import relativedelta

from timeswap.errors import ExchangeValidationError
from timeswap.models import (
    AvailableSlot,
    BlockedPeriod,
    DateOverride,
    DayAvailability,
    Interval,
    RecurringPattern,
    WeeklyRule,
)
from timeswap.services import intervals

logger = logging.getLogger(__name__)


def _env_positive_int(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


DEFAULT_HORIZON_DAYS = _env_positive_int("AVAILABILITY_HORIZON_DAYS", 365)
MAX_RANGE_DAYS = _env_positive_int("AVAILABILITY_MAX_RANGE_DAYS", 92)

_STEP_DAYS = {
    RecurringPattern.WEEKLY: 7,
    RecurringPattern.BIWEEKLY: 14,
}


def _occurrence_start(anchor: datetime, pattern: RecurringPattern, k: int) -> datetime:
    if pattern == RecurringPattern.MONTHLY:
        # Always offset from the anchor so short months do not drift later dates.
        return anchor + relativedelta(months=k)
    return anchor + timedelta(days=_STEP_DAYS[pattern] * k)


def _first_candidate_index(anchor: datetime, pattern: RecurringPattern, earliest_start: datetime) -> int:
    if earliest_start <= anchor:
        return 0
    if pattern == RecurringPattern.MONTHLY:
        months = (earliest_start.year - anchor.year) * 12 + (earliest_start.month - anchor.month)
        return max(0, months - 1)
    return max(0, (earliest_start - anchor).days // _STEP_DAYS[pattern])


def expand_blocked_period(
    block: BlockedPeriod,
    window: Interval,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> Iterator[Interval]:
    """Yield the occurrences of ``block`` that intersect ``window``.

    A recurring block repeats from its own start (the anchor) with no end
    date. ``horizon_days`` bounds the query: occurrences starting more than
    that many days after ``window.start`` are not generated.
    """
    if block.end <= block.start:
        return
    if not block.is_recurring or block.recurring_pattern is None:
        occurrence = Interval(start=block.start, end=block.end)
        if intervals.overlaps(occurrence, window):
            yield occurrence
        return

    pattern = RecurringPattern(block.recurring_pattern)
    length = block.end - block.start
    stop = min(window.end, window.start + timedelta(days=horizon_days))
    k = _first_candidate_index(block.start, pattern, window.start - length)
    while True:
        start = _occurrence_start(block.start, pattern, k)
        if start >= stop:
            return
        occurrence = Interval(start=start, end=start + length)
        if intervals.overlaps(occurrence, window):
            yield occurrence
        k += 1


def latest_overrides(overrides: Iterable[DateOverride]) -> Dict[date, DateOverride]:
    """Pick one override per date; the most recent write wins."""
    chosen: Dict[date, DateOverride] = {}
    for override in overrides:
        current = chosen.get(override.date)
        if current is None:
            chosen[override.date] = override
            continue
        if current.updated_at and override.updated_at and override.updated_at < current.updated_at:
            continue
        chosen[override.date] = override
    return chosen


@dataclass
class AvailabilityResolver:
    horizon_days: int = DEFAULT_HORIZON_DAYS
    max_range_days: int = MAX_RANGE_DAYS

    def resolve(
        self,
        subject_id: str,
        date_from: date,
        date_to: date,
        weekly_rules: Sequence[WeeklyRule],
        overrides: Sequence[DateOverride],
        blocked_periods: Sequence[BlockedPeriod],
    ) -> List[DayAvailability]:
        if date_to < date_from:
            raise ExchangeValidationError("Invalid date range; date_to must not be before date_from")
        if (date_to - date_from).days + 1 > self.max_range_days:
            raise ExchangeValidationError(f"Date range too large; at most {self.max_range_days} days per request")

        rules_by_day: Dict[int, List[WeeklyRule]] = {}
        for rule in weekly_rules:
            if rule.subject_id == subject_id and rule.is_active:
                rules_by_day.setdefault(rule.day_of_week, []).append(rule)
        override_by_date = latest_overrides(o for o in overrides if o.subject_id == subject_id)

        range_window = Interval(
            start=intervals.day_window(date_from).start,
            end=intervals.day_window(date_to).end,
        )
        blocked: List[Interval] = []
        for block in blocked_periods:
            if block.subject_id != subject_id:
                continue
            blocked.extend(expand_blocked_period(block, range_window, self.horizon_days))
        blocked = intervals.merge(blocked)

        days: List[DayAvailability] = []
        for day in intervals.iter_dates(date_from, date_to):
            override = override_by_date.get(day)
            if override is not None:
                source = "override"
                if override.is_available:
                    base = [intervals.wall_clock_window(day, override.start_time, override.end_time)]
                else:
                    base = []
            elif intervals.day_of_week(day) in rules_by_day:
                source = "weekly"
                base = [
                    intervals.wall_clock_window(day, rule.start_time, rule.end_time)
                    for rule in rules_by_day[intervals.day_of_week(day)]
                ]
            else:
                source = "none"
                base = []

            free = intervals.subtract(base, blocked) if base else []
            days.append(
                DayAvailability(
                    date=day,
                    source=source,
                    slots=[AvailableSlot(date=day, start=slot.start, end=slot.end) for slot in free],
                )
            )
        logger.debug("Resolved availability for %s from %s to %s", subject_id, date_from, date_to)
        return days

    def is_available(
        self,
        subject_id: str,
        interval: Interval,
        weekly_rules: Sequence[WeeklyRule],
        overrides: Sequence[DateOverride],
        blocked_periods: Sequence[BlockedPeriod],
    ) -> bool:
        """True when contiguous resolved free time covers all of ``interval``."""
        intervals.require_valid(interval)
        first_day = interval.start.date()
        last_day = (interval.end - timedelta(microseconds=1)).date()
        days = self.resolve(subject_id, first_day, last_day, weekly_rules, overrides, blocked_periods)
        free = intervals.merge(Interval(start=s.start, end=s.end) for d in days for s in d.slots)
        return any(intervals.contains(slot, interval) for slot in free)

