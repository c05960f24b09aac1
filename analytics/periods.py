"""
Period Granularity Selector
============================

Turns a requested date range into an ordered list of contiguous buckets.

    days_diff <= 120  -> weekly buckets anchored on date_from
    days_diff  > 120  -> calendar-month buckets, clamped to the range

All dates are calendar days; a Period's `start` and `end` are both
inclusive, so consecutive periods satisfy `next.start == prev.end + 1 day`.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Iterator, Optional, Tuple

from scripts.lib.errors import DateRangeError
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

WEEKLY_THRESHOLD_DAYS = 120
MAX_WEEKLY_BUCKETS = 20
DEFAULT_WINDOW_MONTHS = 12
MAX_RANGE_DAYS = 5 * 366


class Granularity(str, Enum):
    WEEK = "week"
    MONTH = "month"


@dataclass(frozen=True)
class Period:
    start: date
    end: date
    granularity: Granularity
    label: str

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(frozen=True)
class PeriodPlan:
    date_from: date
    date_to: date
    granularity: Granularity
    periods: Tuple[Period, ...]

    def __len__(self) -> int:
        return len(self.periods)

    def __iter__(self) -> Iterator[Period]:
        return iter(self.periods)

    def __getitem__(self, index: int) -> Period:
        return self.periods[index]


# ─── Date helpers ─────────────────────────────────────────────

def month_start(day: date) -> date:
    return day.replace(day=1)


def month_end(day: date) -> date:
    return day.replace(day=calendar.monthrange(day.year, day.month)[1])


def add_months(day: date, months: int) -> date:
    """First day of the month `months` away from `day`'s month."""
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def format_day_month(day: date) -> str:
    """'1 Jun' style label."""
    return f"{day.day} {day.strftime('%b')}"


def format_month_year(day: date) -> str:
    """'Jun 25' style label."""
    return day.strftime("%b %y")


def parse_iso_date(value: Optional[str], field: str) -> Optional[date]:
    """Parse a YYYY-MM-DD query value. Empty means not supplied."""
    if value is None or value.strip() == "":
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        raise DateRangeError(
            f"{field} must be a YYYY-MM-DD date, got {value!r}", field=field,
        )


# ─── Range resolution ─────────────────────────────────────────

def resolve_range(
    date_from: Optional[date],
    date_to: Optional[date],
    today: date,
) -> Tuple[date, date]:
    """
    Fill in missing bounds and validate the range.

    No bounds: trailing 12-month window ending today.
    Only date_from: ends today. Only date_to: starts on the first day of
    the month eleven months earlier.
    """
    if date_to is None:
        date_to = today
    if date_from is None:
        date_from = add_months(date_to, -(DEFAULT_WINDOW_MONTHS - 1))

    if date_from > date_to:
        raise DateRangeError(
            f"date_from ({date_from}) is after date_to ({date_to})",
            field="date_from",
        )
    if (date_to - date_from).days > MAX_RANGE_DAYS:
        raise DateRangeError(
            f"Date range of {(date_to - date_from).days} days exceeds "
            f"the {MAX_RANGE_DAYS}-day maximum",
            field="date_to",
        )
    return date_from, date_to


def choose_granularity(date_from: date, date_to: date) -> Granularity:
    days_diff = (date_to - date_from).days
    if days_diff <= WEEKLY_THRESHOLD_DAYS:
        return Granularity.WEEK
    return Granularity.MONTH


# ─── Bucket builders ──────────────────────────────────────────

def build_week_periods(date_from: date, date_to: date) -> Tuple[Period, ...]:
    periods = []
    start = date_from

    while start <= date_to:
        if len(periods) >= MAX_WEEKLY_BUCKETS:
            logger.warning(
                "Weekly bucket cap (%d) reached before %s; range truncated",
                MAX_WEEKLY_BUCKETS, date_to,
            )
            break

        end = min(start + timedelta(days=6), date_to)
        # The week covering date_to is labelled with date_to itself
        label = format_day_month(date_to if end >= date_to else start)
        periods.append(Period(start, end, Granularity.WEEK, label))

        if end >= date_to:
            break
        start = end + timedelta(days=1)

    return tuple(periods)


def build_month_periods(date_from: date, date_to: date, today: date) -> Tuple[Period, ...]:
    periods = []
    cursor = month_start(date_from)

    while cursor <= date_to:
        start = max(cursor, date_from)
        end = min(month_end(cursor), date_to)
        if start <= today <= end:
            label = format_day_month(today)
        else:
            label = format_month_year(cursor)
        periods.append(Period(start, end, Granularity.MONTH, label))
        cursor = add_months(cursor, 1)

    return tuple(periods)


def build_periods(date_from: date, date_to: date, today: date) -> PeriodPlan:
    """Choose a granularity for the range and build its buckets."""
    granularity = choose_granularity(date_from, date_to)
    if granularity is Granularity.WEEK:
        periods = build_week_periods(date_from, date_to)
    else:
        periods = build_month_periods(date_from, date_to, today)

    logger.debug(
        "Planned %d %s buckets for %s -> %s (%d days)",
        len(periods), granularity.value, date_from, date_to,
        (date_to - date_from).days,
    )
    return PeriodPlan(date_from, date_to, granularity, periods)
