"""
Period calculations for quota resets and usage bucketing.

Maps a reset period and a reference instant to calendar-anchored
period boundaries. All functions are pure; callers decide which clock
and timezone the instants come from.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

MONDAY = 0
SUNDAY = 6

_ONE_MICROSECOND = timedelta(microseconds=1)


@dataclass(frozen=True)
class PeriodBounds:
    """Boundaries of the period containing a reference instant.

    ``start`` and ``end`` are both inclusive; ``next_reset`` is the first
    instant of the following period.
    """
    start: datetime
    end: datetime
    next_reset: datetime


class Period(Enum):
    """Reset period of a feature."""
    NONE = "none"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def parse(cls, value: Union["Period", str, None]) -> "Period":
        """Parse a period name, accepting singular aliases and ``never``.

        Raises:
            ValueError: If the value does not name a period
        """
        if isinstance(value, Period):
            return value
        if value is None:
            return cls.NONE
        key = str(value).strip().lower()
        if key in _ALIASES:
            return _ALIASES[key]
        try:
            return cls(key)
        except ValueError:
            valid = [period.value for period in cls]
            raise ValueError(f"Unknown reset period '{value}', must be one of: {valid}")

    @property
    def resets(self) -> bool:
        return self is not Period.NONE

    @property
    def label(self) -> str:
        return "Never" if self is Period.NONE else self.value.capitalize()

    def bounds(self, at: datetime, week_start: int = MONDAY) -> Optional[PeriodBounds]:
        return calculate_period(self, at, week_start)

    def next_reset(self, at: datetime, week_start: int = MONDAY) -> Optional[datetime]:
        bounds = calculate_period(self, at, week_start)
        return bounds.next_reset if bounds else None


_ALIASES = {
    "never": Period.NONE,
    "hour": Period.HOURLY,
    "day": Period.DAILY,
    "week": Period.WEEKLY,
    "month": Period.MONTHLY,
    "year": Period.YEARLY,
}


class StatisticsBucket(Enum):
    """Grouping granularity for usage statistics."""
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    def label(self, at: datetime, week_start: int = MONDAY) -> str:
        """Label of the bucket containing ``at``.

        Weeks are labelled by their first day, honouring ``week_start``.
        """
        if self is StatisticsBucket.WEEK:
            at = calculate_period(Period.WEEKLY, at, week_start).start
        return at.strftime(_BUCKET_FORMATS[self])


_BUCKET_FORMATS = {
    StatisticsBucket.HOUR: "%Y-%m-%d %H:00:00",
    StatisticsBucket.DAY: "%Y-%m-%d",
    StatisticsBucket.WEEK: "%Y-%m-%d",
    StatisticsBucket.MONTH: "%Y-%m",
    StatisticsBucket.YEAR: "%Y",
}


def _period_start(period: Period, at: datetime, week_start: int) -> datetime:
    if period is Period.HOURLY:
        return at.replace(minute=0, second=0, microsecond=0)
    day = at.replace(hour=0, minute=0, second=0, microsecond=0)
    if period is Period.DAILY:
        return day
    if period is Period.WEEKLY:
        offset = (day.weekday() - week_start) % 7
        return day - timedelta(days=offset)
    if period is Period.MONTHLY:
        return day.replace(day=1)
    if period is Period.YEARLY:
        return day.replace(month=1, day=1)
    raise ValueError(f"Period {period.value} has no boundaries")


def _following_start(period: Period, start: datetime) -> datetime:
    # Advances from the period start, so day-of-month overflow cannot occur
    if period is Period.HOURLY:
        return start + timedelta(hours=1)
    if period is Period.DAILY:
        return start + timedelta(days=1)
    if period is Period.WEEKLY:
        return start + timedelta(weeks=1)
    if period is Period.MONTHLY:
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)
    return start.replace(year=start.year + 1)


def calculate_period(
    period: Period,
    at: datetime,
    week_start: int = MONDAY
) -> Optional[PeriodBounds]:
    """Compute the period containing ``at``.

    Args:
        period: Reset period of the feature
        at: Reference instant
        week_start: First day of the week (0 = Monday ... 6 = Sunday)

    Returns:
        PeriodBounds, or None for ``Period.NONE`` which never resets

    Raises:
        ValueError: If week_start is outside 0..6
    """
    if not MONDAY <= week_start <= SUNDAY:
        raise ValueError("week_start must be between 0 (Monday) and 6 (Sunday)")
    if period is Period.NONE:
        return None

    start = _period_start(period, at, week_start)
    next_start = _following_start(period, start)
    return PeriodBounds(
        start=start,
        end=next_start - _ONE_MICROSECOND,
        next_reset=next_start
    )
