# aba_scheduling/services/calendar.py
from datetime import date, datetime, timedelta
from typing import Iterable, List

# 0=Sunday ... 6=Saturday, the convention used by availability slots
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def day_of_week(d: date) -> int:
    """Python's weekday() is Monday=0; shift it to Sunday=0."""
    return (d.weekday() + 1) % 7


def overlaps(
    a_start: datetime,
    a_end: datetime,
    b_start: datetime,
    b_end: datetime,
) -> bool:
    """
    Half-open interval overlap: [a_start, a_end) and [b_start, b_end).

    Back-to-back intervals (a_end == b_start) do not overlap.
    """
    return a_start < b_end and a_end > b_start


def business_days_from(start: date, count: int, business_days: Iterable[int]) -> List[date]:
    """The first `count` business days on or after `start`."""
    valid = set(business_days)
    if not valid or count <= 0:
        return []

    days: List[date] = []
    current = start
    while len(days) < count:
        if day_of_week(current) in valid:
            days.append(current)
        current += timedelta(days=1)
    return days


def hours_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 3600


def window_weeks(start: datetime, end: datetime) -> float:
    """Window length in weeks, never shorter than one day."""
    days = max(1.0, (end - start).total_seconds() / 86400)
    return days / 7


def midpoint(start: datetime, end: datetime) -> datetime:
    return start + (end - start) / 2


def round2(value: float) -> float:
    return round(value, 2)


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))
