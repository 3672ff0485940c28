"""
shared/utils/calendar.py
Read-side availability projection for the public mentor calendar.

All comparisons happen on local calendar dates in the mentor's timezone:
instants are converted first, then compared day by day.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_MONTH = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class SlotWindow:
    start: datetime
    end: datetime
    is_free_session: bool = False


@dataclass(frozen=True)
class WeeklyRule:
    day_of_week: int            # 0 = Sunday
    is_free_session: bool = False
    is_active: bool = True


@dataclass(frozen=True)
class CalendarProjection:
    month: str
    timezone: str
    available_dates: List[str]
    free_dates: List[str]


def parse_month(month: str) -> Tuple[date, date]:
    """'YYYY-MM' -> (first day, last day). Raises ValueError on bad input."""
    match = _MONTH.match(month or "")
    if not match:
        raise ValueError("Invalid 'month' parameter (YYYY-MM)")
    year, mon = int(match.group(1)), int(match.group(2))
    last = calendar.monthrange(year, mon)[1]
    return date(year, mon, 1), date(year, mon, last)


def month_bounds_utc(month: str, tz_name: str) -> Tuple[datetime, datetime]:
    """UTC instants spanning the whole local month, for narrowing DB queries."""
    first, last = parse_month(month)
    tz = ZoneInfo(tz_name)
    start = datetime.combine(first, time.min, tzinfo=tz).astimezone(timezone.utc)
    end = datetime.combine(last + timedelta(days=1), time.min, tzinfo=tz).astimezone(timezone.utc)
    return start, end


def _as_utc(instant: datetime) -> datetime:
    # naive values coming back from the DB are UTC
    return instant.replace(tzinfo=timezone.utc) if instant.tzinfo is None else instant


def _local_date(instant: datetime, tz: ZoneInfo) -> date:
    return _as_utc(instant).astimezone(tz).date()


def _sunday_based(day: date) -> int:
    return (day.weekday() + 1) % 7


def blocked_dates(blocked: Iterable[SlotWindow], tz: ZoneInfo) -> Set[date]:
    """
    Every local date an interval touches. The end is exclusive, so a block
    ending exactly at local midnight does not spill into the next day.
    """
    days: Set[date] = set()
    for window in blocked:
        first = _local_date(window.start, tz)
        end = window.end if window.end > window.start else window.start + timedelta(microseconds=1)
        last = _local_date(end - timedelta(microseconds=1), tz)
        day = first
        while day <= last:
            days.add(day)
            day += timedelta(days=1)
    return days


def project_available_dates(
    month: str,
    tz_name: str,
    slots: Iterable[SlotWindow],
    blocked: Iterable[SlotWindow],
    rules: Optional[Iterable[WeeklyRule]] = None,
) -> CalendarProjection:
    first, last = parse_month(month)
    tz = ZoneInfo(tz_name)

    available: Set[date] = set()
    free: Set[date] = set()

    for slot in slots:
        day = _local_date(slot.start, tz)
        if first <= day <= last:
            available.add(day)
            if slot.is_free_session:
                free.add(day)

    active_rules = [r for r in (rules or []) if r.is_active]
    if active_rules:
        day = first
        while day <= last:
            matching = [r for r in active_rules if r.day_of_week == _sunday_based(day)]
            if matching:
                available.add(day)
                if any(r.is_free_session for r in matching):
                    free.add(day)
            day += timedelta(days=1)

    available -= blocked_dates(blocked, tz)
    free &= available

    return CalendarProjection(
        month=month,
        timezone=tz_name,
        available_dates=sorted(d.isoformat() for d in available),
        free_dates=sorted(d.isoformat() for d in free),
    )


def rule_covers(
    day_of_week: int,
    start_hhmm: str,
    end_hhmm: str,
    start: datetime,
    end: datetime,
    tz_name: str,
) -> bool:
    """True when [start, end) falls inside a weekly HH:MM window on one local day."""
    tz = ZoneInfo(tz_name)
    local_start = _as_utc(start).astimezone(tz)
    local_end = _as_utc(end).astimezone(tz)
    if local_start.date() != local_end.date():
        return False
    if _sunday_based(local_start.date()) != day_of_week:
        return False
    return start_hhmm <= f"{local_start:%H:%M}" and f"{local_end:%H:%M}" <= end_hhmm


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


def format_local(instant: datetime, tz_name: Optional[str], default_tz: str = "America/New_York") -> str:
    """Render an instant in the reader's timezone, e.g. 'Jun 15, 09:00 AM EDT'."""
    try:
        tz = ZoneInfo(tz_name or default_tz)
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo(default_tz)
    local = _as_utc(instant).astimezone(tz)
    return f"{local:%b} {local.day}, {local:%I:%M %p %Z}"
