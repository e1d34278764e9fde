# timing.py
"""
Start-time parsing and next-fire computation for a standup.

Functions take anything with ``time_zone_name`` and ``start_time_string``
attributes (a Standup row, or a validated request model) plus a clock.
"""
import re
from datetime import datetime, time, timedelta, timezone
from typing import Tuple

from clock import TimeZoneClock
from errors import MalformedTimeString

TIME_FORMAT = re.compile(r"(\d{1,2}):(\d{2})\s*(am|pm)", re.IGNORECASE)


def parse_start_time(raw: str) -> Tuple[int, int]:
    """
    Parse "9:00am" style strings into 24-hour (hour, minute).

    "12:00am" -> (0, 0), "12:00pm" -> (12, 0), "9:00pm" -> (21, 0).
    """
    matches = TIME_FORMAT.fullmatch(raw.strip()) if isinstance(raw, str) else None
    if not matches:
        raise MalformedTimeString(raw)

    hours, minutes = int(matches.group(1)), int(matches.group(2))
    if not (1 <= hours <= 12 and 0 <= minutes <= 59):
        raise MalformedTimeString(raw)

    meridiem = matches.group(3).lower()
    if hours == 12:
        hours = 0
    if meridiem == "pm":
        hours += 12
    return hours, minutes


def _standup_time(standup, now: datetime) -> datetime:
    hours, minutes = parse_start_time(standup.start_time_string)
    return datetime.combine(now.date(), time(hours, minutes), tzinfo=now.tzinfo)


def _is_past(moment: datetime, now: datetime) -> bool:
    # same-zone comparisons ignore fold, so compare instants in UTC
    return moment.astimezone(timezone.utc) < now.astimezone(timezone.utc)


def standup_time_today(standup, clock=None) -> datetime:
    now = TimeZoneClock(standup.time_zone_name, clock).now()
    return _standup_time(standup, now)


def is_finished_today(standup, clock=None) -> bool:
    # strict: at exactly the scheduled instant the standup has not happened yet
    now = TimeZoneClock(standup.time_zone_name, clock).now()
    return _is_past(_standup_time(standup, now), now)


def next_occurrence(standup, clock=None) -> datetime:
    """Today's standup time, or tomorrow's once today's has passed."""
    now = TimeZoneClock(standup.time_zone_name, clock).now()
    standup_time = _standup_time(standup, now)
    if _is_past(standup_time, now):
        # aware arithmetic on a ZoneInfo datetime keeps the wall-clock time
        standup_time += timedelta(days=1)
    return standup_time
