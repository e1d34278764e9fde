# clock.py
"""
Time zone resolution and injectable clocks.

Every schedule computation takes a clock argument instead of reading the
system time, so tests can pin "now" with FixedClock.
"""
from datetime import date, datetime, time, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from errors import InvalidTimeZone

# Rails-style display names still found in older standup rows
FRIENDLY_TIME_ZONES = {
    "International Date Line West": "Etc/GMT+12",
    "Hawaii": "Pacific/Honolulu",
    "Alaska": "America/Juneau",
    "Pacific Time (US & Canada)": "America/Los_Angeles",
    "Arizona": "America/Phoenix",
    "Mountain Time (US & Canada)": "America/Denver",
    "Central Time (US & Canada)": "America/Chicago",
    "Eastern Time (US & Canada)": "America/New_York",
    "Atlantic Time (Canada)": "America/Halifax",
    "Brasilia": "America/Sao_Paulo",
    "UTC": "Etc/UTC",
    "London": "Europe/London",
    "Dublin": "Europe/Dublin",
    "Lisbon": "Europe/Lisbon",
    "Amsterdam": "Europe/Amsterdam",
    "Berlin": "Europe/Berlin",
    "Paris": "Europe/Paris",
    "Madrid": "Europe/Madrid",
    "Athens": "Europe/Athens",
    "Moscow": "Europe/Moscow",
    "Mumbai": "Asia/Kolkata",
    "New Delhi": "Asia/Kolkata",
    "Singapore": "Asia/Singapore",
    "Beijing": "Asia/Shanghai",
    "Tokyo": "Asia/Tokyo",
    "Sydney": "Australia/Sydney",
    "Auckland": "Pacific/Auckland",
}


def canonical_time_zone_name(name: str) -> str:
    """Map a friendly or IANA name to the IANA identifier zoneinfo uses."""
    if not name or not isinstance(name, str):
        raise InvalidTimeZone(name)
    iana = FRIENDLY_TIME_ZONES.get(name, name)
    try:
        return ZoneInfo(iana).key
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        # OSError covers zone-database directories such as "America"
        raise InvalidTimeZone(name) from exc


def resolve_time_zone(name: str) -> ZoneInfo:
    return ZoneInfo(canonical_time_zone_name(name))


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values (as SQLite returns them) are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SystemClock:
    def now(self, tz: tzinfo = timezone.utc) -> datetime:
        return datetime.now(tz)


class FixedClock:
    """Clock frozen at a single instant. Naive instants are taken as UTC."""

    def __init__(self, instant: datetime):
        self.instant = as_utc(instant)

    def now(self, tz: tzinfo = timezone.utc) -> datetime:
        return self.instant.astimezone(tz)

    def move_to(self, instant: datetime):
        self.instant = as_utc(instant)


class TimeZoneClock:
    """Wall-clock view of an injected clock in one named zone."""

    def __init__(self, time_zone_name: str, clock=None):
        self.zone = resolve_time_zone(time_zone_name)
        self.clock = clock or SystemClock()

    @property
    def identifier(self) -> str:
        return self.zone.key

    def now(self) -> datetime:
        return self.clock.now(self.zone)

    def today(self) -> date:
        return self.now().date()

    def beginning_of_day(self) -> datetime:
        return datetime.combine(self.today(), time.min, tzinfo=self.zone)
