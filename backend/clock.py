# clock.py — Wall-clock source for business-day arithmetic
# "Today" is the calendar date in APP_TIMEZONE; stored instants are UTC.

import os
from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

APP_TIMEZONE = os.getenv("APP_TIMEZONE", "America/Argentina/Buenos_Aires")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise a datetime to aware UTC (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock:
    def __init__(self, tz_name: str = APP_TIMEZONE):
        self.tz = ZoneInfo(tz_name)

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return self.now().astimezone(self.tz).date()

    def local_date(self, value: datetime) -> date:
        return as_utc(value).astimezone(self.tz).date()

    def start_of_day(self, day: date) -> datetime:
        """UTC instant of local midnight for the given calendar day."""
        return datetime.combine(day, time.min, tzinfo=self.tz).astimezone(timezone.utc)

    def start_of_today(self) -> datetime:
        return self.start_of_day(self.today())


class FixedClock(Clock):
    """Clock pinned to one instant, for jobs replayed at a given time and tests."""

    def __init__(self, instant: datetime, tz_name: str = APP_TIMEZONE):
        super().__init__(tz_name)
        self.instant = as_utc(instant)

    def now(self) -> datetime:
        return self.instant


_default_clock = Clock()


def get_clock() -> Clock:
    """Dependency for the wall clock (FastAPI Depends)"""
    return _default_clock
