from __future__ import annotations

import re
from datetime import date, datetime, time, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo


TIME_OF_DAY_PATTERN = re.compile(r"^\d{2}:\d{2}$")


def parse_time_of_day(value: str) -> int:
    """Convert an ``HH:MM`` civil time to minutes past midnight."""
    text = (value or "").strip()
    if not TIME_OF_DAY_PATTERN.match(text):
        raise ValueError("Time must be in HH:MM format.")
    hour, minute = (int(part) for part in text.split(":"))
    if hour > 23 or minute > 59:
        raise ValueError("Time must be a valid 24-hour clock time.")
    return hour * 60 + minute


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(instant: datetime) -> datetime:
    """Aware UTC copy of ``instant``; naive values are taken to be UTC already."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


class CivilClock:
    """Maps instants onto the wall clock of one configured timezone.

    Day keys and minute-of-day values use the zone's real civil time, so
    zones with daylight saving shift correctly. ``now_fn`` is injectable so
    tests can freeze time.
    """

    def __init__(self, tz_name: str = "Asia/Kolkata", now_fn: Optional[Callable[[], datetime]] = None) -> None:
        self.tz_name = tz_name
        self.zone = ZoneInfo(tz_name)
        self._now_fn = now_fn or _utc_now

    def now(self) -> datetime:
        return as_utc(self._now_fn())

    def to_local(self, instant: datetime) -> datetime:
        return as_utc(instant).astimezone(self.zone)

    def date_key(self, instant: datetime) -> str:
        return self.to_local(instant).strftime("%Y-%m-%d")

    def minutes_since_midnight(self, instant: datetime) -> int:
        local = self.to_local(instant)
        return local.hour * 60 + local.minute

    def scheduled_at(self, date_key: str, time_of_day: str) -> datetime:
        minutes = parse_time_of_day(time_of_day)
        local = datetime.combine(
            date.fromisoformat(date_key),
            time(hour=minutes // 60, minute=minutes % 60),
            tzinfo=self.zone,
        )
        return local.astimezone(timezone.utc)

    def format_clock_time(self, instant: datetime) -> str:
        return self.to_local(instant).strftime("%I:%M %p")


def format_time_of_day(time_of_day: str) -> str:
    minutes = parse_time_of_day(time_of_day)
    return time(hour=minutes // 60, minute=minutes % 60).strftime("%I:%M %p")


class FrozenTime:
    """Settable time source for ``CivilClock(now_fn=...)``."""

    def __init__(self, current: datetime) -> None:
        self.current = current

    def __call__(self) -> datetime:
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current
