from __future__ import annotations

from datetime import datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from .config import MaintenanceConfig
from .errors import ConfigError


def parse_time_of_day(value: str) -> time:
    try:
        hour, minute = value.split(":")
        return time(int(hour), int(minute))
    except ValueError as exc:
        raise ConfigError(f"invalid time of day {value!r}, expected HH:MM") from exc


class MaintenanceWindow:
    """Daily time-of-day window in a given timezone.

    When ``start`` is later than ``end`` the window crosses midnight. Both
    bounds are inclusive at minute resolution.
    """

    def __init__(self, start: str, end: str, tz: str = "UTC") -> None:
        self.start = parse_time_of_day(start)
        self.end = parse_time_of_day(end)
        self.timezone = tz
        self._zone = ZoneInfo(tz)

    @classmethod
    def from_config(cls, config: MaintenanceConfig) -> "MaintenanceWindow":
        return cls(config.start, config.end, config.timezone)

    def contains(self, now: Optional[datetime] = None) -> bool:
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = now.astimezone(self._zone)
        current = time(local.hour, local.minute)
        if self.start <= self.end:
            return self.start <= current <= self.end
        return current >= self.start or current <= self.end

    def __repr__(self) -> str:
        return f"MaintenanceWindow({self.start:%H:%M}-{self.end:%H:%M} {self.timezone})"
