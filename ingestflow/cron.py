"""Five-field cron expressions and timezone-aware next-fire computation.

Format: ``minute hour day-of-month month day-of-week``. Each field accepts
``*``, numbers, ranges (``1-5``), steps (``*/15``, ``10-40/10``) and comma
lists; months and weekdays also accept three-letter names. Sunday is 0 or 7.
When both day fields are restricted a day matches if either one does.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import FrozenSet, Optional
from zoneinfo import ZoneInfo

from .errors import ConfigError

_ALIASES = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_MONTH_NAMES = {
    name: i + 1
    for i, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]
    )
}
_DAY_NAMES = {name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

# Search horizon for next_fire(); covers leap-day-only schedules.
_MAX_DAYS = 366 * 8


def _parse_value(token: str, names: dict, field_name: str) -> int:
    token = token.strip().lower()
    if token in names:
        return names[token]
    if not token.isdigit():
        raise ConfigError(f"invalid {field_name} value {token!r}")
    return int(token)


def _parse_field(text: str, low: int, high: int, field_name: str, names: Optional[dict] = None) -> FrozenSet[int]:
    names = names or {}
    values = set()
    for part in text.split(","):
        if not part:
            raise ConfigError(f"empty item in {field_name} field {text!r}")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ConfigError(f"invalid step in {field_name} field {text!r}")
            step = int(step_text)
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start = _parse_value(start_text, names, field_name)
            end = _parse_value(end_text, names, field_name)
        else:
            start = _parse_value(part, names, field_name)
            end = high if step > 1 else start
        if start < low or end > high or start > end:
            raise ConfigError(f"{field_name} field {text!r} out of range {low}-{high}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronSchedule:
    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days_of_month: FrozenSet[int]
    months: FrozenSet[int]
    days_of_week: FrozenSet[int]
    dom_restricted: bool
    dow_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronSchedule":
        text = (expression or "").strip()
        fields = _ALIASES.get(text.lower(), text).split()
        if len(fields) != 5:
            raise ConfigError(f"invalid cron expression {expression!r}: expected 5 fields")
        minute, hour, dom, month, dow = fields
        days_of_week = _parse_field(dow, 0, 7, "day-of-week", _DAY_NAMES)
        return cls(
            expression=text,
            minutes=_parse_field(minute, 0, 59, "minute"),
            hours=_parse_field(hour, 0, 23, "hour"),
            days_of_month=_parse_field(dom, 1, 31, "day-of-month"),
            months=_parse_field(month, 1, 12, "month", _MONTH_NAMES),
            days_of_week=frozenset(d % 7 for d in days_of_week),
            dom_restricted=dom != "*",
            dow_restricted=dow != "*",
        )

    def matches_day(self, day: date) -> bool:
        if day.month not in self.months:
            return False
        dom_ok = day.day in self.days_of_month
        # date.weekday(): Monday=0; cron: Sunday=0
        dow_ok = (day.weekday() + 1) % 7 in self.days_of_week
        if self.dom_restricted and self.dow_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def matches(self, moment: datetime) -> bool:
        return (
            self.matches_day(moment.date())
            and moment.hour in self.hours
            and moment.minute in self.minutes
        )

    def next_fire(self, after: datetime, tz: str = "UTC") -> datetime:
        """First firing strictly after ``after``, as an aware datetime in ``tz``.

        Wall-clock times skipped by a DST transition never fire."""
        zone = ZoneInfo(tz)
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        local = after.astimezone(zone)
        start = local.replace(tzinfo=None, second=0, microsecond=0) + timedelta(minutes=1)

        hours = sorted(self.hours)
        minutes = sorted(self.minutes)
        day = start.date()
        for _ in range(_MAX_DAYS):
            if self.matches_day(day):
                for hour in hours:
                    for minute in minutes:
                        wall = datetime.combine(day, time(hour, minute))
                        if wall < start:
                            continue
                        candidate = wall.replace(tzinfo=zone)
                        roundtrip = candidate.astimezone(timezone.utc).astimezone(zone)
                        if roundtrip.replace(tzinfo=None) != wall:
                            continue
                        if candidate > after:
                            return candidate
            day += timedelta(days=1)
        raise ConfigError(f"cron expression {self.expression!r} never fires")
