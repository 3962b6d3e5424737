from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
import logging
import re
from typing import Callable, List, Optional, Set

from sqlmodel import SQLModel

from .time_utils import (
    add_months,
    cron_weekday,
    end_of_day,
    ensure_tz,
    get_now,
    parse_datetime,
    start_of_day,
)


logger = logging.getLogger(__name__)

CronFormatter = Callable[[str], str]

PREVIEW_MONTHS = 3
DEFAULT_PREVIEW_COUNT = 5

_INT_RE = re.compile(r"^\d+$")
_LAST_RE = re.compile(r"^(\d+)L$")


class RecurrencePreset(str, Enum):
    Daily = "daily"
    Weekly = "weekly"
    Weekdays = "weekdays"
    Biweekly = "biweekly"
    Monthly = "monthly"
    FirstWeekday = "first-weekday"
    LastWeekday = "last-weekday"
    Custom = "custom"


@dataclass(frozen=True)
class PresetInfo:
    label: str
    interval: int = 1


PRESETS: dict[RecurrencePreset, PresetInfo] = {
    RecurrencePreset.Daily: PresetInfo("Daily"),
    RecurrencePreset.Weekly: PresetInfo("Weekly (same day)"),
    RecurrencePreset.Weekdays: PresetInfo("Weekdays (Mon-Fri)"),
    RecurrencePreset.Biweekly: PresetInfo("Every 2 weeks", interval=2),
    RecurrencePreset.Monthly: PresetInfo("Monthly (same date)"),
    RecurrencePreset.FirstWeekday: PresetInfo("First [weekday] of month"),
    RecurrencePreset.LastWeekday: PresetInfo("Last [weekday] of month"),
    RecurrencePreset.Custom: PresetInfo("Custom (cron expression)"),
}


class RecurrenceRule(SQLModel):
    cron: Optional[str] = None
    preset: str = RecurrencePreset.Custom.value
    human_readable: str = ""
    interval: int = 1
    start_date: Optional[datetime] = None


def parse_field(field: str) -> Set[int]:
    """Return the integers named by a cron field such as ``1-5,7``."""
    values: Set[int] = set()
    for part in field.split(","):
        try:
            if "-" in part:
                start, end = part.split("-", 1)
                values.update(range(int(start), int(end) + 1))
            else:
                values.add(int(part))
        except ValueError:
            continue
    return values


def is_last_weekday_of_month(day: date, target_weekday: int) -> bool:
    if cron_weekday(day) != target_weekday:
        return False
    return (day + timedelta(days=7)).month != day.month


def matches_cron(
    day: date,
    minute: str,
    hour: str,
    day_of_month: str,
    month: str,
    day_of_week: str,
) -> bool:
    """Return ``True`` if ``day`` satisfies the date fields of a cron rule.

    ``minute`` and ``hour`` only place the occurrence within the day and are
    not checked.  A day-of-week of the form ``5L`` means the last such weekday
    of the month.  A day-of-month of exactly ``1-7`` combined with a
    day-of-week selects the first such weekday of the month.
    """
    if month != "*" and day.month not in parse_field(month):
        return False

    if day_of_month != "*" and day.day not in parse_field(day_of_month):
        return False

    if day_of_week != "*":
        if day_of_week.endswith("L"):
            try:
                target = int(day_of_week[:-1])
            except ValueError:
                return False
            if not is_last_weekday_of_month(day, target):
                return False
        elif cron_weekday(day) not in parse_field(day_of_week):
            return False

    if day_of_month == "1-7" and day_of_week != "*":
        if cron_weekday(day) not in parse_field(day_of_week.rstrip("L")):
            return False
        if day.day > 7:
            return False

    return True


class Schedule(ABC):
    """Date-matching part of a recurrence rule."""

    @abstractmethod
    def matches(self, day: date) -> bool:
        ...


@dataclass(frozen=True)
class Daily(Schedule):
    def matches(self, day: date) -> bool:
        return True


@dataclass(frozen=True)
class Weekly(Schedule):
    weekday: int

    def matches(self, day: date) -> bool:
        return cron_weekday(day) == self.weekday


@dataclass(frozen=True)
class Weekdays(Schedule):
    def matches(self, day: date) -> bool:
        return 1 <= cron_weekday(day) <= 5


@dataclass(frozen=True)
class Monthly(Schedule):
    day: int

    def matches(self, day: date) -> bool:
        return day.day == self.day


@dataclass(frozen=True)
class FirstWeekdayOfMonth(Schedule):
    weekday: int

    def matches(self, day: date) -> bool:
        return day.day <= 7 and cron_weekday(day) == self.weekday


@dataclass(frozen=True)
class LastWeekdayOfMonth(Schedule):
    weekday: int

    def matches(self, day: date) -> bool:
        return is_last_weekday_of_month(day, self.weekday)


@dataclass(frozen=True)
class Custom(Schedule):
    day_of_month: str
    month: str
    day_of_week: str

    def matches(self, day: date) -> bool:
        return matches_cron(day, "*", "*", self.day_of_month, self.month, self.day_of_week)


@dataclass(frozen=True)
class CronExpression:
    minute: str
    hour: str
    day_of_month: str
    month: str
    day_of_week: str

    @classmethod
    def parse(cls, cron: Optional[str]) -> Optional["CronExpression"]:
        """Split ``cron`` into its five fields, or return ``None``."""
        if not cron:
            return None
        parts = cron.split()
        if len(parts) != 5:
            return None
        return cls(*parts)

    def schedule(self) -> Schedule:
        dom, month, dow = self.day_of_month, self.month, self.day_of_week
        if month == "*":
            if dom == "*":
                if dow == "*":
                    return Daily()
                if _INT_RE.match(dow):
                    return Weekly(int(dow))
                if dow == "1-5":
                    return Weekdays()
                last = _LAST_RE.match(dow)
                if last:
                    return LastWeekdayOfMonth(int(last.group(1)))
            elif dow == "*" and _INT_RE.match(dom):
                return Monthly(int(dom))
            elif dom == "1-7" and _INT_RE.match(dow):
                return FirstWeekdayOfMonth(int(dow))
        return Custom(dom, month, dow)

    def time_of_day(self) -> Optional[tuple[int, int]]:
        """Return ``(hour, minute)`` for occurrences of this expression.

        ``*`` means 0 and a list or range uses its smallest value.  ``None``
        is returned when either field names no valid value.
        """
        hour = _first_value(self.hour, 23)
        minute = _first_value(self.minute, 59)
        if hour is None or minute is None:
            return None
        return hour, minute


def _first_value(field: str, maximum: int) -> Optional[int]:
    if field == "*":
        return 0
    values = parse_field(field)
    if not values:
        return None
    value = min(values)
    if value < 0 or value > maximum:
        return None
    return value


def parse_time(value: str) -> Optional[tuple[int, int]]:
    """Parse ``"HH:MM"`` into ``(hour, minute)``."""
    try:
        hour_str, minute_str = value.split(":")
        return int(hour_str), int(minute_str)
    except (AttributeError, ValueError):
        return None


def generate_cron(
    preset: str, time: str, reference_date: datetime | str
) -> Optional[str]:
    """Build the cron string for ``preset`` at ``time`` (``"HH:MM"``).

    Weekly style presets take their weekday, and ``monthly`` its day of
    month, from ``reference_date``.  Unknown presets and unparseable input
    give ``None``.
    """
    try:
        preset = RecurrencePreset(preset)
    except ValueError:
        return None
    if preset == RecurrencePreset.Custom:
        return None
    parsed = parse_time(time)
    if parsed is None:
        return None
    hour, minute = parsed
    if isinstance(reference_date, str):
        try:
            reference_date = parse_datetime(reference_date)
        except ValueError:
            return None
    dow = cron_weekday(reference_date)
    dom = reference_date.day

    if preset == RecurrencePreset.Daily:
        return f"{minute} {hour} * * *"
    if preset in (RecurrencePreset.Weekly, RecurrencePreset.Biweekly):
        return f"{minute} {hour} * * {dow}"
    if preset == RecurrencePreset.Weekdays:
        return f"{minute} {hour} * * 1-5"
    if preset == RecurrencePreset.Monthly:
        return f"{minute} {hour} {dom} * *"
    if preset == RecurrencePreset.FirstWeekday:
        return f"{minute} {hour} 1-7 * {dow}"
    return f"{minute} {hour} * * {dow}L"


def describe_cron(cron: Optional[str], formatter: Optional[CronFormatter] = None) -> str:
    """Return English text for ``cron``, or ``cron`` itself if unavailable."""
    if not cron:
        return ""
    if formatter is None:
        return cron
    try:
        return formatter(cron)
    except Exception:
        logger.debug("Could not describe cron expression %r", cron, exc_info=True)
        return cron


def create_rule(
    preset: str,
    time: str,
    reference_date: datetime | str,
    custom_cron: Optional[str] = None,
    formatter: Optional[CronFormatter] = None,
) -> RecurrenceRule:
    if preset == RecurrencePreset.Custom and custom_cron:
        cron = custom_cron.strip()
    else:
        cron = generate_cron(preset, time, reference_date)
    try:
        known = RecurrencePreset(preset)
    except ValueError:
        known = None
    return RecurrenceRule(
        cron=cron,
        preset=known.value if known else str(preset),
        human_readable=describe_cron(cron, formatter),
        interval=PRESETS[known].interval if known else 1,
        start_date=get_now(),
    )


def get_occurrences(
    rule: Optional[RecurrenceRule], start: datetime, end: datetime
) -> List[datetime]:
    """Return the due times of ``rule`` on every day from ``start`` to ``end``.

    Both bounds are widened to whole days.  With an interval above one only
    every Nth matching day is kept, counting from the first match inside the
    window.
    """
    if rule is None:
        return []
    expr = CronExpression.parse(rule.cron)
    if expr is None:
        return []
    time_of_day = expr.time_of_day()
    if time_of_day is None:
        return []
    hour, minute = time_of_day
    schedule = expr.schedule()
    interval = rule.interval or 1

    occurrences: List[datetime] = []
    current = start_of_day(ensure_tz(start))
    last = end_of_day(ensure_tz(end))
    matched = 0
    while current <= last:
        if schedule.matches(current):
            if interval <= 1 or matched % interval == 0:
                occurrences.append(current.replace(hour=hour, minute=minute))
            matched += 1
        current += timedelta(days=1)
    return occurrences


def preview_occurrences(
    rule: Optional[RecurrenceRule],
    count: int = DEFAULT_PREVIEW_COUNT,
    now: Optional[datetime] = None,
) -> List[datetime]:
    if now is None:
        now = get_now()
    return get_occurrences(rule, now, add_months(now, PREVIEW_MONTHS))[:count]
