"""
Recurrence patterns and next-trigger calculation for task reminders
"""
from datetime import datetime, date, time as dt_time, timedelta
from typing import Optional, FrozenSet
from enum import Enum
from dataclasses import dataclass
from zoneinfo import ZoneInfo
import logging
import re

logger = logging.getLogger(__name__)


class RecurrenceType(Enum):
    """Types of recurrence patterns"""
    ONCE = "once"
    EVERYDAY = "everyday"
    WEEKLY = "weekly"


class Weekday(Enum):
    """Days of the week"""
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


_WEEKDAY_ALIASES = {
    "mon": Weekday.MONDAY, "monday": Weekday.MONDAY,
    "tue": Weekday.TUESDAY, "tues": Weekday.TUESDAY, "tuesday": Weekday.TUESDAY,
    "wed": Weekday.WEDNESDAY, "weds": Weekday.WEDNESDAY, "wednesday": Weekday.WEDNESDAY,
    "thu": Weekday.THURSDAY, "thur": Weekday.THURSDAY, "thurs": Weekday.THURSDAY, "thursday": Weekday.THURSDAY,
    "fri": Weekday.FRIDAY, "friday": Weekday.FRIDAY,
    "sat": Weekday.SATURDAY, "saturday": Weekday.SATURDAY,
    "sun": Weekday.SUNDAY, "sunday": Weekday.SUNDAY,
}

_SHORT_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])\s*$")

# Weekday scan covers today plus a full week so the same weekday next week is reachable
LOOKAHEAD_DAYS = 7


@dataclass(frozen=True)
class RecurrencePattern:
    """Parsed task recurrence: Once, Everyday or an explicit set of weekdays"""
    type: RecurrenceType
    weekdays: FrozenSet[Weekday] = frozenset()

    @property
    def is_recurring(self) -> bool:
        return self.type != RecurrenceType.ONCE

    def matches(self, day: date) -> bool:
        if self.type != RecurrenceType.WEEKLY:
            return True
        return Weekday(day.weekday()) in self.weekdays

    def to_string(self) -> str:
        if self.type == RecurrenceType.ONCE:
            return "Once"
        if self.type == RecurrenceType.EVERYDAY:
            return "Everyday"
        return ",".join(_SHORT_NAMES[d.value] for d in sorted(self.weekdays, key=lambda d: d.value))

    @classmethod
    def parse(cls, raw: Optional[str]) -> "RecurrencePattern":
        """Parse 'Once', 'Everyday' or a weekday list such as 'Mon,Wed,Fri'.

        Raises ValueError for empty or unknown values.
        """
        if raw is None or not str(raw).strip():
            raise ValueError("recurrence pattern is empty")
        text = str(raw).strip()
        lowered = text.lower()
        if lowered == "once":
            return cls(type=RecurrenceType.ONCE)
        if lowered in ("everyday", "every day", "daily"):
            return cls(type=RecurrenceType.EVERYDAY)

        days = set()
        for token in re.split(r"[,\s]+", lowered):
            if not token:
                continue
            day = _WEEKDAY_ALIASES.get(token)
            if day is None:
                raise ValueError(f"unknown weekday '{token}' in pattern '{text}'")
            days.add(day)
        if not days:
            raise ValueError(f"no weekdays in pattern '{text}'")
        if len(days) == 7:
            return cls(type=RecurrenceType.EVERYDAY)
        return cls(type=RecurrenceType.WEEKLY, weekdays=frozenset(days))


def parse_time_of_day(raw: Optional[str]) -> dt_time:
    """Parse a 12-hour wall-clock string like '7:00 AM' into a time.

    Raises ValueError when the value is not a valid 12-hour time.
    """
    match = _TIME_RE.match(raw or "")
    if not match:
        raise ValueError(f"invalid time of day '{raw}'")
    hours, minutes, period = int(match.group(1)), int(match.group(2)), match.group(3).upper()
    if not 1 <= hours <= 12 or not 0 <= minutes <= 59:
        raise ValueError(f"invalid time of day '{raw}'")
    if period == "PM" and hours != 12:
        hours += 12
    elif period == "AM" and hours == 12:
        hours = 0
    return dt_time(hour=hours, minute=minutes)


def parse_pattern(raw: Optional[str]) -> RecurrencePattern:
    return RecurrencePattern.parse(raw)


class RecurrenceCalculator:
    """Calculates reminder trigger instants for task recurrence patterns"""

    @staticmethod
    def compute_next_trigger(
        time_of_day: str,
        pattern: str,
        lead_minutes: int,
        reference: datetime,
        tz: ZoneInfo,
    ) -> Optional[datetime]:
        """Return the next reminder instant strictly after ``reference``.

        The nominal event happens at ``time_of_day`` on a day allowed by
        ``pattern``; the reminder fires ``lead_minutes`` before it. Returns
        None when the inputs cannot be turned into a trigger.
        """
        try:
            wall_clock = parse_time_of_day(time_of_day)
            recurrence = parse_pattern(pattern)
        except ValueError as e:
            logger.warning(f"⚠️ [Recurrence] Not computable: {e}")
            return None

        event = RecurrenceCalculator.next_event_instant(wall_clock, recurrence, lead_minutes, reference, tz)
        if event is None:
            logger.warning(
                f"⚠️ [Recurrence] No matching day within {LOOKAHEAD_DAYS} days "
                f"for pattern={pattern!r} time={time_of_day!r}"
            )
            return None
        return event - timedelta(minutes=lead_minutes)

    @staticmethod
    def next_event_instant(
        wall_clock: dt_time,
        recurrence: RecurrencePattern,
        lead_minutes: int,
        reference: datetime,
        tz: ZoneInfo,
    ) -> Optional[datetime]:
        """Nominal event instant whose reminder (event - lead) is after ``reference``."""
        lead = timedelta(minutes=lead_minutes)
        today = reference.astimezone(tz).date()
        for day_offset in range(LOOKAHEAD_DAYS + 1):
            day = today + timedelta(days=day_offset)
            if not recurrence.matches(day):
                continue
            candidate = datetime.combine(day, wall_clock, tzinfo=tz)
            if candidate - lead > reference:
                return candidate
        return None


def compute_next_trigger(
    time_of_day: str,
    pattern: str,
    lead_minutes: int,
    reference: datetime,
    tz: ZoneInfo,
) -> Optional[datetime]:
    return RecurrenceCalculator.compute_next_trigger(time_of_day, pattern, lead_minutes, reference, tz)
