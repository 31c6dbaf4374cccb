"""
Floor Analytics - Shift Calculator

This module maps instants onto the plant's fixed 8-hour shift table:

- Shift 1: 06:00-14:00
- Shift 2: 14:00-22:00
- Shift 3: 22:00-06:00 (crosses midnight)

Boundaries are evaluated in plant-local wall time (``SHIFT_TIMEZONE``); the
returned window bounds are UTC-aware so all downstream arithmetic is done on
absolute instants. Naive inputs are read as plant-local wall time.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Tuple
from zoneinfo import ZoneInfo

from floor_analytics.utils.exceptions import ValidationError


SHIFT_START_HOURS = {1: 6, 2: 14, 3: 22}
SHIFT_LENGTH = timedelta(hours=8)

SHIFT_LABELS = {
    1: "Shift 1 (06-14)",
    2: "Shift 2 (14-22)",
    3: "Shift 3 (22-06)",
}


@dataclass(frozen=True)
class ShiftWindow:
    """A single resolved shift: number, UTC bounds and the local start date."""

    shift_number: int
    start: datetime
    end: datetime
    shift_date: date

    @property
    def shift_id(self) -> str:
        return f"shift-{self.shift_number}-{self.shift_date.isoformat()}"

    @property
    def label(self) -> str:
        return SHIFT_LABELS[self.shift_number]

    @property
    def duration_seconds(self) -> float:
        return (self.end - self.start).total_seconds()

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shift": self.shift_number,
            "shift_id": self.shift_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }


class ShiftResolver:
    """Resolves timestamps to shifts for one plant time zone."""

    def __init__(self, timezone_name: str = "UTC"):
        self.timezone_name = timezone_name
        self.tz: tzinfo = timezone.utc if timezone_name.upper() == "UTC" else ZoneInfo(timezone_name)

    def localize(self, instant: datetime) -> datetime:
        """Return ``instant`` as an aware datetime in plant-local time."""
        if instant.tzinfo is None:
            return instant.replace(tzinfo=self.tz)
        return instant.astimezone(self.tz)

    def to_utc(self, instant: datetime) -> datetime:
        return self.localize(instant).astimezone(timezone.utc)

    def _local_instant(self, day: date, hour: int) -> datetime:
        return datetime.combine(day, time(hour), tzinfo=self.tz).astimezone(timezone.utc)

    def shift_number(self, instant: datetime) -> int:
        hour = self.localize(instant).hour
        if 6 <= hour < 14:
            return 1
        if 14 <= hour < 22:
            return 2
        return 3

    def window_for(self, shift_number: int, day: date) -> ShiftWindow:
        """Window of ``shift_number`` that starts on local calendar date ``day``."""
        if shift_number not in SHIFT_START_HOURS:
            raise ValidationError(
                f"Invalid shift number: {shift_number}. Must be 1, 2, or 3.",
                {"shift_number": shift_number}
            )

        start = self._local_instant(day, SHIFT_START_HOURS[shift_number])
        if shift_number == 3:
            end = self._local_instant(day + timedelta(days=1), 6)
        else:
            end = self._local_instant(day, SHIFT_START_HOURS[shift_number] + 8)
        return ShiftWindow(shift_number=shift_number, start=start, end=end, shift_date=day)

    def resolve(self, instant: datetime) -> ShiftWindow:
        """Window enclosing ``instant``."""
        local = self.localize(instant)
        number = self.shift_number(local)
        day = local.date()
        if number == 3 and local.hour < 6:
            day -= timedelta(days=1)
        return self.window_for(number, day)

    def shift_id(self, shift_number: int, instant: datetime) -> str:
        """Stable id ``shift-{n}-{YYYY-MM-DD}`` dated by the day the shift started."""
        local = self.localize(instant)
        day = local.date()
        if shift_number == 3 and local.hour < 6:
            day -= timedelta(days=1)
        return f"shift-{shift_number}-{day.isoformat()}"

    def previous(self, window: ShiftWindow) -> ShiftWindow:
        if window.shift_number == 1:
            return self.window_for(3, window.shift_date - timedelta(days=1))
        return self.window_for(window.shift_number - 1, window.shift_date)

    def split_by_shift(self, start: datetime, end: datetime) -> List[Tuple[ShiftWindow, datetime, datetime]]:
        """Cut ``[start, end)`` at shift boundaries."""
        segments = []
        cursor = self.to_utc(start)
        stop = self.to_utc(end)
        while cursor < stop:
            window = self.resolve(cursor)
            segment_end = min(window.end, stop)
            segments.append((window, cursor, segment_end))
            cursor = segment_end
        return segments

    def day_start(self, instant: datetime, days_back: int = 0) -> datetime:
        """Local midnight of the day containing ``instant`` (minus ``days_back`` days), in UTC."""
        day = self.localize(instant).date() - timedelta(days=days_back)
        return self._local_instant(day, 0)

    def month_start(self, instant: datetime) -> datetime:
        day = self.localize(instant).date().replace(day=1)
        return self._local_instant(day, 0)
