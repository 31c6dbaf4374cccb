"""
Floor Analytics - Clock

Wall-clock access for the engine. Services take a clock object instead of
calling ``datetime.now()`` directly so tests can pin time.
"""

from datetime import datetime, timezone


class SystemClock:
    """Clock backed by the system time, always returning UTC-aware datetimes."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
