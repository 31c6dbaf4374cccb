"""
Floor Analytics - Machine Status Cache

This module keeps the last-known status of every machine in memory so repeated
telemetry carrying an unchanged status does not write a new status interval or
re-derive availability. The relational store stays authoritative; the cache can
always be rebuilt from it.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

import structlog

from floor_analytics.utils.clock import SystemClock

logger = structlog.get_logger()


class MachineStatusCache:
    """Last-known status per machine, owned by the application container."""

    def __init__(self, clock=None):
        self._clock = clock or SystemClock()
        self._entries: Dict[str, Tuple[str, datetime]] = {}

    def _now(self) -> datetime:
        return self._clock.now()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, machine_id: str) -> Optional[str]:
        entry = self._entries.get(machine_id)
        return entry[0] if entry else None

    def has_changed(self, machine_id: str, new_status: str) -> bool:
        """True when ``new_status`` differs from the cached one or nothing is cached."""
        cached = self.get(machine_id)
        if cached is None:
            return True
        return cached != new_status

    def update(self, machine_id: str, status: str) -> None:
        self._entries[machine_id] = (status, self._now())

    def initialize(self, rows: Iterable[Dict[str, Any]]) -> int:
        """Bulk load ``{"id", "status"}`` rows, replacing current entries."""
        now = self._now()
        self._entries = {
            row["id"]: (row["status"], now)
            for row in rows
            if row.get("status")
        }
        return len(self._entries)

    async def load_from_store(self, store) -> int:
        """Populate from the machine registry; on failure the cache stays empty."""
        try:
            count = self.initialize(await store.list_machine_statuses())
            logger.info("Machine status cache initialized", machines=count)
            return count
        except Exception as e:
            self._entries = {}
            logger.error("Failed to initialize machine status cache", error=str(e))
            return 0

    def clear(self, machine_id: Optional[str] = None) -> None:
        if machine_id is None:
            self._entries.clear()
            logger.info("Machine status cache cleared")
        else:
            self._entries.pop(machine_id, None)

    def stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "machines": [
                {"machine_id": machine_id, "status": status, "last_updated": updated.isoformat()}
                for machine_id, (status, updated) in self._entries.items()
            ],
        }
