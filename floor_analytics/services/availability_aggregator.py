"""
Floor Analytics - Availability Aggregator

This module computes machine availability over a window from the status
interval log and persists point-in-time aggregation rows so dashboard reads
are a single indexed lookup instead of an interval scan.

Availability = running time / planned time x 100, where planned time is the
window length for a closed window and the elapsed part of the window while it
is still in progress.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from floor_analytics.config import settings
from floor_analytics.models.telemetry import (
    AvailabilityResult,
    CalculationType,
    DOWNTIME_STATUSES,
    MachineStatus,
)
from floor_analytics.utils.exceptions import AggregationError
from floor_analytics.utils.shift_calculator import ShiftResolver

logger = structlog.get_logger()


def clip_interval(
    entry: Dict[str, Any], start: datetime, end: datetime, now: datetime
) -> Optional[Tuple[datetime, datetime]]:
    """Clip a status interval to ``[start, end]``; open intervals run until ``now``."""
    entry_start = entry["status_start_time"]
    entry_end = entry.get("status_end_time") or min(end, now)
    clipped_start = max(entry_start, start)
    clipped_end = min(entry_end, end)
    if clipped_end <= clipped_start:
        return None
    return clipped_start, clipped_end


def summarize_status_durations(
    entries: Iterable[Dict[str, Any]], start: datetime, end: datetime, now: datetime
) -> Dict[str, Any]:
    """Seconds spent in each status inside the window."""
    durations = {MachineStatus.RUNNING.value: 0.0}
    durations.update({status: 0.0 for status in DOWNTIME_STATUSES})

    for entry in entries:
        clipped = clip_interval(entry, start, end, now)
        if clipped is None:
            continue
        status = (entry.get("status") or MachineStatus.IDLE.value).lower()
        durations[status] = durations.get(status, 0.0) + (clipped[1] - clipped[0]).total_seconds()

    running = durations[MachineStatus.RUNNING.value]
    downtime = sum(seconds for status, seconds in durations.items() if status != MachineStatus.RUNNING.value)
    return {"durations": durations, "running": running, "downtime": downtime}


def planned_seconds(start: datetime, end: datetime, now: datetime) -> float:
    """Window length, or only the elapsed part while the window is in progress."""
    effective_end = min(end, now)
    return max(0.0, (effective_end - start).total_seconds())


def availability_percentage(running_seconds: float, planned: float) -> float:
    if planned <= 0:
        return 0.0
    return max(0.0, min(100.0, running_seconds / planned * 100))


def row_to_result(row: Dict[str, Any]) -> AvailabilityResult:
    return AvailabilityResult(
        machine_id=row["machine_id"],
        calculation_type=row["calculation_type"],
        window_start=row["window_start"],
        window_end=row["window_end"],
        availability_percentage=max(0.0, min(100.0, float(row.get("availability_percentage") or 0))),
        running_time_seconds=float(row.get("running_time_seconds") or 0),
        downtime_seconds=float(row.get("downtime_seconds") or 0),
        durations={
            "running": float(row.get("duration_running") or 0),
            "idle": float(row.get("duration_idle") or 0),
            "warning": float(row.get("duration_warning") or 0),
            "error": float(row.get("duration_error") or 0),
            "stopped": float(row.get("duration_stopped") or 0),
            "setup": float(row.get("duration_setup") or 0),
        },
        calculated_at=row["calculated_at"],
        shift_id=row.get("shift_id"),
        production_order_id=row.get("production_order_id"),
        from_aggregation=True,
    )


class AvailabilityAggregator:
    """Availability computation, persistence and the fast read path."""

    def __init__(self, store, shift_resolver: ShiftResolver, clock):
        self.store = store
        self.shift_resolver = shift_resolver
        self.clock = clock

    def resolve_window(
        self, use_shift: Optional[bool] = None, window_minutes: Optional[int] = None
    ) -> Tuple[datetime, datetime, str, Optional[str]]:
        """
        Current aggregation window: the running shift or a rolling look-back.

        Without an explicit ``use_shift`` a given ``window_minutes`` selects the
        rolling window and its absence selects the shift.
        """
        if use_shift is None:
            use_shift = window_minutes is None
        now = self.clock.now()
        if use_shift:
            window = self.shift_resolver.resolve(now)
            return window.start, window.end, CalculationType.SHIFT.value, window.shift_id

        minutes = window_minutes or settings.ROLLING_WINDOW_MINUTES
        return now - timedelta(minutes=minutes), now, CalculationType.ROLLING_WINDOW.value, None

    async def compute_availability(
        self,
        machine_id: str,
        window_start: datetime,
        window_end: datetime,
        calculation_type: str = CalculationType.ROLLING_WINDOW.value,
        production_order_id: Optional[str] = None,
        shift_id: Optional[str] = None,
    ) -> AvailabilityResult:
        """Scan the status log and compute availability without storing it."""
        now = self.clock.now()
        history = await self.store.fetch_status_history([machine_id], window_start, window_end)
        summary = summarize_status_durations(history, window_start, window_end, now)
        planned = planned_seconds(window_start, window_end, now)

        return AvailabilityResult(
            machine_id=machine_id,
            calculation_type=calculation_type,
            window_start=window_start,
            window_end=window_end,
            availability_percentage=availability_percentage(summary["running"], planned),
            running_time_seconds=summary["running"],
            downtime_seconds=summary["downtime"],
            durations=summary["durations"],
            calculated_at=now,
            shift_id=shift_id,
            production_order_id=production_order_id,
            from_aggregation=False,
        )

    async def calculate_and_store(
        self,
        machine_id: str,
        window_start: datetime,
        window_end: datetime,
        calculation_type: str = CalculationType.ROLLING_WINDOW.value,
        production_order_id: Optional[str] = None,
        shift_id: Optional[str] = None,
    ) -> AvailabilityResult:
        """Compute availability and append it as a new aggregation row."""
        try:
            result = await self.compute_availability(
                machine_id, window_start, window_end, calculation_type,
                production_order_id, shift_id
            )
            await self.store.insert_availability_aggregation(result.model_dump())

            logger.debug(
                "Availability aggregation stored",
                machine_id=machine_id,
                calculation_type=calculation_type,
                availability=result.availability_percentage
            )
            return result.model_copy(update={"from_aggregation": True})

        except Exception as e:
            logger.error("Failed to calculate availability aggregation",
                         error=str(e), machine_id=machine_id)
            raise AggregationError(machine_id, details={"original_error": str(e)})

    async def get_latest_availability(
        self,
        machine_id: str,
        calculation_type: str = CalculationType.SHIFT.value,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> Optional[AvailabilityResult]:
        """Most recent stored aggregation; never recomputes."""
        try:
            row = await self.store.latest_availability(machine_id, calculation_type, window_start, window_end)
            return row_to_result(row) if row else None
        except Exception as e:
            logger.error("Failed to get latest availability", error=str(e), machine_id=machine_id)
            return None

    async def get_availability(
        self,
        machine_id: str,
        window_start: datetime,
        window_end: datetime,
        calculation_type: str = CalculationType.SHIFT.value,
    ) -> AvailabilityResult:
        """Stored aggregation covering the window, else an uncached computation."""
        latest = await self.get_latest_availability(machine_id, calculation_type, window_start, window_end)
        if latest is not None:
            return latest
        return await self.compute_availability(machine_id, window_start, window_end, calculation_type)

    async def ensure_availability_calculated(
        self,
        machine_id: str,
        use_shift: Optional[bool] = None,
        window_minutes: Optional[int] = None,
    ) -> AvailabilityResult:
        """Refresh the aggregation for the machine's current window."""
        window_start, window_end, calculation_type, shift_id = self.resolve_window(use_shift, window_minutes)

        production_order_id = None
        try:
            production_order_id = await self.store.get_active_order(machine_id, window_start, window_end)
        except Exception as e:
            logger.warning("Failed to resolve active production order", error=str(e), machine_id=machine_id)

        return await self.calculate_and_store(
            machine_id, window_start, window_end, calculation_type,
            production_order_id, shift_id
        )

    async def get_availability_history(
        self,
        machine_id: str,
        start_time: datetime,
        end_time: datetime,
        calculation_type: str = CalculationType.ROLLING_WINDOW.value,
    ) -> List[AvailabilityResult]:
        try:
            rows = await self.store.availability_history(machine_id, start_time, end_time, calculation_type)
            return [row_to_result(row) for row in rows]
        except Exception as e:
            logger.error("Failed to get availability history", error=str(e), machine_id=machine_id)
            return []
