"""
Floor Analytics - Production Length Service

This module turns the monotonically increasing length counter reported by a
machine into bounded per-update deltas, detects counter resets, accumulates the
produced length within the current shift and appends every accepted update to
the production length ledger.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from floor_analytics.models.telemetry import LengthCounterResult, MachinePatch, MachineStatus
from floor_analytics.utils.shift_calculator import ShiftResolver

logger = structlog.get_logger()


@dataclass(frozen=True)
class CounterDelta:
    delta: float
    reset_detected: bool


def _to_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def compute_counter_delta(incoming: float, last_counter: Optional[float]) -> CounterDelta:
    """
    Delta between two counter readings.

    A first observation (no previous reading) yields zero. A reading lower than
    the previous one is a counter reset: the new value is taken as the count
    since the reset.
    """
    if last_counter is None:
        return CounterDelta(delta=0.0, reset_detected=False)

    delta = incoming - last_counter
    if delta < 0:
        return CounterDelta(delta=incoming, reset_detected=True)
    return CounterDelta(delta=delta, reset_detected=False)


class ProductionLengthService:
    """Length counter ingest and shift-scoped produced length."""

    def __init__(self, store, shift_resolver: ShiftResolver):
        self.store = store
        self.shift_resolver = shift_resolver

    async def apply_length_counter_update(
        self,
        machine_row: Dict[str, Any],
        update: MachinePatch,
        event_time: datetime,
    ) -> LengthCounterResult:
        """
        Apply a counter reading to a machine.

        The returned ``machine_fields`` are the registry columns the caller must
        write back. Ledger and order writes never fail the update; errors are
        logged.
        """
        incoming = _to_number(update.length_counter)
        if incoming is None:
            return LengthCounterResult(applied=False)

        machine_id = machine_row["id"]
        effective_status = (update.status or machine_row.get("status") or "").lower() or None
        effective_order_id = update.production_order_id or machine_row.get("production_order_id")

        window = self.shift_resolver.resolve(event_time)
        shift_id = window.shift_id

        last_counter = _to_number(machine_row.get("length_counter_last"))
        if last_counter is None:
            last_counter = _to_number(machine_row.get("length_counter"))

        counter = compute_counter_delta(incoming, last_counter)
        is_running = effective_status == MachineStatus.RUNNING.value
        credited = max(0.0, counter.delta) if is_running else 0.0

        shift_changed = machine_row.get("current_shift_id") != shift_id
        base_length = 0.0 if shift_changed else float(machine_row.get("produced_length") or 0)
        produced_length = base_length + credited

        if counter.reset_detected:
            logger.info("Length counter reset detected", machine_id=machine_id,
                        last_counter=last_counter, incoming=incoming)

        try:
            await self.store.insert_length_event({
                "machine_id": machine_id,
                "area": machine_row.get("area"),
                "production_order_id": effective_order_id,
                "shift_id": shift_id,
                "shift_date": window.shift_date,
                "status": effective_status,
                "counter_value": incoming,
                "last_counter_value": last_counter,
                "delta_length": credited,
                "is_running": is_running,
                "reset_detected": counter.reset_detected,
                "event_time": event_time,
            })
        except Exception as e:
            logger.error("Failed to record production length event", error=str(e), machine_id=machine_id)

        if effective_order_id and credited > 0:
            try:
                await self.store.increment_order_length(effective_order_id, credited)
            except Exception as e:
                logger.error("Failed to update production order length", error=str(e),
                             machine_id=machine_id, production_order_id=effective_order_id)

        return LengthCounterResult(
            applied=True,
            delta_length=credited,
            shift_id=shift_id,
            reset_detected=counter.reset_detected,
            machine_fields={
                "length_counter": incoming,
                "length_counter_last": incoming,
                "length_counter_last_at": event_time,
                "produced_length": produced_length,
                "current_shift_id": shift_id,
                "current_shift_start": window.start,
                "current_shift_end": window.end,
            },
        )
