"""
Shared fixtures: a pinned clock and an in-memory telemetry store.

The fake store implements the same async methods as ``TelemetryStore`` over
plain lists and dicts, with the same filtering and ordering rules as the SQL.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from floor_analytics.config import settings
from floor_analytics.services.telemetry_store import MACHINE_COLUMNS, ORDER_COLUMNS, _set_clause
from floor_analytics.utils.shift_calculator import ShiftResolver


def utc(year, month, day, hour=0, minute=0, second=0):
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


def _overlaps(start, end, window_start, window_end) -> bool:
    return start < window_end and (end is None or end > window_start)


def _avg(rows, key):
    values = [row[key] for row in rows if row.get(key) is not None]
    return sum(values) / len(values) if values else None


class FakeTelemetryStore:
    """In-memory double of ``TelemetryStore``."""

    def __init__(self):
        self.machines: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.status_history: List[Dict[str, Any]] = []
        self.aggregations: List[Dict[str, Any]] = []
        self.length_events: List[Dict[str, Any]] = []
        self.oee_calculations: List[Dict[str, Any]] = []
        self.quality_records: List[Dict[str, Any]] = []
        self.alarms: List[Dict[str, Any]] = []
        self.analytics_cache: List[Dict[str, Any]] = []
        self.failures: Dict[str, Exception] = {}
        self.calls: List[str] = []

    # Test helpers
    def fail(self, method: str, error: Optional[Exception] = None) -> None:
        self.failures[method] = error or RuntimeError(f"{method} failed")

    def recover(self, method: str) -> None:
        self.failures.pop(method, None)

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if method in self.failures:
            raise self.failures[method]

    def add_machine(self, machine_id: str, area: str = "drawing", status: str = "running", **fields):
        row = {
            "id": machine_id,
            "name": machine_id.upper(),
            "area": area,
            "status": status,
            "line_speed": 0.0,
            "target_speed": 0.0,
            "produced_length": 0.0,
            "produced_length_ok": None,
            "produced_length_ng": None,
            "target_length": None,
            "production_order_id": None,
            "length_counter": None,
            "length_counter_last": None,
            "current_shift_id": None,
            "oee": 0.0,
            "availability": 0.0,
            "performance": 0.0,
            "quality": 0.0,
        }
        row.update(fields)
        self.machines[machine_id] = row
        return row

    def add_order(self, order_id: str, machine_id: str, status: str = "running", **fields):
        row = {
            "id": order_id,
            "name": order_id.upper(),
            "machine_id": machine_id,
            "status": status,
            "target_length": 0.0,
            "produced_length": 0.0,
            "start_time": None,
            "end_time": None,
        }
        row.update(fields)
        self.orders[order_id] = row
        return row

    def add_interval(self, machine_id: str, status: str, start: datetime, end: Optional[datetime] = None):
        self.status_history.append({
            "machine_id": machine_id,
            "status": status,
            "previous_status": None,
            "status_start_time": start,
            "status_end_time": end,
            "duration_seconds": (end - start).total_seconds() if end else None,
        })

    def add_oee(self, machine_id: str, at: datetime, availability: float, performance: float,
                quality: float, oee: Optional[float] = None, actual_speed=None, target_speed=None):
        self.oee_calculations.append({
            "machine_id": machine_id,
            "calculation_timestamp": at,
            "availability": availability,
            "performance": performance,
            "quality": quality,
            "oee": oee if oee is not None else availability * performance * quality / 10000,
            "actual_speed": actual_speed,
            "target_speed": target_speed,
        })

    def add_quality(self, machine_id: str, start: datetime, ok: float, ng: float,
                    end: Optional[datetime] = None, production_order_id: Optional[str] = None):
        self.quality_records.append({
            "machine_id": machine_id,
            "production_order_id": production_order_id,
            "calculation_period_start": start,
            "calculation_period_end": end,
            "produced_length_ok": ok,
            "produced_length_ng": ng,
            "total_produced_length": ok + ng,
        })

    def open_interval(self, machine_id: str) -> Optional[Dict[str, Any]]:
        for entry in self.status_history:
            if entry["machine_id"] == machine_id and entry["status_end_time"] is None:
                return entry
        return None

    # Machines and orders
    async def list_machines(self, area: Optional[str] = None) -> List[Dict[str, Any]]:
        self._enter("list_machines")
        rows = [dict(row) for row in self.machines.values()
                if not area or area == "all" or row["area"] == area]
        return sorted(rows, key=lambda row: (row["area"], row["id"]))

    async def get_machine(self, machine_id: str) -> Optional[Dict[str, Any]]:
        self._enter("get_machine")
        row = self.machines.get(machine_id)
        return dict(row) if row else None

    async def list_machine_statuses(self) -> List[Dict[str, Any]]:
        self._enter("list_machine_statuses")
        return [{"id": row["id"], "status": row["status"]} for row in self.machines.values()]

    async def update_machine(self, machine_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._enter("update_machine")
        if fields:
            _set_clause(fields, MACHINE_COLUMNS)
        row = self.machines.get(machine_id)
        if row is None:
            return None
        row.update(fields)
        return dict(row)

    async def update_production_order(self, order_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self._enter("update_production_order")
        if fields:
            _set_clause(fields, ORDER_COLUMNS)
        row = self.orders.get(order_id)
        if row is None:
            return None
        row.update(fields)
        return dict(row)

    async def get_active_order(self, machine_id: str, window_start: datetime, window_end: datetime) -> Optional[str]:
        self._enter("get_active_order")
        candidates = [
            order for order in self.orders.values()
            if order["machine_id"] == machine_id
            and order["status"] == "running"
            and order["start_time"] is not None
            and order["start_time"] <= window_end
            and (order["end_time"] is None or order["end_time"] >= window_start)
        ]
        candidates.sort(key=lambda order: order["start_time"], reverse=True)
        return candidates[0]["id"] if candidates else None

    async def increment_order_length(self, order_id: str, delta: float) -> None:
        self._enter("increment_order_length")
        order = self.orders.get(order_id)
        if order is not None:
            order["produced_length"] = (order.get("produced_length") or 0) + delta

    # Status history
    async def fetch_status_history(self, machine_ids, start, end) -> List[Dict[str, Any]]:
        self._enter("fetch_status_history")
        rows = [
            dict(entry) for entry in self.status_history
            if entry["machine_id"] in machine_ids
            and _overlaps(entry["status_start_time"], entry["status_end_time"], start, end)
        ]
        return sorted(rows, key=lambda entry: entry["status_start_time"])

    async def record_status_change(self, machine_id, new_status, previous_status, at) -> None:
        self._enter("record_status_change")
        open_entry = self.open_interval(machine_id)
        if open_entry is not None:
            open_entry["status_end_time"] = at
            open_entry["duration_seconds"] = (at - open_entry["status_start_time"]).total_seconds()
        self.status_history.append({
            "machine_id": machine_id,
            "status": new_status,
            "previous_status": previous_status,
            "status_start_time": at,
            "status_end_time": None,
            "duration_seconds": None,
        })

    # Availability aggregations
    async def insert_availability_aggregation(self, row: Dict[str, Any]) -> None:
        self._enter("insert_availability_aggregation")
        durations = row.get("durations") or {}
        stored = {key: value for key, value in row.items() if key not in ("durations", "from_aggregation")}
        for status in ("running", "idle", "warning", "error", "stopped", "setup"):
            stored[f"duration_{status}"] = durations.get(status, 0.0)
        self.aggregations.append(stored)

    def _aggregations_for(self, machine_id, calculation_type):
        return [
            row for row in self.aggregations
            if row["machine_id"] == machine_id and row["calculation_type"] == calculation_type
        ]

    async def latest_availability(self, machine_id, calculation_type, window_start=None, window_end=None):
        self._enter("latest_availability")
        rows = self._aggregations_for(machine_id, calculation_type)
        if window_start is not None and window_end is not None:
            rows = [row for row in rows
                    if row["window_end"] >= window_start and row["window_start"] <= window_end]
        if not rows:
            return None
        return dict(sorted(rows, key=lambda row: row["calculated_at"])[-1])

    async def previous_shift_availability(self, machine_id, before) -> Optional[float]:
        self._enter("previous_shift_availability")
        rows = [row for row in self._aggregations_for(machine_id, "shift") if row["window_end"] <= before]
        if not rows:
            return None
        latest = sorted(rows, key=lambda row: (row["window_end"], row["calculated_at"]))[-1]
        return float(latest["availability_percentage"])

    async def availability_history(self, machine_id, start, end, calculation_type):
        self._enter("availability_history")
        rows = [
            dict(row) for row in self._aggregations_for(machine_id, calculation_type)
            if row["window_end"] >= start and row["window_start"] <= end
        ]
        return sorted(rows, key=lambda row: (row["window_end"], row["calculated_at"]), reverse=True)

    async def sync_status(self) -> List[Dict[str, Any]]:
        self._enter("sync_status")
        rows = []
        for machine in sorted(self.machines.values(), key=lambda row: (row["area"], row["id"])):
            aggregations = sorted(
                self._aggregations_for(machine["id"], "shift"),
                key=lambda row: (row["window_end"], row["calculated_at"])
            )
            latest = aggregations[-1] if aggregations else {}
            order = self.orders.get(machine.get("production_order_id") or "")
            rows.append({
                "machine_id": machine["id"],
                "machine_name": machine.get("name"),
                "area": machine.get("area"),
                "current_status": machine.get("status"),
                "production_order_id": machine.get("production_order_id"),
                "production_order_name": order["name"] if order else None,
                "availability_percentage": latest.get("availability_percentage"),
                "running_time_seconds": latest.get("running_time_seconds"),
                "downtime_seconds": latest.get("downtime_seconds"),
                "window_start": latest.get("window_start"),
                "window_end": latest.get("window_end"),
                "calculated_at": latest.get("calculated_at"),
            })
        return rows

    # Production length ledger
    async def insert_length_event(self, event: Dict[str, Any]) -> None:
        self._enter("insert_length_event")
        self.length_events.append(dict(event))

    async def length_event_total(self, machine_ids, start, end) -> float:
        self._enter("length_event_total")
        return float(sum(
            event["delta_length"] for event in self.length_events
            if event["machine_id"] in machine_ids and start <= event["event_time"] <= end
        ))

    # OEE calculations
    async def insert_oee_calculation(self, row: Dict[str, Any]) -> None:
        self._enter("insert_oee_calculation")
        self.oee_calculations.append(dict(row))

    async def oee_trend(self, machine_id, since) -> List[Dict[str, Any]]:
        self._enter("oee_trend")
        rows = [dict(row) for row in self.oee_calculations
                if row["machine_id"] == machine_id and row["calculation_timestamp"] >= since]
        return sorted(rows, key=lambda row: row["calculation_timestamp"])

    def _oee_rows(self, machine_ids, start, end):
        return [row for row in self.oee_calculations
                if row["machine_id"] in machine_ids and start <= row["calculation_timestamp"] <= end]

    async def historical_oee_averages(self, machine_ids, start, end) -> List[Dict[str, Any]]:
        self._enter("historical_oee_averages")
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for row in self._oee_rows(machine_ids, start, end):
            grouped.setdefault(row["machine_id"], []).append(row)
        return [
            {
                "machine_id": machine_id,
                **{key: _avg(rows, key) for key in
                   ("availability", "performance", "quality", "oee", "actual_speed", "target_speed")},
            }
            for machine_id, rows in grouped.items()
        ]

    async def oee_trend_buckets(self, machine_ids, start, end) -> List[Dict[str, Any]]:
        self._enter("oee_trend_buckets")
        grouped: Dict[datetime, List[Dict[str, Any]]] = {}
        for row in self._oee_rows(machine_ids, start, end):
            at = row["calculation_timestamp"]
            bucket = at.replace(minute=at.minute - at.minute % 10, second=0, microsecond=0)
            grouped.setdefault(bucket, []).append(row)
        return [
            {"bucket": bucket, **{key: _avg(rows, key) for key in ("availability", "performance", "quality", "oee")}}
            for bucket, rows in sorted(grouped.items())
        ]

    # Quality
    async def quality_totals(self, machine_id, production_order_id, start, end) -> Dict[str, float]:
        self._enter("quality_totals")
        rows = [
            row for row in self.quality_records
            if row["machine_id"] == machine_id
            and row["production_order_id"] == production_order_id
            and row["calculation_period_start"] >= start
            and (row["calculation_period_end"] is None or row["calculation_period_end"] <= end)
        ]
        return {
            "ok": float(sum(row["produced_length_ok"] for row in rows)),
            "ng": float(sum(row["produced_length_ng"] for row in rows)),
            "total": float(sum(row["total_produced_length"] for row in rows)),
        }

    def _quality_rows(self, machine_ids, start, end):
        return [
            row for row in self.quality_records
            if row["machine_id"] in machine_ids
            and _overlaps(row["calculation_period_start"], row["calculation_period_end"], start, end)
        ]

    async def historical_quality(self, machine_ids, start, end) -> List[Dict[str, Any]]:
        self._enter("historical_quality")
        grouped: Dict[str, Dict[str, Any]] = {}
        for row in self._quality_rows(machine_ids, start, end):
            entry = grouped.setdefault(row["machine_id"], {
                "machine_id": row["machine_id"], "produced_length_ok": 0.0, "produced_length_ng": 0.0
            })
            entry["produced_length_ok"] += row["produced_length_ok"]
            entry["produced_length_ng"] += row["produced_length_ng"]
        return list(grouped.values())

    async def output_totals(self, machine_ids, start, end) -> Dict[str, float]:
        self._enter("output_totals")
        rows = self._quality_rows(machine_ids, start, end)
        return {
            "ok": float(sum(row["produced_length_ok"] for row in rows)),
            "ng": float(sum(row["produced_length_ng"] for row in rows)),
        }

    async def ng_trend(self, machine_ids, start, end) -> List[Dict[str, Any]]:
        self._enter("ng_trend")
        grouped: Dict[datetime, Dict[str, float]] = {}
        for row in self.quality_records:
            at = row["calculation_period_start"]
            if row["machine_id"] not in machine_ids or not start <= at <= end:
                continue
            bucket = at.replace(minute=0, second=0, microsecond=0)
            entry = grouped.setdefault(bucket, {"total_ok": 0.0, "total_ng": 0.0})
            entry["total_ok"] += row["produced_length_ok"]
            entry["total_ng"] += row["produced_length_ng"]
        return [{"bucket": bucket, **totals} for bucket, totals in sorted(grouped.items())]

    async def planned_vs_actual(self, machine_ids, start, end) -> Dict[str, float]:
        self._enter("planned_vs_actual")
        rows = [
            order for order in self.orders.values()
            if order["machine_id"] in machine_ids
            and order["start_time"] is not None
            and _overlaps(order["start_time"], order["end_time"], start, end)
        ]
        return {
            "planned": float(sum(order.get("target_length") or 0 for order in rows)),
            "actual": float(sum(order.get("produced_length") or 0 for order in rows)),
        }

    # Alarms and orders
    async def alarms_since(self, machine_ids, start) -> List[Dict[str, Any]]:
        self._enter("alarms_since")
        return [dict(alarm) for alarm in self.alarms
                if alarm["machine_id"] in machine_ids and alarm["timestamp"] >= start]

    async def orders_for(self, machine_ids) -> List[Dict[str, Any]]:
        self._enter("orders_for")
        return [
            {key: order[key] for key in ("id", "name", "machine_id", "status")}
            for order in self.orders.values()
            if order["machine_id"] in machine_ids
        ]

    # Analytics cache
    async def save_analytics_cache(self, scope, payload, computed_at) -> None:
        self._enter("save_analytics_cache")
        self.analytics_cache.append({
            "scope_type": scope["range"],
            "scope_start": scope["start"],
            "scope_end": scope["end"],
            "scope_area": scope.get("area") or "all",
            "scope_machine_id": scope.get("machine_id") or "",
            "payload": json.dumps(payload),
            "computed_at": computed_at,
        })

    async def analytics_history(self, scope, limit: int = 20) -> List[Dict[str, Any]]:
        self._enter("analytics_history")
        rows = [
            row for row in self.analytics_cache
            if row["scope_type"] == scope["range"]
            and row["scope_start"] == scope["start"]
            and row["scope_end"] == scope["end"]
            and row["scope_area"] == (scope.get("area") or "all")
            and row["scope_machine_id"] == (scope.get("machine_id") or "")
        ]
        rows.sort(key=lambda row: row["computed_at"], reverse=True)
        return [{"payload": json.loads(row["payload"]), "computed_at": row["computed_at"]} for row in rows[:limit]]

    async def latest_analytics_cache(self, scope) -> Optional[Dict[str, Any]]:
        rows = await self.analytics_history(scope, limit=1)
        return rows[0] if rows else None


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    monkeypatch.setattr(settings, "SYNC_RETRY_DELAY", 0.0)
    monkeypatch.setattr(settings, "SHIFT_TIMEZONE", "UTC")


@pytest.fixture
def store():
    return FakeTelemetryStore()


@pytest.fixture
def clock():
    return FixedClock(utc(2025, 3, 10, 10, 0))


@pytest.fixture
def resolver():
    return ShiftResolver("UTC")
