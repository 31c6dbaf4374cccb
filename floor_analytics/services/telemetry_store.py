"""
Floor Analytics - Telemetry Store

This module is the relational adapter for the engine. Every SQL statement the
services need lives here; services receive a ``TelemetryStore`` (or a test
double with the same methods) and never touch the database layer directly.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import text
import structlog

from floor_analytics.database import (
    DatabaseTransaction,
    execute_query,
    execute_scalar,
    execute_update,
)
from floor_analytics.utils.exceptions import ValidationError

logger = structlog.get_logger()


MACHINE_COLUMNS = frozenset({
    "status", "line_speed", "target_speed", "produced_length", "produced_length_ok",
    "produced_length_ng", "target_length", "production_order_id", "production_order_name",
    "operator_name", "current", "power", "temperature", "health_score", "vibration_level",
    "runtime_hours", "oee", "availability", "performance", "quality",
    "length_counter", "length_counter_last", "length_counter_last_at",
    "current_shift_id", "current_shift_start", "current_shift_end",
})

ORDER_COLUMNS = frozenset({
    "name", "status", "target_length", "produced_length", "start_time", "end_time",
})

# Quoted because CURRENT is reserved in PostgreSQL
_RESERVED_COLUMNS = frozenset({"current"})


def _set_clause(fields: Dict[str, Any], allowed: frozenset) -> str:
    unknown = set(fields) - allowed
    if unknown:
        raise ValidationError("Unknown fields in update", {"fields": sorted(unknown)})
    parts = []
    for column in fields:
        name = f'"{column}"' if column in _RESERVED_COLUMNS else column
        parts.append(f"{name} = :{column}")
    return ", ".join(parts)


def _decode_payload(value: Any) -> Dict[str, Any]:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class TelemetryStore:
    """Async data access for machines, status history, aggregations and analytics."""

    # Machines and orders
    async def list_machines(self, area: Optional[str] = None) -> List[Dict[str, Any]]:
        if area and area != "all":
            return await execute_query(
                "SELECT * FROM machines WHERE area = :area ORDER BY area, id",
                {"area": area}
            )
        return await execute_query("SELECT * FROM machines ORDER BY area, id")

    async def get_machine(self, machine_id: str) -> Optional[Dict[str, Any]]:
        rows = await execute_query("SELECT * FROM machines WHERE id = :id", {"id": machine_id})
        return rows[0] if rows else None

    async def list_machine_statuses(self) -> List[Dict[str, Any]]:
        return await execute_query("SELECT id, status FROM machines")

    async def update_machine(self, machine_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Write a closed set of machine columns and return the updated row."""
        if not fields:
            return await self.get_machine(machine_id)

        set_clause = _set_clause(fields, MACHINE_COLUMNS)
        extra = ", last_status_update = CURRENT_TIMESTAMP" if "status" in fields else ""
        rows = await execute_query(
            f"""
            UPDATE machines
            SET {set_clause}, last_updated = CURRENT_TIMESTAMP{extra}
            WHERE id = :machine_id
            RETURNING *
            """,
            {**fields, "machine_id": machine_id}
        )
        return rows[0] if rows else None

    async def update_production_order(self, order_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not fields:
            rows = await execute_query("SELECT * FROM production_orders WHERE id = :id", {"id": order_id})
            return rows[0] if rows else None

        set_clause = _set_clause(fields, ORDER_COLUMNS)
        rows = await execute_query(
            f"""
            UPDATE production_orders
            SET {set_clause}, updated_at = CURRENT_TIMESTAMP
            WHERE id = :order_id
            RETURNING *
            """,
            {**fields, "order_id": order_id}
        )
        return rows[0] if rows else None

    async def get_active_order(self, machine_id: str, window_start: datetime, window_end: datetime) -> Optional[str]:
        return await execute_scalar(
            """
            SELECT id FROM production_orders
            WHERE machine_id = :machine_id
              AND status = 'running'
              AND start_time <= :window_end
              AND (end_time IS NULL OR end_time >= :window_start)
            ORDER BY start_time DESC
            LIMIT 1
            """,
            {"machine_id": machine_id, "window_start": window_start, "window_end": window_end}
        )

    async def increment_order_length(self, order_id: str, delta: float) -> None:
        await execute_update(
            """
            UPDATE production_orders
            SET produced_length = COALESCE(produced_length, 0) + :delta,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = :order_id
            """,
            {"delta": delta, "order_id": order_id}
        )

    # Status history
    async def fetch_status_history(
        self, machine_ids: List[str], start: datetime, end: datetime
    ) -> List[Dict[str, Any]]:
        """Intervals overlapping ``[start, end)`` for the given machines."""
        if not machine_ids:
            return []
        return await execute_query(
            """
            SELECT machine_id, status, previous_status, status_start_time,
                   status_end_time, duration_seconds
            FROM machine_status_history
            WHERE machine_id = ANY(:machine_ids)
              AND status_start_time < :end_time
              AND (status_end_time IS NULL OR status_end_time > :start_time)
            ORDER BY status_start_time ASC
            """,
            {"machine_ids": list(machine_ids), "start_time": start, "end_time": end}
        )

    async def record_status_change(
        self, machine_id: str, new_status: str, previous_status: Optional[str], at: datetime
    ) -> None:
        """Close the open interval and open a new one at the same instant."""
        async with DatabaseTransaction() as session:
            await session.execute(
                text("""
                UPDATE machine_status_history
                SET status_end_time = CAST(:at AS TIMESTAMPTZ),
                    duration_seconds = EXTRACT(EPOCH FROM (CAST(:at AS TIMESTAMPTZ) - status_start_time))
                WHERE machine_id = :machine_id AND status_end_time IS NULL
                """),
                {"machine_id": machine_id, "at": at}
            )
            await session.execute(
                text("""
                INSERT INTO machine_status_history (
                    machine_id, status, previous_status, status_start_time
                ) VALUES (:machine_id, :status, :previous_status, :at)
                """),
                {"machine_id": machine_id, "status": new_status,
                 "previous_status": previous_status, "at": at}
            )

        logger.debug("Status interval recorded", machine_id=machine_id,
                     status=new_status, previous_status=previous_status)

    # Availability aggregations
    async def insert_availability_aggregation(self, row: Dict[str, Any]) -> None:
        durations = row.get("durations") or {}
        await execute_update(
            """
            INSERT INTO availability_aggregations (
                machine_id, window_start, window_end, calculation_type,
                availability_percentage, running_time_seconds, downtime_seconds,
                duration_running, duration_idle, duration_warning,
                duration_error, duration_stopped, duration_setup,
                production_order_id, shift_id, calculated_at
            ) VALUES (
                :machine_id, :window_start, :window_end, :calculation_type,
                :availability_percentage, :running_time_seconds, :downtime_seconds,
                :duration_running, :duration_idle, :duration_warning,
                :duration_error, :duration_stopped, :duration_setup,
                :production_order_id, :shift_id, :calculated_at
            )
            """,
            {
                "machine_id": row["machine_id"],
                "window_start": row["window_start"],
                "window_end": row["window_end"],
                "calculation_type": row["calculation_type"],
                "availability_percentage": row["availability_percentage"],
                "running_time_seconds": row["running_time_seconds"],
                "downtime_seconds": row["downtime_seconds"],
                "duration_running": durations.get("running", 0.0),
                "duration_idle": durations.get("idle", 0.0),
                "duration_warning": durations.get("warning", 0.0),
                "duration_error": durations.get("error", 0.0),
                "duration_stopped": durations.get("stopped", 0.0),
                "duration_setup": durations.get("setup", 0.0),
                "production_order_id": row.get("production_order_id"),
                "shift_id": row.get("shift_id"),
                "calculated_at": row["calculated_at"],
            }
        )

    async def latest_availability(
        self,
        machine_id: str,
        calculation_type: str,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """Most recent aggregation of a type, optionally overlapping a window."""
        params: Dict[str, Any] = {"machine_id": machine_id, "calculation_type": calculation_type}
        overlap = ""
        if window_start is not None and window_end is not None:
            overlap = "AND window_end >= :window_start AND window_start <= :window_end"
            params.update(window_start=window_start, window_end=window_end)
        rows = await execute_query(
            f"""
            SELECT * FROM availability_aggregations
            WHERE machine_id = :machine_id
              AND calculation_type = :calculation_type
              {overlap}
            ORDER BY calculated_at DESC
            LIMIT 1
            """,
            params
        )
        return rows[0] if rows else None

    async def previous_shift_availability(self, machine_id: str, before: datetime) -> Optional[float]:
        value = await execute_scalar(
            """
            SELECT availability_percentage
            FROM availability_aggregations
            WHERE machine_id = :machine_id
              AND calculation_type = 'shift'
              AND window_end <= :before
            ORDER BY window_end DESC, calculated_at DESC
            LIMIT 1
            """,
            {"machine_id": machine_id, "before": before}
        )
        return float(value) if value is not None else None

    async def availability_history(
        self, machine_id: str, start: datetime, end: datetime, calculation_type: str
    ) -> List[Dict[str, Any]]:
        return await execute_query(
            """
            SELECT * FROM availability_aggregations
            WHERE machine_id = :machine_id
              AND calculation_type = :calculation_type
              AND window_end >= :start_time
              AND window_start <= :end_time
            ORDER BY window_end DESC, calculated_at DESC
            """,
            {"machine_id": machine_id, "calculation_type": calculation_type,
             "start_time": start, "end_time": end}
        )

    async def sync_status(self) -> List[Dict[str, Any]]:
        """Every machine joined to its latest shift aggregation."""
        return await execute_query(
            """
            SELECT
                m.id AS machine_id,
                m.name AS machine_name,
                m.area,
                m.status AS current_status,
                m.production_order_id,
                po.name AS production_order_name,
                aa.availability_percentage,
                aa.running_time_seconds,
                aa.downtime_seconds,
                aa.window_start,
                aa.window_end,
                aa.calculated_at
            FROM machines m
            LEFT JOIN production_orders po ON po.id = m.production_order_id
            LEFT JOIN LATERAL (
                SELECT availability_percentage, running_time_seconds, downtime_seconds,
                       window_start, window_end, calculated_at
                FROM availability_aggregations
                WHERE machine_id = m.id AND calculation_type = 'shift'
                ORDER BY window_end DESC, calculated_at DESC
                LIMIT 1
            ) aa ON true
            ORDER BY m.area, m.id
            """
        )

    # Production length ledger
    async def insert_length_event(self, event: Dict[str, Any]) -> None:
        await execute_update(
            """
            INSERT INTO production_length_events (
                machine_id, area, production_order_id, shift_id, shift_date, status,
                counter_value, last_counter_value, delta_length, is_running,
                reset_detected, event_time
            ) VALUES (
                :machine_id, :area, :production_order_id, :shift_id, :shift_date, :status,
                :counter_value, :last_counter_value, :delta_length, :is_running,
                :reset_detected, :event_time
            )
            """,
            event
        )

    async def length_event_total(self, machine_ids: List[str], start: datetime, end: datetime) -> float:
        if not machine_ids:
            return 0.0
        value = await execute_scalar(
            """
            SELECT COALESCE(SUM(delta_length), 0)
            FROM production_length_events
            WHERE event_time >= :start_time
              AND event_time <= :end_time
              AND machine_id = ANY(:machine_ids)
            """,
            {"machine_ids": list(machine_ids), "start_time": start, "end_time": end}
        )
        return float(value or 0)

    # OEE calculations
    async def insert_oee_calculation(self, row: Dict[str, Any]) -> None:
        await execute_update(
            """
            INSERT INTO oee_calculations (
                machine_id, production_order_id, calculation_timestamp,
                availability, performance, quality, oee,
                period_start, period_end,
                running_time_seconds, planned_time_seconds,
                actual_speed, target_speed,
                produced_length_ok, produced_length_ng
            ) VALUES (
                :machine_id, :production_order_id, :calculation_timestamp,
                :availability, :performance, :quality, :oee,
                :period_start, :period_end,
                :running_time_seconds, :planned_time_seconds,
                :actual_speed, :target_speed,
                :produced_length_ok, :produced_length_ng
            )
            """,
            row
        )

    async def oee_trend(self, machine_id: str, since: datetime) -> List[Dict[str, Any]]:
        return await execute_query(
            """
            SELECT calculation_timestamp, availability, performance, quality, oee
            FROM oee_calculations
            WHERE machine_id = :machine_id
              AND calculation_timestamp >= :since
            ORDER BY calculation_timestamp ASC
            """,
            {"machine_id": machine_id, "since": since}
        )

    async def historical_oee_averages(
        self, machine_ids: List[str], start: datetime, end: datetime
    ) -> List[Dict[str, Any]]:
        if not machine_ids:
            return []
        return await execute_query(
            """
            SELECT
                machine_id,
                AVG(availability) AS availability,
                AVG(performance) AS performance,
                AVG(quality) AS quality,
                AVG(oee) AS oee,
                AVG(actual_speed) AS actual_speed,
                AVG(target_speed) AS target_speed
            FROM oee_calculations
            WHERE calculation_timestamp >= :start_time
              AND calculation_timestamp <= :end_time
              AND machine_id = ANY(:machine_ids)
            GROUP BY machine_id
            """,
            {"machine_ids": list(machine_ids), "start_time": start, "end_time": end}
        )

    async def oee_trend_buckets(
        self, machine_ids: List[str], start: datetime, end: datetime
    ) -> List[Dict[str, Any]]:
        """Fleet OEE averaged into 10-minute buckets."""
        if not machine_ids:
            return []
        return await execute_query(
            """
            SELECT
                date_trunc('minute', calculation_timestamp)
                  - ((EXTRACT(MINUTE FROM calculation_timestamp)::int % 10) * INTERVAL '1 minute') AS bucket,
                AVG(availability) AS availability,
                AVG(performance) AS performance,
                AVG(quality) AS quality,
                AVG(oee) AS oee
            FROM oee_calculations
            WHERE calculation_timestamp >= :start_time
              AND calculation_timestamp <= :end_time
              AND machine_id = ANY(:machine_ids)
            GROUP BY bucket
            ORDER BY bucket ASC
            """,
            {"machine_ids": list(machine_ids), "start_time": start, "end_time": end}
        )

    # Quality
    async def quality_totals(
        self, machine_id: str, production_order_id: str, start: datetime, end: datetime
    ) -> Dict[str, float]:
        rows = await execute_query(
            """
            SELECT
                COALESCE(SUM(produced_length_ok), 0) AS total_ok,
                COALESCE(SUM(produced_length_ng), 0) AS total_ng,
                COALESCE(SUM(total_produced_length), 0) AS total_length
            FROM production_quality
            WHERE machine_id = :machine_id
              AND production_order_id = :production_order_id
              AND calculation_period_start >= :start_time
              AND (calculation_period_end IS NULL OR calculation_period_end <= :end_time)
            """,
            {"machine_id": machine_id, "production_order_id": production_order_id,
             "start_time": start, "end_time": end}
        )
        row = rows[0] if rows else {}
        return {
            "ok": float(row.get("total_ok") or 0),
            "ng": float(row.get("total_ng") or 0),
            "total": float(row.get("total_length") or 0),
        }

    async def historical_quality(
        self, machine_ids: List[str], start: datetime, end: datetime
    ) -> List[Dict[str, Any]]:
        if not machine_ids:
            return []
        return await execute_query(
            """
            SELECT
                machine_id,
                COALESCE(SUM(produced_length_ok), 0) AS produced_length_ok,
                COALESCE(SUM(produced_length_ng), 0) AS produced_length_ng
            FROM production_quality
            WHERE calculation_period_start < :end_time
              AND (calculation_period_end IS NULL OR calculation_period_end > :start_time)
              AND machine_id = ANY(:machine_ids)
            GROUP BY machine_id
            """,
            {"machine_ids": list(machine_ids), "start_time": start, "end_time": end}
        )

    async def output_totals(self, machine_ids: List[str], start: datetime, end: datetime) -> Dict[str, float]:
        if not machine_ids:
            return {"ok": 0.0, "ng": 0.0}
        rows = await execute_query(
            """
            SELECT
                COALESCE(SUM(produced_length_ok), 0) AS total_ok,
                COALESCE(SUM(produced_length_ng), 0) AS total_ng
            FROM production_quality
            WHERE calculation_period_start < :end_time
              AND (calculation_period_end IS NULL OR calculation_period_end > :start_time)
              AND machine_id = ANY(:machine_ids)
            """,
            {"machine_ids": list(machine_ids), "start_time": start, "end_time": end}
        )
        row = rows[0] if rows else {}
        return {"ok": float(row.get("total_ok") or 0), "ng": float(row.get("total_ng") or 0)}

    async def ng_trend(self, machine_ids: List[str], start: datetime, end: datetime) -> List[Dict[str, Any]]:
        if not machine_ids:
            return []
        return await execute_query(
            """
            SELECT
                date_trunc('hour', calculation_period_start) AS bucket,
                COALESCE(SUM(produced_length_ok), 0) AS total_ok,
                COALESCE(SUM(produced_length_ng), 0) AS total_ng
            FROM production_quality
            WHERE calculation_period_start >= :start_time
              AND calculation_period_start <= :end_time
              AND machine_id = ANY(:machine_ids)
            GROUP BY bucket
            ORDER BY bucket ASC
            """,
            {"machine_ids": list(machine_ids), "start_time": start, "end_time": end}
        )

    async def planned_vs_actual(self, machine_ids: List[str], start: datetime, end: datetime) -> Dict[str, float]:
        if not machine_ids:
            return {"planned": 0.0, "actual": 0.0}
        rows = await execute_query(
            """
            SELECT
                COALESCE(SUM(target_length), 0) AS planned,
                COALESCE(SUM(produced_length), 0) AS actual
            FROM production_orders
            WHERE machine_id = ANY(:machine_ids)
              AND start_time < :end_time
              AND (end_time IS NULL OR end_time > :start_time)
            """,
            {"machine_ids": list(machine_ids), "start_time": start, "end_time": end}
        )
        row = rows[0] if rows else {}
        return {"planned": float(row.get("planned") or 0), "actual": float(row.get("actual") or 0)}

    # Alarms and orders
    async def alarms_since(self, machine_ids: List[str], start: datetime) -> List[Dict[str, Any]]:
        if not machine_ids:
            return []
        return await execute_query(
            """
            SELECT machine_id, severity, message, timestamp, acknowledged
            FROM alarms
            WHERE machine_id = ANY(:machine_ids)
              AND timestamp >= :start_time
            """,
            {"machine_ids": list(machine_ids), "start_time": start}
        )

    async def orders_for(self, machine_ids: List[str]) -> List[Dict[str, Any]]:
        if not machine_ids:
            return []
        return await execute_query(
            """
            SELECT id, name, machine_id, status
            FROM production_orders
            WHERE machine_id = ANY(:machine_ids)
            """,
            {"machine_ids": list(machine_ids)}
        )

    # Analytics cache
    async def save_analytics_cache(
        self, scope: Dict[str, Any], payload: Dict[str, Any], computed_at: datetime
    ) -> None:
        await execute_update(
            """
            INSERT INTO analytics_cache (
                scope_type, scope_start, scope_end, scope_shift_id,
                scope_area, scope_machine_id, payload, computed_at
            ) VALUES (
                :scope_type, :scope_start, :scope_end, :scope_shift_id,
                :scope_area, :scope_machine_id, CAST(:payload AS JSONB), :computed_at
            )
            """,
            {
                "scope_type": scope["range"],
                "scope_start": scope["start"],
                "scope_end": scope["end"],
                "scope_shift_id": scope.get("shift_id"),
                "scope_area": scope.get("area") or "all",
                "scope_machine_id": scope.get("machine_id"),
                "payload": json.dumps(payload),
                "computed_at": computed_at,
            }
        )

    async def analytics_history(self, scope: Dict[str, Any], limit: int = 20) -> List[Dict[str, Any]]:
        """Cached payloads for one scope, newest first."""
        rows = await execute_query(
            """
            SELECT payload, computed_at
            FROM analytics_cache
            WHERE scope_type = :scope_type
              AND scope_start = :scope_start
              AND scope_end = :scope_end
              AND COALESCE(scope_area, 'all') = :scope_area
              AND COALESCE(scope_machine_id, '') = :scope_machine_id
            ORDER BY computed_at DESC
            LIMIT :limit
            """,
            {
                "scope_type": scope["range"],
                "scope_start": scope["start"],
                "scope_end": scope["end"],
                "scope_area": scope.get("area") or "all",
                "scope_machine_id": scope.get("machine_id") or "",
                "limit": limit,
            }
        )
        return [
            {"payload": _decode_payload(row["payload"]), "computed_at": row["computed_at"]}
            for row in rows
        ]

    async def latest_analytics_cache(self, scope: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = await self.analytics_history(scope, limit=1)
        return rows[0] if rows else None
