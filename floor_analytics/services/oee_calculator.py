"""
Floor Analytics - OEE Calculator Service

This module provides real-time OEE (Overall Equipment Effectiveness) calculation
for a machine over its current shift. OEE is calculated as
Availability x Performance x Quality / 10000, each component in percent.
"""

from datetime import timedelta
from typing import List, Optional, Tuple

import structlog

from floor_analytics.config import settings
from floor_analytics.models.telemetry import (
    CalculationType,
    LiveMachineData,
    OEEResult,
    OEETrendPoint,
)
from floor_analytics.utils.exceptions import AnalyticsError
from floor_analytics.utils.shift_calculator import ShiftResolver, ShiftWindow

logger = structlog.get_logger()


def calculate_performance(
    actual_speed: Optional[float],
    target_speed: Optional[float],
    default_when_unknown: Optional[float] = None,
) -> float:
    """
    Performance = actual speed / target speed x 100, clamped to [0, 100].

    Machines without a usable target speed get ``default_when_unknown``
    (``DEFAULT_PERFORMANCE_WHEN_TARGET_UNKNOWN``), which reports missing
    configuration as full performance.
    """
    if not target_speed or target_speed <= 0:
        if default_when_unknown is None:
            return settings.DEFAULT_PERFORMANCE_WHEN_TARGET_UNKNOWN
        return default_when_unknown

    performance = (actual_speed or 0) / target_speed * 100
    return max(0.0, min(100.0, performance))


def quality_from_lengths(ok_length: float, ng_length: float) -> Optional[float]:
    total = ok_length + ng_length
    if total <= 0:
        return None
    return max(0.0, min(100.0, ok_length / total * 100))


class OEECalculator:
    """Real-time OEE calculation service."""

    def __init__(self, store, aggregator, shift_resolver: ShiftResolver, clock, metrics=None):
        self.store = store
        self.aggregator = aggregator
        self.shift_resolver = shift_resolver
        self.clock = clock
        self.metrics = metrics

    async def calculate_availability(
        self, machine_id: str, window: ShiftWindow
    ) -> Tuple[float, bool, float]:
        """
        Availability for the shift window.

        Returns ``(availability, substituted, running_seconds)``. A live value
        below ``LOW_AVAILABILITY_THRESHOLD`` for a shift in progress is replaced
        by the previous completed shift's stored percentage when one exists.
        """
        now = self.clock.now()
        try:
            if window.end > now:
                live = await self.aggregator.compute_availability(
                    machine_id, window.start, window.end,
                    CalculationType.SHIFT.value, shift_id=window.shift_id
                )
                if live.availability_percentage < settings.LOW_AVAILABILITY_THRESHOLD:
                    previous = await self.store.previous_shift_availability(machine_id, window.start)
                    if previous is not None:
                        logger.debug("Substituting previous shift availability",
                                     machine_id=machine_id, live=live.availability_percentage,
                                     previous=previous)
                        return max(0.0, min(100.0, previous)), True, live.running_time_seconds
                return live.availability_percentage, False, live.running_time_seconds

            result = await self.aggregator.get_availability(
                machine_id, window.start, window.end, CalculationType.SHIFT.value
            )
            return result.availability_percentage, False, result.running_time_seconds

        except Exception as e:
            logger.error("Failed to calculate availability", error=str(e), machine_id=machine_id)
            return 0.0, False, 0.0

    async def calculate_quality(
        self,
        machine_id: str,
        live: LiveMachineData,
        production_order_id: Optional[str],
        window: ShiftWindow,
    ) -> Tuple[float, float, float]:
        """
        Quality = OK / (OK + NG) x 100.

        Falls back to the order's stored quality totals, then to the total
        produced length (all OK), then to 100 when nothing was produced yet.
        Returns ``(quality, ok_length, ng_length)``.
        """
        if live.produced_length_ok is not None and live.produced_length_ng is not None:
            ok_length = float(live.produced_length_ok)
            ng_length = float(live.produced_length_ng)
            quality = quality_from_lengths(ok_length, ng_length)
            if quality is not None:
                return quality, ok_length, ng_length

        if production_order_id:
            try:
                totals = await self.store.quality_totals(
                    machine_id, production_order_id, window.start, window.end
                )
                quality = quality_from_lengths(totals["ok"], totals["ng"])
                if quality is not None:
                    return quality, totals["ok"], totals["ng"]
                if totals["total"] > 0:
                    return 100.0, totals["total"], 0.0
            except Exception as e:
                logger.error("Failed to read quality totals", error=str(e),
                             machine_id=machine_id, production_order_id=production_order_id)

        produced = float(live.produced_length or 0)
        return 100.0, produced, 0.0

    async def calculate_oee(
        self,
        machine_id: str,
        live_machine_data: LiveMachineData,
        production_order_id: Optional[str] = None,
    ) -> OEEResult:
        """
        Calculate OEE for a machine over its current shift.

        The result is preliminary while the shift is still in progress. Every
        calculation is appended to the OEE history; a failed write is logged
        and the computed value is still returned.
        """
        try:
            now = self.clock.now()
            window = self.shift_resolver.resolve(now)
            period_end = min(now, window.end)

            availability, substituted, running_seconds = await self.calculate_availability(machine_id, window)
            performance = calculate_performance(
                live_machine_data.line_speed, live_machine_data.target_speed
            )
            quality, ok_length, ng_length = await self.calculate_quality(
                machine_id, live_machine_data, production_order_id, window
            )
            oee = availability * performance * quality / 10000

            result = OEEResult(
                machine_id=machine_id,
                availability=round(availability, 2),
                performance=round(performance, 2),
                quality=round(quality, 2),
                oee=round(oee, 2),
                is_preliminary=window.end > now,
                availability_substituted=substituted,
                period_start=window.start,
                period_end=period_end,
                calculated_at=now,
            )

            await self._store_oee_calculation(
                result, production_order_id, live_machine_data,
                running_seconds, ok_length, ng_length
            )

            if self.metrics:
                self.metrics.record_oee_calculation(result.oee)

            logger.info(
                "OEE calculated",
                machine_id=machine_id,
                oee=result.oee,
                availability=result.availability,
                performance=result.performance,
                quality=result.quality,
                is_preliminary=result.is_preliminary
            )
            return result

        except Exception as e:
            logger.error("Failed to calculate OEE", error=str(e), machine_id=machine_id)
            raise AnalyticsError("Failed to calculate OEE", {"machine_id": machine_id})

    async def _store_oee_calculation(
        self,
        result: OEEResult,
        production_order_id: Optional[str],
        live: LiveMachineData,
        running_seconds: float,
        ok_length: float,
        ng_length: float,
    ) -> None:
        try:
            await self.store.insert_oee_calculation({
                "machine_id": result.machine_id,
                "production_order_id": production_order_id,
                "calculation_timestamp": result.calculated_at,
                "availability": result.availability,
                "performance": result.performance,
                "quality": result.quality,
                "oee": result.oee,
                "period_start": result.period_start,
                "period_end": result.period_end,
                "running_time_seconds": int(running_seconds),
                "planned_time_seconds": int((result.period_end - result.period_start).total_seconds()),
                "actual_speed": live.line_speed,
                "target_speed": live.target_speed,
                "produced_length_ok": ok_length,
                "produced_length_ng": ng_length,
            })
        except Exception as e:
            logger.error("Failed to store OEE calculation", error=str(e), machine_id=result.machine_id)

    async def get_oee_trend(self, machine_id: str, hours: int = 24) -> List[OEETrendPoint]:
        """Stored OEE calculations for the last ``hours`` hours, oldest first."""
        try:
            since = self.clock.now() - timedelta(hours=hours)
            rows = await self.store.oee_trend(machine_id, since)
            return [
                OEETrendPoint(
                    calculated_at=row["calculation_timestamp"],
                    availability=float(row.get("availability") or 0),
                    performance=float(row.get("performance") or 0),
                    quality=float(row.get("quality") or 0),
                    oee=float(row.get("oee") or 0),
                )
                for row in rows
            ]
        except Exception as e:
            logger.error("Failed to get OEE trend", error=str(e), machine_id=machine_id)
            return []
