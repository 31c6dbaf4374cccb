"""
Floor Analytics - Telemetry Ingest Service

This module is the write path for machine and production order patches. A
machine patch runs through the status cache gate, the status interval log and
the length counter ingest before the registry row is written; status and
production changes then trigger an availability refresh and an OEE
recalculation whose result is written back and broadcast as ``machine:update``.
"""

from typing import Any, Dict, Optional, Union

import structlog

from floor_analytics.models.telemetry import LiveMachineData, MachinePatch, ProductionOrderPatch
from floor_analytics.utils.exceptions import (
    FloorAnalyticsException,
    NotFoundError,
    ValidationError,
    handle_database_exception,
)

logger = structlog.get_logger()


OEE_TRIGGER_FIELDS = frozenset({
    "status", "line_speed", "target_speed", "length_counter",
    "produced_length_ok", "produced_length_ng", "production_order_id",
})


class MachineTelemetryService:
    """Applies validated entity patches and keeps derived machine figures current."""

    def __init__(
        self,
        store,
        status_cache,
        production_length,
        aggregator,
        oee_calculator,
        broadcaster,
        clock,
    ):
        self.store = store
        self.status_cache = status_cache
        self.production_length = production_length
        self.aggregator = aggregator
        self.oee_calculator = oee_calculator
        self.broadcaster = broadcaster
        self.clock = clock

    async def apply_patch(
        self, entity_id: str, patch: Union[MachinePatch, ProductionOrderPatch]
    ) -> Dict[str, Any]:
        if isinstance(patch, MachinePatch):
            return await self.update_machine(entity_id, patch)
        return await self.update_production_order(entity_id, patch)

    async def _record_status(self, machine: Dict[str, Any], new_status: str, event_time) -> bool:
        """Open a new status interval when the status really changed."""
        machine_id = machine["id"]
        if not self.status_cache.has_changed(machine_id, new_status):
            return False

        previous_status = self.status_cache.get(machine_id) or machine.get("status")
        try:
            await self.store.record_status_change(machine_id, new_status, previous_status, event_time)
        except Exception as e:
            logger.error("Failed to record status change", error=str(e), machine_id=machine_id,
                         status=new_status)
            raise handle_database_exception(e)

        self.status_cache.update(machine_id, new_status)
        logger.info("Machine status changed", machine_id=machine_id,
                    previous_status=previous_status, status=new_status)
        return True

    async def update_machine(self, machine_id: str, patch: MachinePatch) -> Dict[str, Any]:
        """
        Apply a telemetry patch to a machine and return the updated record.

        Side effects after the registry write (availability refresh, OEE
        write-back, broadcast) are logged on failure and never fail the patch.
        """
        columns = patch.to_columns()
        if not columns:
            raise ValidationError("No valid fields to update", {"machine_id": machine_id})

        machine = await self.store.get_machine(machine_id)
        if not machine:
            raise NotFoundError("Machine", machine_id)

        event_time = self.clock.now()

        status_changed = False
        if patch.status is not None:
            status_changed = await self._record_status(machine, patch.status, event_time)

        if patch.length_counter is not None:
            length_result = await self.production_length.apply_length_counter_update(machine, patch, event_time)
            if length_result.applied:
                columns.update(length_result.machine_fields)

        try:
            updated = await self.store.update_machine(machine_id, columns)
        except FloorAnalyticsException:
            raise
        except Exception as e:
            logger.error("Failed to update machine", error=str(e), machine_id=machine_id)
            raise handle_database_exception(e)

        if not updated:
            raise NotFoundError("Machine", machine_id)

        if status_changed:
            try:
                await self.aggregator.ensure_availability_calculated(machine_id)
            except Exception as e:
                logger.warning("Availability refresh after status change failed",
                               error=str(e), machine_id=machine_id)

        if OEE_TRIGGER_FIELDS & set(columns):
            updated = await self._refresh_oee(updated)

        try:
            await self.broadcaster.broadcast_machine_update(updated)
        except Exception as e:
            logger.error("Failed to broadcast machine update", error=str(e), machine_id=machine_id)
        return updated

    async def _refresh_oee(self, machine: Dict[str, Any]) -> Dict[str, Any]:
        machine_id = machine["id"]
        try:
            result = await self.oee_calculator.calculate_oee(
                machine_id,
                LiveMachineData.from_machine_row(machine),
                machine.get("production_order_id"),
            )
            written = await self.store.update_machine(machine_id, {
                "oee": result.oee,
                "availability": result.availability,
                "performance": result.performance,
                "quality": result.quality,
            })
            return written or machine
        except Exception as e:
            logger.error("Failed to refresh machine OEE", error=str(e), machine_id=machine_id)
            return machine

    async def update_production_order(self, order_id: str, patch: ProductionOrderPatch) -> Dict[str, Any]:
        columns = patch.to_columns()
        if not columns:
            raise ValidationError("No valid fields to update", {"production_order_id": order_id})

        try:
            updated: Optional[Dict[str, Any]] = await self.store.update_production_order(order_id, columns)
        except FloorAnalyticsException:
            raise
        except Exception as e:
            logger.error("Failed to update production order", error=str(e), production_order_id=order_id)
            raise handle_database_exception(e)

        if not updated:
            raise NotFoundError("Production order", order_id)

        logger.info("Production order updated", production_order_id=order_id, fields=sorted(columns))
        return updated
