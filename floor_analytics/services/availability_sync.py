"""
Floor Analytics - Availability Sync Service

This module re-runs the availability aggregation for every machine, either on
demand or on a fixed interval. Machines are processed in parallel, each with a
bounded timeout, and one machine's failure never aborts the others; failed
machines get a single retry pass after a short delay.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from floor_analytics.config import settings
from floor_analytics.models.telemetry import (
    MachineSyncResult,
    MachineSyncStatus,
    PRODUCTION_AREAS,
    SyncState,
    SyncSummary,
)
from floor_analytics.services.scheduler import IntervalScheduler
from floor_analytics.utils.exceptions import ValidationError

logger = structlog.get_logger()


def sync_state_for(calculated_at: Optional[datetime], now: datetime) -> str:
    """Freshness label of a machine's latest shift aggregation."""
    if calculated_at is None:
        return SyncState.NOT_SYNCED.value
    age = (now - calculated_at).total_seconds()
    if age < 60:
        return SyncState.CURRENT.value
    if age < 300:
        return SyncState.RECENT.value
    return SyncState.STALE.value


class AvailabilitySyncService:
    """Fleet-wide availability aggregation."""

    def __init__(self, store, aggregator, clock, metrics=None):
        self.store = store
        self.aggregator = aggregator
        self.clock = clock
        self.metrics = metrics

    async def sync_machine(
        self,
        machine: Dict[str, Any],
        use_shift: Optional[bool] = None,
        window_minutes: Optional[int] = None,
    ) -> MachineSyncResult:
        """Refresh one machine's aggregation; failures are returned, not raised."""
        machine_id = machine["id"]
        base = {
            "machine_id": machine_id,
            "machine_name": machine.get("name"),
            "area": machine.get("area"),
            "current_status": machine.get("status"),
        }

        try:
            result = await asyncio.wait_for(
                self.aggregator.ensure_availability_calculated(machine_id, use_shift, window_minutes),
                timeout=settings.SYNC_MACHINE_TIMEOUT
            )
            return MachineSyncResult(
                **base,
                success=True,
                availability_percentage=result.availability_percentage,
                running_time_seconds=result.running_time_seconds,
                downtime_seconds=result.downtime_seconds,
                production_order_id=result.production_order_id,
            )

        except asyncio.TimeoutError:
            logger.warning("Availability sync timed out", machine_id=machine_id,
                           timeout=settings.SYNC_MACHINE_TIMEOUT)
            return MachineSyncResult(**base, success=False, error="Timed out")
        except Exception as e:
            logger.error("Failed to sync machine availability", error=str(e), machine_id=machine_id)
            return MachineSyncResult(**base, success=False, error=str(e))

    async def _sync_machines(
        self,
        machines: List[Dict[str, Any]],
        use_shift: Optional[bool],
        window_minutes: Optional[int],
        retry_failed: bool,
    ) -> List[MachineSyncResult]:
        outcomes = await asyncio.gather(
            *(self.sync_machine(machine, use_shift, window_minutes) for machine in machines),
            return_exceptions=True
        )

        results: List[MachineSyncResult] = []
        for machine, outcome in zip(machines, outcomes):
            if isinstance(outcome, BaseException):
                results.append(MachineSyncResult(
                    machine_id=machine["id"], machine_name=machine.get("name"),
                    area=machine.get("area"), current_status=machine.get("status"),
                    success=False, error=str(outcome)
                ))
            else:
                results.append(outcome)

        failed = [index for index, result in enumerate(results) if not result.success]
        if retry_failed and failed:
            logger.info("Retrying failed machines", count=len(failed))
            await asyncio.sleep(settings.SYNC_RETRY_DELAY)

            retries = await asyncio.gather(
                *(self.sync_machine(machines[index], use_shift, window_minutes) for index in failed),
                return_exceptions=True
            )
            for index, retry in zip(failed, retries):
                if isinstance(retry, MachineSyncResult) and retry.success:
                    results[index] = retry.model_copy(update={"retried": True})

        if self.metrics:
            for result in results:
                if not result.success:
                    self.metrics.record_machine_sync_failure(result.area)

        return results

    def _summarize(
        self, results: List[MachineSyncResult], area: Optional[str] = None
    ) -> SyncSummary:
        synced = sum(1 for result in results if result.success)
        return SyncSummary(
            success=True,
            total_machines=len(results),
            synced_machines=synced,
            failed_machines=len(results) - synced,
            timestamp=self.clock.now(),
            area=area,
            results=results,
        )

    async def sync_all_machines(
        self,
        window_minutes: Optional[int] = None,
        retry_failed: bool = True,
        use_shift: Optional[bool] = None,
    ) -> SyncSummary:
        """
        Refresh the aggregation of every machine in the registry.

        The summary reports ``success: true`` whenever the cycle itself ran;
        per-machine failures only raise ``failed_machines``. A machine that
        succeeds on the retry pass counts as synced.
        """
        started = time.monotonic()
        try:
            machines = await self.store.list_machines()
        except Exception as e:
            logger.error("Failed to list machines for availability sync", error=str(e))
            return SyncSummary(
                success=False, total_machines=0, synced_machines=0, failed_machines=0,
                timestamp=self.clock.now(), message=str(e)
            )

        if not machines:
            return SyncSummary(
                success=True, total_machines=0, synced_machines=0, failed_machines=0,
                timestamp=self.clock.now(), message="No machines found"
            )

        results = await self._sync_machines(machines, use_shift, window_minutes, retry_failed)
        summary = self._summarize(results)

        if self.metrics:
            duration = time.monotonic() - started
            self.metrics.record_sync_cycle(duration, summary.synced_machines, summary.failed_machines)

        logger.info(
            "Availability sync completed",
            total=summary.total_machines,
            synced=summary.synced_machines,
            failed=summary.failed_machines
        )
        return summary

    async def sync_area(self, area: str, use_shift: Optional[bool] = None) -> SyncSummary:
        """Refresh the aggregation of every machine in one production area."""
        if area not in PRODUCTION_AREAS:
            raise ValidationError(
                f"Invalid area: {area}",
                {"valid_areas": list(PRODUCTION_AREAS)}
            )

        try:
            machines = await self.store.list_machines(area=area)
        except Exception as e:
            logger.error("Failed to list machines for area sync", error=str(e), area=area)
            return SyncSummary(
                success=False, total_machines=0, synced_machines=0, failed_machines=0,
                timestamp=self.clock.now(), area=area, message=str(e)
            )

        if not machines:
            return SyncSummary(
                success=True, total_machines=0, synced_machines=0, failed_machines=0,
                timestamp=self.clock.now(), area=area,
                message=f"No machines found in area {area}"
            )

        results = await self._sync_machines(machines, use_shift, None, retry_failed=False)
        return self._summarize(results, area=area)

    async def get_sync_status(self) -> List[MachineSyncStatus]:
        """Latest shift aggregation per machine with a freshness label."""
        try:
            rows = await self.store.sync_status()
        except Exception as e:
            logger.error("Failed to get sync status", error=str(e))
            return []

        now = self.clock.now()
        return [
            MachineSyncStatus(**row, sync_status=sync_state_for(row.get("calculated_at"), now))
            for row in rows
        ]


class FleetSyncScheduler(IntervalScheduler):
    """Runs the fleet availability sync on a fixed interval."""

    name = "availability_sync"

    def __init__(self, sync_service: AvailabilitySyncService, interval_seconds: Optional[float] = None):
        super().__init__(interval_seconds or settings.AVAILABILITY_SYNC_INTERVAL)
        self.sync_service = sync_service

    async def run_once(self) -> SyncSummary:
        summary = await self.sync_service.sync_all_machines(retry_failed=True)
        if summary.failed_machines > 0:
            logger.warning("Machines failed to sync", failed=summary.failed_machines,
                           total=summary.total_machines)
        return summary
