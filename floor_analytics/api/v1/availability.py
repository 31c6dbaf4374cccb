"""
Floor Analytics - Availability API Routes

This module provides endpoints for fleet availability synchronization and
for reading a machine's stored availability aggregations.
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
import structlog

from floor_analytics.models.telemetry import ApiResponse, CalculationType, SyncRequest
from floor_analytics.services.container import ServiceContainer, get_services
from floor_analytics.utils.exceptions import NotFoundError

logger = structlog.get_logger()

router = APIRouter()


@router.get("/sync/status", response_model=ApiResponse)
async def get_sync_status(services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    """Latest shift aggregation and sync freshness for every machine."""
    statuses = await services.sync_service.get_sync_status()
    return ApiResponse(data=statuses, timestamp=services.clock.now())


@router.post("/sync/all", response_model=ApiResponse)
async def sync_all_machines(
    request: Optional[SyncRequest] = Body(None),
    services: ServiceContainer = Depends(get_services)
) -> ApiResponse:
    """Trigger an availability sync for every machine."""
    request = request or SyncRequest()
    logger.info("Manual availability sync triggered", window_minutes=request.window_minutes,
                retry_failed=request.retry_failed)

    summary = await services.sync_service.sync_all_machines(
        window_minutes=request.window_minutes,
        retry_failed=request.retry_failed,
    )
    return ApiResponse(
        data=summary,
        success=summary.success,
        timestamp=services.clock.now(),
        message=f"Synchronized {summary.synced_machines}/{summary.total_machines} machines",
    )


@router.post("/sync/area/{area}", response_model=ApiResponse)
async def sync_area(area: str, services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    """Trigger an availability sync for one production area."""
    summary = await services.sync_service.sync_area(area)
    return ApiResponse(data=summary, success=summary.success, timestamp=services.clock.now())


@router.get("/machine/{machine_id}", response_model=ApiResponse)
async def get_machine_availability(
    machine_id: str,
    calculation_type: CalculationType = Query(CalculationType.SHIFT, alias="calculationType"),
    services: ServiceContainer = Depends(get_services)
) -> ApiResponse:
    """Most recent stored aggregation for a machine."""
    result = await services.aggregator.get_latest_availability(machine_id, calculation_type.value)
    if result is None:
        raise NotFoundError("Availability data", machine_id)
    return ApiResponse(data=result, timestamp=services.clock.now())


@router.get("/machine/{machine_id}/history", response_model=ApiResponse)
async def get_machine_availability_history(
    machine_id: str,
    start_time: Optional[datetime] = Query(None, alias="startTime"),
    end_time: Optional[datetime] = Query(None, alias="endTime"),
    calculation_type: CalculationType = Query(CalculationType.SHIFT, alias="calculationType"),
    services: ServiceContainer = Depends(get_services)
) -> ApiResponse:
    """Stored aggregations for a machine; defaults to the last 24 hours."""
    now = services.clock.now()
    end_time = services.shift_resolver.to_utc(end_time) if end_time else now
    start_time = services.shift_resolver.to_utc(start_time) if start_time else end_time - timedelta(hours=24)

    history = await services.aggregator.get_availability_history(
        machine_id, start_time, end_time, calculation_type.value
    )
    return ApiResponse(data=history, timestamp=now)
