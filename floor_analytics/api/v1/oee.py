"""
Floor Analytics - OEE API Routes

This module provides endpoints for on-demand OEE calculation and the stored
OEE trend of a machine.
"""

from fastapi import APIRouter, Depends, Query
import structlog

from floor_analytics.models.telemetry import ApiResponse, LiveMachineData
from floor_analytics.services.container import ServiceContainer, get_services
from floor_analytics.utils.exceptions import NotFoundError

logger = structlog.get_logger()

router = APIRouter()


@router.post("/machines/{machine_id}/calculate", response_model=ApiResponse)
async def calculate_machine_oee(
    machine_id: str,
    services: ServiceContainer = Depends(get_services)
) -> ApiResponse:
    """Calculate OEE for a machine's current shift from its registry values."""
    machine = await services.store.get_machine(machine_id)
    if not machine:
        raise NotFoundError("Machine", machine_id)

    result = await services.oee_calculator.calculate_oee(
        machine_id,
        LiveMachineData.from_machine_row(machine),
        machine.get("production_order_id"),
    )

    logger.info("OEE calculated via API", machine_id=machine_id, oee=result.oee,
                is_preliminary=result.is_preliminary)
    return ApiResponse(data=result, timestamp=result.calculated_at)


@router.get("/machines/{machine_id}/trend", response_model=ApiResponse)
async def get_machine_oee_trend(
    machine_id: str,
    hours: int = Query(24, ge=1, le=168, description="Look-back in hours"),
    services: ServiceContainer = Depends(get_services)
) -> ApiResponse:
    """Stored OEE calculations of a machine, oldest first."""
    trend = await services.oee_calculator.get_oee_trend(machine_id, hours)
    return ApiResponse(data=trend, timestamp=services.clock.now())
