"""
Floor Analytics - Machine API Routes

This module accepts telemetry patches for machines. Only the documented
machine fields are accepted; unknown keys are rejected.
"""

from fastapi import APIRouter, Depends
import structlog

from floor_analytics.models.telemetry import ApiResponse, MachinePatch
from floor_analytics.services.container import ServiceContainer, get_services
from floor_analytics.utils.exceptions import NotFoundError

logger = structlog.get_logger()

router = APIRouter()


@router.get("/{machine_id}", response_model=ApiResponse)
async def get_machine(machine_id: str, services: ServiceContainer = Depends(get_services)) -> ApiResponse:
    machine = await services.store.get_machine(machine_id)
    if not machine:
        raise NotFoundError("Machine", machine_id)
    return ApiResponse(data=machine, timestamp=services.clock.now())


@router.patch("/{machine_id}", response_model=ApiResponse)
async def update_machine(
    machine_id: str,
    patch: MachinePatch,
    services: ServiceContainer = Depends(get_services)
) -> ApiResponse:
    """Apply a telemetry patch and return the updated machine record."""
    machine = await services.telemetry.apply_patch(machine_id, patch)
    return ApiResponse(data=machine, timestamp=services.clock.now())
