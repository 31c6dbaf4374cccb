"""
Floor Analytics - Production Order API Routes
"""

from fastapi import APIRouter, Depends

from floor_analytics.models.telemetry import ApiResponse, ProductionOrderPatch
from floor_analytics.services.container import ServiceContainer, get_services

router = APIRouter()


@router.patch("/{order_id}", response_model=ApiResponse)
async def update_production_order(
    order_id: str,
    patch: ProductionOrderPatch,
    services: ServiceContainer = Depends(get_services)
) -> ApiResponse:
    order = await services.telemetry.apply_patch(order_id, patch)
    return ApiResponse(data=order, timestamp=services.clock.now())
