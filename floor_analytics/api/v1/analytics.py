"""
Floor Analytics - Analytics API Routes

This module exposes the loss-analysis report: a cached read that recomputes
when the cached payload is stale, and an explicit recalculation.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import ValidationError as PydanticValidationError
import structlog

from floor_analytics.models.telemetry import AnalyticsRange, AnalyticsRequest, ApiResponse
from floor_analytics.services.container import ServiceContainer, get_services
from floor_analytics.utils.exceptions import handle_validation_exception

logger = structlog.get_logger()

router = APIRouter()


@router.get("", response_model=ApiResponse)
async def get_analytics(
    range: AnalyticsRange = Query(AnalyticsRange.TODAY, description="Analytics range"),
    area: str = Query("all", description="Production area or 'all'"),
    machine_id: Optional[str] = Query(None, alias="machineId"),
    force: bool = Query(False, description="Recompute even if a fresh payload is cached"),
    shift_date: Optional[date] = Query(None, alias="shiftDate"),
    shift_number: Optional[int] = Query(None, alias="shiftNumber", ge=1, le=3),
    services: ServiceContainer = Depends(get_services)
) -> ApiResponse:
    """Analytics for a scope, served from the cache while it is fresh."""
    try:
        request = AnalyticsRequest(
            range=range, area=area, machine_id=machine_id,
            shift_date=shift_date, shift_number=shift_number
        )
    except PydanticValidationError as e:
        raise handle_validation_exception(e)

    result = await services.analytics_cache.get_analytics_with_cache(request, force=force)
    return ApiResponse(data=result.payload, cached=result.cached, timestamp=result.computed_at)


@router.post("/recalculate", response_model=ApiResponse)
async def recalculate_analytics(
    request: Optional[AnalyticsRequest] = Body(None),
    services: ServiceContainer = Depends(get_services)
) -> ApiResponse:
    """Recompute analytics for a scope and append it to the cache."""
    request = request or AnalyticsRequest()
    scope = services.analytics_cache.scope_for(request)
    payload, computed_at, _ = await services.analytics_cache.compute_and_cache(scope)

    logger.info("Analytics recalculated via API", range=scope.range, area=scope.area,
                machine_id=scope.machine_id)
    return ApiResponse(data=payload, cached=False, timestamp=computed_at)
