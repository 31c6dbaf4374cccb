"""
Floor Analytics - Main FastAPI Application

This is the main entry point for the floor analytics engine. It wires the
service container into the application, starts the availability sync and
analytics refresh schedulers, and exposes the HTTP and WebSocket adapters.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.responses import Response
import structlog

from floor_analytics.config import settings
from floor_analytics.database import check_database_health, close_db, init_db
from floor_analytics.api import websocket
from floor_analytics.api.v1 import analytics, availability, machines, oee, orders
from floor_analytics.services.container import ServiceContainer
from floor_analytics.utils.clock import SystemClock
from floor_analytics.utils.exceptions import FloorAnalyticsException

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    logger.info("Starting Floor Analytics API", environment=settings.ENVIRONMENT)
    await init_db()
    logger.info("Database initialized successfully")

    services = ServiceContainer()
    app.state.services = services
    await services.start()
    logger.info("Service container started",
                availability_sync=services.sync_scheduler.is_running,
                analytics_refresh=services.analytics_scheduler.is_running)

    yield

    # Shutdown
    logger.info("Shutting down Floor Analytics API")
    await services.stop()
    logger.info("Schedulers stopped")
    await close_db()
    logger.info("Database connections closed")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="""
    Telemetry aggregation and OEE analytics for the cable production floor.

    This API provides:
    - Machine telemetry patches with status interval tracking
    - Availability aggregation per shift and rolling window
    - Real-time OEE calculations and trends
    - Six Big Losses analytics with caching
    - WebSocket broadcast of machine updates
    """,
    version=settings.VERSION,
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None,
    openapi_url="/openapi.json" if settings.ENVIRONMENT != "production" else None,
    lifespan=lifespan
)

# Add middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _clock_for(request: Request):
    services = getattr(request.app.state, "services", None)
    return services.clock if services is not None else SystemClock()


def error_envelope(
    request: Request, status_code: int, error: str, message: str, details: Optional[Any] = None
) -> JSONResponse:
    """Failure envelope shared by every exception handler."""
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({
            "success": False,
            "error": error,
            "message": message,
            "details": details,
            "data": None,
            "timestamp": _clock_for(request).now(),
        })
    )


# Global exception handlers
@app.exception_handler(FloorAnalyticsException)
async def floor_analytics_exception_handler(request: Request, exc: FloorAnalyticsException) -> JSONResponse:
    """Handle custom floor analytics exceptions."""
    logger.error(
        "Floor analytics exception occurred",
        exception_type=type(exc).__name__,
        message=str(exc),
        path=request.url.path,
        method=request.method
    )
    return error_envelope(request, exc.status_code, exc.error_code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors."""
    logger.warning(
        "Validation error occurred",
        errors=exc.errors(),
        path=request.url.path,
        method=request.method
    )
    return error_envelope(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "Request validation failed",
        exc.errors(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error(
        "Unexpected error occurred",
        exception_type=type(exc).__name__,
        message=str(exc),
        path=request.url.path,
        method=request.method,
        exc_info=True
    )
    return error_envelope(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_SERVER_ERROR",
        "An unexpected error occurred",
        None if settings.ENVIRONMENT == "production" else str(exc),
    )


# Health check endpoints
@app.get("/health", tags=["Health"])
async def health_check(request: Request) -> Dict[str, Any]:
    """Health check with database connectivity and scheduler state."""
    services: ServiceContainer = request.app.state.services
    db_status = await check_database_health()

    return {
        "status": "healthy" if db_status["status"] == "healthy" else "unhealthy",
        "service": settings.APP_NAME,
        "version": settings.VERSION,
        "timestamp": services.clock.now().isoformat(),
        "components": {
            "database": db_status,
            "availability_sync": "running" if services.sync_scheduler.is_running else "stopped",
            "analytics_refresh": "running" if services.analytics_scheduler.is_running else "stopped",
            "websocket": services.broadcaster.get_connection_stats(),
            "status_cache": services.status_cache.stats(),
        }
    }


# Metrics endpoint for Prometheus
@app.get("/metrics", tags=["Monitoring"])
async def metrics(request: Request) -> Response:
    """Prometheus metrics endpoint."""
    services: ServiceContainer = request.app.state.services
    body = services.metrics.get_prometheus_metrics() if services.metrics else b""
    return Response(body, media_type=CONTENT_TYPE_LATEST)


# Include API routers
app.include_router(analytics.router, prefix="/api/v1/analytics", tags=["Analytics"])
app.include_router(availability.router, prefix="/api/v1/availability", tags=["Availability"])
app.include_router(oee.router, prefix="/api/v1/oee", tags=["OEE"])
app.include_router(machines.router, prefix="/api/v1/machines", tags=["Machines"])
app.include_router(orders.router, prefix="/api/v1/orders", tags=["Production Orders"])

# WebSocket router
app.include_router(websocket.router, tags=["WebSocket"])


# Root endpoint
@app.get("/", tags=["Root"])
async def root() -> Dict[str, str]:
    """Root endpoint with API information."""
    return {
        "message": settings.APP_NAME,
        "version": settings.VERSION,
        "docs": "/docs" if settings.ENVIRONMENT != "production" else "Documentation not available in production",
        "health": "/health"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "floor_analytics.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.ENVIRONMENT == "development",
        log_level=settings.LOG_LEVEL.lower(),
        access_log=True
    )
