"""
Floor Analytics - Service Container

This module wires the engine's services together once per process. The
container owns the status cache, the broadcaster and both background
schedulers; API routes reach it through ``request.app.state.services``.
"""

from typing import Optional

from fastapi import Request
import structlog

from floor_analytics.config import settings
from floor_analytics.monitoring.application_metrics import ApplicationMetrics
from floor_analytics.services.analytics_cache import AnalyticsCacheService, AnalyticsRefreshScheduler
from floor_analytics.services.analytics_engine import AnalyticsEngine
from floor_analytics.services.availability_aggregator import AvailabilityAggregator
from floor_analytics.services.availability_sync import AvailabilitySyncService, FleetSyncScheduler
from floor_analytics.services.oee_calculator import OEECalculator
from floor_analytics.services.production_length import ProductionLengthService
from floor_analytics.services.status_cache import MachineStatusCache
from floor_analytics.services.telemetry_ingest import MachineTelemetryService
from floor_analytics.services.telemetry_store import TelemetryStore
from floor_analytics.services.websocket_manager import BroadcastManager
from floor_analytics.utils.clock import SystemClock
from floor_analytics.utils.shift_calculator import ShiftResolver

logger = structlog.get_logger()


class ServiceContainer:
    """Process-wide service graph."""

    def __init__(
        self,
        store=None,
        clock=None,
        metrics: Optional[ApplicationMetrics] = None,
        shift_resolver: Optional[ShiftResolver] = None,
    ):
        self.clock = clock or SystemClock()
        self.store = store or TelemetryStore()
        if metrics is None and settings.ENABLE_METRICS:
            metrics = ApplicationMetrics()
        self.metrics = metrics
        self.shift_resolver = shift_resolver or ShiftResolver(settings.SHIFT_TIMEZONE)

        self.status_cache = MachineStatusCache(self.clock)
        self.broadcaster = BroadcastManager(self.metrics, self.clock)
        self.production_length = ProductionLengthService(self.store, self.shift_resolver)
        self.aggregator = AvailabilityAggregator(self.store, self.shift_resolver, self.clock)
        self.oee_calculator = OEECalculator(
            self.store, self.aggregator, self.shift_resolver, self.clock, self.metrics
        )
        self.sync_service = AvailabilitySyncService(self.store, self.aggregator, self.clock, self.metrics)
        self.analytics_engine = AnalyticsEngine(self.store, self.shift_resolver, self.clock)
        self.analytics_cache = AnalyticsCacheService(
            self.analytics_engine, self.store, self.clock, self.metrics
        )
        self.telemetry = MachineTelemetryService(
            self.store,
            self.status_cache,
            self.production_length,
            self.aggregator,
            self.oee_calculator,
            self.broadcaster,
            self.clock,
        )

        self.sync_scheduler = FleetSyncScheduler(self.sync_service)
        self.analytics_scheduler = AnalyticsRefreshScheduler(self.analytics_cache)

    async def start(self) -> None:
        """Warm the status cache and start the enabled schedulers."""
        await self.status_cache.load_from_store(self.store)

        if settings.AVAILABILITY_SYNC_ENABLED:
            await self.sync_scheduler.start()
        if settings.ANALYTICS_REFRESH_ENABLED:
            await self.analytics_scheduler.start()

    async def stop(self) -> None:
        if self.analytics_scheduler.is_running:
            await self.analytics_scheduler.stop()
        if self.sync_scheduler.is_running:
            await self.sync_scheduler.stop()


def get_services(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the application's service container."""
    return request.app.state.services
