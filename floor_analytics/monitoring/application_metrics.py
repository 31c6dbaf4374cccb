"""
Floor Analytics - Application Metrics

This module collects Prometheus metrics for the analytics engine: fleet sync
cycles, OEE calculations, analytics cache hits and misses and WebSocket
broadcasts. Each ``ApplicationMetrics`` owns its own registry so tests can
create isolated instances.
"""

from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

logger = structlog.get_logger()


class ApplicationMetrics:
    """Prometheus metrics for the analytics engine."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._initialize_prometheus_metrics()
        logger.info("Application metrics initialized")

    def _initialize_prometheus_metrics(self) -> None:
        # Fleet sync
        self.sync_cycles_total = Counter(
            'floor_analytics_sync_cycles_total',
            'Total number of fleet availability sync cycles',
            registry=self.registry
        )

        self.sync_duration = Histogram(
            'floor_analytics_sync_duration_seconds',
            'Fleet availability sync cycle duration in seconds',
            buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry
        )

        self.machines_synced = Gauge(
            'floor_analytics_machines_synced',
            'Machines synced in the last sync cycle',
            registry=self.registry
        )

        self.machines_failed = Gauge(
            'floor_analytics_machines_failed',
            'Machines that failed in the last sync cycle',
            registry=self.registry
        )

        self.machine_sync_failures_total = Counter(
            'floor_analytics_machine_sync_failures_total',
            'Total number of failed machine availability syncs',
            ['area'],
            registry=self.registry
        )

        # OEE
        self.oee_calculations_total = Counter(
            'floor_analytics_oee_calculations_total',
            'Total number of OEE calculations',
            registry=self.registry
        )

        self.oee_value = Histogram(
            'floor_analytics_oee_percent',
            'Distribution of calculated OEE values',
            buckets=[10, 25, 40, 50, 60, 70, 80, 85, 90, 95, 100],
            registry=self.registry
        )

        # Analytics cache
        self.cache_hits_total = Counter(
            'floor_analytics_cache_hits_total',
            'Total number of analytics cache hits',
            ['range'],
            registry=self.registry
        )

        self.cache_misses_total = Counter(
            'floor_analytics_cache_misses_total',
            'Total number of analytics cache misses',
            ['range'],
            registry=self.registry
        )

        # WebSocket
        self.broadcasts_total = Counter(
            'floor_analytics_broadcasts_total',
            'Total number of WebSocket broadcasts',
            ['event'],
            registry=self.registry
        )

    def record_sync_cycle(self, duration: float, synced: int, failed: int) -> None:
        self.sync_cycles_total.inc()
        self.sync_duration.observe(duration)
        self.machines_synced.set(synced)
        self.machines_failed.set(failed)

    def record_machine_sync_failure(self, area: Optional[str]) -> None:
        self.machine_sync_failures_total.labels(area=area or "unknown").inc()

    def record_oee_calculation(self, oee: float) -> None:
        self.oee_calculations_total.inc()
        self.oee_value.observe(oee)

    def record_cache_hit(self, range_name: str) -> None:
        self.cache_hits_total.labels(range=range_name).inc()

    def record_cache_miss(self, range_name: str) -> None:
        self.cache_misses_total.labels(range=range_name).inc()

    def record_broadcast(self, event: str) -> None:
        self.broadcasts_total.labels(event=event).inc()

    def get_prometheus_metrics(self) -> bytes:
        return generate_latest(self.registry)

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Any:
        return self.registry.get_sample_value(name, labels or {})
