"""
Floor Analytics - Analytics Cache Service

This module serves analytics payloads through the analytics cache table. A
payload cached for the same scope is reused while it is younger than the TTL;
otherwise it is recomputed and appended to the cache history. The history of a
scope also feeds the loss trend and the z-score anomaly detector.
"""

import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog

from floor_analytics.config import settings
from floor_analytics.models.telemetry import AnalyticsRequest, AnalyticsScope, CachedAnalytics
from floor_analytics.services.scheduler import IntervalScheduler

logger = structlog.get_logger()


def is_fresh(computed_at: datetime, now: datetime, ttl_seconds: Optional[float] = None) -> bool:
    ttl = settings.ANALYTICS_CACHE_TTL if ttl_seconds is None else ttl_seconds
    return (now - computed_at).total_seconds() <= ttl


def _category_losses(payload: Dict[str, Any]) -> Dict[str, float]:
    return {entry["category"]: float(entry.get("loss") or 0) for entry in payload.get("six_big_losses") or []}


def detect_anomalies(
    history: List[Dict[str, Any]],
    min_history: Optional[int] = None,
    z_threshold: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """
    Flag loss categories whose latest value is unusually high.

    ``history`` is newest first. For each category of the latest snapshot the
    series over all snapshots (a missing category counts as zero) gives a
    population mean and standard deviation; the latest value is flagged when
    its z-score reaches the threshold. Fewer than ``min_history`` snapshots
    never produce an anomaly.
    """
    min_history = min_history or settings.ANOMALY_MIN_HISTORY
    z_threshold = settings.ANOMALY_Z_THRESHOLD if z_threshold is None else z_threshold

    if len(history) < min_history:
        return []

    series_by_snapshot = [_category_losses(entry["payload"]) for entry in history]
    latest = series_by_snapshot[0]

    anomalies = []
    for category, latest_value in latest.items():
        series = [snapshot.get(category, 0.0) for snapshot in series_by_snapshot]
        mean = sum(series) / len(series)
        std = math.sqrt(sum((value - mean) ** 2 for value in series) / len(series))
        z_score = (latest_value - mean) / std if std > 0 else 0.0
        if z_score >= z_threshold:
            anomalies.append({
                "category": category,
                "latest_value": round(latest_value, 2),
                "mean": round(mean, 2),
                "z_score": round(z_score, 2),
            })
    return anomalies


def build_loss_trend(history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Total Six Big Losses per snapshot, oldest first."""
    return [
        {
            "timestamp": entry["computed_at"].isoformat(),
            "total_loss": round(sum(_category_losses(entry["payload"]).values()), 2),
        }
        for entry in reversed(history)
    ]


class AnalyticsCacheService:
    """TTL-gated analytics reads backed by the analytics cache history."""

    def __init__(self, engine, store, clock, metrics=None):
        self.engine = engine
        self.store = store
        self.clock = clock
        self.metrics = metrics

    def scope_for(self, request: AnalyticsRequest) -> AnalyticsScope:
        return self.engine.resolve_scope(
            request.range, request.area, request.machine_id,
            request.shift_date, request.shift_number
        )

    async def _history(self, scope: AnalyticsScope) -> List[Dict[str, Any]]:
        try:
            return await self.store.analytics_history(scope.model_dump(), settings.ANALYTICS_HISTORY_LIMIT)
        except Exception as e:
            logger.error("Failed to load analytics history", error=str(e), range=scope.range)
            return []

    async def compute_and_cache(self, scope: AnalyticsScope) -> Tuple[Dict[str, Any], datetime, bool]:
        """
        Compute a fresh payload and append it to the cache.

        Returns ``(payload, computed_at, saved)``. A failed save is logged and
        the fresh payload is still returned.
        """
        payload = await self.engine.compute_for_scope(scope)
        computed_at = self.clock.now()

        try:
            await self.store.save_analytics_cache(scope.model_dump(), payload, computed_at)
            return payload, computed_at, True
        except Exception as e:
            logger.error("Failed to save analytics cache", error=str(e), range=scope.range,
                         area=scope.area, machine_id=scope.machine_id)
            return payload, computed_at, False

    async def get_analytics_with_cache(self, request: AnalyticsRequest, force: bool = False) -> CachedAnalytics:
        """Cached payload for the request's scope, recomputed when stale or forced."""
        scope = self.scope_for(request)
        now = self.clock.now()

        if not force:
            history = await self._history(scope)
            if history and is_fresh(history[0]["computed_at"], now):
                if self.metrics:
                    self.metrics.record_cache_hit(scope.range)
                return self._with_history(history[0]["payload"], history, history[0]["computed_at"], cached=True)

        if self.metrics:
            self.metrics.record_cache_miss(scope.range)

        payload, computed_at, saved = await self.compute_and_cache(scope)
        history = await self._history(scope)
        if not saved:
            history = [{"payload": payload, "computed_at": computed_at}] + history
        return self._with_history(payload, history, computed_at, cached=False)

    @staticmethod
    def _with_history(
        payload: Dict[str, Any], history: List[Dict[str, Any]], computed_at: datetime, cached: bool
    ) -> CachedAnalytics:
        enriched = dict(payload)
        enriched["loss_trend"] = build_loss_trend(history)
        enriched["anomalies"] = detect_anomalies(history)
        return CachedAnalytics(payload=enriched, cached=cached, computed_at=computed_at)


class AnalyticsRefreshScheduler(IntervalScheduler):
    """Keeps the plant-wide analytics of the configured ranges warm."""

    name = "analytics_refresh"

    def __init__(
        self,
        cache_service: AnalyticsCacheService,
        ranges: Optional[List[str]] = None,
        interval_seconds: Optional[float] = None,
    ):
        super().__init__(interval_seconds or settings.ANALYTICS_REFRESH_INTERVAL)
        self.cache_service = cache_service
        self.ranges = ranges or settings.ANALYTICS_REFRESH_RANGES

    async def run_once(self) -> int:
        refreshed = 0
        for range_name in self.ranges:
            try:
                scope = self.cache_service.engine.resolve_scope(range_name, "all")
                await self.cache_service.compute_and_cache(scope)
                refreshed += 1
            except Exception as e:
                logger.error("Analytics refresh failed", range=range_name, error=str(e))
        return refreshed
