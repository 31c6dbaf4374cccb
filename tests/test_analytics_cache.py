"""
Tests for the TTL-gated analytics cache, loss trend and anomaly detection.

Run: python -m pytest tests/test_analytics_cache.py -v
"""

import asyncio
from datetime import timedelta

from conftest import FixedClock, utc
from floor_analytics.config import settings
from floor_analytics.models.telemetry import AnalyticsRequest
from floor_analytics.monitoring.application_metrics import ApplicationMetrics
from floor_analytics.services.analytics_cache import (
    AnalyticsCacheService,
    AnalyticsRefreshScheduler,
    build_loss_trend,
    detect_anomalies,
    is_fresh,
)
from floor_analytics.services.analytics_engine import AnalyticsEngine


def _snapshot(at, **losses):
    return {
        "computed_at": at,
        "payload": {"six_big_losses": [{"category": name, "loss": value} for name, value in losses.items()]},
    }


def _history(values, start=utc(2025, 3, 10, 10)):
    """Snapshots newest first; ``values`` are given oldest first."""
    snapshots = [
        _snapshot(start + timedelta(minutes=index), **{"Equipment Failure": value})
        for index, value in enumerate(values)
    ]
    return list(reversed(snapshots))


class TestFreshness:

    def test_within_ttl(self):
        computed = utc(2025, 3, 10, 10)
        assert is_fresh(computed, computed + timedelta(seconds=59), ttl_seconds=60)
        assert is_fresh(computed, computed + timedelta(seconds=60), ttl_seconds=60)
        assert not is_fresh(computed, computed + timedelta(seconds=61), ttl_seconds=60)


class TestAnomalies:

    def test_spike_after_stable_history_is_flagged(self):
        anomalies = detect_anomalies(_history([5.0] * 6 + [9.0]))
        assert len(anomalies) == 1
        assert anomalies[0]["category"] == "Equipment Failure"
        assert anomalies[0]["latest_value"] == 9.0
        assert anomalies[0]["z_score"] >= 2

    def test_short_history_is_never_flagged(self):
        assert detect_anomalies(_history([1.0, 50.0, 900.0])) == []

    def test_flat_history_has_no_anomaly(self):
        assert detect_anomalies(_history([5.0] * 7)) == []

    def test_drop_is_not_flagged(self):
        assert detect_anomalies(_history([5.0] * 6 + [1.0])) == []

    def test_category_missing_in_older_snapshots_counts_as_zero(self):
        history = _history([0.0] * 6)
        history.insert(0, _snapshot(utc(2025, 3, 10, 11), **{"Reduced Speed": 4.0}))
        anomalies = detect_anomalies(history)
        assert [anomaly["category"] for anomaly in anomalies] == ["Reduced Speed"]


class TestLossTrend:

    def test_oldest_first_totals(self):
        history = [
            _snapshot(utc(2025, 3, 10, 10, 5), **{"Equipment Failure": 2.0, "Reduced Speed": 1.5}),
            _snapshot(utc(2025, 3, 10, 10, 0), **{"Equipment Failure": 1.0}),
        ]
        trend = build_loss_trend(history)
        assert trend == [
            {"timestamp": utc(2025, 3, 10, 10, 0).isoformat(), "total_loss": 1.0},
            {"timestamp": utc(2025, 3, 10, 10, 5).isoformat(), "total_loss": 3.5},
        ]


def _service(store, resolver, clock, metrics=None):
    engine = AnalyticsEngine(store, resolver, clock)
    return AnalyticsCacheService(engine, store, clock, metrics)


def _plant(store):
    store.add_machine("D1", area="drawing")
    store.add_oee("D1", utc(2025, 3, 10, 8), 80, 90, 95)


class TestAnalyticsWithCache:

    def test_first_read_computes_and_saves(self, store, resolver):
        _plant(store)
        clock = FixedClock(utc(2025, 3, 11, 10))
        metrics = ApplicationMetrics()

        result = asyncio.run(_service(store, resolver, clock, metrics).get_analytics_with_cache(
            AnalyticsRequest(range="yesterday")
        ))

        assert result.cached is False
        assert result.computed_at == clock.now()
        assert len(store.analytics_cache) == 1
        assert len(result.payload["loss_trend"]) == 1
        assert metrics.get_sample_value("floor_analytics_cache_misses_total", {"range": "yesterday"}) == 1.0

    def test_reused_just_before_ttl_and_recomputed_after(self, store, resolver):
        _plant(store)
        clock = FixedClock(utc(2025, 3, 11, 10))
        service = _service(store, resolver, clock)
        request = AnalyticsRequest(range="yesterday")

        first = asyncio.run(service.get_analytics_with_cache(request))
        clock.advance(seconds=settings.ANALYTICS_CACHE_TTL - 1)
        second = asyncio.run(service.get_analytics_with_cache(request))
        clock.advance(seconds=2)
        third = asyncio.run(service.get_analytics_with_cache(request))

        assert second.cached is True
        assert second.computed_at == first.computed_at
        assert third.cached is False
        assert third.computed_at == clock.now()
        assert len(store.analytics_cache) == 2
        assert len(third.payload["loss_trend"]) == 2

    def test_force_bypasses_fresh_cache(self, store, resolver):
        _plant(store)
        clock = FixedClock(utc(2025, 3, 11, 10))
        service = _service(store, resolver, clock)
        request = AnalyticsRequest(range="yesterday")

        asyncio.run(service.get_analytics_with_cache(request))
        result = asyncio.run(service.get_analytics_with_cache(request, force=True))

        assert result.cached is False
        assert len(store.analytics_cache) == 2

    def test_scopes_do_not_share_entries(self, store, resolver):
        _plant(store)
        clock = FixedClock(utc(2025, 3, 11, 10))
        service = _service(store, resolver, clock)

        asyncio.run(service.get_analytics_with_cache(AnalyticsRequest(range="yesterday")))
        other = asyncio.run(service.get_analytics_with_cache(AnalyticsRequest(range="yesterday", area="drawing")))

        assert other.cached is False

    def test_save_failure_still_returns_fresh_payload(self, store, resolver):
        _plant(store)
        store.fail("save_analytics_cache")
        clock = FixedClock(utc(2025, 3, 11, 10))

        result = asyncio.run(_service(store, resolver, clock).get_analytics_with_cache(
            AnalyticsRequest(range="yesterday")
        ))

        assert result.cached is False
        assert result.payload["oee_summary"]["oee"] == 68.4
        assert len(result.payload["loss_trend"]) == 1

    def test_history_read_failure_recomputes(self, store, resolver):
        _plant(store)
        store.fail("analytics_history")
        clock = FixedClock(utc(2025, 3, 11, 10))

        result = asyncio.run(_service(store, resolver, clock).get_analytics_with_cache(
            AnalyticsRequest(range="yesterday")
        ))
        assert result.cached is False


class TestRefreshScheduler:

    def test_run_once_refreshes_each_range(self, store, resolver, clock):
        _plant(store)
        scheduler = AnalyticsRefreshScheduler(_service(store, resolver, clock), ranges=["shift", "today"])

        refreshed = asyncio.run(scheduler.run_once())

        assert refreshed == 2
        assert sorted(row["scope_type"] for row in store.analytics_cache) == ["shift", "today"]

    def test_failed_range_is_skipped(self, store, resolver, clock):
        store.fail("list_machines")
        scheduler = AnalyticsRefreshScheduler(_service(store, resolver, clock), ranges=["today"])
        assert asyncio.run(scheduler.run_once()) == 0
