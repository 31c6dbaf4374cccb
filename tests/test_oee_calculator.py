"""
Tests for the real-time OEE calculation.

Run: python -m pytest tests/test_oee_calculator.py -v
"""

import asyncio

import pytest

from conftest import FixedClock, utc
from floor_analytics.config import settings
from floor_analytics.models.telemetry import LiveMachineData
from floor_analytics.monitoring.application_metrics import ApplicationMetrics
from floor_analytics.services.availability_aggregator import AvailabilityAggregator
from floor_analytics.services.oee_calculator import (
    OEECalculator,
    calculate_performance,
    quality_from_lengths,
)
from floor_analytics.utils.exceptions import AnalyticsError


def _calculator(store, resolver, clock, metrics=None):
    aggregator = AvailabilityAggregator(store, resolver, clock)
    return OEECalculator(store, aggregator, resolver, clock, metrics)


class TestPerformance:

    def test_ratio(self):
        assert calculate_performance(80, 100) == 80.0

    def test_clamped_above_target(self):
        assert calculate_performance(120, 100) == 100.0

    def test_unknown_target_uses_configured_default(self, monkeypatch):
        monkeypatch.setattr(settings, "DEFAULT_PERFORMANCE_WHEN_TARGET_UNKNOWN", 75.0)
        assert calculate_performance(50, 0) == 75.0
        assert calculate_performance(50, None) == 75.0

    def test_explicit_default(self):
        assert calculate_performance(50, 0, default_when_unknown=0.0) == 0.0


class TestQuality:

    def test_ratio(self):
        assert quality_from_lengths(950, 50) == 95.0

    def test_nothing_produced(self):
        assert quality_from_lengths(0, 0) is None


class TestCalculateOEE:

    def test_full_shift_in_progress(self, store, resolver):
        clock = FixedClock(utc(2025, 3, 10, 8))
        store.add_interval("M1", "running", utc(2025, 3, 10, 6), utc(2025, 3, 10, 7, 30))
        store.add_interval("M1", "error", utc(2025, 3, 10, 7, 30))
        live = LiveMachineData(line_speed=80, target_speed=100, produced_length_ok=900, produced_length_ng=100)

        result = asyncio.run(_calculator(store, resolver, clock).calculate_oee("M1", live))

        assert result.availability == 75.0
        assert result.performance == 80.0
        assert result.quality == 90.0
        assert result.oee == pytest.approx(54.0)
        assert result.is_preliminary is True
        assert result.period_start == utc(2025, 3, 10, 6)
        assert result.period_end == utc(2025, 3, 10, 8)

    def test_oee_is_the_product_of_components(self, store, resolver, clock):
        store.add_interval("M1", "running", utc(2025, 3, 10, 6))
        live = LiveMachineData(line_speed=33, target_speed=70, produced_length_ok=10, produced_length_ng=3)

        result = asyncio.run(_calculator(store, resolver, clock).calculate_oee("M1", live))

        expected = result.availability * (33 / 70 * 100) * (10 / 13 * 100) / 10000
        assert result.oee == pytest.approx(expected, abs=0.01)
        assert 0 <= result.oee <= 100

    def test_calculation_is_recorded(self, store, resolver, clock):
        store.add_interval("M1", "running", utc(2025, 3, 10, 6))
        metrics = ApplicationMetrics()
        live = LiveMachineData(line_speed=50, target_speed=100)

        asyncio.run(_calculator(store, resolver, clock, metrics).calculate_oee("M1", live, "PO1"))

        row = store.oee_calculations[0]
        assert row["production_order_id"] == "PO1"
        assert row["planned_time_seconds"] == 4 * 3600
        assert row["running_time_seconds"] == 4 * 3600
        assert metrics.get_sample_value("floor_analytics_oee_calculations_total") == 1.0

    def test_audit_write_failure_still_returns_result(self, store, resolver, clock):
        store.fail("insert_oee_calculation")
        store.add_interval("M1", "running", utc(2025, 3, 10, 6))

        result = asyncio.run(_calculator(store, resolver, clock).calculate_oee(
            "M1", LiveMachineData(line_speed=100, target_speed=100)
        ))
        assert result.oee == 100.0

    def test_low_availability_substitutes_previous_shift(self, store, resolver):
        clock = FixedClock(utc(2025, 3, 10, 6, 30))
        store.add_interval("M1", "stopped", utc(2025, 3, 10, 6))
        store.aggregations.append({
            "machine_id": "M1", "calculation_type": "shift",
            "window_start": utc(2025, 3, 9, 22), "window_end": utc(2025, 3, 10, 6),
            "availability_percentage": 82.5, "calculated_at": utc(2025, 3, 10, 6),
        })

        result = asyncio.run(_calculator(store, resolver, clock).calculate_oee(
            "M1", LiveMachineData(line_speed=100, target_speed=100)
        ))

        assert result.availability == 82.5
        assert result.availability_substituted is True

    def test_low_availability_without_previous_shift_is_kept(self, store, resolver):
        clock = FixedClock(utc(2025, 3, 10, 6, 30))
        store.add_interval("M1", "stopped", utc(2025, 3, 10, 6))

        result = asyncio.run(_calculator(store, resolver, clock).calculate_oee(
            "M1", LiveMachineData(line_speed=100, target_speed=100)
        ))

        assert result.availability == 0.0
        assert result.availability_substituted is False
        assert result.oee == 0.0

    def test_availability_failure_degrades_to_zero(self, store, resolver, clock):
        store.fail("fetch_status_history")
        result = asyncio.run(_calculator(store, resolver, clock).calculate_oee(
            "M1", LiveMachineData(line_speed=100, target_speed=100)
        ))
        assert result.availability == 0.0


class TestQualityFallbacks:

    def _window(self, resolver, clock):
        return resolver.resolve(clock.now())

    def test_order_totals_when_live_split_missing(self, store, resolver, clock):
        store.add_quality("M1", utc(2025, 3, 10, 7), ok=80, ng=20, production_order_id="PO1")
        calculator = _calculator(store, resolver, clock)

        quality, ok_length, ng_length = asyncio.run(calculator.calculate_quality(
            "M1", LiveMachineData(), "PO1", self._window(resolver, clock)
        ))
        assert (quality, ok_length, ng_length) == (80.0, 80.0, 20.0)

    def test_produced_length_counts_as_good(self, store, resolver, clock):
        calculator = _calculator(store, resolver, clock)
        quality, ok_length, _ = asyncio.run(calculator.calculate_quality(
            "M1", LiveMachineData(produced_length=500), None, self._window(resolver, clock)
        ))
        assert quality == 100.0
        assert ok_length == 500.0

    def test_quality_store_failure_falls_back(self, store, resolver, clock):
        store.fail("quality_totals")
        calculator = _calculator(store, resolver, clock)
        quality, _, _ = asyncio.run(calculator.calculate_quality(
            "M1", LiveMachineData(), "PO1", self._window(resolver, clock)
        ))
        assert quality == 100.0


class TestTrend:

    def test_trend_oldest_first(self, store, resolver, clock):
        store.add_oee("M1", utc(2025, 3, 10, 9), 90, 90, 90)
        store.add_oee("M1", utc(2025, 3, 10, 8), 80, 80, 80)
        store.add_oee("M1", utc(2025, 3, 8, 8), 10, 10, 10)

        trend = asyncio.run(_calculator(store, resolver, clock).get_oee_trend("M1", hours=24))

        assert [point.calculated_at.hour for point in trend] == [8, 9]

    def test_trend_failure_is_empty(self, store, resolver, clock):
        store.fail("oee_trend")
        assert asyncio.run(_calculator(store, resolver, clock).get_oee_trend("M1")) == []


class TestFailure:

    def test_unexpected_error_raises_analytics_error(self, store, resolver, clock):
        calculator = _calculator(store, resolver, clock)
        calculator.shift_resolver = None
        with pytest.raises(AnalyticsError):
            asyncio.run(calculator.calculate_oee("M1", LiveMachineData()))
