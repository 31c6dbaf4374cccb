"""
Tests for the in-memory machine status cache.

Run: python -m pytest tests/test_status_cache.py -v
"""

import asyncio

from floor_analytics.services.status_cache import MachineStatusCache


class TestStatusCache:

    def test_unknown_machine_counts_as_changed(self, clock):
        cache = MachineStatusCache(clock)
        assert cache.has_changed("M1", "running")

    def test_same_status_is_not_a_change(self, clock):
        cache = MachineStatusCache(clock)
        cache.update("M1", "running")
        assert not cache.has_changed("M1", "running")
        assert cache.has_changed("M1", "error")

    def test_initialize_skips_rows_without_status(self, clock):
        cache = MachineStatusCache(clock)
        count = cache.initialize([
            {"id": "M1", "status": "running"},
            {"id": "M2", "status": None},
        ])
        assert count == 1
        assert cache.get("M1") == "running"
        assert cache.get("M2") is None

    def test_clear_one_and_all(self, clock):
        cache = MachineStatusCache(clock)
        cache.initialize([{"id": "M1", "status": "idle"}, {"id": "M2", "status": "running"}])
        cache.clear("M1")
        assert len(cache) == 1
        cache.clear()
        assert len(cache) == 0

    def test_stats_report_timestamps(self, clock):
        cache = MachineStatusCache(clock)
        cache.update("M1", "setup")
        stats = cache.stats()
        assert stats["size"] == 1
        assert stats["machines"][0]["last_updated"] == clock.now().isoformat()


class TestLoadFromStore:

    def test_loads_registry_statuses(self, store, clock):
        store.add_machine("M1", status="running")
        store.add_machine("M2", status="error")
        cache = MachineStatusCache(clock)

        assert asyncio.run(cache.load_from_store(store)) == 2
        assert cache.get("M2") == "error"

    def test_store_failure_leaves_cache_empty(self, store, clock):
        store.fail("list_machine_statuses")
        cache = MachineStatusCache(clock)
        cache.update("M1", "running")

        assert asyncio.run(cache.load_from_store(store)) == 0
        assert len(cache) == 0
