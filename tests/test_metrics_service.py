"""
Unit tests for memory_bank.metrics.MetricsService
"""

from __future__ import annotations

import pytest

from memory_bank.metrics import MetricsService, MetricsSummary
from memory_bank.store.memory_store import MemoryStore


@pytest.fixture
def store(tmp_path):
    s = MemoryStore()
    assert s.init(str(tmp_path / "memory.db"))
    yield s
    s.close()


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestTokenMetrics:
    def test_average_usage(self, store):
        for units in (100, 200, 300):
            store.record_token_metric("m", units)
        assert MetricsService(store).average_token_usage() == 200

    def test_average_is_zero_without_data(self, store):
        assert MetricsService(store).average_token_usage() == 0

    def test_average_cached_until_ttl(self, store):
        clock = FakeClock()
        service = MetricsService(store, cache_ttl=30, clock=clock)
        store.record_token_metric("m", 100)
        assert service.average_token_usage() == 100

        store.record_token_metric("m", 300)
        assert service.average_token_usage() == 100
        clock.now = 31
        assert service.average_token_usage() == 200

    def test_clear_cache(self, store):
        service = MetricsService(store, clock=FakeClock())
        store.record_token_metric("m", 100)
        service.average_token_usage()
        store.record_token_metric("m", 300)
        service.clear_cache()
        assert service.average_token_usage() == 200

    @pytest.mark.parametrize("series,trend", [
        ([100], "stable"),
        ([100, 100, 103, 102], "stable"),
        ([100, 100, 200, 200], "increasing"),
        ([200, 200, 100, 100], "decreasing"),
        ([0, 0, 50, 50], "increasing"),
    ])
    def test_trend(self, store, series, trend):
        for units in series:
            store.record_token_metric("m", units)
        assert MetricsService(store).token_trend() == trend

    def test_latest(self, store):
        store.record_token_metric("first", 10)
        store.record_token_metric("second", 20)
        assert MetricsService(store).latest_token_metric()["model"] == "second"


class TestQueryMetrics:
    def test_average_query_time_by_operation(self, store):
        store.record_query_metric("semantic_search", 10.0, 1)
        store.record_query_metric("semantic_search", 20.0, 1)
        store.record_query_metric("other", 100.0, 1)
        service = MetricsService(store)
        assert service.average_query_time("semantic_search") == 15.0
        assert service.average_query_time() == pytest.approx(43.33, abs=0.01)


class TestSummary:
    def test_empty_summary(self, store):
        summary = MetricsService(store).summary()
        assert isinstance(summary, MetricsSummary)
        assert summary.current_status == "no-data"
        assert summary.call_count == 0
        assert summary.last_updated

    def test_summary_from_latest_metric(self, store):
        store.record_token_metric("m", 1000, status="healthy")
        store.record_token_metric("m", 120_000, status="warning")
        data = MetricsService(store).summary().to_dict()
        assert data["total_units_used"] == 120_000
        assert data["current_status"] == "warning"
        assert data["remaining_budget"] == 40_000
        assert data["percentage_used"] == 75.0
        assert data["call_count"] == 2
        assert data["token_trend"] == "increasing"
