"""
Metrics service: aggregates the token and query metrics recorded by the store.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from .models import utc_now_iso
from .retrieval.context_budget import get_context_budget
from .store.memory_store import MemoryStore

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 30.0
TREND_THRESHOLD_PCT = 5.0


@dataclass
class MetricsSummary:
    """Dashboard-style snapshot of recent usage."""

    total_units_used: int = 0
    average_units_per_call: int = 0
    current_status: str = "no-data"
    remaining_budget: int = 0
    percentage_used: float = 0.0
    call_count: int = 0
    average_query_time_ms: float = 0.0
    token_trend: str = "stable"
    last_updated: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class MetricsService:
    """
    Averages, trends and summaries over the store's metrics tables.

    Averages are cached for 30 seconds per argument set.
    """

    def __init__(
        self,
        store: MemoryStore,
        cache_ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = cache_ttl
        self._clock = clock
        self._cache: dict[str, tuple[float, Any]] = {}

    def _cached(self, key: str, compute: Callable[[], Any]) -> Any:
        hit = self._cache.get(key)
        now = self._clock()
        if hit is not None and now - hit[0] < self._ttl:
            return hit[1]
        value = compute()
        self._cache[key] = (now, value)
        return value

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # Token metrics
    # ------------------------------------------------------------------

    def query_token_metrics(self, days: int = 7) -> list[dict]:
        return self._store.query_token_metrics(days)

    def average_token_usage(self, days: int = 7) -> int:
        def _compute() -> int:
            metrics = self.query_token_metrics(days)
            if not metrics:
                return 0
            return round(sum(m["total_units"] or 0 for m in metrics) / len(metrics))

        return self._cached(f"avg-units-{days}", _compute)

    def token_trend(self, days: int = 7) -> str:
        """``increasing``, ``decreasing`` or ``stable`` comparing the halves of the window."""
        metrics = self.query_token_metrics(days)
        if len(metrics) < 2:
            return "stable"
        mid = len(metrics) // 2
        first = [m["total_units"] or 0 for m in metrics[:mid]]
        second = [m["total_units"] or 0 for m in metrics[mid:]]
        first_avg = sum(first) / len(first)
        second_avg = sum(second) / len(second)
        if first_avg == 0:
            return "increasing" if second_avg > 0 else "stable"
        change = (second_avg - first_avg) / first_avg * 100
        if change > TREND_THRESHOLD_PCT:
            return "increasing"
        if change < -TREND_THRESHOLD_PCT:
            return "decreasing"
        return "stable"

    def latest_token_metric(self) -> Optional[dict]:
        metrics = self.query_token_metrics(days=3650)
        return metrics[-1] if metrics else None

    # ------------------------------------------------------------------
    # Query metrics
    # ------------------------------------------------------------------

    def get_query_metrics(self, operation: Optional[str] = None, days: int = 7) -> list[dict]:
        return self._store.get_query_metrics(operation, days)

    def average_query_time(self, operation: Optional[str] = None, days: int = 7) -> float:
        def _compute() -> float:
            metrics = self.get_query_metrics(operation, days)
            if not metrics:
                return 0.0
            return round(sum(m["elapsed_ms"] or 0.0 for m in metrics) / len(metrics), 2)

        return self._cached(f"avg-query-{operation or 'all'}-{days}", _compute)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summary(self, days: int = 7) -> MetricsSummary:
        latest = self.latest_token_metric()
        metrics = self.query_token_metrics(days)
        if latest is None:
            return MetricsSummary(last_updated=utc_now_iso(),
                                  average_query_time_ms=self.average_query_time(days=days))

        used = int(latest["total_units"] or 0)
        budget = get_context_budget(used)
        return MetricsSummary(
            total_units_used=used,
            average_units_per_call=self.average_token_usage(days),
            current_status=latest["status"] or budget.status,
            remaining_budget=budget.remaining,
            percentage_used=round(budget.percent_used, 2),
            call_count=len(metrics),
            average_query_time_ms=self.average_query_time(days=days),
            token_trend=self.token_trend(days),
            last_updated=latest["timestamp"],
        )
