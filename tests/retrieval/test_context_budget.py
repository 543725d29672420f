"""
Unit tests for memory_bank.retrieval.context_budget
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from memory_bank.embedding.embedder import Embedder
from memory_bank.models import MemoryEntry
from memory_bank.retrieval.context_budget import (
    ContextBudgetAllocator,
    estimate_units,
    get_context_budget,
)
from memory_bank.retrieval.scorer import RelevanceScorer
from memory_bank.retrieval.semantic import SemanticSearch
from memory_bank.store.memory_store import MemoryStore

BODY = "storage " * 50  # 400 characters, 100 units


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def store(tmp_path):
    s = MemoryStore()
    assert s.init(str(tmp_path / "memory.db"))
    yield s
    s.close()


@pytest.fixture
def seeded(store):
    for category in ("BRIEF", "PATTERN", "CONTEXT", "DECISION", "PROGRESS"):
        store.append_entry(MemoryEntry(category, BODY))
    return store


def _days_ago(days):
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat(timespec="seconds")


# ---------------------------------------------------------------------------
# Units and window status
# ---------------------------------------------------------------------------

class TestEstimateUnits:
    def test_rounds_up(self):
        assert estimate_units("") == 0
        assert estimate_units("abc") == 1
        assert estimate_units("abcd") == 1
        assert estimate_units("abcde") == 2
        assert estimate_units(BODY) == 100


class TestGetContextBudget:
    def test_reserves_twenty_percent(self):
        budget = get_context_budget(0)
        assert budget.total == 160_000
        assert budget.remaining == 160_000
        assert budget.status == "healthy"

    @pytest.mark.parametrize("used,status", [
        (100_000, "healthy"),
        (110_000, "warning"),
        (149_999, "warning"),
        (150_000, "critical"),
        (200_000, "critical"),
    ])
    def test_status_thresholds(self, used, status):
        assert get_context_budget(used).status == status

    def test_overrun_clamped(self):
        budget = get_context_budget(500_000)
        assert budget.remaining == 0
        assert budget.percent_used == 100.0
        assert budget.recommendations


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------

class TestSelectContextForBudget:
    def test_selects_highest_priority_that_fit(self, seeded):
        allocator = ContextBudgetAllocator(seeded)
        selection = allocator.select_context_for_budget("storage", budget=250)

        assert len(selection.entries) == 2
        assert {e.category for e in selection.entries} == {"BRIEF", "PATTERN"}
        assert selection.units_used == 200
        assert selection.units_used <= 250
        assert selection.coverage_summary == "2/5 entries, 200/250 units"

    def test_monotonic_in_budget(self, seeded):
        allocator = ContextBudgetAllocator(seeded)
        previous = -1
        for budget in (0, 99, 100, 250, 300, 1000):
            selection = allocator.select_context_for_budget("storage", budget=budget)
            assert len(selection.entries) >= previous
            assert selection.units_used <= budget
            previous = len(selection.entries)
        assert previous == 5

    def test_zero_budget_selects_nothing(self, seeded):
        selection = ContextBudgetAllocator(seeded).select_context_for_budget("storage", 0)
        assert selection.entries == []
        assert selection.formatted_text == ""
        assert selection.coverage_summary == "0/5 entries, 0/0 units"

    def test_empty_pool(self, store):
        selection = ContextBudgetAllocator(store).select_context_for_budget("storage", 1000)
        assert selection.entries == []
        assert selection.coverage_summary == "0/0 entries, 0/1000 units"

    def test_oversized_first_entry_stops_selection(self, store):
        store.append_entry(MemoryEntry("BRIEF", "storage " * 500))
        store.append_entry(MemoryEntry("PROGRESS", "storage"))
        selection = ContextBudgetAllocator(store).select_context_for_budget("storage", 50)
        # Greedy: the smaller, lower-ranked entry is not pulled forward.
        assert selection.entries == []

    def test_threshold_filters_candidates(self, store):
        store.append_entry(MemoryEntry("BRIEF", "storage layer notes"))
        store.append_entry(MemoryEntry("BRIEF", "unrelated"))
        selection = ContextBudgetAllocator(store).select_context_for_budget(
            "storage", 1000, min_relevance_threshold=0.1,
        )
        assert [e.content for e in selection.entries] == ["storage layer notes"]
        assert selection.total_candidates == 2

    def test_category_and_age_filters(self, store):
        store.append_entry(MemoryEntry("DECISION", "storage decision"))
        store.append_entry(MemoryEntry("PATTERN", "storage pattern"))
        store.append_entry(MemoryEntry("PATTERN", "old storage pattern",
                                       timestamp=_days_ago(60)))
        allocator = ContextBudgetAllocator(store)

        only_patterns = allocator.select_context_for_budget(
            "storage", 1000, include_categories=["PATTERN"], max_age_days=30,
        )
        assert [e.content for e in only_patterns.entries] == ["storage pattern"]

    def test_formatted_text_template(self, store):
        store.append_entry(MemoryEntry("DECISION", "Use SQLite", tag="db",
                                       timestamp="2025-01-01T00:00:00Z"))
        selection = ContextBudgetAllocator(store).select_context_for_budget(
            "sqlite", 1000, min_relevance_threshold=0.0,
        )
        assert selection.formatted_text == (
            "## DECISION (2025-01-01)\n**Tag:** db\n\nUse SQLite\n\n---\n"
        )

    def test_records_token_metric(self, seeded):
        ContextBudgetAllocator(seeded).select_context_for_budget("storage", 250)
        rows = seeded.query_token_metrics(days=1)
        assert len(rows) == 1
        assert rows[0]["input_units"] == 200
        assert rows[0]["status"] == "healthy"

    def test_no_metric_for_empty_selection(self, store):
        ContextBudgetAllocator(store).select_context_for_budget("storage", 250)
        assert store.query_token_metrics(days=1) == []

    def test_custom_unit_estimator(self, seeded):
        allocator = ContextBudgetAllocator(seeded, unit_estimator=lambda text: 1)
        selection = allocator.select_context_for_budget("storage", 3)
        assert len(selection.entries) == 3
        assert selection.units_used == 3


class TestSemanticBlend:
    def test_blend_uses_semantic_scores(self, store):
        embedder = Embedder(backend="hash")
        store.append_entry(MemoryEntry("PROGRESS", "storage engine"))
        search = SemanticSearch(store, embedder)
        allocator = ContextBudgetAllocator(store, RelevanceScorer(), search)

        plain = allocator.select_context_for_budget("storage", 1000)
        blended = allocator.select_context_for_budget("storage", 1000,
                                                      use_semantic_search=True)

        keyword = plain.candidates[0].score
        # No stored vector, so the semantic part is neutral.
        assert blended.candidates[0].score == pytest.approx(0.6 * keyword + 0.4 * 0.5)

    def test_blend_failure_falls_back_to_keyword_scores(self, seeded):
        search = MagicMock()
        search.semantic_search.side_effect = RuntimeError("index offline")
        allocator = ContextBudgetAllocator(seeded, RelevanceScorer(), search)

        plain = allocator.select_context_for_budget("storage", 250)
        blended = allocator.select_context_for_budget("storage", 250,
                                                      use_semantic_search=True)

        assert [e.id for e in blended.entries] == [e.id for e in plain.entries]
        assert [c.score for c in blended.candidates] == [c.score for c in plain.candidates]

    def test_blend_without_search_is_keyword_only(self, seeded):
        allocator = ContextBudgetAllocator(seeded)
        selection = allocator.select_context_for_budget("storage", 250, use_semantic_search=True)
        assert len(selection.entries) == 2


class TestLargeStores:
    @pytest.fixture
    def crowded(self, tmp_path):
        s = MemoryStore(engine_order=["native"])
        assert s.init(str(tmp_path / "crowded.db"))
        s.append_entry(MemoryEntry("DECISION", "storage engine decision",
                                   timestamp="2020-01-01T00:00:00Z"))
        for i in range(510):
            s.append_entry(MemoryEntry("PROGRESS", f"routine progress note {i}"))
        yield s
        s.close()

    def test_oldest_entry_is_a_candidate(self, crowded):
        selection = ContextBudgetAllocator(crowded).select_context_for_budget("storage", 1000)
        assert [e.content for e in selection.entries] == ["storage engine decision"]
        assert selection.total_candidates == crowded.count_entries() == 511
        assert selection.coverage_summary.startswith("1/511 entries")

    def test_capped_pool_reports_matching_total(self, crowded):
        allocator = ContextBudgetAllocator(crowded, candidate_limit=50)
        selection = allocator.select_context_for_budget("routine", 1000)
        assert selection.total_candidates == 511
        filtered = allocator.select_context_for_budget(
            "routine", 1000, include_categories=["DECISION"],
        )
        assert filtered.total_candidates == 1
