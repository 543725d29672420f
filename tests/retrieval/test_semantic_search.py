"""
Unit tests for memory_bank.retrieval.semantic

Vectors come from the deterministic hash backend and are written with
``set_embedding`` directly, so no background worker is involved.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from memory_bank.embedding.embedder import Embedder
from memory_bank.errors import EmbeddingUnavailable
from memory_bank.models import MemoryEntry
from memory_bank.retrieval.semantic import (
    DuplicateCluster,
    SemanticSearch,
    find_duplicate_clusters,
)
from memory_bank.store.memory_store import MemoryStore


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def embedder():
    return Embedder(backend="hash")


@pytest.fixture
def store(tmp_path):
    s = MemoryStore()
    assert s.init(str(tmp_path / "memory.db"))
    yield s
    s.close()


def _add(store, content, category="CONTEXT", vector_text=None, embedder=None):
    entry_id = store.append_entry(MemoryEntry(category, content))
    if embedder is not None:
        store.set_embedding(entry_id, embedder.embed_quantized(vector_text or content))
    return entry_id


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

class TestSemanticSearch:
    def test_exact_text_ranks_first_with_both_signals(self, store, embedder):
        match = _add(store, "vector index tuning", embedder=embedder)
        _add(store, "frontend colour palette", embedder=embedder)
        search = SemanticSearch(store, embedder)

        hits = search.semantic_search("vector index tuning")

        assert hits[0].entry.id == match
        assert hits[0].reason == "semantic and keyword match"
        assert hits[0].semantic_score >= 0.6
        assert hits[0].keyword_score == 1.0

    def test_vector_only_match(self, store, embedder):
        entry_id = _add(store, "something else entirely",
                        vector_text="vector index tuning", embedder=embedder)
        hits = SemanticSearch(store, embedder).semantic_search("vector index tuning")
        hit = next(h for h in hits if h.entry.id == entry_id)
        assert hit.reason == "semantic similarity"
        assert hit.keyword_score == 0.0

    def test_scores_descending_and_limited(self, store, embedder):
        for i in range(8):
            _add(store, f"note {i} about caching", embedder=embedder)
        hits = SemanticSearch(store, embedder).semantic_search("caching", limit=3)
        assert len(hits) == 3
        assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)

    def test_composite_weights(self, store, embedder):
        _add(store, "plain keyword text")  # no vector: neutral semantic
        hit = SemanticSearch(store, embedder).semantic_search(
            "keyword", semantic_weight=0.5, keyword_weight=0.5,
        )[0]
        assert hit.semantic_score == 0.5
        assert hit.score == pytest.approx(0.5 * 0.5 + 0.5 * 1.0)
        assert hit.reason == "keyword match"

    def test_low_composites_dropped(self, store, embedder):
        _add(store, "unrelated words")
        hits = SemanticSearch(store, embedder).semantic_search(
            "database", semantic_weight=0.1, keyword_weight=0.9,
        )
        assert hits == []

    def test_empty_pool(self, store, embedder):
        assert SemanticSearch(store, embedder).semantic_search("anything") == []

    def test_explicit_candidates(self, store, embedder):
        first = _add(store, "alpha caching", embedder=embedder)
        _add(store, "beta caching", embedder=embedder)
        only = [store.get_entry_by_id(first)]
        hits = SemanticSearch(store, embedder).semantic_search("caching", candidates=only)
        assert [h.entry.id for h in hits] == [first]

    def test_records_latency_metric(self, store, embedder):
        _add(store, "metric sample", embedder=embedder)
        SemanticSearch(store, embedder).semantic_search("metric")
        rows = store.get_query_metrics("semantic_search")
        assert len(rows) == 1
        assert rows[0]["result_count"] == 1


class TestDegradedSearch:
    def test_unavailable_embedder_falls_back_to_keywords(self, store, embedder):
        _add(store, "database storage engine", embedder=embedder)
        _add(store, "frontend colour palette", embedder=embedder)
        search = SemanticSearch(store, embedder)

        with patch.object(embedder, "embed", side_effect=EmbeddingUnavailable("offline")):
            hits = search.semantic_search("database")

        assert hits
        assert all(h.semantic_score == 0.5 for h in hits)
        assert hits[0].entry.content == "database storage engine"
        assert hits[0].reason == "keyword match"

    def test_no_embedder_configured(self, store):
        _add(store, "database storage engine")
        hits = SemanticSearch(store, None).semantic_search("database")
        assert hits[0].semantic_score == 0.5

    def test_entries_without_vectors_get_neutral_score(self, store, embedder):
        _add(store, "database without vector")
        hit = SemanticSearch(store, embedder).semantic_search("database")[0]
        assert hit.semantic_score == 0.5


# ---------------------------------------------------------------------------
# Duplicates
# ---------------------------------------------------------------------------

class TestDuplicateClusters:
    def test_identical_vectors_cluster(self, store, embedder):
        a = _add(store, "use sqlite for storage", embedder=embedder)
        b = _add(store, "Use SQLite for storage", embedder=embedder)
        c = _add(store, "frontend colour palette", embedder=embedder)

        clusters = find_duplicate_clusters(store.query_entries_with_embeddings())

        assert len(clusters) == 1
        cluster = clusters[0]
        assert {cluster.primary, *cluster.duplicates} == {a, b}
        assert c not in cluster.duplicates

    def test_entries_without_vectors_ignored(self):
        entries = [MemoryEntry("CONTEXT", "x", id=1), MemoryEntry("CONTEXT", "x", id=2)]
        assert find_duplicate_clusters(entries) == []

    def test_cluster_shape(self):
        cluster = DuplicateCluster(primary=1)
        assert cluster.duplicates == []


# ---------------------------------------------------------------------------
# Candidate pool
# ---------------------------------------------------------------------------

class TestCandidatePool:
    QUERY = "quantized vector similarity index"

    @pytest.fixture
    def crowded(self, tmp_path, embedder):
        s = MemoryStore(engine_order=["native"])
        assert s.init(str(tmp_path / "crowded.db"))
        old = s.append_entry(MemoryEntry("DECISION", "Index choice",
                                         timestamp="2020-01-01T00:00:00Z"))
        s.set_embedding(old, embedder.embed_quantized(self.QUERY))
        for i in range(510):
            s.append_entry(MemoryEntry("PROGRESS", f"routine progress note {i}"))
        yield s, old
        s.close()

    def test_default_pool_reaches_oldest_entry(self, crowded, embedder):
        store, old = crowded
        search = SemanticSearch(store, embedder)
        assert search.candidate_limit is None

        hits = search.semantic_search(self.QUERY, limit=5)

        assert hits[0].entry.id == old
        assert hits[0].reason == "semantic and keyword match"

    def test_capped_pool_still_includes_stored_vectors(self, crowded, embedder):
        store, old = crowded
        hits = SemanticSearch(store, embedder, candidate_limit=50).semantic_search(
            self.QUERY, limit=5,
        )
        assert hits[0].entry.id == old

    def test_keyword_only_search_sees_whole_store(self, crowded):
        store, old = crowded
        hits = SemanticSearch(store, None).semantic_search("index choice", limit=5)
        assert hits[0].entry.id == old
