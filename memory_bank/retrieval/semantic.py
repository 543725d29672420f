"""
Semantic search over stored entry vectors, blended with keyword overlap.

Each candidate gets

    composite = semantic_weight * semantic + keyword_weight * keyword

where *semantic* is the query's cosine similarity to the entry's
dequantized vector mapped into ``[0, 1]``, and *keyword* is the
:func:`~memory_bank.retrieval.scorer.keyword_overlap` fraction.  When the
query cannot be embedded, or an entry has no vector yet, the semantic term
is a neutral 0.5, so ranking falls back to keywords instead of failing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

import numpy as np

from ..embedding.codec import cosine_similarity, dequantize, normalized_similarity
from ..embedding.embedder import Embedder
from ..errors import EmbeddingUnavailable
from ..models import MemoryEntry, SearchHit
from ..store.memory_store import MemoryStore, QueryTimer
from .scorer import keyword_overlap

logger = logging.getLogger(__name__)

NEUTRAL_SEMANTIC = 0.5
MIN_COMPOSITE = 0.1
SEMANTIC_MATCH = 0.6
DUPLICATE_THRESHOLD = 0.95


def _reason(semantic: float, keyword: float, has_vector: bool) -> str:
    semantic_hit = has_vector and semantic >= SEMANTIC_MATCH
    if semantic_hit and keyword > 0:
        return "semantic and keyword match"
    if semantic_hit:
        return "semantic similarity"
    if keyword > 0:
        return "keyword match"
    return "low relevance"


class SemanticSearch:
    """
    Ranks entries by meaning and keywords.

    Parameters
    ----------
    store:
        Source of candidate entries and sink for latency metrics.
    embedder:
        Embeds the query.  None means every semantic term is neutral.
    semantic_weight, keyword_weight:
        Default blend weights for :meth:`semantic_search`.
    candidate_limit:
        Cap on the keyword pool pulled from the store (None for all).
        Entries with stored vectors are always candidates.
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder: Optional[Embedder] = None,
        semantic_weight: float = 0.7,
        keyword_weight: float = 0.3,
        candidate_limit: Optional[int] = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self.semantic_weight = semantic_weight
        self.keyword_weight = keyword_weight
        self.candidate_limit = candidate_limit

    def _embed_query(self, query: str) -> Optional[np.ndarray]:
        if self._embedder is None:
            return None
        try:
            return self._embedder.embed(query)
        except EmbeddingUnavailable as exc:
            logger.warning("[SemanticSearch] Query embedding unavailable, "
                           "using keyword ranking: %s", exc)
            return None

    def _gather(self) -> list[MemoryEntry]:
        pool = self._store.query_entries(limit=self.candidate_limit)
        if self.candidate_limit is None:
            return pool
        # A capped pool still has to reach every entry with a stored vector.
        seen = {e.id for e in pool}
        pool.extend(e for e in self._store.query_entries_with_embeddings()
                    if e.id not in seen)
        return pool

    def semantic_search(
        self,
        query: str,
        limit: int = 10,
        semantic_weight: Optional[float] = None,
        keyword_weight: Optional[float] = None,
        candidates: Optional[Sequence[MemoryEntry]] = None,
    ) -> list[SearchHit]:
        """
        Rank *candidates* (or the store's entries) against *query*.

        Parameters
        ----------
        query:
            Free-text query.
        limit:
            Maximum number of hits returned.
        semantic_weight, keyword_weight:
            Override the instance's blend weights for this call.
        candidates:
            Restrict the search to these entries instead of the store pool.

        Returns
        -------
        list[SearchHit]
            Composite score descending, only hits scoring above 0.1.
        """
        sw = self.semantic_weight if semantic_weight is None else semantic_weight
        kw = self.keyword_weight if keyword_weight is None else keyword_weight

        with QueryTimer(self._store, "semantic_search") as timer:
            pool = list(candidates) if candidates is not None else self._gather()
            if not pool or limit <= 0:
                return []

            query_vec = self._embed_query(query)
            hits: list[SearchHit] = []
            for entry in pool:
                keyword = keyword_overlap(entry, query)
                has_vector = query_vec is not None and entry.embedding is not None
                semantic = NEUTRAL_SEMANTIC
                if has_vector:
                    try:
                        semantic = normalized_similarity(query_vec, entry.embedding)
                    except ValueError as exc:
                        logger.debug("[SemanticSearch] Bad vector on entry %s: %s",
                                     entry.id, exc)
                        has_vector = False
                composite = sw * semantic + kw * keyword
                if composite <= MIN_COMPOSITE:
                    continue
                hits.append(SearchHit(
                    entry=entry,
                    score=composite,
                    reason=_reason(semantic, keyword, has_vector),
                    semantic_score=semantic,
                    keyword_score=keyword,
                ))

            hits.sort(key=lambda h: h.score, reverse=True)
            hits = hits[:limit]
            timer.count = len(hits)

        logger.debug("[SemanticSearch] %d hits for %r in %.1fms",
                     len(hits), query, timer.elapsed_ms)
        return hits


@dataclass
class DuplicateCluster:
    """An entry and the later entries whose vectors nearly match it."""

    primary: int
    duplicates: list[int] = field(default_factory=list)


def find_duplicate_clusters(
    entries: Iterable[MemoryEntry],
    threshold: float = DUPLICATE_THRESHOLD,
) -> list[DuplicateCluster]:
    """
    Group entries whose stored vectors have cosine similarity above *threshold*.

    Entries without a vector are ignored.  Each entry joins at most one
    cluster; the first entry seen in a group is its primary.
    """
    vectors = []
    for entry in entries:
        if entry.embedding is None or entry.id is None:
            continue
        try:
            vectors.append((entry.id, dequantize(entry.embedding)))
        except ValueError:
            continue

    clusters: list[DuplicateCluster] = []
    processed: set[int] = set()
    for i, (entry_id, vec) in enumerate(vectors):
        if entry_id in processed:
            continue
        processed.add(entry_id)
        cluster = DuplicateCluster(primary=entry_id)
        for other_id, other_vec in vectors[i + 1:]:
            if other_id in processed:
                continue
            if cosine_similarity(vec, other_vec) > threshold:
                cluster.duplicates.append(other_id)
                processed.add(other_id)
        if cluster.duplicates:
            clusters.append(cluster)
    return clusters
