"""
Text embedder for memory entries.

Produces 384-dimensional float vectors from entry content using one of
several interchangeable backends:

* ``local``: sentence-transformers ``all-MiniLM-L6-v2`` (offline after
  the first model download)
* ``openai``: ``text-embedding-3-small`` requested at 384 dimensions
* ``hash``: deterministic feature-hashing embedder, no model needed
* ``none``: embeddings disabled; every call is unavailable

Backends load lazily on first use.  A failed load is remembered so the
write path never pays for repeated load attempts.
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from typing import TYPE_CHECKING, Optional

import numpy as np

from ..errors import EmbeddingUnavailable, StoreNotReady
from .codec import EMBED_DIMENSIONS, quantize

if TYPE_CHECKING:
    from ..store.memory_store import MemoryStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LOCAL_MODEL = "all-MiniLM-L6-v2"
OPENAI_MODEL = "text-embedding-3-small"
BATCH_SIZE = 10
MAX_RETRIES = 3

_TOKEN_RE = re.compile(r"[a-z0-9]+")


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class SentenceTransformerBackend:
    """Local embedding via sentence-transformers (mean pooling, normalised)."""

    name = "local"

    def __init__(self, model_name: str = LOCAL_MODEL) -> None:
        self.model_name = model_name or LOCAL_MODEL
        self._model = None

    def load(self) -> None:
        try:
            from sentence_transformers import SentenceTransformer  # type: ignore
        except ImportError as exc:
            raise EmbeddingUnavailable(
                "sentence-transformers is required for local embedding. "
                "Install it with: pip install 'memory_bank[local]'"
            ) from exc
        try:
            self._model = SentenceTransformer(self.model_name)
        except Exception as exc:
            raise EmbeddingUnavailable(
                f"Could not load embedding model {self.model_name}: {exc}"
            ) from exc

    def encode(self, texts: list[str]) -> list[np.ndarray]:
        vectors = self._model.encode(
            texts, normalize_embeddings=True, convert_to_numpy=True,
            show_progress_bar=False,
        )
        return [np.asarray(v, dtype=np.float32) for v in vectors]


class OpenAIBackend:
    """Embedding via the OpenAI Embeddings API, truncated to 384 dimensions."""

    name = "openai"

    def __init__(
        self,
        model_name: str = OPENAI_MODEL,
        api_key: str = "",
        base_url: Optional[str] = None,
    ) -> None:
        self.model_name = model_name or OPENAI_MODEL
        self._api_key = api_key
        self._base_url = base_url
        self._client = None

    def load(self) -> None:
        try:
            import openai  # type: ignore
        except ImportError as exc:
            raise EmbeddingUnavailable(
                "openai package is required for the openai backend. "
                "Install it with: pip install 'memory_bank[openai]'"
            ) from exc
        if not self._api_key:
            raise EmbeddingUnavailable("OPENAI_API_KEY environment variable is not set.")
        kwargs = {"api_key": self._api_key}
        if self._base_url:
            kwargs["base_url"] = self._base_url
        self._client = openai.OpenAI(**kwargs)

    def encode(self, texts: list[str]) -> list[np.ndarray]:
        """Embed a batch, retrying with exponential back-off."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.embeddings.create(
                    model=self.model_name,
                    input=texts,
                    dimensions=EMBED_DIMENSIONS,
                )
                return [np.asarray(item.embedding, dtype=np.float32) for item in response.data]
            except Exception as exc:
                if attempt < MAX_RETRIES:
                    wait = 2 ** attempt
                    logger.warning(
                        "[Embedder] OpenAI error (attempt %d/%d): %s, retrying in %ds",
                        attempt, MAX_RETRIES, exc, wait,
                    )
                    time.sleep(wait)
                else:
                    raise EmbeddingUnavailable(
                        f"Embedding API failed after {MAX_RETRIES} attempts: {exc}"
                    ) from exc
        return []  # unreachable


class HashBackend:
    """
    Deterministic feature-hashing embedder.

    Each lower-cased word token seeds a Gaussian vector; a text's embedding
    is the normalised sum of its token vectors, so texts sharing words land
    close together.  No model download, identical output across runs.
    """

    name = "hash"

    def __init__(self, dimensions: int = EMBED_DIMENSIONS) -> None:
        self.dimensions = dimensions
        self._cache: dict[str, np.ndarray] = {}

    def load(self) -> None:
        pass

    def _token_vector(self, token: str) -> np.ndarray:
        vec = self._cache.get(token)
        if vec is None:
            seed = int.from_bytes(
                hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest(), "little"
            )
            vec = np.random.default_rng(seed).standard_normal(self.dimensions).astype(np.float32)
            self._cache[token] = vec
        return vec

    def encode(self, texts: list[str]) -> list[np.ndarray]:
        out: list[np.ndarray] = []
        for text in texts:
            tokens = _TOKEN_RE.findall(text.lower()) or [text.strip().lower()]
            total = np.zeros(self.dimensions, dtype=np.float32)
            for token in tokens:
                total += self._token_vector(token)
            norm = float(np.linalg.norm(total))
            out.append(total / norm if norm > 0 else total)
        return out


class DisabledBackend:
    """Backend used when embeddings are switched off."""

    name = "none"

    def load(self) -> None:
        raise EmbeddingUnavailable("Embeddings are disabled (backend 'none').")

    def encode(self, texts: list[str]) -> list[np.ndarray]:
        raise EmbeddingUnavailable("Embeddings are disabled (backend 'none').")


def create_backend(
    backend: str,
    model_name: Optional[str] = None,
    api_key: str = "",
    base_url: Optional[str] = None,
):
    """Instantiate the backend named *backend*."""
    name = (backend or "local").lower()
    if name == "local":
        return SentenceTransformerBackend(model_name or LOCAL_MODEL)
    if name == "openai":
        model = model_name if model_name and model_name != LOCAL_MODEL else OPENAI_MODEL
        return OpenAIBackend(model, api_key=api_key, base_url=base_url)
    if name == "hash":
        return HashBackend()
    if name == "none":
        return DisabledBackend()
    raise ValueError(f"Unknown embedding backend: {backend!r}")


# ---------------------------------------------------------------------------
# Embedder
# ---------------------------------------------------------------------------

class Embedder:
    """
    Produces fixed-size vectors for entry content and queries.

    Parameters
    ----------
    backend:
        Backend name or an already-constructed backend object exposing
        ``load()`` and ``encode(texts)``.
    model_name:
        Model identifier for the ``local`` and ``openai`` backends.
    batch_size:
        Number of texts sent to the backend per call in :meth:`embed_batch`.
    """

    def __init__(
        self,
        backend="local",
        model_name: Optional[str] = None,
        batch_size: int = BATCH_SIZE,
        api_key: str = "",
        base_url: Optional[str] = None,
    ) -> None:
        if isinstance(backend, str):
            backend = create_backend(backend, model_name, api_key, base_url)
        self._backend = backend
        self._batch_size = max(1, batch_size)
        self._lock = threading.Lock()
        self._loaded = False
        self._load_error: Optional[str] = None
        self._embed_count = 0

    @classmethod
    def from_config(cls, config) -> "Embedder":
        return cls(
            backend=config.EMBEDDING_BACKEND,
            model_name=config.EMBEDDING_MODEL,
            api_key=config.OPENAI_API_KEY,
            base_url=config.OPENAI_BASE_URL,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        with self._lock:
            if self._loaded:
                return
            if self._load_error is not None:
                raise EmbeddingUnavailable(self._load_error)
            try:
                self._backend.load()
            except EmbeddingUnavailable as exc:
                self._load_error = str(exc)
                logger.warning("[Embedder] Backend unavailable: %s", exc)
                raise
            self._loaded = True
            logger.info("[Embedder] Backend ready: %s", getattr(self._backend, "name", "?"))

    def is_ready(self) -> bool:
        return self._loaded

    def model_info(self) -> dict:
        return {
            "backend": getattr(self._backend, "name", type(self._backend).__name__),
            "model_name": getattr(self._backend, "model_name", None),
            "dimensions": EMBED_DIMENSIONS,
            "is_ready": self._loaded,
            "load_error": self._load_error,
            "embed_count": self._embed_count,
        }

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def _check(self, vec: np.ndarray) -> np.ndarray:
        vec = np.asarray(vec, dtype=np.float32).reshape(-1)
        if vec.shape[0] != EMBED_DIMENSIONS:
            raise EmbeddingUnavailable(
                f"Backend returned {vec.shape[0]} dimensions, expected {EMBED_DIMENSIONS}"
            )
        return vec

    def embed(self, text: str) -> np.ndarray:
        """
        Embed a single non-empty text.

        Raises
        ------
        EmbeddingUnavailable
            If the text is empty, the backend cannot load, or the call fails.
        """
        if not text or not text.strip():
            raise EmbeddingUnavailable("Cannot embed empty text")
        self._ensure_loaded()
        t0 = time.perf_counter()
        try:
            vectors = self._backend.encode([text])
        except EmbeddingUnavailable:
            raise
        except Exception as exc:
            raise EmbeddingUnavailable(f"Failed to generate embedding: {exc}") from exc
        self._embed_count += 1
        logger.debug(
            "[Embedder] Embedded %d chars in %.1fms",
            len(text), (time.perf_counter() - t0) * 1000,
        )
        return self._check(vectors[0])

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Embed *texts* in batches of ``batch_size``, preserving order."""
        if any(not t or not t.strip() for t in texts):
            raise EmbeddingUnavailable("Cannot embed empty text")
        self._ensure_loaded()
        results: list[np.ndarray] = []
        for start in range(0, len(texts), self._batch_size):
            batch = texts[start:start + self._batch_size]
            try:
                vectors = self._backend.encode(batch)
            except EmbeddingUnavailable:
                raise
            except Exception as exc:
                raise EmbeddingUnavailable(f"Batch embedding failed: {exc}") from exc
            results.extend(self._check(v) for v in vectors)
            self._embed_count += len(batch)
        return results

    def embed_quantized(self, text: str) -> bytes:
        """Embed *text* and return its 48-byte quantized form."""
        return quantize(self.embed(text))


# ---------------------------------------------------------------------------
# Backfill
# ---------------------------------------------------------------------------

def backfill_embeddings(
    store: "MemoryStore",
    embedder: Embedder,
    stop_event: Optional[threading.Event] = None,
    limit: Optional[int] = None,
    progress: bool = False,
) -> dict:
    """
    Generate vectors for entries that do not have one yet.

    Entries are processed one at a time; each vector is committed as soon
    as it is produced, so stopping (via *stop_event*) or crashing leaves a
    valid partial state that the next run resumes.

    Parameters
    ----------
    store:
        An initialised :class:`~memory_bank.store.memory_store.MemoryStore`.
    embedder:
        Embedder used to produce vectors.
    stop_event:
        Checked between entries; when set, the loop stops early.
    limit:
        Maximum number of entries to consider in this run.
    progress:
        Show a tqdm progress bar.

    Returns
    -------
    dict
        Keys: total, embedded, errors, stopped.

    Raises
    ------
    StoreNotReady
        If *store* has not been initialised.
    """
    if not store.is_ready:
        raise StoreNotReady("Cannot backfill embeddings before the store is initialised")
    pending = store.query_entries_without_embeddings(limit=limit)
    summary = {"total": len(pending), "embedded": 0, "errors": 0, "stopped": False}
    if not pending:
        return summary

    iterator = pending
    if progress:
        from tqdm import tqdm

        iterator = tqdm(pending, desc="Embedding entries", unit="entry")

    for entry in iterator:
        if stop_event is not None and stop_event.is_set():
            summary["stopped"] = True
            break
        try:
            blob = embedder.embed_quantized(entry.content)
        except EmbeddingUnavailable as exc:
            logger.warning("[Embedder] Backfill skipped entry %s: %s", entry.id, exc)
            summary["errors"] += 1
            continue
        if store.set_embedding(entry.id, blob, expected_content=entry.content):
            summary["embedded"] += 1

    logger.info(
        "[Embedder] Backfill finished: %d/%d embedded, %d errors%s",
        summary["embedded"], summary["total"], summary["errors"],
        " (stopped)" if summary["stopped"] else "",
    )
    return summary
