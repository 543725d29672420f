"""
Persistent entry store.

One ``entries`` table behind two interchangeable storage engines.  The
engine is chosen once in :meth:`MemoryStore.init` and all queries go
through the same :class:`~memory_bank.store.engines.StorageEngine` seam.

Every public method is safe to call before ``init`` and after engine
errors: it logs and returns a neutral value (``[]``, ``0``, ``None`` or
``False``) instead of raising.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from ..embedding.embedder import Embedder
from ..embedding.worker import EmbeddingWorker
from ..errors import MigrationError
from ..models import (
    CATEGORIES,
    MUTABLE_FIELDS,
    PHASES,
    PROGRESS_STATUSES,
    MemoryEntry,
    parse_timestamp,
    utc_now_iso,
)
from .engines import ENGINES, StorageEngine
from .schema import MigrationResult, apply_migrations, current_version

logger = logging.getLogger(__name__)

_SELECT = (
    "SELECT id, category, timestamp, tag, content, metadata, phase, "
    "progress_status, embedding FROM entries"
)
_ORDER = " ORDER BY timestamp DESC, id DESC"

TimeLike = Union[str, datetime]


def _iso(value: TimeLike) -> str:
    """Render *value* as a UTC ``...Z`` string; unparsable strings pass through."""
    if not isinstance(value, datetime):
        parsed = parse_timestamp(str(value))
        if parsed is None:
            return str(value)
        value = parsed
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _entries_filter(categories: Optional[Iterable[str]],
                    since: Optional[TimeLike]) -> Optional[tuple[str, tuple]]:
    """WHERE text and params for a category/age filter; None when nothing can match."""
    clauses: list[str] = []
    params: list[Any] = []
    if categories is not None:
        cats = [c.upper() for c in categories]
        if not cats:
            return None
        clauses.append(f"category IN ({', '.join('?' * len(cats))})")
        params.extend(cats)
    if since is not None:
        clauses.append("timestamp >= ?")
        params.append(_iso(since))
    return " AND ".join(clauses), tuple(params)


def _limit_clause(limit: Optional[int]) -> tuple[str, tuple]:
    if limit is None:
        return "", ()
    return " LIMIT ?", (max(0, int(limit)),)


class MemoryStore:
    """Durable store of :class:`~memory_bank.models.MemoryEntry` rows.

    Parameters
    ----------
    embedder:
        Optional embedder.  When given, appends and content edits queue a
        background job that stores the entry's quantized vector.
    engine_order:
        Engine names tried in order by :meth:`init`.
    backup_before_migration:
        Copy the database aside before a structural migration.
    """

    def __init__(
        self,
        embedder: Optional[Embedder] = None,
        engine_order: Sequence[str] = ("portable", "native"),
        backup_before_migration: bool = True,
    ) -> None:
        self._embedder = embedder
        self._engine_order = list(engine_order)
        self._backup = backup_before_migration
        self._lock = threading.RLock()
        self._engine: Optional[StorageEngine] = None
        self._location: Optional[str] = None
        self._worker: Optional[EmbeddingWorker] = None
        self.last_error: Optional[str] = None
        self.last_migration: Optional[MigrationResult] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._engine is not None

    @property
    def backend(self) -> Optional[str]:
        """Name of the active engine, or None before init."""
        return self._engine.name if self._engine is not None else None

    @property
    def location(self) -> Optional[str]:
        return self._location

    @property
    def embedder(self) -> Optional[Embedder]:
        return self._embedder

    def init(self, location: str) -> bool:
        """
        Open or create the store at *location* and migrate its schema.

        Calling again with the same location is a no-op while the file is
        still present.  A different location, or a vanished file, closes
        the current engine and opens afresh.

        Returns
        -------
        bool
            False when no engine could open the file or a migration failed;
            :attr:`last_error` then holds the reason.
        """
        path = os.path.abspath(location)
        with self._lock:
            if self._engine is not None:
                vanished = not os.path.isfile(self._location or "")
                if self._location == path and not vanished:
                    return True
                logger.info("[MemoryStore] Re-initialising at %s", path)
                # A vanished file resets to an empty store.
                self._close_engine(flush=not vanished)

            try:
                os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            except OSError as exc:
                self.last_error = f"Cannot create directory for {path}: {exc}"
                logger.error("[MemoryStore] %s", self.last_error)
                return False

            failures: list[str] = []
            for name in self._engine_order:
                engine_cls = ENGINES.get(name)
                if engine_cls is None:
                    logger.warning("[MemoryStore] Unknown engine %r skipped", name)
                    continue
                engine = engine_cls(path)
                try:
                    engine.open()
                except (sqlite3.Error, OSError) as exc:
                    failures.append(f"{name}: {exc}")
                    logger.warning("[MemoryStore] %s engine failed to open: %s", name, exc)
                    engine.close(flush=False)
                    continue

                try:
                    self.last_migration = apply_migrations(engine, path, backup=self._backup)
                except MigrationError as exc:
                    self.last_error = f"Migration failed: {exc}"
                    logger.error("[MemoryStore] %s", self.last_error)
                    engine.close(flush=False)
                    return False
                except (sqlite3.Error, OSError) as exc:
                    failures.append(f"{name}: {exc}")
                    logger.warning("[MemoryStore] %s engine failed during migration: %s",
                                   name, exc)
                    engine.close(flush=False)
                    continue

                self._engine = engine
                self._location = path
                self.last_error = None
                logger.info("[MemoryStore] Opened %s with %s engine (schema v%d)",
                            path, engine.name, current_version(engine))
                return True

            self.last_error = "; ".join(failures) or "No storage engine configured"
            logger.error("[MemoryStore] Initialisation failed: %s", self.last_error)
            return False

    def _close_engine(self, flush: bool = True) -> None:
        if self._engine is None:
            return
        try:
            self._engine.close(flush=flush)
        except (sqlite3.Error, OSError) as exc:
            logger.warning("[MemoryStore] Error while closing engine: %s", exc)
        self._engine = None
        self._location = None

    def close(self, wait_for_embeddings: bool = True, timeout: float = 5.0) -> None:
        """Finish queued embeddings (up to *timeout*), flush and release the engine."""
        if self._worker is not None:
            if wait_for_embeddings:
                self._worker.wait(timeout)
            self._worker.stop(timeout)
        with self._lock:
            self._close_engine()

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(self, label: str, default: Any, fn: Callable[[StorageEngine], Any]) -> Any:
        """Run *fn* against the engine, converting errors to *default*."""
        with self._lock:
            if self._engine is None:
                logger.debug("[MemoryStore] %s called before init", label)
                return default
            try:
                return fn(self._engine)
            except sqlite3.Error as exc:
                logger.warning("[MemoryStore] %s failed: %s", label, exc)
                return default

    def _select(self, label: str, where: str = "", params: tuple = (),
                limit: Optional[int] = None, order: str = _ORDER) -> list[MemoryEntry]:
        limit_sql, limit_params = _limit_clause(limit)
        sql = _SELECT + (f" WHERE {where}" if where else "") + order + limit_sql

        def _q(engine: StorageEngine) -> list[MemoryEntry]:
            return [MemoryEntry.from_row(r) for r in engine.query(sql, params + limit_params)]

        return self._run(label, [], _q)

    def _queue_embedding(self, entry_id: int, content: str) -> None:
        if self._embedder is None or not content.strip():
            return
        if self._worker is None:
            self._worker = EmbeddingWorker(self._embedder, self.set_embedding)
        self._worker.submit(entry_id, content)

    @staticmethod
    def _validate(fields: dict) -> Optional[str]:
        phase = fields.get("phase")
        if phase is not None and phase not in PHASES:
            return f"invalid phase {phase!r}"
        status = fields.get("progress_status")
        if status is not None and status not in PROGRESS_STATUSES:
            return f"invalid progress_status {status!r}"
        if "content" in fields and not isinstance(fields["content"], str):
            return "content must be a string"
        if "metadata" in fields and fields["metadata"] is not None \
                and not isinstance(fields["metadata"], dict):
            return "metadata must be a mapping"
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append_entry(self, entry: MemoryEntry) -> Optional[int]:
        """
        Insert *entry* and return its new id, or None on failure.

        Embedding generation is queued and not awaited.
        """
        if entry.category not in CATEGORIES:
            logger.warning("[MemoryStore] Rejected entry with unknown category %r",
                           entry.category)
            return None
        problem = self._validate({"phase": entry.phase,
                                  "progress_status": entry.progress_status,
                                  "content": entry.content,
                                  "metadata": entry.metadata})
        if problem:
            logger.warning("[MemoryStore] Rejected entry: %s", problem)
            return None
        # Range filters compare timestamps as text, so they must share one form.
        entry.timestamp = _iso(entry.timestamp)

        def _insert(engine: StorageEngine) -> int:
            cur = engine.execute(
                "INSERT INTO entries (category, timestamp, tag, content, metadata, "
                "phase, progress_status, embedding) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (entry.category, entry.timestamp, entry.tag, entry.content,
                 entry.metadata_json(), entry.phase, entry.progress_status,
                 entry.embedding),
            )
            return int(cur.lastrowid)

        entry_id = self._run("append_entry", None, _insert)
        if entry_id is None:
            return None
        entry.id = entry_id
        logger.debug("[MemoryStore] Appended %s entry %d", entry.category, entry_id)
        if entry.embedding is None:
            self._queue_embedding(entry_id, entry.content)
        return entry_id

    def update_entry(self, entry_id: int, **fields: Any) -> bool:
        """
        Change the supplied mutable fields of entry *entry_id*.

        Accepted fields are ``content``, ``tag``, ``phase``,
        ``progress_status`` and ``metadata``.  Changing ``content`` clears
        the stored vector and queues a new one.

        Returns False when no accepted field was supplied, a value is
        invalid, or the id is unknown.
        """
        unknown = [k for k in fields if k not in MUTABLE_FIELDS]
        if unknown:
            logger.warning("[MemoryStore] Ignoring non-editable fields: %s", ", ".join(unknown))
        updates = {k: v for k, v in fields.items() if k in MUTABLE_FIELDS}
        if "tag" in updates and not updates["tag"]:
            del updates["tag"]
        if not updates:
            return False
        problem = self._validate(updates)
        if problem:
            logger.warning("[MemoryStore] Rejected update of entry %s: %s", entry_id, problem)
            return False
        if "metadata" in updates:
            updates["metadata"] = json.dumps(updates["metadata"] or {}, default=str,
                                             sort_keys=True)

        def _update(engine: StorageEngine) -> Optional[bool]:
            row = engine.query_one("SELECT content FROM entries WHERE id = ?", (entry_id,))
            if row is None:
                return None
            content_changed = "content" in updates and updates["content"] != row["content"]
            assignments = [f"{k} = ?" for k in updates]
            params = list(updates.values())
            if content_changed:
                assignments.append("embedding = NULL")
            engine.execute(
                f"UPDATE entries SET {', '.join(assignments)} WHERE id = ?",
                (*params, entry_id),
            )
            return content_changed

        changed = self._run("update_entry", None, _update)
        if changed is None:
            return False
        if changed:
            self._queue_embedding(entry_id, updates["content"])
        logger.debug("[MemoryStore] Updated entry %d (%s)", entry_id, ", ".join(updates))
        return True

    def append_to_entry(self, entry_id: int, text: str) -> bool:
        """Append a dated update block to the content of entry *entry_id*."""
        if not text or not text.strip():
            return False
        with self._lock:
            entry = self.get_entry_by_id(entry_id)
            if entry is None:
                return False
            stamp = utc_now_iso()[:10]
            content = f"{entry.content}\n\n---\n\n**[Updated {stamp}]** {text.strip()}"
            return self.update_entry(entry_id, content=content)

    def set_embedding(self, entry_id: int, blob: Optional[bytes],
                      expected_content: Optional[str] = None) -> bool:
        """
        Store *blob* as the vector of entry *entry_id*.

        With *expected_content*, the write only happens while the entry
        still holds that exact content.
        """
        if expected_content is None:
            sql, params = "UPDATE entries SET embedding = ? WHERE id = ?", (blob, entry_id)
        else:
            sql = "UPDATE entries SET embedding = ? WHERE id = ? AND content = ?"
            params = (blob, entry_id, expected_content)
        return self._run("set_embedding", False,
                         lambda engine: engine.execute(sql, params).rowcount > 0)

    def wait_for_embeddings(self, timeout: Optional[float] = None) -> bool:
        """Block until queued embedding jobs finish; False if *timeout* elapsed."""
        if self._worker is None:
            return True
        return self._worker.wait(timeout)

    def pending_embeddings(self) -> int:
        return self._worker.pending() if self._worker is not None else 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entry_by_id(self, entry_id: int) -> Optional[MemoryEntry]:
        entries = self._select("get_entry_by_id", "id = ?", (entry_id,), limit=1)
        return entries[0] if entries else None

    def query_by_type(self, category: str, limit: int = 10) -> list[MemoryEntry]:
        """Entries of *category*, newest first."""
        return self._select("query_by_type", "category = ?",
                            ((category or "").upper(),), limit=limit)

    def query_by_date_range(
        self,
        category: Optional[str],
        start: TimeLike,
        end: TimeLike,
        limit: Optional[int] = None,
    ) -> list[MemoryEntry]:
        """Entries with ``start <= timestamp < end``, optionally of one category."""
        where = "timestamp >= ? AND timestamp < ?"
        params: tuple = (_iso(start), _iso(end))
        if category:
            where = "category = ? AND " + where
            params = (category.upper(),) + params
        return self._select("query_by_date_range", where, params, limit=limit)

    def query_by_phase(self, phase: str, limit: int = 10,
                       category: Optional[str] = None) -> list[MemoryEntry]:
        if category:
            return self._select("query_by_phase", "phase = ? AND category = ?",
                                (phase, category.upper()), limit=limit)
        return self._select("query_by_phase", "phase = ?", (phase,), limit=limit)

    def full_text_search(self, text: str, limit: int = 50) -> list[MemoryEntry]:
        """Entries whose content contains *text* (case-insensitive for ASCII)."""
        if not text:
            return []
        return self._select("full_text_search", "content LIKE ? ESCAPE '\\'",
                            (f"%{_escape_like(text)}%",), limit=limit)

    def query_entries(
        self,
        categories: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        since: Optional[TimeLike] = None,
    ) -> list[MemoryEntry]:
        """Entries of any of *categories* (all when None), newer than *since*."""
        where = _entries_filter(categories, since)
        if where is None:
            return []
        return self._select("query_entries", where[0], where[1], limit=limit)

    def get_recent(self, category: Optional[str] = None, n: int = 5) -> list[MemoryEntry]:
        if category:
            return self.query_by_type(category, n)
        return self._select("get_recent", limit=n)

    def query_entries_with_embeddings(self, limit: Optional[int] = None) -> list[MemoryEntry]:
        return self._select("query_entries_with_embeddings", "embedding IS NOT NULL",
                            limit=limit)

    def query_entries_without_embeddings(self, limit: Optional[int] = None) -> list[MemoryEntry]:
        """Entries still waiting for a vector, oldest first."""
        return self._select("query_entries_without_embeddings",
                            "embedding IS NULL AND content != ''",
                            limit=limit, order=" ORDER BY id ASC")

    def get_entry_counts(self) -> dict[str, int]:
        """Number of entries per category (categories with no entries omitted)."""
        def _q(engine: StorageEngine) -> dict[str, int]:
            rows = engine.query(
                "SELECT category, COUNT(*) AS n FROM entries GROUP BY category ORDER BY category"
            )
            return {row["category"]: int(row["n"]) for row in rows}

        return self._run("get_entry_counts", {}, _q)

    def count_entries(
        self,
        categories: Optional[Iterable[str]] = None,
        since: Optional[TimeLike] = None,
    ) -> int:
        """Number of entries matching the same filters as :meth:`query_entries`."""
        where = _entries_filter(categories, since)
        if where is None:
            return 0
        sql = "SELECT COUNT(*) FROM entries" + (f" WHERE {where[0]}" if where[0] else "")
        return self._run("count_entries", 0,
                         lambda engine: int(engine.scalar(sql, where[1]) or 0))

    def count_entries_with_embeddings(self) -> int:
        return self._run(
            "count_entries_with_embeddings", 0,
            lambda engine: int(engine.scalar(
                "SELECT COUNT(*) FROM entries WHERE embedding IS NOT NULL") or 0),
        )

    def schema_version(self) -> int:
        return self._run("schema_version", 0, current_version)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def record_query_metric(self, operation: str, elapsed_ms: float, result_count: int) -> bool:
        return self._run(
            "record_query_metric", False,
            lambda engine: engine.execute(
                "INSERT INTO query_metrics (timestamp, operation, elapsed_ms, result_count) "
                "VALUES (?, ?, ?, ?)",
                (utc_now_iso(), operation, float(elapsed_ms), int(result_count)),
            ).rowcount > 0,
        )

    def record_token_metric(self, model: str, input_units: int, output_units: int = 0,
                            status: str = "healthy") -> bool:
        return self._run(
            "record_token_metric", False,
            lambda engine: engine.execute(
                "INSERT INTO token_metrics (timestamp, model, input_units, output_units, "
                "total_units, status) VALUES (?, ?, ?, ?, ?, ?)",
                (utc_now_iso(), model, int(input_units), int(output_units),
                 int(input_units) + int(output_units), status),
            ).rowcount > 0,
        )

    def query_token_metrics(self, days: int = 7) -> list[dict]:
        """Token metrics from the last *days* days, oldest first."""
        since = _iso(datetime.now(timezone.utc) - timedelta(days=days))
        return self._run(
            "query_token_metrics", [],
            lambda engine: [dict(r) for r in engine.query(
                "SELECT timestamp, model, input_units, output_units, total_units, status "
                "FROM token_metrics WHERE timestamp >= ? ORDER BY timestamp ASC, id ASC",
                (since,),
            )],
        )

    def get_query_metrics(self, operation: Optional[str] = None, days: int = 7) -> list[dict]:
        since = _iso(datetime.now(timezone.utc) - timedelta(days=days))
        sql = ("SELECT timestamp, operation, elapsed_ms, result_count FROM query_metrics "
               "WHERE timestamp >= ?")
        params: tuple = (since,)
        if operation:
            sql += " AND operation = ?"
            params += (operation,)
        sql += " ORDER BY timestamp ASC, id ASC"
        return self._run("get_query_metrics", [],
                         lambda engine: [dict(r) for r in engine.query(sql, params)])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def group_by_progress_status(entries: Iterable[MemoryEntry]) -> dict[str, list[MemoryEntry]]:
    """Bucket *entries* by progress status; entries without one go under ``"none"``."""
    groups: dict[str, list[MemoryEntry]] = {status: [] for status in PROGRESS_STATUSES}
    groups["none"] = []
    for entry in entries:
        groups.setdefault(entry.progress_status or "none", []).append(entry)
    return groups


class QueryTimer:
    """Context manager recording the elapsed time of a query as a metric.

    The body sets ``timer.count`` to the number of results.
    """

    def __init__(self, store: MemoryStore, operation: str) -> None:
        self._store = store
        self._operation = operation
        self.count = 0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "QueryTimer":
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.elapsed_ms = (time.perf_counter() - self._t0) * 1000
        if exc_type is None:
            self._store.record_query_metric(self._operation, self.elapsed_ms, self.count)
