"""
Schema definition and online migration for the memory store.

Migration runs on every ``MemoryStore.init`` and is idempotent: each step
first inspects the live schema and only acts on drift.

* **Additive** steps add missing nullable columns in place.
* **Structural** steps rebuild the ``entries`` table when its category
  constraint is missing newer categories, or when a legacy database still
  calls the category column ``file_type``.  The rebuild copies every row
  into a replacement table, verifies the row count, and only then drops
  and renames, all inside one transaction.  A count mismatch raises
  :class:`~memory_bank.errors.MigrationError` before the drop.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..errors import MigrationError
from ..models import CATEGORIES, utc_now_iso
from .engines import StorageEngine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CATEGORY_LIST = ", ".join(f"'{c}'" for c in CATEGORIES)

_ENTRIES_TABLE = """
CREATE TABLE {name} (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    category        TEXT NOT NULL CHECK (category IN ({categories})),
    timestamp       TEXT NOT NULL,
    tag             TEXT NOT NULL DEFAULT '',
    content         TEXT NOT NULL,
    metadata        TEXT NOT NULL DEFAULT '{{}}',
    phase           TEXT,
    progress_status TEXT,
    embedding       BLOB
)
"""

_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_category_timestamp ON entries(category, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_tag ON entries(tag);
"""

_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER PRIMARY KEY,
    description TEXT NOT NULL,
    applied_at  TEXT NOT NULL
);
"""

_METRICS_TABLES = """
CREATE TABLE IF NOT EXISTS query_metrics (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp    TEXT NOT NULL,
    operation    TEXT NOT NULL,
    elapsed_ms   REAL NOT NULL,
    result_count INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_query_metrics_timestamp ON query_metrics(timestamp);

CREATE TABLE IF NOT EXISTS token_metrics (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp     TEXT NOT NULL,
    model         TEXT NOT NULL,
    input_units   INTEGER NOT NULL DEFAULT 0,
    output_units  INTEGER NOT NULL DEFAULT 0,
    total_units   INTEGER NOT NULL DEFAULT 0,
    status        TEXT NOT NULL DEFAULT 'healthy'
);
CREATE INDEX IF NOT EXISTS idx_token_metrics_timestamp ON token_metrics(timestamp);
"""

# Columns added in place when an older table lacks them.
_ADDITIVE_COLUMNS: list[tuple[str, str]] = [
    ("tag", "TEXT NOT NULL DEFAULT ''"),
    ("metadata", "TEXT NOT NULL DEFAULT '{}'"),
    ("phase", "TEXT"),
    ("progress_status", "TEXT"),
    ("embedding", "BLOB"),
]

# Versions recorded in schema_version when the matching step runs.
V_INITIAL = 1
V_CATEGORY_REBUILD = 2
V_ADDITIVE_COLUMNS = 3
V_METRICS = 4
SCHEMA_VERSION = V_METRICS

_ENTRY_COLUMNS = (
    "id", "category", "timestamp", "tag", "content",
    "metadata", "phase", "progress_status", "embedding",
)


def entries_table_ddl(name: str = "entries") -> str:
    return _ENTRIES_TABLE.format(name=name, categories=_CATEGORY_LIST)


@dataclass
class MigrationResult:
    """What a migration pass did."""

    applied: list[str] = field(default_factory=list)
    backup_path: Optional[str] = None
    rows_before: int = 0
    rows_after: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.applied)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _count_rows(engine: StorageEngine, table: str) -> int:
    return int(engine.scalar(f"SELECT COUNT(*) FROM {table}") or 0)


def _record_version(engine: StorageEngine, version: int, description: str) -> None:
    engine.execute(
        "INSERT OR IGNORE INTO schema_version (version, description, applied_at) "
        "VALUES (?, ?, ?)",
        (version, description, utc_now_iso()),
    )


def current_version(engine: StorageEngine) -> int:
    """Highest recorded schema version, 0 for an unversioned database."""
    try:
        return int(engine.scalar("SELECT MAX(version) FROM schema_version") or 0)
    except sqlite3.OperationalError:
        return 0


def needs_structural_rebuild(engine: StorageEngine) -> bool:
    """True when the entries table must be rebuilt rather than altered."""
    columns = engine.table_columns("entries")
    if "category" not in columns and "file_type" in columns:
        return True
    sql = engine.table_sql("entries") or ""
    if "CHECK" not in sql.upper():
        return False
    return any(f"'{c}'" not in sql for c in CATEGORIES)


def backup_database(engine: StorageEngine, db_path: str) -> Optional[str]:
    """
    Copy the live database to ``<dir>/.backup/<name>.<timestamp>.backup``.

    Returns the backup path, or None when there is nothing on disk yet.
    """
    if not os.path.isfile(db_path) or os.path.getsize(db_path) == 0:
        return None
    backup_dir = os.path.join(os.path.dirname(os.path.abspath(db_path)), ".backup")
    os.makedirs(backup_dir, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    dest = os.path.join(backup_dir, f"{os.path.basename(db_path)}.{stamp}.backup")
    engine.backup_to(dest)
    logger.info("[Schema] Backed up database to %s", dest)
    return dest


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def _rebuild_entries(engine: StorageEngine, result: MigrationResult) -> None:
    """Copy entries into a table with the current constraint, then swap."""
    columns = set(engine.table_columns("entries"))
    category_col = "category" if "category" in columns else "file_type"

    def _col(name: str, fallback: str) -> str:
        return f"COALESCE({name}, {fallback})" if name in columns else fallback

    select_exprs = [
        "id",
        f"UPPER({category_col})",
        _col("timestamp", "''"),
        _col("tag", "''"),
        _col("content", "''"),
        _col("metadata", "'{}'"),
        "phase" if "phase" in columns else "NULL",
        "progress_status" if "progress_status" in columns else "NULL",
        "embedding" if "embedding" in columns else "NULL",
    ]

    rows_before = _count_rows(engine, "entries")
    result.rows_before = rows_before
    try:
        with engine.transaction():
            engine.execute("DROP TABLE IF EXISTS entries_new")
            engine.execute(entries_table_ddl("entries_new"))
            engine.execute(
                f"INSERT INTO entries_new ({', '.join(_ENTRY_COLUMNS)}) "
                f"SELECT {', '.join(select_exprs)} FROM entries"
            )
            rows_after = _count_rows(engine, "entries_new")
            if rows_after != rows_before:
                raise MigrationError(
                    f"Row count mismatch while rebuilding entries: "
                    f"{rows_before} before, {rows_after} copied"
                )
            engine.execute("DROP TABLE entries")
            engine.execute("ALTER TABLE entries_new RENAME TO entries")
            _record_version(engine, V_CATEGORY_REBUILD,
                            "rebuild entries with current category constraint")
            # The rebuilt table already carries every additive column.
            _record_version(engine, V_ADDITIVE_COLUMNS,
                            "add metadata, phase, progress_status and embedding columns")
    except sqlite3.Error as exc:
        raise MigrationError(f"Structural migration failed: {exc}") from exc
    result.rows_after = rows_after
    result.applied.append("rebuild entries table")
    logger.info("[Schema] Rebuilt entries table (%d rows preserved)", rows_after)


def _add_missing_columns(engine: StorageEngine, result: MigrationResult) -> None:
    columns = set(engine.table_columns("entries"))
    missing = [(name, decl) for name, decl in _ADDITIVE_COLUMNS if name not in columns]
    if not missing:
        return
    with engine.transaction():
        for name, decl in missing:
            engine.execute(f"ALTER TABLE entries ADD COLUMN {name} {decl}")
            result.applied.append(f"add column {name}")
        _record_version(engine, V_ADDITIVE_COLUMNS,
                        "add metadata, phase, progress_status and embedding columns")
    logger.info("[Schema] Added columns: %s", ", ".join(n for n, _ in missing))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def apply_migrations(
    engine: StorageEngine,
    db_path: str,
    backup: bool = True,
) -> MigrationResult:
    """
    Bring the database at *engine* up to the current schema.

    Parameters
    ----------
    engine:
        An open storage engine.
    db_path:
        On-disk location, used for the pre-rebuild backup.
    backup:
        Copy the database aside before a structural rebuild.

    Raises
    ------
    MigrationError
        If a structural rebuild could not preserve every row.  The original
        table is left untouched.
    """
    result = MigrationResult()
    engine.executescript(_SCHEMA_VERSION_TABLE)

    if engine.table_sql("entries") is None:
        with engine.transaction():
            engine.execute(entries_table_ddl())
            _record_version(engine, V_INITIAL, "create entries table")
        result.applied.append("create entries table")
        logger.info("[Schema] Created entries table")
    else:
        if needs_structural_rebuild(engine):
            if backup:
                result.backup_path = backup_database(engine, db_path)
            _rebuild_entries(engine, result)
        _add_missing_columns(engine, result)

    engine.executescript(_INDEXES)

    if engine.table_sql("query_metrics") is None or engine.table_sql("token_metrics") is None:
        result.applied.append("create metrics tables")
    engine.executescript(_METRICS_TABLES)
    _record_version(engine, V_METRICS, "create metrics tables")

    result.rows_after = result.rows_after or _count_rows(engine, "entries")
    if result.changed:
        logger.info("[Schema] Migration applied: %s", "; ".join(result.applied))
    return result
