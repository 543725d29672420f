"""
Unit tests for memory_bank.store.schema

Legacy databases are built with plain sqlite3, then opened through
MemoryStore so the migration runs exactly as it does in production.
"""

from __future__ import annotations

import os
import sqlite3
from unittest.mock import patch

import pytest

from memory_bank.models import MemoryEntry
from memory_bank.store.memory_store import MemoryStore
from memory_bank.store.schema import SCHEMA_VERSION


_LEGACY_CHECK_TABLE = """
CREATE TABLE entries (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    category  TEXT NOT NULL CHECK (category IN ('CONTEXT', 'DECISION', 'PROGRESS', 'PATTERN', 'BRIEF')),
    timestamp TEXT NOT NULL,
    tag       TEXT NOT NULL DEFAULT '',
    content   TEXT NOT NULL
)
"""

_LEGACY_OPEN_TABLE = """
CREATE TABLE entries (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    category  TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    tag       TEXT NOT NULL DEFAULT '',
    content   TEXT NOT NULL
)
"""

_LEGACY_FILE_TYPE_TABLE = """
CREATE TABLE entries (
    id        INTEGER PRIMARY KEY AUTOINCREMENT,
    file_type TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    content   TEXT NOT NULL
)
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_legacy(path, ddl, rows, columns=("category", "timestamp", "tag", "content")):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    conn = sqlite3.connect(path)
    conn.execute(ddl)
    placeholders = ", ".join("?" for _ in columns)
    conn.executemany(
        f"INSERT INTO entries ({', '.join(columns)}) VALUES ({placeholders})", rows
    )
    conn.commit()
    conn.close()


def _raw(path, sql):
    conn = sqlite3.connect(path)
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


_SEED_ROWS = [
    ("DECISION", "2025-01-01T00:00:00Z", "DECISION:2025-01-01", "Use SQLite"),
    ("PATTERN", "2025-01-02T00:00:00Z", "PATTERN:2025-01-02", "Repository pattern"),
    ("CONTEXT", "2025-01-03T00:00:00Z", "", "Project uses Python 3.11"),
]


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "memory.db")


# ---------------------------------------------------------------------------
# Fresh databases
# ---------------------------------------------------------------------------

class TestFreshSchema:
    def test_new_database_gets_current_version(self, db_path):
        store = MemoryStore()
        assert store.init(db_path)
        assert store.schema_version() == SCHEMA_VERSION
        assert "create entries table" in store.last_migration.applied
        assert store.last_migration.backup_path is None
        store.close()

        names = {row[0] for row in _raw(db_path, "SELECT name FROM sqlite_master")}
        assert {"entries", "schema_version", "query_metrics", "token_metrics",
                "idx_category_timestamp", "idx_tag"} <= names

    def test_rerun_is_idempotent(self, db_path):
        for _ in range(2):
            store = MemoryStore()
            assert store.init(db_path)
            store.close()
        store = MemoryStore()
        assert store.init(db_path)
        assert not store.last_migration.changed
        store.close()

        versions = [row[0] for row in _raw(db_path, "SELECT version FROM schema_version")]
        assert len(versions) == len(set(versions))

    def test_check_constraint_rejects_unknown_category(self, db_path):
        store = MemoryStore()
        assert store.init(db_path)
        store.close()
        conn = sqlite3.connect(db_path)
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO entries (category, timestamp, content) VALUES ('BOGUS', 'x', 'y')"
            )
        conn.close()


# ---------------------------------------------------------------------------
# Structural rebuild
# ---------------------------------------------------------------------------

class TestStructuralRebuild:
    def test_legacy_check_table_is_rebuilt(self, db_path):
        _make_legacy(db_path, _LEGACY_CHECK_TABLE, _SEED_ROWS)

        store = MemoryStore()
        assert store.init(db_path)
        result = store.last_migration

        assert "rebuild entries table" in result.applied
        assert result.rows_before == 3
        assert result.rows_after == 3
        assert store.count_entries() == 3

        # New columns exist and new categories are accepted.
        entry_id = store.append_entry(MemoryEntry(
            "RESEARCH_REPORT", "Findings", phase="research", metadata={"k": "v"},
        ))
        assert entry_id is not None
        assert store.get_entry_by_id(entry_id).phase == "research"
        store.close()

    def test_rebuild_preserves_ids_and_content(self, db_path):
        _make_legacy(db_path, _LEGACY_CHECK_TABLE, _SEED_ROWS)
        before = _raw(db_path, "SELECT id, category, content FROM entries ORDER BY id")

        store = MemoryStore()
        assert store.init(db_path)
        store.close()

        after = _raw(db_path, "SELECT id, category, content FROM entries ORDER BY id")
        assert after == before

    def test_backup_written_before_rebuild(self, db_path):
        _make_legacy(db_path, _LEGACY_CHECK_TABLE, _SEED_ROWS)

        store = MemoryStore()
        assert store.init(db_path)
        backup = store.last_migration.backup_path
        store.close()

        assert backup is not None
        assert os.path.dirname(backup).endswith(".backup")
        assert os.path.basename(backup).startswith("memory.db.")
        # The backup still carries the legacy constraint.
        sql = _raw(backup, "SELECT sql FROM sqlite_master WHERE name='entries'")[0][0]
        assert "RESEARCH_REPORT" not in sql
        assert _raw(backup, "SELECT COUNT(*) FROM entries")[0][0] == 3

    def test_backup_can_be_disabled(self, db_path):
        _make_legacy(db_path, _LEGACY_CHECK_TABLE, _SEED_ROWS)

        store = MemoryStore(backup_before_migration=False)
        assert store.init(db_path)
        assert store.last_migration.backup_path is None
        store.close()

    def test_file_type_column_is_renamed(self, db_path):
        _make_legacy(
            db_path, _LEGACY_FILE_TYPE_TABLE,
            [("decision", "2025-01-01T00:00:00Z", "Keep it simple"),
             ("progress", "2025-01-02T00:00:00Z", "Step one done")],
            columns=("file_type", "timestamp", "content"),
        )

        store = MemoryStore()
        assert store.init(db_path)
        assert "rebuild entries table" in store.last_migration.applied
        assert [e.content for e in store.query_by_type("DECISION")] == ["Keep it simple"]
        assert store.query_by_type("PROGRESS")[0].tag == "PROGRESS:2025-01-02"
        store.close()

        columns = [row[1] for row in _raw(db_path, "PRAGMA table_info(entries)")]
        assert "category" in columns
        assert "file_type" not in columns

    def test_count_mismatch_aborts_and_keeps_old_table(self, db_path):
        _make_legacy(db_path, _LEGACY_CHECK_TABLE, _SEED_ROWS)

        store = MemoryStore()
        with patch("memory_bank.store.schema._count_rows", side_effect=[3, 2]):
            assert store.init(db_path) is False
        assert "Row count mismatch" in store.last_error
        assert not store.is_ready

        sql = _raw(db_path, "SELECT sql FROM sqlite_master WHERE name='entries'")[0][0]
        assert "RESEARCH_REPORT" not in sql
        assert _raw(db_path, "SELECT COUNT(*) FROM entries")[0][0] == 3
        tables = {row[0] for row in _raw(db_path, "SELECT name FROM sqlite_master")}
        assert "entries_new" not in tables

    def test_versions_recorded(self, db_path):
        _make_legacy(db_path, _LEGACY_CHECK_TABLE, _SEED_ROWS)
        store = MemoryStore()
        assert store.init(db_path)
        store.close()

        versions = {row[0] for row in _raw(db_path, "SELECT version FROM schema_version")}
        assert {2, 3, 4} <= versions


# ---------------------------------------------------------------------------
# Additive migration
# ---------------------------------------------------------------------------

class TestAdditiveColumns:
    def test_missing_columns_added_in_place(self, db_path):
        _make_legacy(db_path, _LEGACY_OPEN_TABLE, _SEED_ROWS)

        store = MemoryStore()
        assert store.init(db_path)
        applied = store.last_migration.applied

        assert "rebuild entries table" not in applied
        for column in ("metadata", "phase", "progress_status", "embedding"):
            assert f"add column {column}" in applied
        assert store.last_migration.backup_path is None

        entry = store.query_by_type("DECISION")[0]
        assert entry.metadata == {}
        assert entry.embedding is None
        assert store.update_entry(entry.id, progress_status="done")
        store.close()

    def test_native_engine_migrates_too(self, db_path):
        _make_legacy(db_path, _LEGACY_CHECK_TABLE, _SEED_ROWS)

        store = MemoryStore(engine_order=["native"])
        assert store.init(db_path)
        assert store.backend == "native"
        assert store.count_entries() == 3
        assert store.schema_version() == SCHEMA_VERSION
        store.close()
