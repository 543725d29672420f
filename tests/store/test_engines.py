"""
Unit tests for memory_bank.store.engines
"""

from __future__ import annotations

import os
import sqlite3
from unittest.mock import patch

import pytest

from memory_bank.store.engines import ENGINES, NativeEngine, PortableEngine


def _disk_count(path, table="t"):
    conn = sqlite3.connect(path)
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


@pytest.fixture(params=["portable", "native"])
def engine(request, tmp_path):
    eng = ENGINES[request.param](str(tmp_path / "engine.db"))
    eng.open()
    eng.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, v TEXT)")
    yield eng
    eng.close()


class TestCommonSurface:
    def test_query_helpers(self, engine):
        engine.execute("INSERT INTO t (v) VALUES (?)", ("a",))
        engine.execute("INSERT INTO t (v) VALUES (?)", ("b",))
        assert [r["v"] for r in engine.query("SELECT v FROM t ORDER BY id")] == ["a", "b"]
        assert engine.query_one("SELECT v FROM t WHERE id = 2")["v"] == "b"
        assert engine.scalar("SELECT COUNT(*) FROM t") == 2
        assert engine.scalar("SELECT v FROM t WHERE id = 99") is None

    def test_table_introspection(self, engine):
        assert engine.table_columns("t") == ["id", "v"]
        assert "CREATE TABLE t" in engine.table_sql("t")
        assert engine.table_sql("missing") is None

    def test_transaction_commits(self, engine):
        with engine.transaction():
            engine.execute("INSERT INTO t (v) VALUES ('x')")
            engine.execute("INSERT INTO t (v) VALUES ('y')")
        assert engine.scalar("SELECT COUNT(*) FROM t") == 2
        assert _disk_count(engine.path) == 2

    def test_transaction_rolls_back_on_error(self, engine):
        with pytest.raises(RuntimeError):
            with engine.transaction():
                engine.execute("INSERT INTO t (v) VALUES ('x')")
                raise RuntimeError("abort")
        assert engine.scalar("SELECT COUNT(*) FROM t") == 0

    def test_nested_transaction_joins_outer(self, engine):
        with engine.transaction():
            with engine.transaction():
                engine.execute("INSERT INTO t (v) VALUES ('inner')")
            engine.execute("INSERT INTO t (v) VALUES ('outer')")
        assert engine.scalar("SELECT COUNT(*) FROM t") == 2

    def test_backup_to(self, engine, tmp_path):
        engine.execute("INSERT INTO t (v) VALUES ('copied')")
        dest = str(tmp_path / "copy.db")
        engine.backup_to(dest)
        assert _disk_count(dest) == 1

    def test_closed_engine_raises(self, engine):
        engine.close()
        assert not engine.is_open
        with pytest.raises(sqlite3.ProgrammingError):
            engine.query("SELECT 1")


class TestPortableEngine:
    def test_open_creates_file(self, tmp_path):
        path = str(tmp_path / "new.db")
        eng = PortableEngine(path)
        eng.open()
        assert os.path.isfile(path)
        eng.close()

    def test_each_write_is_flushed(self, tmp_path):
        path = str(tmp_path / "p.db")
        eng = PortableEngine(path)
        eng.open()
        eng.execute("CREATE TABLE t (v TEXT)")
        eng.execute("INSERT INTO t VALUES ('one')")
        # Visible on disk without closing.
        assert _disk_count(path) == 1
        assert not os.path.exists(path + ".tmp")
        eng.close()

    def test_close_without_flush_drops_unflushed_state(self, tmp_path):
        path = str(tmp_path / "p.db")
        eng = PortableEngine(path)
        eng.open()
        eng.execute("CREATE TABLE t (v TEXT)")
        eng.conn.execute("INSERT INTO t VALUES ('never flushed')")
        eng.close(flush=False)
        assert _disk_count(path) == 0

    def test_failed_flush_keeps_change_until_next_write(self, tmp_path):
        path = str(tmp_path / "p.db")
        eng = PortableEngine(path)
        eng.open()
        eng.execute("CREATE TABLE t (v TEXT)")
        with patch.object(PortableEngine, "backup_to",
                          side_effect=sqlite3.OperationalError("unable to open database")):
            eng.execute("INSERT INTO t VALUES ('pending')")
        assert eng.is_dirty
        assert eng.scalar("SELECT COUNT(*) FROM t") == 1
        assert _disk_count(path) == 0

        eng.execute("INSERT INTO t VALUES ('next')")
        assert not eng.is_dirty
        assert _disk_count(path) == 2
        eng.close()

    def test_close_retries_failed_commit_flush(self, tmp_path):
        path = str(tmp_path / "p.db")
        eng = PortableEngine(path)
        eng.open()
        eng.execute("CREATE TABLE t (v TEXT)")
        with patch("memory_bank.store.engines.os.replace", side_effect=OSError("read-only")):
            with eng.transaction():
                eng.execute("INSERT INTO t VALUES ('a')")
                eng.execute("INSERT INTO t VALUES ('b')")
        assert eng.is_dirty
        eng.close()
        assert _disk_count(path) == 2

    def test_loads_existing_file(self, tmp_path):
        path = str(tmp_path / "existing.db")
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE t (v TEXT)")
        conn.execute("INSERT INTO t VALUES ('there')")
        conn.commit()
        conn.close()

        eng = PortableEngine(path)
        eng.open()
        assert eng.scalar("SELECT v FROM t") == "there"
        eng.close()

    def test_corrupt_file_rejected(self, tmp_path):
        path = str(tmp_path / "bad.db")
        with open(path, "wb") as f:
            f.write(b"garbage" * 200)
        with pytest.raises(sqlite3.DatabaseError):
            PortableEngine(path).open()


class TestNativeEngine:
    def test_uses_write_ahead_log(self, tmp_path):
        eng = NativeEngine(str(tmp_path / "n.db"))
        eng.open()
        assert eng.scalar("PRAGMA journal_mode").lower() == "wal"
        eng.close()

    def test_corrupt_file_rejected(self, tmp_path):
        path = str(tmp_path / "bad.db")
        with open(path, "wb") as f:
            f.write(b"garbage" * 200)
        with pytest.raises(sqlite3.DatabaseError):
            NativeEngine(path).open()
