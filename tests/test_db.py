"""
Tests for the SQLite connection helper.
"""

import sqlite3

from biowatch.core.db import BUSY_TIMEOUT_MS, MEMORY_DB, connect


class TestConnect:
    def test_file_database_pragmas(self, tmp_path):
        conn = connect(tmp_path / "nested" / "dir" / "x.db")
        try:
            assert (tmp_path / "nested" / "dir").is_dir()
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
            assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == BUSY_TIMEOUT_MS
        finally:
            conn.close()

    def test_memory_database(self):
        conn = connect(MEMORY_DB, row_factory=True)
        try:
            assert conn.row_factory is sqlite3.Row
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        finally:
            conn.close()
