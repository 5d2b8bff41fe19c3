"""
Unit tests for db_utils: retry logic and connection management.
"""

import sqlite3
from unittest.mock import patch

import pytest

from speedtest_monitor.db_utils import db_connection, get_optimized_connection, retry_on_db_lock


class TestRetryOnDbLock:
    """Test suite for retry_on_db_lock decorator."""

    def test_success_first_attempt(self):
        call_count = {"count": 0}

        @retry_on_db_lock(max_attempts=3)
        def test_function():
            call_count["count"] += 1
            return "success"

        assert test_function() == "success"
        assert call_count["count"] == 1

    @patch("speedtest_monitor.db_utils.time.sleep")
    def test_retries_locked_database(self, mock_sleep):
        call_count = {"count": 0}

        @retry_on_db_lock(max_attempts=3, base_delay=0.1, max_delay=1.0)
        def flaky():
            call_count["count"] += 1
            if call_count["count"] < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        assert flaky() == "ok"
        assert call_count["count"] == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.1, 0.2]

    @patch("speedtest_monitor.db_utils.time.sleep")
    def test_gives_up_after_max_attempts(self, mock_sleep):
        @retry_on_db_lock(max_attempts=2, base_delay=0.1)
        def always_busy():
            raise sqlite3.OperationalError("database is busy")

        with pytest.raises(sqlite3.OperationalError):
            always_busy()
        assert mock_sleep.call_count == 1

    @patch("speedtest_monitor.db_utils.time.sleep")
    def test_other_errors_propagate_immediately(self, mock_sleep):
        @retry_on_db_lock(max_attempts=3)
        def broken():
            raise sqlite3.OperationalError("no such table: nodes")

        with pytest.raises(sqlite3.OperationalError, match="no such table"):
            broken()
        mock_sleep.assert_not_called()

    @patch("speedtest_monitor.db_utils.time.sleep")
    def test_delay_is_capped(self, mock_sleep):
        @retry_on_db_lock(max_attempts=5, base_delay=1.0, max_delay=2.0)
        def always_locked():
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(sqlite3.OperationalError):
            always_locked()
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0, 2.0, 2.0]


class TestConnections:
    def test_optimized_connection_pragmas(self, tmp_path):
        conn = get_optimized_connection(str(tmp_path / "test.db"))
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0].lower() == "wal"
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
            assert conn.row_factory is sqlite3.Row
        finally:
            conn.close()

    def test_db_connection_commits(self, tmp_path):
        path = str(tmp_path / "test.db")
        with db_connection(path) as conn:
            conn.execute("CREATE TABLE t (x INTEGER)")
            conn.execute("INSERT INTO t VALUES (1)")

        with db_connection(path) as conn:
            assert conn.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 1

    def test_db_connection_rolls_back_on_error(self, tmp_path):
        path = str(tmp_path / "test.db")
        with db_connection(path) as conn:
            conn.execute("CREATE TABLE t (x INTEGER)")

        with pytest.raises(RuntimeError):
            with db_connection(path) as conn:
                conn.execute("INSERT INTO t VALUES (1)")
                raise RuntimeError("boom")

        with db_connection(path) as conn:
            assert conn.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0
