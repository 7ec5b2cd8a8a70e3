"""
Tests for database.py DatabaseConnection class and schema.py helpers.

Tests connection management, schema creation and query execution.
"""

import sqlite3
from pathlib import Path

import pytest

from chat_import.config import Config
from chat_import.database import DatabaseConnection
from chat_import.importer.schema import REQUIRED_TABLES, create_schema, verify_schema


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config pointing at a database that does not exist yet."""
    return Config(db_path=str(tmp_path / "nested" / "chat_import.db"))


class TestConnect:
    """Tests for connect and close."""

    def test_connect_creates_file_and_schema(self, config):
        db = DatabaseConnection(config)
        conn = db.connect()
        try:
            assert config.db_path.exists()
            assert REQUIRED_TABLES.issubset(set(db.get_table_names()))
            assert conn.execute("PRAGMA foreign_keys;").fetchone() == (1,)
        finally:
            db.close()

    def test_connect_is_cached(self, config):
        db = DatabaseConnection(config)
        try:
            assert db.connect() is db.connect()
        finally:
            db.close()

    def test_connection_before_connect(self, config):
        """Should raise RuntimeError when accessing connection before connect."""
        with pytest.raises(RuntimeError):
            DatabaseConnection(config).connection

    def test_close_resets_connection(self, config):
        db = DatabaseConnection(config)
        db.connect()
        db.close()
        assert db._connection is None
        db.close()

    def test_context_manager(self, config):
        with DatabaseConnection(config) as db:
            assert db.connection is not None
        assert db._connection is None

    def test_connect_failure_propagates(self, tmp_path: Path):
        directory = tmp_path / "a_directory.db"
        directory.mkdir()
        db = DatabaseConnection(Config(db_path=str(directory)))
        with pytest.raises(sqlite3.Error):
            db.connect()


class TestQueries:
    """Tests for row counts and execute_query."""

    def test_row_counts(self, config):
        with DatabaseConnection(config) as db:
            db.connection.execute(
                "INSERT INTO chat (chat_id, title, created_at) VALUES ('c1', 't', 'now');"
            )
            assert db.get_row_count("chat") == 1
            assert db.get_row_counts_by_table(["chat", "chat_message"]) == [
                ("chat", 1),
                ("chat_message", 0),
            ]

    def test_row_counts_for_all_tables(self, config):
        with DatabaseConnection(config) as db:
            counts = dict(db.get_row_counts_by_table())
        assert set(counts) == set(db_tables(config))
        assert all(count == 0 for table, count in counts.items() if table != "schema_state")

    def test_unknown_table_is_rejected(self, config):
        with DatabaseConnection(config) as db:
            with pytest.raises(ValueError, match="Unknown table name"):
                db.get_row_count("chat; DROP TABLE chat")

    def test_execute_query_with_parameters(self, config):
        with DatabaseConnection(config) as db:
            rows = db.execute_query("SELECT ? + ?;", (2, 3))
        assert rows == [(5,)]


def db_tables(config):
    conn = sqlite3.connect(config.db_path_str)
    try:
        return [r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table';")]
    finally:
        conn.close()


class TestSchema:
    """Tests for create_schema and verify_schema."""

    def test_empty_database_fails_verification(self):
        conn = sqlite3.connect(":memory:")
        assert verify_schema(conn) is False

    def test_create_schema_is_idempotent(self):
        conn = sqlite3.connect(":memory:")
        create_schema(conn)
        create_schema(conn)
        assert verify_schema(conn) is True
