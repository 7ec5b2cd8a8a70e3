"""
Tests for store.py SQLite message store and participant directory.
"""

import sqlite3
from datetime import datetime, timezone

import pytest

from chat_import.importer.errors import StorageError, TransientWriteError
from chat_import.importer.models import (
    NormalizedMessage,
    SourceFormat,
    SystemGeneratedMessage,
    UserMessage,
)
from chat_import.importer.store import (
    REJECTED_BY_STORE,
    BulkWriteResult,
    SQLiteMessageStore,
    SQLiteParticipantDirectory,
    _classify,
)


def user_message(text: str = "hi", row_index: int = 1, sender: str = "alice") -> UserMessage:
    return UserMessage(
        NormalizedMessage(
            sender_label=sender.title(),
            text=text,
            original_text=text,
            was_normalized=False,
            timestamp=datetime(2024, 1, 1, 10, row_index, tzinfo=timezone.utc),
            source_format=SourceFormat.WHATSAPP,
            row_index=row_index,
            resolved_participant_id=sender,
        )
    )


def system_message(row_index: int = 1) -> SystemGeneratedMessage:
    return SystemGeneratedMessage(
        NormalizedMessage(
            sender_label="",
            text="Messages are end-to-end encrypted",
            original_text="Messages are end-to-end encrypted",
            was_normalized=False,
            timestamp=datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc),
            source_format=SourceFormat.WHATSAPP,
            row_index=row_index,
        )
    )


@pytest.fixture
def store(conn):
    return SQLiteMessageStore(conn)


class TestBulkInsertTagged:
    """Tests for SQLiteMessageStore.bulk_insert_tagged."""

    def test_inserts_every_message(self, store):
        result = store.bulk_insert_tagged(
            "chat-1", [user_message(row_index=1), user_message(row_index=2)], "imp-1", 0
        )
        assert result == BulkWriteResult(inserted=2)
        assert result.ok is True
        assert store.count_by_tag("chat-1", "imp-1") == 2

    def test_rows_are_tagged(self, store, conn):
        store.bulk_insert_tagged("chat-1", [user_message(), system_message(2)], "imp-1", 3)
        rows = conn.execute(
            "SELECT kind, sender_id, import_id, batch_index, sent_at FROM chat_message "
            "ORDER BY sent_at;"
        ).fetchall()
        assert rows == [
            ("system", None, "imp-1", 3, "2024-01-01T09:00:00Z"),
            ("user", "alice", "imp-1", 3, "2024-01-01T10:01:00Z"),
        ]

    def test_empty_batch(self, store):
        assert store.bulk_insert_tagged("chat-1", [], "imp-1", 0) == BulkWriteResult()

    def test_rejected_item_rolls_back_batch(self, store):
        messages = [user_message(row_index=1), user_message("   ", 2), user_message(row_index=3)]
        result = store.bulk_insert_tagged("chat-1", messages, "imp-1", 0)
        assert result.inserted == 0
        assert result.ok is False
        assert [(f.row_index, f.reason) for f in result.failures] == [(2, REJECTED_BY_STORE)]
        assert store.count_by_tag("chat-1", "imp-1") == 0

    def test_broken_database_is_storage_error(self, store, conn):
        conn.execute("DROP TABLE chat_message;")
        with pytest.raises(StorageError):
            store.bulk_insert_tagged("chat-1", [user_message()], "imp-1", 0)


class TestDeleteByTag:
    """Tests for delete_by_tag and the counters."""

    def test_deletes_only_tagged_messages(self, store):
        store.bulk_insert_tagged("chat-1", [user_message(row_index=1)], "imp-1", 0)
        store.bulk_insert_tagged("chat-1", [user_message(row_index=2)], "imp-2", 0)
        store.bulk_insert_tagged("chat-2", [user_message(row_index=3)], "imp-1", 0)

        assert store.delete_by_tag("chat-1", "imp-1") == 1
        assert store.count_messages("chat-1") == 1
        assert store.count_messages("chat-2") == 1

    def test_delete_nothing(self, store):
        assert store.delete_by_tag("chat-1", "missing") == 0

    def test_delete_is_repeatable(self, store):
        store.bulk_insert_tagged("chat-1", [user_message()], "imp-1", 0)
        assert store.delete_by_tag("chat-1", "imp-1") == 1
        assert store.delete_by_tag("chat-1", "imp-1") == 0


class TestClassify:
    """Tests for sqlite error classification."""

    def test_locked_is_transient(self):
        error = _classify(sqlite3.OperationalError("database is locked"))
        assert isinstance(error, TransientWriteError)

    def test_busy_is_transient(self):
        error = _classify(sqlite3.OperationalError("database table is busy"))
        assert isinstance(error, TransientWriteError)

    def test_other_operational_error_is_fatal(self):
        error = _classify(sqlite3.OperationalError("no such table: chat_message"))
        assert isinstance(error, StorageError)

    def test_database_error_is_fatal(self):
        assert isinstance(_classify(sqlite3.DatabaseError("disk image is malformed")), StorageError)


class TestParticipantDirectory:
    """Tests for SQLiteParticipantDirectory."""

    def test_participants_in_directory_order(self, directory):
        participants = directory.get_participants("chat-1")
        assert [(p.id, p.display_name) for p in participants] == [
            ("alice", "Alice"),
            ("bob", "Bob"),
        ]

    def test_unknown_chat_has_no_participants(self, directory):
        assert directory.get_participants("other") == []

    def test_generated_id(self, conn):
        directory = SQLiteParticipantDirectory(conn)
        participant = directory.add_participant("chat-9", "Carol")
        assert len(participant.id) == 36
        assert directory.get_participants("chat-9") == [participant]

    def test_duplicate_id_is_rejected(self, directory):
        with pytest.raises(sqlite3.IntegrityError):
            directory.add_participant("chat-1", "Alice Again", "alice")

    def test_ensure_chat_is_idempotent(self, conn):
        directory = SQLiteParticipantDirectory(conn)
        directory.ensure_chat("chat-1", "Family")
        directory.ensure_chat("chat-1", "Other title")
        rows = conn.execute("SELECT chat_id, title FROM chat;").fetchall()
        assert rows == [("chat-1", "Family")]
