"""
Persistent store and participant directory backed by SQLite.

The batch coordinator only needs the MessageStore protocol
(bulk_insert_tagged, delete_by_tag) and the service only needs the
ParticipantDirectory protocol (get_participants); the SQLite classes are
the default implementations.

Error Mapping:
    - sqlite3.IntegrityError on an item  → that item is rejected and the
      whole batch rolls back (BulkWriteResult with failures)
    - "database is locked" / "busy"       → TransientWriteError (retryable)
    - any other sqlite3 error             → StorageError (fatal)
"""

import sqlite3
import uuid
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence
import logging

from chat_import.importer.errors import StorageError, TransientWriteError
from chat_import.importer.models import (
    Participant,
    ResolvedMessage,
    RowError,
    to_iso,
)

logger = logging.getLogger(__name__)

REJECTED_BY_STORE = "RejectedByStore"
TRANSIENT_MARKERS = ("locked", "busy")


def _now_iso() -> str:
    """Get current UTC timestamp in ISO-8601 format."""
    return datetime.now(tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class BulkWriteResult:
    """Per-item outcome of one bulk write."""

    inserted: int = 0
    failures: List[RowError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class MessageStore(Protocol):
    def bulk_insert_tagged(
        self,
        chat_id: str,
        messages: Sequence[ResolvedMessage],
        import_id: str,
        batch_index: int,
    ) -> BulkWriteResult: ...

    def delete_by_tag(self, chat_id: str, import_id: str) -> int: ...


class ParticipantDirectory(Protocol):
    def get_participants(self, chat_id: str) -> List[Participant]: ...


class _BatchRejected(Exception):
    """Internal signal to roll back a batch with rejected items."""


def _classify(error: sqlite3.Error) -> Exception:
    message = str(error).lower()
    if isinstance(error, sqlite3.OperationalError) and any(
        marker in message for marker in TRANSIENT_MARKERS
    ):
        return TransientWriteError(str(error))
    return StorageError(str(error))


class SQLiteMessageStore:
    """Message store writing to the chat_message table."""

    INSERT_QUERY = """
        INSERT INTO chat_message
            (message_id, chat_id, kind, sender_id, sender_label, text, original_text,
             was_normalized, was_translated, script, sent_at, source_format,
             import_id, batch_index, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def bulk_insert_tagged(
        self,
        chat_id: str,
        messages: Sequence[ResolvedMessage],
        import_id: str,
        batch_index: int,
    ) -> BulkWriteResult:
        """
        Insert a batch of messages as one transaction.

        Every item is attempted so all rejections are reported, but any
        rejection rolls the whole batch back.

        Args:
            chat_id: Target chat.
            messages: Resolved messages.
            import_id: Tag written to every row.
            batch_index: Batch number written to every row.

        Returns:
            BulkWriteResult; inserted is 0 when any item was rejected.

        Raises:
            TransientWriteError: If the database is locked or busy.
            StorageError: If the database is unusable.
        """
        if not messages:
            return BulkWriteResult()

        now = _now_iso()
        failures: List[RowError] = []
        try:
            with self.conn:
                with closing(self.conn.cursor()) as cursor:
                    for resolved in messages:
                        msg = resolved.message
                        try:
                            cursor.execute(
                                self.INSERT_QUERY,
                                (
                                    str(uuid.uuid4()),
                                    chat_id,
                                    resolved.kind,
                                    resolved.participant_id,
                                    msg.sender_label or None,
                                    msg.text,
                                    msg.original_text,
                                    int(msg.was_normalized),
                                    int(msg.was_translated),
                                    msg.script.value,
                                    to_iso(msg.timestamp),
                                    msg.source_format.value,
                                    import_id,
                                    batch_index,
                                    now,
                                ),
                            )
                        except sqlite3.IntegrityError as e:
                            failures.append(RowError(msg.row_index, REJECTED_BY_STORE, str(e)))
                if failures:
                    raise _BatchRejected()
        except _BatchRejected:
            logger.warning(
                f"Batch {batch_index} of import {import_id}: "
                f"{len(failures)} item(s) rejected, batch rolled back"
            )
            return BulkWriteResult(inserted=0, failures=failures)
        except sqlite3.Error as e:
            raise _classify(e) from e

        return BulkWriteResult(inserted=len(messages))

    def delete_by_tag(self, chat_id: str, import_id: str) -> int:
        """
        Delete every message tagged with an import.

        Returns:
            Number of messages deleted (0 when nothing is tagged).

        Raises:
            TransientWriteError, StorageError: If the delete fails.
        """
        try:
            with self.conn:
                with closing(self.conn.cursor()) as cursor:
                    cursor.execute(
                        "DELETE FROM chat_message WHERE chat_id = ? AND import_id = ?;",
                        (chat_id, import_id),
                    )
                    deleted = cursor.rowcount
        except sqlite3.Error as e:
            raise _classify(e) from e

        logger.info(f"Deleted {deleted} messages tagged {import_id} from chat {chat_id}")
        return deleted

    def count_by_tag(self, chat_id: str, import_id: str) -> int:
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                "SELECT COUNT(*) FROM chat_message WHERE chat_id = ? AND import_id = ?;",
                (chat_id, import_id),
            )
            result = cursor.fetchone()
            return result[0] if result else 0

    def count_messages(self, chat_id: str) -> int:
        with closing(self.conn.cursor()) as cursor:
            cursor.execute("SELECT COUNT(*) FROM chat_message WHERE chat_id = ?;", (chat_id,))
            result = cursor.fetchone()
            return result[0] if result else 0


class SQLiteParticipantDirectory:
    """Participant directory backed by the chat_participant table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def ensure_chat(self, chat_id: str, title: Optional[str] = None) -> None:
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                "INSERT OR IGNORE INTO chat (chat_id, title, created_at) VALUES (?, ?, ?);",
                (chat_id, title, _now_iso()),
            )
        self.conn.commit()

    def add_participant(
        self,
        chat_id: str,
        display_name: str,
        participant_id: Optional[str] = None,
    ) -> Participant:
        """
        Add a participant at the end of a chat's directory order.

        Args:
            chat_id: Chat to add to (created if missing).
            display_name: Name matched against sender labels.
            participant_id: Optional id; a UUID is generated when None.

        Returns:
            The new Participant.
        """
        self.ensure_chat(chat_id)
        participant = Participant(participant_id or str(uuid.uuid4()), display_name)

        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                "SELECT COALESCE(MAX(position), -1) + 1 FROM chat_participant WHERE chat_id = ?;",
                (chat_id,),
            )
            position = cursor.fetchone()[0]
            cursor.execute(
                """
                INSERT INTO chat_participant
                    (chat_id, participant_id, display_name, position, created_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                (chat_id, participant.id, display_name, position, _now_iso()),
            )
        self.conn.commit()

        logger.debug(f"Added participant {participant.id} ({display_name}) to chat {chat_id}")
        return participant

    def get_participants(self, chat_id: str) -> List[Participant]:
        """Get a chat's participants in directory order."""
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                """
                SELECT participant_id, display_name
                FROM chat_participant
                WHERE chat_id = ?
                ORDER BY position;
                """,
                (chat_id,),
            )
            return [Participant(row[0], row[1]) for row in cursor.fetchall()]
