"""
Schema definitions for the import database.

Holds the message store, the participant directory and the import ledger.

Design Decisions:
    1. TEXT UUIDs for messages and imports
    2. Every imported message carries its import_id and batch_index
    3. User and system messages are told apart by a 'kind' column
    4. ISO-8601 TEXT for timestamps (SQLite-friendly, human-readable)
    5. Batch errors are stored as a JSON array of {rowIndex, reason}
"""

import sqlite3
from contextlib import closing
from typing import List
import logging

logger = logging.getLogger(__name__)

# Schema version for migration tracking
SCHEMA_VERSION = "1.0.0"

REQUIRED_TABLES = {
    "chat",
    "chat_participant",
    "chat_message",
    "import_ledger",
    "import_batch",
    "schema_state",
}

SCHEMA_DDL = """
-- =============================================================================
-- chat / chat_participant: the participant directory
-- =============================================================================
-- position keeps the directory order, which breaks sender-resolution ties.
--
CREATE TABLE IF NOT EXISTS chat (
    chat_id TEXT PRIMARY KEY,
    title TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_participant (
    chat_id TEXT NOT NULL REFERENCES chat(chat_id),
    participant_id TEXT NOT NULL,
    display_name TEXT NOT NULL,
    position INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (chat_id, participant_id)
);

CREATE INDEX IF NOT EXISTS idx_participant_position
    ON chat_participant(chat_id, position);

-- =============================================================================
-- chat_message: conversation history
-- =============================================================================
-- import_id is write-time provenance, used only for rollback and statistics.
-- System messages have no sender; user messages must have one.
--
CREATE TABLE IF NOT EXISTS chat_message (
    message_id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL,
    kind TEXT NOT NULL CHECK (kind IN ('user', 'system')),
    sender_id TEXT,
    sender_label TEXT,
    text TEXT NOT NULL CHECK (length(trim(text)) > 0),
    original_text TEXT,
    was_normalized INTEGER NOT NULL DEFAULT 0 CHECK (was_normalized IN (0, 1)),
    was_translated INTEGER NOT NULL DEFAULT 0 CHECK (was_translated IN (0, 1)),
    script TEXT,
    sent_at TEXT NOT NULL,
    source_format TEXT,
    import_id TEXT,
    batch_index INTEGER,
    created_at TEXT NOT NULL,
    CHECK (kind = 'system' OR sender_id IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_message_chat_sent
    ON chat_message(chat_id, sent_at);

CREATE INDEX IF NOT EXISTS idx_message_import
    ON chat_message(chat_id, import_id);

-- =============================================================================
-- import_ledger / import_batch: one row per import, one per batch
-- =============================================================================
-- rolled_back_at is set exactly once by a successful rollback.
--
CREATE TABLE IF NOT EXISTS import_ledger (
    import_id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL,
    file_name TEXT NOT NULL,
    format TEXT NOT NULL,
    status TEXT NOT NULL CHECK (
        status IN ('Pending', 'Processing', 'Committed', 'PartiallyFailed', 'RolledBack')
    ),
    date_start TEXT,
    date_end TEXT,
    total_processed INTEGER NOT NULL DEFAULT 0,
    total_imported INTEGER NOT NULL DEFAULT 0,
    total_skipped INTEGER NOT NULL DEFAULT 0,
    initiated_by TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    rolled_back_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_ledger_chat
    ON import_ledger(chat_id, created_at);

CREATE TABLE IF NOT EXISTS import_batch (
    import_id TEXT NOT NULL REFERENCES import_ledger(import_id),
    batch_index INTEGER NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('Pending', 'Committed', 'Failed')),
    message_count INTEGER NOT NULL,
    imported_count INTEGER NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    errors TEXT NOT NULL DEFAULT '[]',
    recorded_at TEXT NOT NULL,
    PRIMARY KEY (import_id, batch_index)
);

-- =============================================================================
-- schema_state: schema metadata
-- =============================================================================
CREATE TABLE IF NOT EXISTS schema_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

INSERT OR REPLACE INTO schema_state (key, value, updated_at)
VALUES ('schema_version', '{schema_version}', datetime('now'));
""".format(
    schema_version=SCHEMA_VERSION
)


def create_schema(conn: sqlite3.Connection) -> None:
    """
    Create the schema if it doesn't exist.

    Idempotent: every statement uses IF NOT EXISTS.

    Args:
        conn: Open SQLite connection.

    Raises:
        sqlite3.Error: If schema creation fails.
    """
    try:
        conn.executescript(SCHEMA_DDL)
        conn.commit()
        logger.debug(f"Schema created/verified (version {SCHEMA_VERSION})")
    except sqlite3.Error as e:
        logger.error(f"Schema creation failed: {e}")
        raise


def get_table_names(conn: sqlite3.Connection) -> List[str]:
    """
    Get all table names in the database.

    Args:
        conn: Open SQLite connection.

    Returns:
        Sorted list of table names.
    """
    with closing(conn.cursor()) as cursor:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;")
        return [row[0] for row in cursor.fetchall()]


def verify_schema(conn: sqlite3.Connection) -> bool:
    """
    Verify that every required table exists.

    Args:
        conn: Open SQLite connection.

    Returns:
        True if the schema is complete, False otherwise.
    """
    return REQUIRED_TABLES.issubset(set(get_table_names(conn)))
