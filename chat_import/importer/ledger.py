"""
Import ledger: the durable record of every import.

Lifecycle of an entry:

    create (Pending) → mark_processing (Processing) → record_batch ...
        → finalize (Committed | PartiallyFailed) → mark_rolled_back (RolledBack)

There is no other mutation path. rolled_back_at is set exactly once; the
guard lives in the UPDATE itself so concurrent rollbacks cannot both win.

Statistics reads go through an injectable StatsCache (TTL, keyed by chat)
that every mutation of the chat invalidates.
"""

import json
import sqlite3
import threading
import time
import uuid
from contextlib import closing
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

from chat_import.importer.errors import ImportNotFoundError
from chat_import.importer.models import (
    BatchStatus,
    BatchSummary,
    DateRange,
    ImportLedgerEntry,
    LedgerStatus,
    RowError,
    SourceFormat,
    to_iso,
)

logger = logging.getLogger(__name__)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _now() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


class StatsCache:
    """
    Small TTL cache for ledger statistics.

    Owned by whoever builds the ledger; never module-global.
    """

    def __init__(self, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                return None
            expires_at, value = item
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class ImportLedger:
    """SQLite-backed import ledger."""

    def __init__(self, conn: sqlite3.Connection, cache: Optional[StatsCache] = None):
        self.conn = conn
        self.cache = cache

    def _invalidate(self, chat_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate(chat_id)

    def _invalidate_import(self, import_id: str) -> None:
        if self.cache is None:
            return
        with closing(self.conn.cursor()) as cursor:
            cursor.execute("SELECT chat_id FROM import_ledger WHERE import_id = ?;", (import_id,))
            row = cursor.fetchone()
        if row is not None:
            self.cache.invalidate(row[0])

    def create(
        self,
        chat_id: str,
        file_name: str,
        source_format: SourceFormat,
        initiated_by: Optional[str] = None,
        import_id: Optional[str] = None,
    ) -> ImportLedgerEntry:
        """
        Create a Pending entry at import start.

        Args:
            chat_id: Target chat.
            file_name: Original upload name.
            source_format: Detected or requested format.
            initiated_by: Importing user.
            import_id: Optional id; a UUID is generated when None.

        Returns:
            The new ImportLedgerEntry.
        """
        entry = ImportLedgerEntry(
            import_id=import_id or str(uuid.uuid4()),
            chat_id=chat_id,
            file_name=file_name,
            format=source_format,
            status=LedgerStatus.PENDING,
            created_at=_now(),
            initiated_by=initiated_by,
        )
        now = to_iso(entry.created_at)
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                """
                INSERT INTO import_ledger
                    (import_id, chat_id, file_name, format, status, initiated_by,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    entry.import_id,
                    chat_id,
                    file_name,
                    source_format.value,
                    entry.status.value,
                    initiated_by,
                    now,
                    now,
                ),
            )
        self.conn.commit()
        self._invalidate(chat_id)

        logger.info(f"Ledger entry {entry.import_id} created for chat {chat_id} ({file_name})")
        return entry

    def mark_processing(self, import_id: str) -> None:
        """Move a Pending entry to Processing."""
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                """
                UPDATE import_ledger SET status = ?, updated_at = ?
                WHERE import_id = ? AND status = ?;
                """,
                (
                    LedgerStatus.PROCESSING.value,
                    to_iso(_now()),
                    import_id,
                    LedgerStatus.PENDING.value,
                ),
            )
        self.conn.commit()
        self._invalidate_import(import_id)

    def record_batch(self, import_id: str, summary: BatchSummary) -> None:
        """Store (or replace) the summary of one batch."""
        errors = json.dumps([e.to_dict() for e in summary.errors])
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                """
                INSERT OR REPLACE INTO import_batch
                    (import_id, batch_index, status, message_count, imported_count,
                     attempts, errors, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    import_id,
                    summary.batch_index,
                    summary.status.value,
                    summary.message_count,
                    summary.imported_count,
                    summary.attempts,
                    errors,
                    to_iso(_now()),
                ),
            )
        self.conn.commit()
        self._invalidate_import(import_id)

    def finalize(
        self,
        import_id: str,
        status: LedgerStatus,
        total_processed: int,
        total_imported: int,
        total_skipped: int,
        date_range: Optional[DateRange] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Write the aggregate counts and the terminal status.

        Only entries that are still Pending or Processing are updated.
        """
        date_range = date_range or DateRange()
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                """
                UPDATE import_ledger
                SET status = ?, total_processed = ?, total_imported = ?, total_skipped = ?,
                    date_start = ?, date_end = ?, error = ?, updated_at = ?
                WHERE import_id = ? AND status IN ('Pending', 'Processing');
                """,
                (
                    status.value,
                    total_processed,
                    total_imported,
                    total_skipped,
                    to_iso(date_range.start),
                    to_iso(date_range.end),
                    error,
                    to_iso(_now()),
                    import_id,
                ),
            )
        self.conn.commit()
        self._invalidate_import(import_id)
        logger.info(
            f"Ledger entry {import_id} finalized: {status.value}, "
            f"{total_imported}/{total_processed} imported"
        )

    def mark_rolled_back(self, import_id: str) -> bool:
        """
        Mark an entry RolledBack.

        Returns:
            True if this call set rolled_back_at, False if it was already set.
        """
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                """
                UPDATE import_ledger
                SET status = ?, rolled_back_at = ?, updated_at = ?
                WHERE import_id = ? AND rolled_back_at IS NULL;
                """,
                (LedgerStatus.ROLLED_BACK.value, to_iso(_now()), to_iso(_now()), import_id),
            )
            changed = cursor.rowcount == 1
        self.conn.commit()
        self._invalidate_import(import_id)
        return changed

    def _load_batches(self, import_id: str) -> List[BatchSummary]:
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                """
                SELECT batch_index, status, message_count, imported_count, attempts, errors
                FROM import_batch
                WHERE import_id = ?
                ORDER BY batch_index;
                """,
                (import_id,),
            )
            rows = cursor.fetchall()

        return [
            BatchSummary(
                batch_index=row[0],
                status=BatchStatus(row[1]),
                message_count=row[2],
                imported_count=row[3],
                attempts=row[4],
                errors=[
                    RowError(e.get("rowIndex"), e["reason"], e.get("detail"))
                    for e in json.loads(row[5])
                ],
            )
            for row in rows
        ]

    def _row_to_entry(self, row: tuple) -> ImportLedgerEntry:
        return ImportLedgerEntry(
            import_id=row[0],
            chat_id=row[1],
            file_name=row[2],
            format=SourceFormat(row[3]),
            status=LedgerStatus(row[4]),
            date_range=DateRange(_parse_iso(row[5]), _parse_iso(row[6])),
            total_processed=row[7],
            total_imported=row[8],
            total_skipped=row[9],
            initiated_by=row[10],
            error=row[11],
            created_at=_parse_iso(row[12]),
            rolled_back_at=_parse_iso(row[13]),
            batches=self._load_batches(row[0]),
        )

    SELECT_COLUMNS = """
        SELECT import_id, chat_id, file_name, format, status, date_start, date_end,
               total_processed, total_imported, total_skipped, initiated_by, error,
               created_at, rolled_back_at
        FROM import_ledger
    """

    def get(self, chat_id: str, import_id: str) -> Optional[ImportLedgerEntry]:
        """Get one entry, or None if the chat has no such import."""
        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                self.SELECT_COLUMNS + " WHERE chat_id = ? AND import_id = ?;",
                (chat_id, import_id),
            )
            row = cursor.fetchone()
        return self._row_to_entry(row) if row else None

    def require(self, chat_id: str, import_id: str) -> ImportLedgerEntry:
        """Like get, but raises ImportNotFoundError for unknown ids."""
        entry = self.get(chat_id, import_id)
        if entry is None:
            raise ImportNotFoundError(chat_id, import_id)
        return entry

    def list_entries(self, chat_id: str) -> List[ImportLedgerEntry]:
        """
        List a chat's imports, newest first.

        Served from the cache when one is configured.
        """
        if self.cache is not None:
            cached = self.cache.get(chat_id)
            if cached is not None:
                return list(cached)

        with closing(self.conn.cursor()) as cursor:
            cursor.execute(
                self.SELECT_COLUMNS + " WHERE chat_id = ? ORDER BY created_at DESC, rowid DESC;",
                (chat_id,),
            )
            rows = cursor.fetchall()
        entries = [self._row_to_entry(row) for row in rows]

        if self.cache is not None:
            self.cache.set(chat_id, entries)
        return list(entries)
