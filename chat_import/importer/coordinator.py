"""
Batch coordinator: commits resolved messages in tagged, atomic batches.

States per import:

    Pending → Processing → Committed | PartiallyFailed | RolledBack

Design Decisions:
    1. Batches run strictly one after another within an import
    2. Every row written carries the import_id, which scopes rollback
    3. A failed batch does not stop later batches (batch isolation)
    4. TransientWriteError is retried with exponential backoff
    5. StorageError is fatal: nothing further is written, but the rest of
       the input is still counted so totals and skipped batches are exact
    6. With rollback enabled, a fatal failure reverts every committed batch

Rollback is idempotent: a second call for the same import deletes nothing
and reports the entry as already RolledBack.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from chat_import.importer.errors import (
    ImportInProgressError,
    RollbackError,
    StorageError,
    TransientWriteError,
)
from chat_import.importer.ledger import ImportLedger
from chat_import.importer.models import (
    BatchStatus,
    BatchSummary,
    DateRange,
    ImportBatch,
    LedgerStatus,
    ImportLedgerEntry,
    ProgressEvent,
    ResolvedMessage,
    RowError,
    SourceFormat,
)
from chat_import.importer.parser import READ_ERRORS, ProgressCallback, iter_batches
from chat_import.importer.store import MessageStore

logger = logging.getLogger(__name__)

# Batch-level failure reasons
STORAGE_FAILURE = "StorageFailure"
TRANSIENT_WRITE_FAILURE = "TransientWriteFailure"
INPUT_UNREADABLE = "InputUnreadable"


@dataclass(frozen=True)
class ImportOptions:
    """Per-run options for run_import."""

    batch_size: int = 1000
    enable_rollback: bool = True
    on_progress: Optional[ProgressCallback] = None
    import_id: Optional[str] = None
    file_name: str = "import.csv"
    source_format: SourceFormat = SourceFormat.GENERIC
    initiated_by: Optional[str] = None
    parse_errors: Sequence[RowError] = ()
    expected_total: Optional[int] = None


@dataclass
class RollbackInfo:
    """What an automatic rollback did (or why it could not)."""

    performed: bool
    reverted_batches: List[int] = field(default_factory=list)
    failed_batch: Optional[int] = None
    never_attempted_batches: List[int] = field(default_factory=list)
    deleted_count: int = 0
    reason: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "performed": self.performed,
            "revertedBatches": self.reverted_batches,
            "failedBatch": self.failed_batch,
            "neverAttemptedBatches": self.never_attempted_batches,
            "deletedCount": self.deleted_count,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass
class ImportOutcome:
    """Result of one coordinator run."""

    success: bool
    import_id: str
    status: LedgerStatus
    imported_count: int
    skipped_count: int
    processed_count: int
    batches: List[BatchSummary] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)
    rollback_info: Optional[RollbackInfo] = None
    date_range: DateRange = field(default_factory=DateRange)
    error: Optional[str] = None

    @property
    def total_batches(self) -> int:
        return len(self.batches)

    @property
    def successful_batches(self) -> int:
        return sum(1 for b in self.batches if b.status == BatchStatus.COMMITTED)

    @property
    def failed_batches(self) -> int:
        return sum(1 for b in self.batches if b.status == BatchStatus.FAILED)

    def batch_info(self) -> Dict[str, int]:
        return {
            "totalBatches": self.total_batches,
            "successfulBatches": self.successful_batches,
            "failedBatches": self.failed_batches,
        }


@dataclass
class RollbackResult:
    """Result of rollback_import."""

    import_id: str
    deleted_count: int
    ledger_status: LedgerStatus
    already_rolled_back: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "deletedCount": self.deleted_count,
            "ledgerStatus": self.ledger_status.value,
        }
        if self.already_rolled_back:
            data["alreadyRolledBack"] = True
        if self.error:
            data["error"] = self.error
        return data


class BatchCoordinator:
    """Runs imports against a message store and records them in the ledger."""

    def __init__(
        self,
        store: MessageStore,
        ledger: ImportLedger,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            store: Persistent message store.
            ledger: Import ledger.
            max_retries: Retries for a batch that hits TransientWriteError.
            retry_delay: First backoff delay in seconds (doubles each retry).
            sleep: Sleep function (injectable for tests).
        """
        self.store = store
        self.ledger = ledger
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    def _commit_batch(self, batch: ImportBatch, chat_id: str, import_id: str) -> None:
        """
        Write one batch, retrying transient failures.

        Raises:
            StorageError: If the store is unusable.
        """
        for attempt in range(1, self.max_retries + 2):
            batch.attempts = attempt
            try:
                result = self.store.bulk_insert_tagged(
                    chat_id, batch.messages, import_id, batch.batch_index
                )
            except TransientWriteError as e:
                if attempt > self.max_retries:
                    logger.error(
                        f"Batch {batch.batch_index} failed after {attempt} attempts: {e}"
                    )
                    batch.status = BatchStatus.FAILED
                    batch.errors.append(RowError(None, TRANSIENT_WRITE_FAILURE, str(e)))
                    return
                delay = self.retry_delay * 2 ** (attempt - 1)
                logger.warning(
                    f"Batch {batch.batch_index} attempt {attempt} failed ({e}), "
                    f"retrying in {delay:.2f}s"
                )
                self._sleep(delay)
                continue

            if result.ok:
                batch.status = BatchStatus.COMMITTED
                batch.imported_count = result.inserted
            else:
                batch.status = BatchStatus.FAILED
                batch.errors.extend(result.failures)
            return

    def run_import(
        self,
        messages: Iterable[ResolvedMessage],
        chat_id: str,
        options: Optional[ImportOptions] = None,
    ) -> ImportOutcome:
        """
        Commit messages in batches under a fresh import id.

        Args:
            messages: Resolved messages; consumed lazily, one batch at a time.
            chat_id: Target chat.
            options: Run options (batch size, rollback, progress, ...).

        Returns:
            ImportOutcome. processed = messages read (including any read
            before the input became unreadable) + parse errors and
            skipped = processed - imported.
        """
        options = options or ImportOptions()
        entry = self.ledger.create(
            chat_id,
            options.file_name,
            options.source_format,
            initiated_by=options.initiated_by,
            import_id=options.import_id,
        )
        import_id = entry.import_id
        self.ledger.mark_processing(import_id)
        logger.info(f"Import {import_id} started for chat {chat_id}")

        summaries: List[BatchSummary] = []
        errors: List[RowError] = list(options.parse_errors)
        committed_range = DateRange()
        seen = 0
        imported = 0
        fatal: Optional[Exception] = None
        failed_batch: Optional[int] = None
        never_attempted: List[int] = []

        pulled = 0

        def counted() -> Iterator[ResolvedMessage]:
            nonlocal pulled
            for message in messages:
                pulled += 1
                yield message

        chunks = iter_batches(counted(), options.batch_size)
        index = 0
        while True:
            try:
                chunk = next(chunks, None)
            except READ_ERRORS as e:
                # Rows read before the failure in this chunk are skipped, not lost
                seen = pulled
                logger.error(f"Import {import_id}: input became unreadable: {e}")
                fatal = fatal or e
                errors.append(RowError(None, INPUT_UNREADABLE, str(e)))
                break
            if chunk is None:
                break

            index += 1
            seen += len(chunk)
            if fatal is not None:
                never_attempted.append(index)
                continue

            batch = ImportBatch(batch_index=index, messages=chunk)
            try:
                self._commit_batch(batch, chat_id, import_id)
            except StorageError as e:
                logger.error(f"Import {import_id}: fatal storage error in batch {index}: {e}")
                fatal = e
                failed_batch = index
                batch.status = BatchStatus.FAILED
                batch.errors.append(RowError(None, STORAGE_FAILURE, str(e)))

            summary = batch.summary()
            summaries.append(summary)
            errors.extend(batch.errors)
            if batch.status == BatchStatus.COMMITTED:
                imported += batch.imported_count
                for resolved in chunk:
                    committed_range = committed_range.extend(resolved.message.timestamp)
            self._record_batch(import_id, summary)
            self._report(options, seen)

        processed = seen + len(options.parse_errors)
        outcome = ImportOutcome(
            success=False,
            import_id=import_id,
            status=LedgerStatus.PARTIALLY_FAILED,
            imported_count=imported,
            skipped_count=processed - imported,
            processed_count=processed,
            batches=summaries,
            errors=errors,
            date_range=committed_range,
        )

        if fatal is not None:
            outcome.error = str(fatal)
            outcome.rollback_info = RollbackInfo(
                performed=False,
                failed_batch=failed_batch,
                never_attempted_batches=never_attempted,
                reason=str(fatal),
            )
            if options.enable_rollback:
                self._auto_rollback(chat_id, outcome)
        elif all(s.status == BatchStatus.COMMITTED for s in summaries):
            outcome.status = LedgerStatus.COMMITTED
            outcome.success = True

        self._finalize(outcome)
        logger.info(
            f"Import {import_id} finished: {outcome.status.value}, "
            f"{outcome.imported_count}/{outcome.processed_count} imported, "
            f"{outcome.failed_batches} failed batch(es)"
        )
        return outcome

    def _auto_rollback(self, chat_id: str, outcome: ImportOutcome) -> None:
        """Revert every committed batch of a failed import."""
        info = outcome.rollback_info
        assert info is not None
        committed = [s.batch_index for s in outcome.batches if s.status == BatchStatus.COMMITTED]
        if not committed:
            return

        try:
            deleted = self.store.delete_by_tag(chat_id, outcome.import_id)
        except (StorageError, TransientWriteError) as e:
            error = RollbackError(outcome.import_id, e)
            logger.error(str(error))
            info.error = str(error)
            return

        info.performed = True
        info.reverted_batches = committed
        info.deleted_count = deleted
        outcome.imported_count = 0
        outcome.skipped_count = outcome.processed_count
        outcome.date_range = DateRange()
        outcome.status = LedgerStatus.ROLLED_BACK
        logger.warning(
            f"Import {outcome.import_id} rolled back: {deleted} messages from "
            f"batches {committed} deleted"
        )

    def _record_batch(self, import_id: str, summary: BatchSummary) -> None:
        try:
            self.ledger.record_batch(import_id, summary)
        except sqlite3.Error as e:
            # The ledger shares the store's database; a dead store takes it down too
            logger.error(f"Could not record batch {summary.batch_index} of {import_id}: {e}")

    def _finalize(self, outcome: ImportOutcome) -> None:
        rolled_back = outcome.status == LedgerStatus.ROLLED_BACK
        try:
            self.ledger.finalize(
                outcome.import_id,
                LedgerStatus.PARTIALLY_FAILED if rolled_back else outcome.status,
                outcome.processed_count,
                outcome.imported_count,
                outcome.skipped_count,
                outcome.date_range,
                error=outcome.error,
            )
            if rolled_back:
                self.ledger.mark_rolled_back(outcome.import_id)
        except sqlite3.Error as e:
            logger.error(f"Could not finalize ledger entry {outcome.import_id}: {e}")
            outcome.error = outcome.error or str(e)

    def _report(self, options: ImportOptions, seen: int) -> None:
        if not options.on_progress:
            return
        total = max(options.expected_total or 0, seen)
        options.on_progress(
            ProgressEvent(
                phase="import",
                processed=seen,
                total=total,
                percentage=seen * 100 // total if total else 100,
            )
        )

    def rollback_import(self, chat_id: str, import_id: str) -> RollbackResult:
        """
        Delete every message of an import and mark its ledger entry RolledBack.

        Args:
            chat_id: Chat the import belongs to.
            import_id: Import to revert.

        Returns:
            RollbackResult. A store failure is reported in error, not raised;
            retrying is safe.

        Raises:
            ImportNotFoundError: If the chat has no such import.
            ImportInProgressError: If the import is still Pending or Processing.
        """
        entry = self.ledger.require(chat_id, import_id)
        if entry.status in (LedgerStatus.PENDING, LedgerStatus.PROCESSING):
            # A running import would keep committing batches under this tag
            raise ImportInProgressError(import_id, entry.status.value)
        if entry.rolled_back_at is not None:
            logger.info(f"Import {import_id} already rolled back")
            return RollbackResult(import_id, 0, LedgerStatus.ROLLED_BACK, already_rolled_back=True)

        try:
            deleted = self.store.delete_by_tag(chat_id, import_id)
        except (StorageError, TransientWriteError) as e:
            error = RollbackError(import_id, e)
            logger.error(str(error))
            return RollbackResult(import_id, 0, entry.status, error=str(error))

        changed = self.ledger.mark_rolled_back(import_id)
        logger.info(f"Import {import_id} rolled back: {deleted} messages deleted")
        return RollbackResult(
            import_id, deleted, LedgerStatus.ROLLED_BACK, already_rolled_back=not changed
        )

    def get_import_stats(self, chat_id: str) -> List[ImportLedgerEntry]:
        """List a chat's ledger entries (read-only)."""
        return self.ledger.list_entries(chat_id)
