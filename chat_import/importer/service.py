"""
Import service: the end-to-end flow for one uploaded export.

Pipeline Steps:
    1. Validate the file and detect its layout (no side effects)
    2. Scan pass: stream the file once without keeping messages, to check
       the success threshold and collect sender labels and the date range
    3. Resolve every distinct sender label against the chat's participants
    4. Commit pass: stream the file again, resolve each message and feed it
       straight into the batch coordinator

The file is never held in memory. Nothing is written (not even a ledger
entry) unless steps 1 and 2 succeed.
"""

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from chat_import.config import ImportSettings
from chat_import.importer.coordinator import (
    BatchCoordinator,
    ImportOptions,
    ImportOutcome,
    RollbackResult,
)
from chat_import.importer.detector import ValidationReport, validate
from chat_import.importer.errors import ResolutionAmbiguity
from chat_import.importer.ledger import ImportLedger, StatsCache
from chat_import.importer.models import ImportLedgerEntry, LedgerStatus, RowError
from chat_import.importer.parser import ParseStats, ProgressCallback, iter_messages, parse
from chat_import.importer.resolver import SenderMatch, apply_sender_map, build_sender_map
from chat_import.importer.store import (
    MessageStore,
    ParticipantDirectory,
    SQLiteMessageStore,
    SQLiteParticipantDirectory,
)

logger = logging.getLogger(__name__)

# Stages at which an import can stop
STAGE_VALIDATION = "validation"
STAGE_PARSE = "parse"
STAGE_IMPORT = "import"


@dataclass
class ImportReport:
    """Structured outcome of import_file, returned for success and failure alike."""

    success: bool
    stage: str
    reason: Optional[str] = None
    file_name: Optional[str] = None
    validation: Optional[ValidationReport] = None
    parse_stats: ParseStats = field(default_factory=ParseStats)
    outcome: Optional[ImportOutcome] = None
    errors: List[RowError] = field(default_factory=list)
    unresolved_labels: List[str] = field(default_factory=list)
    ambiguities: List[ResolutionAmbiguity] = field(default_factory=list)
    sender_map: Dict[str, SenderMatch] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def import_id(self) -> Optional[str]:
        return self.outcome.import_id if self.outcome else None

    @property
    def status(self) -> Optional[LedgerStatus]:
        return self.outcome.status if self.outcome else None

    @property
    def success_rate(self) -> float:
        if not self.outcome or not self.outcome.processed_count:
            return 0.0
        return round(self.outcome.imported_count / self.outcome.processed_count * 100, 2)

    def __str__(self) -> str:
        if self.outcome is None:
            return f"Import FAILED at {self.stage}: {self.reason}"
        o = self.outcome
        lines = [
            f"Import {o.status.value} ({o.import_id})",
            f"  Messages: {o.imported_count} imported, {o.skipped_count} skipped, "
            f"{o.processed_count} processed",
            f"  Batches: {o.successful_batches}/{o.total_batches} committed",
        ]
        if self.unresolved_labels:
            lines.append(f"  Unresolved senders: {', '.join(self.unresolved_labels)}")
        if o.rollback_info and o.rollback_info.performed:
            lines.append(f"  Rolled back: {o.rollback_info.deleted_count} messages deleted")
        lines.append(f"  Duration: {self.duration:.2f}s")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "success": self.success,
            "stage": self.stage,
            "fileName": self.file_name,
            "format": (
                self.validation.detected_format.value
                if self.validation and self.validation.detected_format
                else None
            ),
            "errors": [e.to_dict() for e in self.errors],
        }
        if self.validation is not None:
            data["warnings"] = [w.to_dict() for w in self.validation.warnings]
        if self.outcome is None:
            data["reason"] = self.reason
            if self.validation is not None and not self.validation.is_valid:
                data["validation"] = self.validation.to_dict()
            if self.stage == STAGE_PARSE:
                data["parseStats"] = self.parse_stats.to_dict()
            return data

        o = self.outcome
        data.update(
            {
                "importId": o.import_id,
                "status": o.status.value,
                "messagesImported": o.imported_count,
                "messagesSkipped": o.skipped_count,
                "totalProcessed": o.processed_count,
                "dateRange": o.date_range.to_dict(),
                "senderBreakdown": dict(self.parse_stats.sender_breakdown),
                "unresolvedSenders": self.unresolved_labels,
                "ambiguousSenders": [
                    {"label": a.label, "candidates": a.candidates, "chosen": a.chosen}
                    for a in self.ambiguities
                ],
                "successRate": self.success_rate,
                "batchInfo": o.batch_info(),
                "rollbackInfo": o.rollback_info.to_dict() if o.rollback_info else None,
            }
        )
        return data


class ImportService:
    """Wires the importer components to a database connection."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        settings: Optional[ImportSettings] = None,
        cache: Optional[StatsCache] = None,
        store: Optional[MessageStore] = None,
        directory: Optional[ParticipantDirectory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            conn: Connection to the import database.
            settings: Default settings for every call.
            cache: Optional cache for ledger statistics.
            store: Message store (SQLite store on conn when None).
            directory: Participant directory (SQLite directory on conn when None).
            sleep: Sleep function used between write retries.
        """
        self.settings = settings or ImportSettings()
        self.store = store or SQLiteMessageStore(conn)
        self.directory = directory or SQLiteParticipantDirectory(conn)
        self.ledger = ImportLedger(conn, cache)
        self.coordinator = BatchCoordinator(
            self.store,
            self.ledger,
            max_retries=self.settings.max_write_retries,
            retry_delay=self.settings.retry_delay_seconds,
            sleep=sleep,
        )

    def validate(self, path, settings: Optional[ImportSettings] = None) -> ValidationReport:
        """Validate a file without importing it."""
        return validate(path, settings or self.settings)

    def preview(
        self,
        path,
        chat_id: str,
        user_id: str,
        settings: Optional[ImportSettings] = None,
    ) -> Dict[str, Any]:
        """
        Validate a file and show how its senders would resolve.

        Read-only: nothing is written.

        Returns:
            Dictionary with the validation report and, for a valid file,
            parse statistics and the sender mapping.
        """
        settings = settings or self.settings
        report = validate(path, settings)
        data: Dict[str, Any] = {"validation": report.to_dict()}
        if not report.is_valid:
            return data

        scan = parse(path, settings, collect=False, layout=report.layout, phase="scan")
        participants = self.directory.get_participants(chat_id)
        sender_map, unresolved, ambiguities = build_sender_map(
            scan.stats.sender_labels, participants, user_id, settings.max_edit_distance
        )
        data.update(
            {
                "parse": scan.to_dict(),
                "senders": {
                    label: {"participantId": m.participant_id, "method": m.method}
                    for label, m in sender_map.items()
                },
                "unresolvedSenders": unresolved,
                "ambiguousSenders": [a.label for a in ambiguities],
            }
        )
        return data

    def import_file(
        self,
        path,
        chat_id: str,
        user_id: str,
        settings: Optional[ImportSettings] = None,
        file_name: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        import_id: Optional[str] = None,
    ) -> ImportReport:
        """
        Import an export file into a chat.

        Args:
            path: Path to the staged export file.
            chat_id: Target chat.
            user_id: Importing user; unresolved senders default to them.
            settings: Settings for this import (service defaults when None).
            file_name: Original upload name recorded in the ledger.
            on_progress: Optional progress callback (scan, then import phase).
            import_id: Optional id for the ledger entry.

        Returns:
            ImportReport. Validation and parse failures are returned, not raised.

        Raises:
            StorageError: Only if the ledger itself cannot be written at start.
        """
        settings = settings or self.settings
        path = Path(path)
        file_name = file_name or path.name
        start_time = time.monotonic()

        # Step 1: Validate
        logger.info(f"Step 1: Validating {file_name}...")
        report = validate(path, settings)
        if not report.is_valid or report.layout is None:
            return ImportReport(
                success=False,
                stage=STAGE_VALIDATION,
                reason=report.reason,
                file_name=file_name,
                validation=report,
                duration=time.monotonic() - start_time,
            )
        layout = report.layout

        # Step 2: Scan
        logger.info(f"Step 2: Scanning {file_name} ({layout.source_format.value})...")
        scan = parse(path, settings, on_progress, collect=False, layout=layout, phase="scan")
        if not scan.success:
            return ImportReport(
                success=False,
                stage=STAGE_PARSE,
                reason=scan.reason,
                file_name=file_name,
                validation=report,
                parse_stats=scan.stats,
                errors=scan.errors,
                duration=time.monotonic() - start_time,
            )

        # Step 3: Resolve senders
        logger.info("Step 3: Resolving sender labels...")
        participants = self.directory.get_participants(chat_id)
        sender_map, unresolved, ambiguities = build_sender_map(
            scan.stats.sender_labels, participants, user_id, settings.max_edit_distance
        )

        # Step 4: Commit
        logger.info("Step 4: Committing batches...")
        rescan_errors: List[RowError] = []
        messages = (
            apply_sender_map(message, sender_map)
            for message in iter_messages(path, layout, settings, rescan_errors)
        )
        outcome = self.coordinator.run_import(
            messages,
            chat_id,
            ImportOptions(
                batch_size=settings.batch_size,
                enable_rollback=settings.enable_rollback,
                on_progress=on_progress,
                import_id=import_id,
                file_name=file_name,
                source_format=layout.source_format,
                initiated_by=user_id,
                parse_errors=tuple(scan.errors),
                expected_total=scan.stats.parsed_rows,
            ),
        )

        duration = time.monotonic() - start_time
        logger.info(f"Import of {file_name} completed in {duration:.2f}s")
        return ImportReport(
            success=outcome.success,
            stage=STAGE_IMPORT,
            reason=outcome.error,
            file_name=file_name,
            validation=report,
            parse_stats=scan.stats,
            outcome=outcome,
            errors=outcome.errors,
            unresolved_labels=unresolved,
            ambiguities=ambiguities,
            sender_map=sender_map,
            duration=duration,
        )

    def rollback_import(self, chat_id: str, import_id: str) -> RollbackResult:
        """
        Revert a finished import.

        Raises ImportNotFoundError for unknown ids and ImportInProgressError
        while the import is still Pending or Processing.
        """
        return self.coordinator.rollback_import(chat_id, import_id)

    def get_import_stats(self, chat_id: str) -> List[ImportLedgerEntry]:
        """List a chat's imports, newest first."""
        return self.coordinator.get_import_stats(chat_id)
