"""
Data model for chat export imports.

Records flow one way through the importer:

    RawRow → NormalizedMessage → UserMessage | SystemGeneratedMessage
           → ImportBatch → BatchSummary / ImportLedgerEntry

Design Decisions:
    1. Timestamps are timezone-aware UTC datetimes from parse time onward
    2. Messages are immutable; resolution produces new records
    3. User and system messages are separate tagged types, never a flag
    4. Row indexes are 1-based data rows (the header line is not counted)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class SourceFormat(str, Enum):
    """Recognised export layouts."""

    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    IMESSAGE = "imessage"
    GENERIC = "generic"


class ScriptClass(str, Enum):
    """Script composition of a message body."""

    LATIN = "latin"
    TAMIL = "tamil"
    MIXED = "mixed"
    OTHER = "other"


class BatchStatus(str, Enum):
    PENDING = "Pending"
    COMMITTED = "Committed"
    FAILED = "Failed"


class LedgerStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMMITTED = "Committed"
    PARTIALLY_FAILED = "PartiallyFailed"
    ROLLED_BACK = "RolledBack"


# Row-level failure reasons
UNPARSEABLE_TIMESTAMP = "UnparseableTimestamp"
EMPTY_TEXT = "EmptyText"
MISSING_COLUMNS = "MissingColumns"
UNREADABLE_FILE = "UnreadableFile"
NO_DATA_ROWS = "NoDataRows"


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Format an aware datetime as ISO-8601 UTC with a Z suffix."""
    if value is None:
        return None
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class RawRow:
    """One data row as read from the export file."""

    row_index: int
    fields: Tuple[str, ...]
    source_format: SourceFormat


@dataclass(frozen=True)
class RowError:
    """A recoverable, row-level problem recorded during parse or commit."""

    row_index: Optional[int]
    reason: str
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"rowIndex": self.row_index, "reason": self.reason}
        if self.detail:
            data["detail"] = self.detail
        return data


@dataclass(frozen=True)
class DateRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def extend(self, moment: datetime) -> "DateRange":
        start = moment if self.start is None or moment < self.start else self.start
        end = moment if self.end is None or moment > self.end else self.end
        return DateRange(start=start, end=end)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"start": to_iso(self.start), "end": to_iso(self.end)}


@dataclass(frozen=True)
class NormalizedMessage:
    """A parsed, cleaned message that has not been committed yet."""

    sender_label: str
    text: str
    original_text: str
    was_normalized: bool
    timestamp: datetime
    source_format: SourceFormat
    row_index: int
    script: ScriptClass = ScriptClass.LATIN
    was_translated: bool = False
    resolved_participant_id: Optional[str] = None

    @property
    def is_system(self) -> bool:
        """Rows without a sender label are generated by the exporting app."""
        return not self.sender_label


@dataclass(frozen=True)
class UserMessage:
    """A message written by a chat participant."""

    message: NormalizedMessage
    kind: str = field(default="user", init=False)

    @property
    def participant_id(self) -> str:
        participant_id = self.message.resolved_participant_id
        assert participant_id is not None, "UserMessage requires a resolved participant"
        return participant_id


@dataclass(frozen=True)
class SystemGeneratedMessage:
    """A notice emitted by the exporting app (joins, encryption banners, ...)."""

    message: NormalizedMessage
    kind: str = field(default="system", init=False)

    @property
    def participant_id(self) -> None:
        return None


ResolvedMessage = Union[UserMessage, SystemGeneratedMessage]


@dataclass(frozen=True)
class Participant:
    """A canonical chat participant as known to the participant directory."""

    id: str
    display_name: str


@dataclass
class ImportBatch:
    """A bounded chunk of messages committed as a single atomic write."""

    batch_index: int
    messages: List[ResolvedMessage]
    status: BatchStatus = BatchStatus.PENDING
    errors: List[RowError] = field(default_factory=list)
    attempts: int = 0
    imported_count: int = 0

    def summary(self) -> "BatchSummary":
        return BatchSummary(
            batch_index=self.batch_index,
            status=self.status,
            message_count=len(self.messages),
            imported_count=self.imported_count,
            attempts=self.attempts,
            errors=list(self.errors),
        )


@dataclass(frozen=True)
class BatchSummary:
    """The persisted outcome of one batch (messages are not retained)."""

    batch_index: int
    status: BatchStatus
    message_count: int
    imported_count: int
    attempts: int = 0
    errors: List[RowError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batchIndex": self.batch_index,
            "status": self.status.value,
            "messageCount": self.message_count,
            "importedCount": self.imported_count,
            "attempts": self.attempts,
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class ImportLedgerEntry:
    """Durable record of one import invocation."""

    import_id: str
    chat_id: str
    file_name: str
    format: SourceFormat
    status: LedgerStatus
    created_at: datetime
    date_range: DateRange = field(default_factory=DateRange)
    total_processed: int = 0
    total_imported: int = 0
    total_skipped: int = 0
    batches: List[BatchSummary] = field(default_factory=list)
    rolled_back_at: Optional[datetime] = None
    initiated_by: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "importId": self.import_id,
            "chatId": self.chat_id,
            "fileName": self.file_name,
            "format": self.format.value,
            "status": self.status.value,
            "dateRange": self.date_range.to_dict(),
            "totalProcessed": self.total_processed,
            "totalImported": self.total_imported,
            "totalSkipped": self.total_skipped,
            "batches": [b.to_dict() for b in self.batches],
            "createdAt": to_iso(self.created_at),
            "rolledBackAt": to_iso(self.rolled_back_at),
            "initiatedBy": self.initiated_by,
            "error": self.error,
        }


@dataclass(frozen=True)
class ProgressEvent:
    """Progress notification passed to caller callbacks."""

    phase: str
    processed: int
    total: int
    percentage: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase,
            "processed": self.processed,
            "total": self.total,
            "percentage": self.percentage,
        }
