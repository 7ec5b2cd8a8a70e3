"""
Streaming parser and normalizer for chat export files.

Rows are read through csv.reader over a lazily decoded file, so memory is
bounded by what the caller keeps, never by the file size. Each row becomes
a NormalizedMessage or a RowError; row failures never stop the stream.

Parse Steps (per row):
    1. Check the row has every mapped column
    2. Clean the text (and the translation, if any) and reject empty text
    3. Parse the timestamp using the template's formats, then ISO
    4. Normalize mixed-script text (see multilingual.py)

Success:
    A parse fails only if the file becomes unreadable mid-stream, has no
    data rows, or the parsed fraction falls below min_parse_success_ratio.
"""

import csv
import itertools
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TypeVar

from chat_import.config import ImportSettings
from chat_import.importer.detector import FileLayout, ValidationReport, validate
from chat_import.importer.errors import ParseError
from chat_import.importer.formats import get_template, parse_timestamp, timestamp_candidates
from chat_import.importer.models import (
    EMPTY_TEXT,
    MISSING_COLUMNS,
    NO_DATA_ROWS,
    UNPARSEABLE_TIMESTAMP,
    UNREADABLE_FILE,
    DateRange,
    NormalizedMessage,
    ProgressEvent,
    RawRow,
    RowError,
)
from chat_import.importer.multilingual import clean_text, normalize_text

logger = logging.getLogger(__name__)

BELOW_SUCCESS_THRESHOLD = "BelowSuccessThreshold"

# Errors that mean the file itself can no longer be read
READ_ERRORS = (OSError, csv.Error, UnicodeDecodeError)

ProgressCallback = Callable[[ProgressEvent], None]
T = TypeVar("T")


@dataclass
class ParseStats:
    """Running statistics for one pass over a file."""

    total_rows: int = 0
    parsed_rows: int = 0
    dropped_rows: int = 0
    system_messages: int = 0
    normalized_messages: int = 0
    translated_messages: int = 0
    date_range: DateRange = field(default_factory=DateRange)
    sender_breakdown: Dict[str, int] = field(default_factory=dict)
    daily_counts: Dict[str, int] = field(default_factory=dict)
    duration: float = 0.0

    @property
    def success_rate(self) -> float:
        if self.total_rows == 0:
            return 0.0
        return self.parsed_rows / self.total_rows

    @property
    def sender_labels(self) -> List[str]:
        """Distinct sender labels in first-seen order."""
        return list(self.sender_breakdown)

    def record(self, message: NormalizedMessage) -> None:
        self.parsed_rows += 1
        self.date_range = self.date_range.extend(message.timestamp)
        day = message.timestamp.date().isoformat()
        self.daily_counts[day] = self.daily_counts.get(day, 0) + 1
        if message.is_system:
            self.system_messages += 1
        else:
            label = message.sender_label
            self.sender_breakdown[label] = self.sender_breakdown.get(label, 0) + 1
        if message.was_normalized:
            self.normalized_messages += 1
        if message.was_translated:
            self.translated_messages += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRows": self.total_rows,
            "parsedRows": self.parsed_rows,
            "droppedRows": self.dropped_rows,
            "successRate": round(self.success_rate * 100, 1),
            "systemMessages": self.system_messages,
            "normalizedMessages": self.normalized_messages,
            "translatedMessages": self.translated_messages,
            "dateRange": self.date_range.to_dict(),
            "senderBreakdown": dict(self.sender_breakdown),
            "dailyCounts": dict(self.daily_counts),
            "duration": round(self.duration, 3),
        }


@dataclass
class ParseResult:
    """Result of parsing one export file."""

    success: bool
    messages: List[NormalizedMessage] = field(default_factory=list)
    stats: ParseStats = field(default_factory=ParseStats)
    errors: List[RowError] = field(default_factory=list)
    reason: Optional[str] = None
    layout: Optional[FileLayout] = None
    validation: Optional[ValidationReport] = None

    def __str__(self) -> str:
        status = "SUCCESS" if self.success else f"FAILED: {self.reason}"
        return (
            f"Parse {status}\n"
            f"  Rows: {self.stats.total_rows} read, {self.stats.parsed_rows} parsed, "
            f"{self.stats.dropped_rows} dropped\n"
            f"  Senders: {', '.join(self.stats.sender_labels) or '-'}\n"
            f"  Duration: {self.stats.duration:.2f}s"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "reason": self.reason,
            "format": self.layout.source_format.value if self.layout else None,
            "stats": self.stats.to_dict(),
            "errors": [e.to_dict() for e in self.errors],
        }


class _ByteCountingLines:
    """Line iterator that tracks how many bytes have been consumed."""

    def __init__(self, lines: Iterable[str], encoding: str):
        self._lines = iter(lines)
        self._encoding = encoding
        self.bytes_read = 0

    def __iter__(self) -> "_ByteCountingLines":
        return self

    def __next__(self) -> str:
        line = next(self._lines)
        self.bytes_read += len(line.encode(self._encoding, errors="replace"))
        return line


def normalize_row(raw: RawRow, layout: FileLayout, settings: ImportSettings) -> NormalizedMessage:
    """
    Turn one raw row into a NormalizedMessage.

    Args:
        raw: Row as read from the file.
        layout: Validated file layout.
        settings: Import settings (timezone for naive timestamps).

    Returns:
        NormalizedMessage.

    Raises:
        ParseError: With reason MissingColumns, EmptyText or UnparseableTimestamp.
    """
    mapping = layout.mapping
    fields = raw.fields
    if len(fields) < mapping.width:
        raise ParseError(
            MISSING_COLUMNS, f"Row has {len(fields)} columns, expected at least {mapping.width}"
        )

    source = normalize_text(fields[mapping.text])
    translated = None
    if mapping.translated_text is not None and mapping.translated_text < len(fields):
        candidate = normalize_text(fields[mapping.translated_text])
        if candidate.text:
            translated = candidate

    text = translated.text if translated else source.text
    if not text:
        raise ParseError(EMPTY_TEXT, "Message text is empty")

    candidates = timestamp_candidates(fields, mapping)
    template = get_template(layout.source_format)
    timestamp = parse_timestamp(candidates, template.timestamp_formats, settings.tzinfo)
    if timestamp is None:
        raise ParseError(UNPARSEABLE_TIMESTAMP, candidates[0] if candidates else "")

    sender = clean_text(fields[mapping.sender]) if mapping.sender is not None else ""

    return NormalizedMessage(
        sender_label=sender,
        text=text,
        original_text=source.original_text or text,
        was_normalized=translated.was_normalized if translated else source.was_normalized,
        timestamp=timestamp,
        source_format=layout.source_format,
        row_index=raw.row_index,
        script=source.script,
        was_translated=translated is not None,
    )


def iter_messages(
    path,
    layout: FileLayout,
    settings: ImportSettings,
    errors: List[RowError],
    on_progress: Optional[ProgressCallback] = None,
    stats: Optional[ParseStats] = None,
    phase: str = "parse",
) -> Iterator[NormalizedMessage]:
    """
    Stream normalized messages from a validated file.

    Row failures are appended to errors and the stream continues. Blank
    lines are skipped and not counted as rows.

    Args:
        path: Path to the export file.
        layout: Layout from the detector.
        settings: Import settings.
        errors: List that receives RowErrors.
        on_progress: Optional progress callback.
        stats: Optional ParseStats updated as rows are read.
        phase: Phase name reported in progress events.

    Yields:
        NormalizedMessage for every row that parses.

    Raises:
        OSError, csv.Error, UnicodeDecodeError: If the file becomes unreadable.
    """
    path = Path(path)
    stats = stats if stats is not None else ParseStats()
    file_size = max(path.stat().st_size, 1)
    every = settings.progress_every

    with open(path, "r", encoding=layout.encoding, newline="") as f:
        lines = _ByteCountingLines(f, layout.encoding)
        reader = csv.reader(lines, delimiter=layout.delimiter)
        if layout.has_header:
            next(reader, None)

        row_index = 0
        for fields in reader:
            if not any(cell.strip() for cell in fields):
                continue
            row_index += 1
            stats.total_rows += 1
            raw = RawRow(row_index, tuple(fields), layout.source_format)

            try:
                message = normalize_row(raw, layout, settings)
            except ParseError as e:
                stats.dropped_rows += 1
                errors.append(RowError(row_index, e.reason, str(e) or None))
                logger.debug(f"Row {row_index} dropped: {e.reason}")
                message = None

            if message is not None:
                stats.record(message)
                yield message

            if on_progress and row_index % every == 0:
                estimated = max(row_index, round(row_index * file_size / max(lines.bytes_read, 1)))
                on_progress(
                    ProgressEvent(
                        phase=phase,
                        processed=row_index,
                        total=estimated,
                        percentage=min(99, row_index * 100 // estimated),
                    )
                )

    if on_progress:
        on_progress(
            ProgressEvent(
                phase=phase, processed=stats.total_rows, total=stats.total_rows, percentage=100
            )
        )


def iter_batches(items: Iterable[T], batch_size: int) -> Iterator[List[T]]:
    """
    Chunk an iterable into lists of at most batch_size items.

    Examples:
        >>> [len(b) for b in iter_batches(range(5), 2)]
        [2, 2, 1]
    """
    iterator = iter(items)
    while True:
        batch = list(itertools.islice(iterator, batch_size))
        if not batch:
            return
        yield batch


def parse(
    path,
    settings: Optional[ImportSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    collect: bool = True,
    layout: Optional[FileLayout] = None,
    phase: str = "parse",
) -> ParseResult:
    """
    Parse and normalize a whole export file.

    Args:
        path: Path to the export file.
        settings: Import settings (defaults when None).
        on_progress: Optional progress callback.
        collect: Keep the parsed messages. With False only statistics and
            errors are gathered, so memory stays constant.
        layout: Layout from an earlier validation; validated here when None.
        phase: Phase name reported in progress events.

    Returns:
        ParseResult. Never raises for a bad file.
    """
    settings = settings or ImportSettings()
    start_time = time.monotonic()
    validation = None

    if layout is None:
        validation = validate(path, settings)
        if not validation.is_valid or validation.layout is None:
            return ParseResult(success=False, reason=validation.reason, validation=validation)
        layout = validation.layout

    result = ParseResult(success=True, layout=layout, validation=validation)
    logger.info(f"Parsing {Path(path).name} as {layout.source_format.value}")

    try:
        for message in iter_messages(
            path, layout, settings, result.errors, on_progress, result.stats, phase
        ):
            if collect:
                result.messages.append(message)
    except READ_ERRORS as e:
        logger.error(f"File became unreadable during parse: {e}")
        result.success = False
        result.reason = UNREADABLE_FILE
        result.errors.append(RowError(None, UNREADABLE_FILE, str(e)))

    stats = result.stats
    stats.duration = time.monotonic() - start_time

    if result.success and stats.total_rows == 0:
        result.success = False
        result.reason = NO_DATA_ROWS
    elif result.success and stats.success_rate < settings.min_parse_success_ratio:
        result.success = False
        result.reason = BELOW_SUCCESS_THRESHOLD

    logger.info(
        f"Parsed {stats.parsed_rows}/{stats.total_rows} rows "
        f"({stats.dropped_rows} dropped) in {stats.duration:.2f}s"
    )
    return result
