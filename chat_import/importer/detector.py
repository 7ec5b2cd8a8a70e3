"""
Format detection and validation for chat export files.

Inspects a file without importing it: size, encoding, delimiter, header
layout and a bounded preview. Problems come back as data in a
ValidationReport; nothing here raises for a bad file.

Validation Checks:
    1. File exists, has an allowed extension, is non-empty and within size
    2. Encoding decodes cleanly (UTF-8 first, then one legacy encoding)
    3. Header row is present with no duplicate columns
    4. Header layout matches a known template or the generic fallback
    5. Preview rows are consistent and their timestamps parse

Side effects: none. The file is read in a streaming fashion and closed.
"""

import codecs
import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from chat_import.config import ImportSettings
from chat_import.importer.errors import ValidationError
from chat_import.importer.formats import (
    GENERIC,
    POSITIONAL_MAPPING,
    TEMPLATES,
    ColumnMapping,
    get_template,
    infer_generic_mapping,
    map_template_columns,
    normalize_header,
    parse_timestamp,
    score_template,
    template_confidence,
    timestamp_candidates,
)
from chat_import.importer.models import SourceFormat

logger = logging.getLogger(__name__)

# Failure reasons
FILE_NOT_FOUND = "FileNotFound"
FILE_TOO_LARGE = "FileTooLarge"
EMPTY_FILE = "EmptyFile"
UNSUPPORTED_FILE_TYPE = "UnsupportedFileType"
ENCODING_UNRESOLVABLE = "EncodingUnresolvable"
MISSING_HEADERS = "MissingHeaders"
DUPLICATE_HEADERS = "DuplicateHeaders"
UNRECOGNIZED_LAYOUT = "UnrecognizedLayout"
UNSUPPORTED_FORMAT = "UnsupportedFormat"
FILE_UNREADABLE = "FileUnreadable"

# Warning codes
NO_DATA_ROWS = "NoDataRows"
LOW_FORMAT_CONFIDENCE = "LowFormatConfidence"
INCONSISTENT_COLUMNS = "InconsistentColumns"
SPARSE_ROW = "SparseRow"
MANY_EMPTY_ROWS = "ManyEmptyRows"
ENCODING_REPLACEMENT_CHARS = "EncodingReplacementChars"
DATE_FORMAT_ISSUES = "DateFormatIssues"
LEGACY_ENCODING = "LegacyEncoding"
EMPTY_HEADERS = "EmptyHeaders"

DELIMITERS = (",", ";", "\t", "|")
DECODE_CHUNK_SIZE = 64 * 1024
LOW_CONFIDENCE_THRESHOLD = 50
DATE_SUCCESS_THRESHOLD = 0.8
EMPTY_ROW_THRESHOLD = 0.1
POSITIONAL_CONFIDENCE = 40


@dataclass(frozen=True)
class ValidationWarning:
    code: str
    message: str
    row_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.row_index is not None:
            data["rowIndex"] = self.row_index
        return data


@dataclass(frozen=True)
class FileLayout:
    """Everything the parser needs to stream a validated file."""

    source_format: SourceFormat
    mapping: ColumnMapping
    encoding: str
    delimiter: str
    has_header: bool
    headers: Tuple[str, ...]
    confidence: int


@dataclass
class ValidationReport:
    """Result of inspecting one export file."""

    is_valid: bool
    detected_format: Optional[SourceFormat] = None
    preview: List[Dict[str, str]] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)
    warnings: List[ValidationWarning] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    confidence: int = 0
    alternatives: List[Dict[str, Any]] = field(default_factory=list)
    layout: Optional[FileLayout] = None

    def fail(self, reason: str, message: str) -> "ValidationReport":
        """Mark the report invalid with a reason."""
        self.is_valid = False
        self.reason = reason
        self.errors.append(message)
        logger.info(f"Validation failed: {reason} - {message}")
        return self

    def warn(self, code: str, message: str, row_index: Optional[int] = None) -> None:
        self.warnings.append(ValidationWarning(code, message, row_index))

    def raise_for_status(self) -> None:
        """Raise ValidationError if the report is invalid."""
        if not self.is_valid:
            raise ValidationError(self.reason or UNRECOGNIZED_LAYOUT, "; ".join(self.errors))

    def __str__(self) -> str:
        lines = []
        if self.is_valid:
            fmt = self.detected_format.value if self.detected_format else "unknown"
            lines.append(f"✓ Valid {fmt} export ({self.confidence}% confidence)")
        else:
            lines.append(f"✗ Invalid file: {self.reason}")
            for error in self.errors:
                lines.append(f"  → {error}")
        for warning in self.warnings:
            lines.append(f"  ! {warning.code}: {warning.message}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "detectedFormat": self.detected_format.value if self.detected_format else None,
            "confidence": self.confidence,
            "alternatives": self.alternatives,
            "reason": self.reason,
            "preview": self.preview,
            "stats": self.stats,
            "warnings": [w.to_dict() for w in self.warnings],
            "errors": self.errors,
        }


def detect_delimiter(line: str) -> str:
    """
    Pick the most frequent candidate delimiter in a header line.

    Examples:
        >>> detect_delimiter("date;time;sender;message")
        ';'
        >>> detect_delimiter("just one column")
        ','
    """
    counts = {d: line.count(d) for d in DELIMITERS}
    best = max(DELIMITERS, key=lambda d: counts[d])
    return best if counts[best] > 0 else ","


def _decodes_cleanly(path: Path, encoding: str) -> Tuple[bool, bool]:
    """
    Stream-decode a whole file.

    Returns:
        (decoded without error, saw U+FFFD in the decoded text).
    """
    decoder = codecs.getincrementaldecoder(encoding)(errors="strict")
    saw_replacement = False
    try:
        with open(path, "rb") as f:
            while True:
                chunk = f.read(DECODE_CHUNK_SIZE)
                text = decoder.decode(chunk, final=not chunk)
                if "\ufffd" in text:
                    saw_replacement = True
                if not chunk:
                    break
    except UnicodeDecodeError:
        return False, False
    return True, saw_replacement


def resolve_encoding(path: Path, settings: ImportSettings) -> Tuple[Optional[str], bool]:
    """
    Find an encoding that decodes the file cleanly.

    With encoding "auto", UTF-8 (BOM tolerated) is tried first, then the
    single legacy encoding. An explicit encoding is tried alone.

    Args:
        path: File to inspect.
        settings: Import settings.

    Returns:
        (encoding or None, saw replacement characters).

    Raises:
        OSError: If the file cannot be read.
    """
    if settings.encoding == "auto":
        candidates = ["utf-8-sig", settings.legacy_encoding]
    else:
        candidates = [settings.encoding]

    for encoding in candidates:
        ok, saw_replacement = _decodes_cleanly(path, encoding)
        if ok:
            logger.debug(f"{path.name} decodes as {encoding}")
            return encoding, saw_replacement
    return None, False


def select_format(
    headers: Sequence[str],
    requested: Optional[SourceFormat] = None,
) -> Tuple[Optional[SourceFormat], Optional[ColumnMapping], int, List[Dict[str, Any]]]:
    """
    Choose the template whose columns best match a header row.

    A known template is only chosen when all of its required columns map.
    The generic template competes on the same score; ties keep registry
    order.

    Args:
        headers: Header cells.
        requested: Caller-requested format, honoured if its columns map.

    Returns:
        (format, mapping, confidence, alternatives). Format and mapping are
        None when nothing matches.
    """
    scores = {fmt: score_template(t, headers) for fmt, t in TEMPLATES.items()}
    alternatives = [
        {"format": fmt.value, "confidence": template_confidence(TEMPLATES[fmt], score)}
        for fmt, score in sorted(scores.items(), key=lambda item: -item[1])
        if score > 0
    ]

    def confidence_for(fmt: SourceFormat) -> int:
        if fmt == SourceFormat.GENERIC:
            return infer_generic_mapping(headers)[1]
        return template_confidence(TEMPLATES[fmt], scores[fmt])

    if requested is not None:
        mapping = map_template_columns(get_template(requested), headers)
        if mapping is None:
            return None, None, 0, alternatives
        return requested, mapping, confidence_for(requested), alternatives

    best: Optional[SourceFormat] = None
    best_mapping: Optional[ColumnMapping] = None
    for fmt, template in TEMPLATES.items():
        mapping = map_template_columns(template, headers)
        if mapping is None:
            continue
        if best is None or scores[fmt] > scores[best]:
            best, best_mapping = fmt, mapping

    if best is None:
        return None, None, 0, alternatives

    alternatives = [a for a in alternatives if a["format"] != best.value][:2]
    return best, best_mapping, confidence_for(best), alternatives


def _looks_headerless(first_row: Sequence[str], settings: ImportSettings) -> bool:
    if len(first_row) < 3:
        return False
    candidates = timestamp_candidates(first_row, POSITIONAL_MAPPING)
    return parse_timestamp(candidates, GENERIC.timestamp_formats, settings.tzinfo) is not None


def _row_bytes(row: Sequence[str], delimiter: str, encoding: str) -> int:
    return len(delimiter.join(row).encode(encoding, errors="replace")) + 1


def validate(path, settings: Optional[ImportSettings] = None) -> ValidationReport:
    """
    Validate a chat export file and detect its layout.

    Args:
        path: Path to the export file.
        settings: Import settings (defaults when None).

    Returns:
        ValidationReport. Never raises for a bad file.

    Example:
        >>> report = validate("chat.csv")
        >>> report.is_valid, report.detected_format
        (True, <SourceFormat.WHATSAPP: 'whatsapp'>)
    """
    settings = settings or ImportSettings()
    path = Path(path)
    report = ValidationReport(is_valid=False)

    if not path.is_file():
        return report.fail(FILE_NOT_FOUND, f"File not found: {path.name}")

    if path.suffix.lower() not in settings.allowed_extensions:
        allowed = ", ".join(settings.allowed_extensions)
        return report.fail(
            UNSUPPORTED_FILE_TYPE, f"Unsupported file type '{path.suffix}'. Allowed: {allowed}"
        )

    try:
        file_size = path.stat().st_size
    except OSError as e:
        return report.fail(FILE_UNREADABLE, f"Cannot read file: {e}")

    report.stats["fileSize"] = file_size
    if file_size == 0:
        return report.fail(EMPTY_FILE, "File is empty")
    if file_size > settings.max_file_size:
        return report.fail(
            FILE_TOO_LARGE,
            f"File size {file_size} exceeds maximum allowed size {settings.max_file_size}",
        )

    try:
        encoding, saw_replacement = resolve_encoding(path, settings)
    except (OSError, LookupError) as e:
        return report.fail(FILE_UNREADABLE, f"Cannot read file: {e}")

    if encoding is None:
        return report.fail(
            ENCODING_UNRESOLVABLE,
            "File is not valid UTF-8"
            + (f" or {settings.legacy_encoding}" if settings.encoding == "auto" else ""),
        )

    report.stats["encoding"] = encoding
    if settings.encoding == "auto" and encoding == settings.legacy_encoding:
        report.warn(LEGACY_ENCODING, f"File decoded as {encoding}, not UTF-8")
    if saw_replacement:
        report.warn(
            ENCODING_REPLACEMENT_CHARS,
            "File contains replacement characters; some text may be corrupted",
        )

    try:
        _inspect_rows(path, encoding, file_size, settings, report)
    except (OSError, csv.Error) as e:
        return report.fail(FILE_UNREADABLE, f"Cannot parse file: {e}")

    if report.reason is None:
        report.is_valid = True
        logger.info(
            f"Validated {path.name}: format={report.detected_format.value}, "
            f"confidence={report.confidence}, warnings={len(report.warnings)}"
        )
    return report


def _inspect_rows(
    path: Path,
    encoding: str,
    file_size: int,
    settings: ImportSettings,
    report: ValidationReport,
) -> None:
    """Read the header and the preview rows into the report."""
    with open(path, "r", encoding=encoding, newline="") as f:
        header_line = f.readline()
        delimiter = detect_delimiter(header_line)
        f.seek(0)
        reader = csv.reader(f, delimiter=delimiter)

        first_row = next(reader, None)
        if first_row is None or not any(cell.strip() for cell in first_row):
            report.fail(MISSING_HEADERS, "No header row found")
            return

        normalized = [normalize_header(h) for h in first_row]
        has_header = True
        fmt, mapping, confidence, alternatives = select_format(first_row, settings.format)

        if fmt is None and settings.format in (None, SourceFormat.GENERIC):
            if _looks_headerless(first_row, settings):
                has_header = False
                fmt, mapping = SourceFormat.GENERIC, POSITIONAL_MAPPING
                confidence = POSITIONAL_CONFIDENCE

        if has_header:
            non_empty = [h for h in normalized if h]
            if len(non_empty) != len(set(non_empty)):
                duplicates = sorted({h for h in non_empty if non_empty.count(h) > 1})
                report.fail(DUPLICATE_HEADERS, f"Duplicate columns: {', '.join(duplicates)}")
                return
            if len(non_empty) < len(normalized):
                report.warn(EMPTY_HEADERS, "Some header cells are empty")

        if fmt is None or mapping is None:
            if settings.format is not None:
                report.fail(
                    UNSUPPORTED_FORMAT,
                    f"Columns do not match the {settings.format.value} format",
                )
            else:
                report.fail(
                    UNRECOGNIZED_LAYOUT,
                    "Could not find sender, message and timestamp columns",
                )
            report.alternatives = alternatives
            return

        headers = (
            tuple(first_row)
            if has_header
            else tuple(f"column_{i + 1}" for i in range(len(first_row)))
        )
        width = len(headers)
        template = get_template(fmt)

        report.detected_format = fmt
        report.confidence = confidence
        report.alternatives = alternatives
        report.layout = FileLayout(
            source_format=fmt,
            mapping=mapping,
            encoding=encoding,
            delimiter=delimiter,
            has_header=has_header,
            headers=headers,
            confidence=confidence,
        )

        header_bytes = _row_bytes(first_row, delimiter, encoding) if has_header else 0
        rows: List[List[str]] = [] if has_header else [first_row]
        for row in reader:
            rows.append(row)
            if len(rows) >= settings.max_preview_rows:
                break
        reached_end = next(reader, None) is None

    sampled = len(rows)
    filled_cells = total_cells = consistent_rows = empty_rows = 0
    dated = parsed_dates = 0
    for i, row in enumerate(rows, start=1):
        cells = [cell.strip() for cell in row]
        if not any(cells):
            empty_rows += 1
            continue
        total_cells += width
        filled_cells += sum(1 for cell in cells[:width] if cell)
        if len(row) == width:
            consistent_rows += 1
        else:
            report.warn(
                INCONSISTENT_COLUMNS,
                f"Row {i} has {len(row)} columns, expected {width}",
                row_index=i,
            )
        if sum(1 for cell in cells if not cell) > width / 2:
            report.warn(SPARSE_ROW, f"Row {i} has many empty fields", row_index=i)
        if len(row) >= mapping.width:
            dated += 1
            candidates = timestamp_candidates(row, mapping)
            if parse_timestamp(candidates, template.timestamp_formats, settings.tzinfo):
                parsed_dates += 1

        report.preview.append(
            {header: (row[j] if j < len(row) else "") for j, header in enumerate(headers)}
        )

    if sampled == 0:
        report.warn(NO_DATA_ROWS, "File has a header but no data rows")
    elif empty_rows / sampled > EMPTY_ROW_THRESHOLD:
        report.warn(MANY_EMPTY_ROWS, f"{empty_rows} of {sampled} sampled rows are empty")

    if confidence < LOW_CONFIDENCE_THRESHOLD:
        report.warn(
            LOW_FORMAT_CONFIDENCE,
            f"Format detection confidence is low ({confidence}%)",
        )
    if dated and parsed_dates / dated < DATE_SUCCESS_THRESHOLD:
        report.warn(
            DATE_FORMAT_ISSUES,
            f"Only {parsed_dates} of {dated} sampled timestamps could be parsed",
        )

    if reached_end or sampled == 0:
        estimated_rows = sampled
    else:
        sample_bytes = sum(_row_bytes(row, delimiter, encoding) for row in rows)
        average = sample_bytes / sampled
        estimated_rows = max(sampled, int((file_size - header_bytes) / average))

    non_empty_rows = sampled - empty_rows
    report.stats.update(
        {
            "estimatedRows": estimated_rows,
            "previewRows": len(report.preview),
            "delimiter": delimiter,
            "hasHeader": has_header,
            "headers": list(headers),
            "columnMapping": mapping.to_dict(),
            "quality": {
                "completeness": round(filled_cells / total_cells * 100) if total_cells else 0,
                "consistency": (
                    round(consistent_rows / non_empty_rows * 100) if non_empty_rows else 0
                ),
            },
        }
    )
