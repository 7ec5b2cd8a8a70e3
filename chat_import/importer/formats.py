"""
Registry of recognised chat export layouts.

Each template names the header columns an exporter writes and the timestamp
formats it uses. Files that match no template fall back to the generic
layout, whose columns are inferred from header keywords (or, for headerless
files, by position).

Timestamp Strategy:
    1. Build candidate strings: "date time", "date, time", time, date
    2. Try the template's formats in order, then the ISO formats
    3. Fall back to datetime.fromisoformat
    4. Naive results are localised to the configured zone, then moved to UTC

The order of every format list is significant: the first format that
parses wins, so ambiguous day/month values resolve the same way every time.
"""

import csv
import io
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Dict, List, Optional, Sequence, Tuple

from chat_import.importer.models import SourceFormat

ISO_FORMATS: Tuple[str, ...] = (
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
)

WHITESPACE_PATTERN = re.compile(r"\s+")
HEADER_SEPARATORS = re.compile(r"[\s\-]+")


@dataclass(frozen=True)
class ExportTemplate:
    """A known export layout."""

    format: SourceFormat
    name: str
    description: str
    required_columns: Tuple[str, ...]
    roles: Dict[str, str]
    timestamp_formats: Tuple[str, ...]
    optional_columns: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, object]:
        return {
            "format": self.format.value,
            "name": self.name,
            "description": self.description,
            "requiredColumns": list(self.required_columns),
            "optionalColumns": list(self.optional_columns),
            "timestampFormats": list(self.timestamp_formats),
        }


@dataclass(frozen=True)
class ColumnMapping:
    """Column positions for each message field."""

    text: int
    sender: Optional[int] = None
    timestamp: Optional[int] = None
    date: Optional[int] = None
    time: Optional[int] = None
    translated_text: Optional[int] = None

    @property
    def width(self) -> int:
        """Minimum number of fields a row needs for this mapping."""
        used = [
            i
            for i in (self.text, self.sender, self.timestamp, self.date, self.time)
            if i is not None
        ]
        return max(used) + 1

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {
            "sender": self.sender,
            "text": self.text,
            "timestamp": self.timestamp,
            "date": self.date,
            "time": self.time,
            "translatedText": self.translated_text,
        }


WHATSAPP = ExportTemplate(
    format=SourceFormat.WHATSAPP,
    name="WhatsApp Export",
    description="WhatsApp chat export format",
    required_columns=("date", "time", "sender", "message"),
    roles={"date": "date", "time": "time", "sender": "sender", "text": "message"},
    timestamp_formats=(
        "%d/%m/%y %H:%M",
        "%d/%m/%y, %H:%M",
        "%d/%m/%Y %H:%M",
        "%d/%m/%Y, %H:%M",
        "%d/%m/%y %I:%M %p",
        "%d/%m/%y, %I:%M %p",
        "%d/%m/%Y %I:%M %p",
        "%d/%m/%Y, %I:%M %p",
        "%d/%m/%y %H:%M:%S",
        "%d/%m/%y, %H:%M:%S",
        "%m/%d/%y %H:%M",
        "%m/%d/%y, %H:%M",
        "%m/%d/%y %I:%M %p",
        "%m/%d/%y, %I:%M %p",
        "%m/%d/%Y %I:%M %p",
        "%m/%d/%Y, %I:%M %p",
    ),
)

TELEGRAM = ExportTemplate(
    format=SourceFormat.TELEGRAM,
    name="Telegram Export",
    description="Telegram chat export format",
    required_columns=("date", "from", "text"),
    roles={"timestamp": "date", "sender": "from", "text": "text"},
    timestamp_formats=(
        "%Y-%m-%d %H:%M:%S",
        "%d.%m.%Y %H:%M:%S",
        "%d.%m.%Y %H:%M",
    ),
)

IMESSAGE = ExportTemplate(
    format=SourceFormat.IMESSAGE,
    name="iMessage Export",
    description="iMessage export format",
    required_columns=("timestamp", "sender", "message"),
    roles={"timestamp": "timestamp", "sender": "sender", "text": "message"},
    timestamp_formats=(
        "%Y-%m-%d %H:%M:%S",
        "%m/%d/%Y %H:%M:%S",
        "%m/%d/%Y %I:%M:%S %p",
    ),
)

GENERIC = ExportTemplate(
    format=SourceFormat.GENERIC,
    name="Generic Chat Export",
    description="Sender, text and time columns inferred from headers or position",
    required_columns=("date", "timestamp", "sender", "message"),
    optional_columns=("translated_message",),
    roles={},
    timestamp_formats=(
        "%m/%d/%y %I:%M %p",
        "%m/%d/%Y %I:%M %p",
        "%m/%d/%y %H:%M",
        "%m/%d/%Y %H:%M",
        "%d/%m/%y %H:%M",
        "%d/%m/%Y %H:%M",
        "%d.%m.%Y %H:%M:%S",
        "%d.%m.%Y %H:%M",
        "%m/%d/%Y %H:%M:%S",
        "%m/%d/%y %H:%M:%S",
        "%Y/%m/%d %H:%M:%S",
        "%Y-%m-%d",
        "%m/%d/%y",
        "%m/%d/%Y",
    ),
)

TEMPLATES: Dict[SourceFormat, ExportTemplate] = {
    t.format: t for t in (WHATSAPP, TELEGRAM, IMESSAGE, GENERIC)
}

# Keywords for generic column inference, most specific first
SENDER_KEYWORDS = ("sender", "from", "author", "sender_name", "name", "user", "contact")
TEXT_KEYWORDS = ("message", "text", "content", "body", "msg")
TRANSLATED_KEYWORDS = ("translated_message", "translated_text", "translation")
DATETIME_KEYWORDS = ("datetime", "date_time", "sent_at", "created_at")
DATE_KEYWORDS = ("date", "day")
TIME_KEYWORDS = ("time", "timestamp", "hour")


def get_template(source_format: SourceFormat) -> ExportTemplate:
    return TEMPLATES[source_format]


def normalize_header(header: str) -> str:
    """
    Normalize a header cell for matching.

    Examples:
        >>> normalize_header("  Sender Name ")
        'sender_name'
        >>> normalize_header("\\ufeffDate")
        'date'
    """
    cleaned = header.replace("\ufeff", "").strip().lower()
    return HEADER_SEPARATORS.sub("_", cleaned)


def _find_column(
    headers: Sequence[str], keywords: Sequence[str], taken: set
) -> Tuple[Optional[int], bool]:
    """
    Find the first header matching any keyword.

    Exact matches win over containment. Returns (index, exact).
    """
    for keyword in keywords:
        for i, header in enumerate(headers):
            if i not in taken and header == keyword:
                return i, True
    for keyword in keywords:
        for i, header in enumerate(headers):
            if i not in taken and keyword in header:
                return i, False
    return None, False


def score_template(template: ExportTemplate, headers: Sequence[str]) -> int:
    """
    Score how well headers match a template.

    +10 per required column found exactly, +8 when found by containment,
    -5 per missing required column, +2 per optional column present.
    """
    normalized = [normalize_header(h) for h in headers]
    score = 0
    for column in template.required_columns:
        if column in normalized:
            score += 10
        elif any(column in h for h in normalized):
            score += 8
        else:
            score -= 5
    for column in template.optional_columns:
        if any(column in h for h in normalized):
            score += 2
    return score


def template_confidence(template: ExportTemplate, score: int) -> int:
    """Convert a template score into a 0-100 confidence."""
    best = 10 * len(template.required_columns)
    return max(0, min(100, round(score / best * 100)))


def map_template_columns(
    template: ExportTemplate, headers: Sequence[str]
) -> Optional[ColumnMapping]:
    """
    Map a known template's roles onto header positions.

    Returns None unless every role maps to a distinct column.
    """
    if template.format == SourceFormat.GENERIC:
        mapping, _ = infer_generic_mapping(headers)
        return mapping

    normalized = [normalize_header(h) for h in headers]
    taken: set = set()
    positions: Dict[str, int] = {}
    for role, column in template.roles.items():
        index, _ = _find_column(normalized, (column,), taken)
        if index is None:
            return None
        taken.add(index)
        positions[role] = index

    return ColumnMapping(
        text=positions["text"],
        sender=positions.get("sender"),
        timestamp=positions.get("timestamp"),
        date=positions.get("date"),
        time=positions.get("time"),
    )


def infer_generic_mapping(headers: Sequence[str]) -> Tuple[Optional[ColumnMapping], int]:
    """
    Infer sender/text/timestamp columns from header keywords.

    Returns:
        (mapping or None, confidence 0-100). Exact keyword hits count fully,
        containment hits count half.
    """
    normalized = [normalize_header(h) for h in headers]
    taken: set = set()
    hits = 0.0

    translated, _ = _find_column(normalized, TRANSLATED_KEYWORDS, taken)
    if translated is not None:
        taken.add(translated)

    text, exact = _find_column(normalized, TEXT_KEYWORDS, taken)
    if text is None:
        return None, 0
    taken.add(text)
    hits += 1 if exact else 0.5

    sender, exact = _find_column(normalized, SENDER_KEYWORDS, taken)
    if sender is None:
        return None, 0
    taken.add(sender)
    hits += 1 if exact else 0.5

    timestamp, exact = _find_column(normalized, DATETIME_KEYWORDS, taken)
    date = time_col = None
    if timestamp is None:
        date, date_exact = _find_column(normalized, DATE_KEYWORDS, taken)
        if date is not None:
            taken.add(date)
        time_col, time_exact = _find_column(normalized, TIME_KEYWORDS, taken)
        if date is None and time_col is None:
            return None, 0
        if date is not None and time_col is not None:
            exact = date_exact and time_exact
        elif date is not None:
            timestamp, date, exact = date, None, date_exact
        else:
            timestamp, time_col, exact = time_col, None, time_exact
    hits += 1 if exact else 0.5

    mapping = ColumnMapping(
        text=text,
        sender=sender,
        timestamp=timestamp,
        date=date,
        time=time_col,
        translated_text=translated,
    )
    return mapping, round(hits / 3 * 100)


POSITIONAL_MAPPING = ColumnMapping(timestamp=0, sender=1, text=2)


def _clean_timestamp(value: str) -> str:
    return WHITESPACE_PATTERN.sub(" ", value).strip()


def timestamp_candidates(fields: Sequence[str], mapping: ColumnMapping) -> List[str]:
    """Build the candidate timestamp strings for a row, most specific first."""

    def cell(index: Optional[int]) -> str:
        if index is None or index >= len(fields):
            return ""
        return _clean_timestamp(fields[index])

    stamp_value = cell(mapping.timestamp)
    date_value = cell(mapping.date)
    time_value = cell(mapping.time)

    candidates = [stamp_value]
    if date_value and time_value:
        # The time cell may itself hold a full timestamp
        candidates.extend(
            [f"{date_value} {time_value}", f"{date_value}, {time_value}", time_value]
        )
    elif time_value:
        candidates.append(time_value)
    elif not stamp_value:
        # A bare date only when the row carries no time of day at all
        candidates.append(date_value)

    seen = set()
    ordered = []
    for candidate in candidates:
        if candidate and candidate not in seen:
            seen.add(candidate)
            ordered.append(candidate)
    return ordered


def parse_timestamp(
    candidates: Sequence[str],
    formats: Sequence[str],
    tz: tzinfo = timezone.utc,
) -> Optional[datetime]:
    """
    Parse the first candidate that matches any format.

    Args:
        candidates: Candidate strings from timestamp_candidates.
        formats: Template formats; ISO formats are tried after them.
        tz: Zone for naive timestamps.

    Returns:
        Aware UTC datetime, or None if nothing parses.

    Examples:
        >>> parse_timestamp(["2024-01-01T10:00:00"], ())
        datetime.datetime(2024, 1, 1, 10, 0, tzinfo=datetime.timezone.utc)
    """
    for candidate in candidates:
        parsed: Optional[datetime] = None
        for fmt in tuple(formats) + ISO_FORMATS:
            try:
                parsed = datetime.strptime(candidate, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            try:
                parsed = datetime.fromisoformat(candidate)
            except ValueError:
                continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=tz)
        return parsed.astimezone(timezone.utc)
    return None


def describe_formats() -> List[Dict[str, object]]:
    """Describe every supported template."""
    return [t.to_dict() for t in TEMPLATES.values()]


def _sample_rows(source_format: SourceFormat, rows: int, now: datetime) -> List[List[str]]:
    samples = []
    for i in range(rows):
        moment = now - timedelta(days=i)
        sender = "Alice" if i % 2 == 0 else "Bob"
        text = f"Sample message {i + 1}"
        if source_format == SourceFormat.WHATSAPP:
            samples.append([moment.strftime("%d/%m/%y"), moment.strftime("%H:%M"), sender, text])
        elif source_format == SourceFormat.TELEGRAM:
            samples.append([moment.strftime("%Y-%m-%d %H:%M:%S"), sender, text])
        elif source_format == SourceFormat.IMESSAGE:
            samples.append([moment.strftime("%Y-%m-%d %H:%M:%S"), sender, text])
        else:
            samples.append(
                [moment.strftime("%m/%d/%y"), moment.strftime("%I:%M %p"), sender, text, ""]
            )
    return samples


def render_template(
    source_format: SourceFormat, rows: int = 3, now: Optional[datetime] = None
) -> str:
    """
    Render a sample CSV for a template.

    Args:
        source_format: Template to render.
        rows: Number of sample rows.
        now: Reference time for the sample timestamps.

    Returns:
        CSV text with a header line and sample rows.
    """
    template = get_template(source_format)
    headers = list(template.required_columns) + list(template.optional_columns)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(_sample_rows(source_format, rows, now or datetime.now()))
    return buffer.getvalue()
