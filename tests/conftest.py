"""
Pytest fixtures for Chat Import tests.

This module provides shared fixtures for testing the import pipeline,
including export files in each supported layout and a ready database.

Fixture Categories:
    1. File fixtures (CSV writer, sample WhatsApp / generic exports)
    2. Database fixtures (connection with schema, participant directory)
    3. Settings fixtures (fast retries for coordinator tests)

Design Notes:
    - Fixtures use tmp_path for isolation between tests
    - Every connection gets the full schema via create_schema
    - The chat "chat-1" has participants Alice (alice) and Bob (bob)
"""

import sqlite3
from pathlib import Path
from typing import Callable, Iterator, List

import pytest

from chat_import.config import ImportSettings
from chat_import.importer.models import Participant
from chat_import.importer.schema import create_schema
from chat_import.importer.store import SQLiteParticipantDirectory


def pytest_configure(config):
    config.addinivalue_line("markers", "property: Hypothesis property-based tests")


# =============================================================================
# File fixtures
# =============================================================================


WHATSAPP_CSV = (
    "date,time,sender,message\n"
    "15/03/24,10:30,Alice,Good morning\n"
    "15/03/24,10:31,Bob,naan வரேன் da\n"
    "16/03/24,09:00,,Messages are end-to-end encrypted\n"
)

GENERIC_CSV = (
    "date,timestamp,sender,message,translated_message\n"
    "3/15/24,3/15/24 10:00 AM,Alice,வணக்கம்,hello\n"
    "3/15/24,3/15/24 10:05 AM,Bob,how are you,\n"
)


@pytest.fixture
def write_csv(tmp_path: Path) -> Callable[..., Path]:
    """
    Factory writing text (or bytes) to a file under tmp_path.

    Returns:
        Function (content, name="export.csv", encoding="utf-8") -> Path.
    """

    def _write(content, name: str = "export.csv", encoding: str = "utf-8") -> Path:
        path = tmp_path / name
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_bytes(content.encode(encoding))
        return path

    return _write


@pytest.fixture
def whatsapp_csv(write_csv) -> Path:
    """WhatsApp export with a Tanglish row and a system row."""
    return write_csv(WHATSAPP_CSV, "whatsapp.csv")


@pytest.fixture
def generic_csv(write_csv) -> Path:
    """Generic export with a translated_message column."""
    return write_csv(GENERIC_CSV, "generic.csv")


def make_rows(count: int, start_day: int = 1) -> List[str]:
    """WhatsApp-style data rows alternating Alice and Bob."""
    rows = []
    for i in range(count):
        day = start_day + (i // 60) % 28
        sender = "Alice" if i % 2 == 0 else "Bob"
        rows.append(f"{day:02d}/03/24,10:{i % 60:02d},{sender},message {i + 1}")
    return rows


@pytest.fixture
def sample_rows() -> Callable[..., List[str]]:
    """Factory for WhatsApp-style data rows (see make_rows)."""
    return make_rows


@pytest.fixture
def rows_csv(write_csv) -> Callable[..., Path]:
    """Factory writing a WhatsApp export from a list of data rows."""

    def _make(rows: List[str], name: str = "rows.csv") -> Path:
        return write_csv("date,time,sender,message\n" + "\n".join(rows) + "\n", name)

    return _make


@pytest.fixture
def large_whatsapp_csv(write_csv) -> Callable[[int], Path]:
    """Factory for WhatsApp exports with N valid rows."""

    def _make(count: int, name: str = "large.csv") -> Path:
        body = "\n".join(make_rows(count))
        return write_csv(f"date,time,sender,message\n{body}\n", name)

    return _make


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def conn(tmp_path: Path) -> Iterator[sqlite3.Connection]:
    """Connection to a fresh import database with the schema applied."""
    connection = sqlite3.connect(str(tmp_path / "chat_import.db"))
    connection.execute("PRAGMA foreign_keys = ON;")
    create_schema(connection)
    try:
        yield connection
    finally:
        connection.close()


@pytest.fixture
def directory(conn: sqlite3.Connection) -> SQLiteParticipantDirectory:
    """Participant directory with Alice and Bob in chat-1."""
    directory = SQLiteParticipantDirectory(conn)
    directory.add_participant("chat-1", "Alice", "alice")
    directory.add_participant("chat-1", "Bob", "bob")
    return directory


@pytest.fixture
def participants() -> List[Participant]:
    """Participants matching the directory fixture."""
    return [Participant("alice", "Alice"), Participant("bob", "Bob")]


# =============================================================================
# Settings fixtures
# =============================================================================


@pytest.fixture
def fast_settings() -> ImportSettings:
    """Settings with no retry delay."""
    return ImportSettings(retry_delay_seconds=0.0)


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    """Sleep replacement recording requested delays."""
    delays: List[float] = []

    def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep
