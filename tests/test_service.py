"""
End-to-end tests for service.py import flow.

Each test imports a real export file into a temporary database and checks
the report, the stored messages and the ledger together.
"""

import pytest

from chat_import.config import ImportSettings
from chat_import.importer.errors import ImportNotFoundError, StorageError
from chat_import.importer.models import UNPARSEABLE_TIMESTAMP, LedgerStatus, RowError
from chat_import.importer.parser import BELOW_SUCCESS_THRESHOLD
from chat_import.importer.service import (
    STAGE_IMPORT,
    STAGE_PARSE,
    STAGE_VALIDATION,
    ImportService,
)
from chat_import.importer.store import SQLiteMessageStore, SQLiteParticipantDirectory


class FailingStore(SQLiteMessageStore):
    """Store whose writes fail from a given batch on."""

    def __init__(self, conn, fail_from: int):
        super().__init__(conn)
        self.fail_from = fail_from

    def bulk_insert_tagged(self, chat_id, messages, import_id, batch_index):
        if batch_index >= self.fail_from:
            raise StorageError("disk I/O error")
        return super().bulk_insert_tagged(chat_id, messages, import_id, batch_index)


@pytest.fixture
def service(conn, directory, fast_settings):
    return ImportService(conn, fast_settings)


def count_messages(conn, chat_id="chat-1"):
    query = "SELECT COUNT(*) FROM chat_message WHERE chat_id = ?;"
    return conn.execute(query, (chat_id,)).fetchone()[0]


class TestImportFile:
    """Tests for successful imports."""

    def test_two_senders(self, conn, write_csv, fast_settings):
        directory = SQLiteParticipantDirectory(conn)
        directory.add_participant("chat-a", "John", "john")
        directory.add_participant("chat-a", "Jane", "jane")
        path = write_csv(
            "sender,text,time\n"
            "John,hi,2024-01-01T10:00:00\n"
            "Jane,hello,2024-01-01T10:01:00\n"
        )

        report = ImportService(conn, fast_settings).import_file(path, "chat-a", "john")
        data = report.to_dict()
        assert report.success is True
        assert data["messagesImported"] == 2
        assert data["senderBreakdown"] == {"John": 1, "Jane": 1}
        assert data["dateRange"] == {
            "start": "2024-01-01T10:00:00Z",
            "end": "2024-01-01T10:01:00Z",
        }
        assert data["format"] == "generic"
        senders = conn.execute(
            "SELECT sender_id FROM chat_message WHERE chat_id = 'chat-a' ORDER BY sent_at;"
        ).fetchall()
        assert senders == [("john",), ("jane",)]

    def test_whatsapp_export(self, service, whatsapp_csv, conn):
        report = service.import_file(whatsapp_csv, "chat-1", "alice")
        assert report.success is True
        assert report.stage == STAGE_IMPORT
        assert report.status == LedgerStatus.COMMITTED
        assert report.outcome.imported_count == 3
        assert report.success_rate == 100.0

        rows = conn.execute(
            "SELECT kind, sender_id, text, original_text, was_normalized FROM chat_message "
            "ORDER BY sent_at;"
        ).fetchall()
        assert rows[1] == ("user", "bob", "naan vareen da", "naan வரேன் da", 1)
        assert rows[2][:2] == ("system", None)

    def test_one_unparseable_row(self, service, sample_rows, rows_csv):
        rows = sample_rows(10)
        rows[4] = "xx/03/24,10:04,Alice,message 5"
        report = service.import_file(rows_csv(rows), "chat-1", "alice")
        data = report.to_dict()
        assert report.success is True
        assert data["messagesImported"] == 9
        assert data["messagesSkipped"] == 1
        assert data["totalProcessed"] == 10
        assert report.errors == [RowError(5, UNPARSEABLE_TIMESTAMP, "xx/03/24 10:04")]

    def test_counts_add_up_across_batches(self, conn, directory, large_whatsapp_csv):
        service = ImportService(conn, ImportSettings(batch_size=500, retry_delay_seconds=0))
        report = service.import_file(large_whatsapp_csv(1200), "chat-1", "alice")
        outcome = report.outcome
        assert [b.message_count for b in outcome.batches] == [500, 500, 200]
        assert outcome.processed_count == outcome.imported_count + outcome.skipped_count
        assert outcome.imported_count == 1200
        assert count_messages(conn) == 1200

    def test_unresolved_sender_defaults_to_importer(self, service, write_csv, conn):
        path = write_csv("date,time,sender,message\n15/03/24,10:30,Carol,hey\n")
        report = service.import_file(path, "chat-1", "bob")
        assert report.unresolved_labels == ["Carol"]
        assert report.to_dict()["unresolvedSenders"] == ["Carol"]
        assert conn.execute("SELECT sender_id FROM chat_message;").fetchone() == ("bob",)

    def test_ambiguous_sender_is_reported(self, conn, write_csv, fast_settings):
        directory = SQLiteParticipantDirectory(conn)
        directory.add_participant("chat-s", "Sam Lee", "lee")
        directory.add_participant("chat-s", "Sam Roy", "roy")
        path = write_csv("date,time,sender,message\n15/03/24,10:30,Sam,hi\n")
        report = ImportService(conn, fast_settings).import_file(path, "chat-s", "lee")
        assert report.to_dict()["ambiguousSenders"] == [
            {"label": "Sam", "candidates": ["lee", "roy"], "chosen": "lee"}
        ]

    def test_file_name_and_import_id(self, service, whatsapp_csv):
        report = service.import_file(
            whatsapp_csv, "chat-1", "alice", file_name="My Chat.csv", import_id="imp-7"
        )
        entry = service.get_import_stats("chat-1")[0]
        assert report.import_id == "imp-7"
        assert entry.file_name == "My Chat.csv"
        assert entry.initiated_by == "alice"

    def test_progress_phases(self, service, whatsapp_csv):
        events = []
        service.import_file(whatsapp_csv, "chat-1", "alice", on_progress=events.append)
        phases = [e.phase for e in events]
        assert phases[0] == "scan"
        assert phases[-1] == "import"
        assert events[-1].percentage == 100

    def test_str(self, service, whatsapp_csv):
        text = str(service.import_file(whatsapp_csv, "chat-1", "alice"))
        assert "Import Committed" in text
        assert "3 imported" in text


class TestImportFailures:
    """Tests for imports that stop before or during commit."""

    def test_validation_failure_writes_nothing(self, service, tmp_path):
        report = service.import_file(tmp_path / "missing.csv", "chat-1", "alice")
        assert report.success is False
        assert report.stage == STAGE_VALIDATION
        assert report.reason == "FileNotFound"
        assert report.import_id is None
        assert service.get_import_stats("chat-1") == []
        assert report.to_dict()["validation"]["isValid"] is False

    def test_parse_failure_writes_nothing(self, service, sample_rows, rows_csv, conn):
        rows = sample_rows(10)
        for i in (0, 3, 6):
            rows[i] = f"bad,10:0{i},Alice,message {i + 1}"
        report = service.import_file(rows_csv(rows), "chat-1", "alice")
        data = report.to_dict()
        assert report.stage == STAGE_PARSE
        assert data["reason"] == BELOW_SUCCESS_THRESHOLD
        assert data["parseStats"]["parsedRows"] == 7
        assert service.get_import_stats("chat-1") == []
        assert count_messages(conn) == 0

    def test_storage_failure_rolls_back(self, conn, directory, large_whatsapp_csv):
        settings = ImportSettings(batch_size=2, retry_delay_seconds=0)
        service = ImportService(conn, settings, store=FailingStore(conn, fail_from=2))
        report = service.import_file(large_whatsapp_csv(6), "chat-1", "alice")
        data = report.to_dict()
        assert report.success is False
        assert data["status"] == "RolledBack"
        assert data["messagesImported"] == 0
        assert data["rollbackInfo"]["revertedBatches"] == [1]
        assert data["rollbackInfo"]["failedBatch"] == 2
        assert data["rollbackInfo"]["neverAttemptedBatches"] == [3]
        assert count_messages(conn) == 0

    def test_storage_failure_without_rollback(self, conn, directory, large_whatsapp_csv):
        settings = ImportSettings(batch_size=2, retry_delay_seconds=0, enable_rollback=False)
        service = ImportService(conn, settings, store=FailingStore(conn, fail_from=2))
        report = service.import_file(large_whatsapp_csv(6), "chat-1", "alice")
        assert report.status == LedgerStatus.PARTIALLY_FAILED
        assert count_messages(conn) == 2


class TestPreview:
    """Tests for preview (read-only)."""

    def test_preview_maps_senders(self, service, whatsapp_csv, conn):
        data = service.preview(whatsapp_csv, "chat-1", "alice")
        assert data["validation"]["isValid"] is True
        assert data["senders"] == {
            "Alice": {"participantId": "alice", "method": "exact"},
            "Bob": {"participantId": "bob", "method": "exact"},
        }
        assert data["unresolvedSenders"] == []
        assert data["parse"]["stats"]["parsedRows"] == 3
        assert count_messages(conn) == 0
        assert service.get_import_stats("chat-1") == []

    def test_preview_invalid_file(self, service, write_csv):
        data = service.preview(write_csv("foo,bar\n1,2\n"), "chat-1", "alice")
        assert list(data) == ["validation"]
        assert data["validation"]["reason"] == "UnrecognizedLayout"

    def test_validate(self, service, whatsapp_csv):
        assert service.validate(whatsapp_csv).is_valid is True


class TestRollbackAndStats:
    """Tests for rollback_import and get_import_stats through the service."""

    def test_rollback(self, service, whatsapp_csv, conn):
        report = service.import_file(whatsapp_csv, "chat-1", "alice")
        result = service.rollback_import("chat-1", report.import_id)
        assert result.deleted_count == 3
        assert count_messages(conn) == 0
        assert service.get_import_stats("chat-1")[0].status == LedgerStatus.ROLLED_BACK

    def test_rollback_twice(self, service, whatsapp_csv):
        report = service.import_file(whatsapp_csv, "chat-1", "alice")
        service.rollback_import("chat-1", report.import_id)
        again = service.rollback_import("chat-1", report.import_id)
        assert again.already_rolled_back is True
        assert again.deleted_count == 0

    def test_rollback_unknown(self, service):
        with pytest.raises(ImportNotFoundError):
            service.rollback_import("chat-1", "missing")

    def test_stats_newest_first(self, service, whatsapp_csv, generic_csv):
        service.import_file(whatsapp_csv, "chat-1", "alice")
        service.import_file(generic_csv, "chat-1", "alice")
        names = [e.file_name for e in service.get_import_stats("chat-1")]
        assert names == ["generic.csv", "whatsapp.csv"]
