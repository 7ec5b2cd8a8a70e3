"""
Tests for FastAPI endpoints.

Tests the API routes using FastAPI's TestClient against a temporary
database and staging directory.
"""

import sqlite3
from contextlib import closing
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from chat_import.api import ProgressTracker, app, progress_tracker
from chat_import.importer.ledger import ImportLedger
from chat_import.importer.models import SourceFormat
from chat_import.importer.schema import create_schema

WHATSAPP_EXPORT = (
    "date,time,sender,message\n"
    "15/03/24,10:30,Alice,Good morning\n"
    "15/03/24,10:31,Bob,see you soon\n"
    "16/03/24,09:00,,Messages are end-to-end encrypted\n"
)


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch) -> Path:
    """Point the API at a database and staging directory under tmp_path."""
    monkeypatch.setenv("CHAT_IMPORT_DB_PATH", str(tmp_path / "chat_import.db"))
    monkeypatch.setenv("CHAT_IMPORT_UPLOAD_DIR", str(tmp_path / "uploads"))
    for name in ("CHAT_IMPORT_BATCH_SIZE", "CHAT_IMPORT_MAX_FILE_SIZE"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture
def client(data_dir):
    """Create a TestClient for the FastAPI app."""
    progress_tracker.clear()
    return TestClient(app)


def upload(content: str = WHATSAPP_EXPORT, name: str = "chat.csv"):
    return {"file": (name, content.encode("utf-8"), "text/csv")}


def staged_files(data_dir: Path):
    uploads = data_dir / "uploads"
    return list(uploads.iterdir()) if uploads.exists() else []


def unavailable():
    return HTTPException(status_code=503, detail={"error": "Import database unavailable"})


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    def test_health_before_first_import(self, client, data_dir):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "db_exists": False,
            "db_path": str(data_dir / "chat_import.db"),
        }

    def test_health_reports_row_counts(self, client):
        client.post("/chats/chat-1/participants", data={"display_name": "Alice"})
        data = client.get("/health").json()
        assert data["db_exists"] is True
        assert data["schema_ok"] is True
        assert data["row_counts"]["chat_participant"] == 1

    def test_health_is_get_only(self, client):
        """Health endpoint should only accept GET requests."""
        assert client.post("/health").status_code == 405


class TestFormatEndpoints:
    """Tests for /formats and template downloads."""

    def test_list_formats(self, client):
        formats = client.get("/formats").json()["formats"]
        assert [f["format"] for f in formats] == ["whatsapp", "telegram", "imessage", "generic"]

    def test_template_download(self, client):
        response = client.get("/formats/whatsapp/template")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "whatsapp_template.csv" in response.headers["content-disposition"]
        assert response.text.splitlines()[0] == "date,time,sender,message"
        assert len(response.text.splitlines()) == 4

    def test_unknown_template(self, client):
        assert client.get("/formats/myspace/template").status_code == 404


class TestValidateAndPreview:
    """Tests for the read-only upload endpoints."""

    def test_validate(self, client, data_dir):
        response = client.post("/chats/chat-1/imports/validate", files=upload())
        assert response.status_code == 200
        data = response.json()
        assert data["isValid"] is True
        assert data["detectedFormat"] == "whatsapp"
        assert staged_files(data_dir) == []

    def test_validate_unrecognized_layout(self, client):
        response = client.post(
            "/chats/chat-1/imports/validate", files=upload("foo,bar\n1,2\n")
        )
        assert response.status_code == 200
        assert response.json()["reason"] == "UnrecognizedLayout"

    def test_file_too_large(self, client, data_dir, monkeypatch):
        monkeypatch.setenv("CHAT_IMPORT_MAX_FILE_SIZE", "10")
        response = client.post("/chats/chat-1/imports/validate", files=upload())
        assert response.status_code == 422
        assert response.json()["reason"] == "FileTooLarge"
        assert staged_files(data_dir) == []

    def test_bad_form_setting(self, client):
        response = client.post(
            "/chats/chat-1/imports/validate", files=upload(), data={"format": "myspace"}
        )
        assert response.status_code == 400

    def test_binary_codec_is_rejected(self, client, data_dir):
        response = client.post(
            "/chats/chat-1/imports/validate", files=upload(), data={"encoding": "rot13"}
        )
        assert response.status_code == 400
        assert "not a text encoding" in response.json()["detail"]["error"]
        assert staged_files(data_dir) == []

    def test_preview(self, client):
        client.post("/chats/chat-1/participants", data={"display_name": "Alice"})
        response = client.post(
            "/chats/chat-1/imports/preview", files=upload(), data={"user_id": "u1"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["senders"]["Alice"]["method"] == "exact"
        assert data["unresolvedSenders"] == ["Bob"]
        assert client.get("/chats/chat-1/imports").json() == {"imports": []}

    @patch("chat_import.api._open_db")
    def test_database_unavailable(self, mock_open_db, client, data_dir):
        mock_open_db.side_effect = unavailable()
        response = client.post("/chats/chat-1/imports/validate", files=upload())
        assert response.status_code == 503
        assert staged_files(data_dir) == []


class TestImportEndpoints:
    """Tests for creating, listing and rolling back imports."""

    def test_import(self, client, data_dir):
        response = client.post("/chats/chat-1/imports", files=upload(), data={"user_id": "u1"})
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "Committed"
        assert data["messagesImported"] == 3
        assert data["fileName"] == "chat.csv"
        assert staged_files(data_dir) == []

        progress = client.get(f"/imports/{data['importId']}/progress").json()
        assert progress["status"] == "Committed"
        assert progress["progress"]["percentage"] == 100

    def test_import_rejected_file(self, client):
        response = client.post(
            "/chats/chat-1/imports", files=upload("foo,bar\n1,2\n"), data={"user_id": "u1"}
        )
        assert response.status_code == 422
        assert response.json()["stage"] == "validation"

    def test_import_requires_user(self, client):
        assert client.post("/chats/chat-1/imports", files=upload()).status_code == 422

    def test_background_import(self, client):
        response = client.post(
            "/chats/chat-1/imports", files=upload(), data={"user_id": "u1", "background": "true"}
        )
        assert response.status_code == 202
        import_id = response.json()["importId"]
        assert response.json()["status"] == "Pending"

        # TestClient runs background tasks before returning the response
        progress = client.get(f"/imports/{import_id}/progress").json()
        assert progress["status"] == "Committed"
        assert progress["result"]["messagesImported"] == 3

    def test_list_imports(self, client):
        client.post("/chats/chat-1/imports", files=upload(name="a.csv"), data={"user_id": "u1"})
        client.post("/chats/chat-1/imports", files=upload(name="b.csv"), data={"user_id": "u1"})
        imports = client.get("/chats/chat-1/imports").json()["imports"]
        assert [i["fileName"] for i in imports] == ["b.csv", "a.csv"]
        assert client.get("/chats/chat-2/imports").json() == {"imports": []}

    def test_rollback(self, client):
        created = client.post(
            "/chats/chat-1/imports", files=upload(), data={"user_id": "u1"}
        ).json()
        response = client.delete(f"/chats/chat-1/imports/{created['importId']}")
        assert response.status_code == 200
        assert response.json() == {"rollback": {"deletedCount": 3, "ledgerStatus": "RolledBack"}}

        again = client.delete(f"/chats/chat-1/imports/{created['importId']}").json()
        assert again["rollback"]["alreadyRolledBack"] is True
        assert again["rollback"]["deletedCount"] == 0

    def test_rollback_refused_while_running(self, client, data_dir):
        with closing(sqlite3.connect(str(data_dir / "chat_import.db"))) as conn:
            create_schema(conn)
            ImportLedger(conn).create(
                "chat-1", "slow.csv", SourceFormat.GENERIC, import_id="imp-running"
            )
        response = client.delete("/chats/chat-1/imports/imp-running")
        assert response.status_code == 409
        assert "Pending" in response.json()["detail"]

    def test_rollback_unknown_import(self, client):
        assert client.delete("/chats/chat-1/imports/missing").status_code == 404

    def test_progress_unknown_import(self, client):
        assert client.get("/imports/missing/progress").status_code == 404

    @patch("chat_import.api._open_db")
    def test_list_database_unavailable(self, mock_open_db, client):
        mock_open_db.side_effect = unavailable()
        assert client.get("/chats/chat-1/imports").status_code == 503


class TestParticipantEndpoints:
    """Tests for the participant directory endpoints."""

    def test_add_and_list(self, client):
        added = client.post(
            "/chats/chat-1/participants", data={"display_name": "Alice", "participant_id": "a"}
        )
        assert added.json() == {"id": "a", "displayName": "Alice"}
        listed = client.get("/chats/chat-1/participants").json()
        assert listed == {"participants": [{"id": "a", "displayName": "Alice"}]}

    def test_duplicate_participant(self, client):
        data = {"display_name": "Alice", "participant_id": "a"}
        client.post("/chats/chat-1/participants", data=data)
        assert client.post("/chats/chat-1/participants", data=data).status_code == 409


class TestProgressTracker:
    """Tests for ProgressTracker retention."""

    def test_finished_entries_expire(self):
        now = [0.0]
        tracker = ProgressTracker(retention_seconds=60, clock=lambda: now[0])
        tracker.start("imp-1")
        tracker.finish("imp-1", "Committed", {"messagesImported": 3})
        assert tracker.get("imp-1")["result"] == {"messagesImported": 3}

        now[0] = 61.0
        assert tracker.get("imp-1") is None
        assert len(tracker) == 0

    def test_oldest_finished_entries_are_dropped(self):
        tracker = ProgressTracker(max_finished=2)
        for import_id in ("imp-1", "imp-2", "imp-3"):
            tracker.start(import_id)
            tracker.finish(import_id, "Committed")
        assert tracker.get("imp-1") is None
        assert tracker.get("imp-2")["status"] == "Committed"
        assert tracker.get("imp-3")["status"] == "Committed"

    def test_running_imports_are_kept(self):
        now = [0.0]
        tracker = ProgressTracker(max_finished=1, retention_seconds=60, clock=lambda: now[0])
        tracker.start("running")
        for import_id in ("imp-1", "imp-2"):
            tracker.start(import_id)
            tracker.finish(import_id, "Committed")

        now[0] = 1000.0
        assert tracker.get("running")["status"] == "Pending"
        assert len(tracker) == 1
