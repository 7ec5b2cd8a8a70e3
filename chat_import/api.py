"""
FastAPI backend for chat export imports.

Uploads are staged to disk, validated, parsed and committed in tagged
batches; every import can later be listed or rolled back by id.

Set CHAT_IMPORT_DB_PATH to choose the database (created on first use).
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
import uuid
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from chat_import.config import Config, ImportSettings
from chat_import.database import DatabaseConnection
from chat_import.importer.errors import (
    ConfigError,
    ImportInProgressError,
    ImportNotFoundError,
    ValidationError,
)
from chat_import.importer.formats import describe_formats, render_template
from chat_import.importer.models import LedgerStatus, ProgressEvent, SourceFormat
from chat_import.importer.schema import REQUIRED_TABLES, SCHEMA_VERSION, verify_schema
from chat_import.importer.service import STAGE_VALIDATION, ImportReport, ImportService
from chat_import.importer.store import SQLiteParticipantDirectory
from chat_import.upload import StagedUpload, discard_upload, stage_upload, staged_upload

logger = logging.getLogger(__name__)

GENERIC_ERROR = {"error": "Failed to process chat export"}


def _get_db_path() -> Path:
    """Get the path to the import database."""
    return Path(
        os.getenv(
            "CHAT_IMPORT_DB_PATH",
            str(Config.DEFAULT_DATA_PATH / Config.DEFAULT_DB_NAME),
        )
    )


def _get_config() -> Config:
    return Config(db_path=str(_get_db_path()))


def _open_db() -> DatabaseConnection:
    """
    Open the import database.

    Raises HTTPException 503 if the database cannot be opened.
    """
    db = DatabaseConnection(_get_config())
    try:
        db.connect()
    except sqlite3.Error as e:
        raise HTTPException(
            status_code=503,
            detail={
                "error": "Import database unavailable",
                "message": str(e),
                "path": str(_get_db_path()),
            },
        )
    return db


class ProgressTracker:
    """
    Latest progress event and final status per import, shared across threads.

    Finished imports are kept for retention_seconds, and at most max_finished
    of them at a time. Running imports are never evicted.
    """

    def __init__(
        self,
        max_finished: int = 200,
        retention_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_finished = max_finished
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._events: Dict[str, Dict[str, Any]] = {}
        # import_id -> finish time, oldest first
        self._finished: OrderedDict[str, float] = OrderedDict()

    def start(self, import_id: str) -> None:
        with self._lock:
            self._finished.pop(import_id, None)
            self._events[import_id] = {
                "importId": import_id,
                "status": LedgerStatus.PENDING.value,
                "progress": None,
            }

    def callback(self, import_id: str) -> Callable[[ProgressEvent], None]:
        """Progress callback that records events for import_id."""

        def on_progress(event: ProgressEvent) -> None:
            with self._lock:
                entry = self._events.setdefault(import_id, {"importId": import_id})
                entry["status"] = LedgerStatus.PROCESSING.value
                entry["progress"] = event.to_dict()

        return on_progress

    def finish(self, import_id: str, status: str, result: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            entry = self._events.setdefault(import_id, {"importId": import_id, "progress": None})
            entry["status"] = status
            if result is not None:
                entry["result"] = result
            self._finished.pop(import_id, None)
            self._finished[import_id] = self._clock()
            self._evict()

    def get(self, import_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._evict()
            entry = self._events.get(import_id)
            return dict(entry) if entry else None

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
            self._finished.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def _evict(self) -> None:
        # Caller holds the lock
        cutoff = self._clock() - self.retention_seconds
        while self._finished:
            import_id, finished_at = next(iter(self._finished.items()))
            if len(self._finished) <= self.max_finished and finished_at > cutoff:
                break
            del self._finished[import_id]
            self._events.pop(import_id, None)
            logger.debug(f"Dropped progress for finished import {import_id}")


progress_tracker = ProgressTracker()


app = FastAPI(
    title="Chat Import API",
    version="0.1.0",
    description="Import chat export files into conversation history, with rollback.",
)

# Local dev CORS defaults
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        os.getenv("CHAT_IMPORT_ALLOWED_ORIGIN", "http://127.0.0.1:5173"),
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _settings_from_form(
    format: Optional[str],
    encoding: Optional[str],
    batch_size: Optional[str],
    enable_rollback: Optional[str],
) -> ImportSettings:
    try:
        return ImportSettings.from_request(
            format=format,
            encoding=encoding,
            batch_size=batch_size,
            enable_rollback=enable_rollback,
            base=ImportSettings.from_env(),
        )
    except ConfigError as e:
        raise HTTPException(status_code=400, detail={"error": str(e)})


def _upload_rejected(e: ValidationError, file_name: Optional[str]) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "stage": STAGE_VALIDATION,
            "reason": e.reason,
            "message": str(e),
            "fileName": file_name,
        },
    )


def _report_response(report: ImportReport) -> JSONResponse:
    status_code = 422 if report.outcome is None else 200
    return JSONResponse(status_code=status_code, content=report.to_dict())


@app.get("/health")
def health() -> Dict[str, Any]:
    """Health check, with row counts once the database exists."""
    path = _get_db_path()
    result: Dict[str, Any] = {"status": "ok", "db_exists": path.exists(), "db_path": str(path)}
    if result["db_exists"]:
        db = _open_db()
        try:
            result["schema_version"] = SCHEMA_VERSION
            result["schema_ok"] = verify_schema(db.connection)
            result["row_counts"] = dict(db.get_row_counts_by_table(sorted(REQUIRED_TABLES)))
        finally:
            db.close()
    return result


@app.get("/formats")
def formats() -> Dict[str, Any]:
    """List the recognised export templates."""
    return {"formats": describe_formats()}


@app.get("/formats/{format_name}/template", response_class=PlainTextResponse)
def format_template(format_name: str) -> PlainTextResponse:
    """Download a sample CSV for a template."""
    try:
        source_format = SourceFormat(format_name.lower())
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown format: {format_name}")
    return PlainTextResponse(
        render_template(source_format),
        media_type="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{source_format.value}_template.csv"'
        },
    )


@app.post("/chats/{chat_id}/imports/validate")
def validate_import(
    chat_id: str,
    file: UploadFile = File(...),
    format: Optional[str] = Form(None),
    encoding: Optional[str] = Form(None),
) -> JSONResponse:
    """Validate an export without importing it."""
    settings = _settings_from_form(format, encoding, None, None)
    config = _get_config()
    try:
        with staged_upload(
            file.file, config.upload_dir, file.filename, settings.max_file_size
        ) as staged:
            db = _open_db()
            try:
                report = ImportService(db.connection, settings).validate(staged.path)
            finally:
                db.close()
    except ValidationError as e:
        return _upload_rejected(e, file.filename)
    except HTTPException:
        raise
    except Exception:
        logger.exception(f"Validation failed for chat {chat_id}")
        return JSONResponse(status_code=500, content=GENERIC_ERROR)
    return JSONResponse(content=report.to_dict())


@app.post("/chats/{chat_id}/imports/preview")
def preview_import(
    chat_id: str,
    file: UploadFile = File(...),
    user_id: str = Form(...),
    format: Optional[str] = Form(None),
    encoding: Optional[str] = Form(None),
) -> JSONResponse:
    """Validate an export and show how its senders would resolve."""
    settings = _settings_from_form(format, encoding, None, None)
    config = _get_config()
    try:
        with staged_upload(
            file.file, config.upload_dir, file.filename, settings.max_file_size
        ) as staged:
            db = _open_db()
            try:
                data = ImportService(db.connection, settings).preview(
                    staged.path, chat_id, user_id
                )
            finally:
                db.close()
    except ValidationError as e:
        return _upload_rejected(e, file.filename)
    except HTTPException:
        raise
    except Exception:
        logger.exception(f"Preview failed for chat {chat_id}")
        return JSONResponse(status_code=500, content=GENERIC_ERROR)
    return JSONResponse(content=data)


def _run_background_import(
    staged: StagedUpload, chat_id: str, user_id: str, settings: ImportSettings, import_id: str
) -> None:
    """Run an import after the response has been sent."""
    try:
        db = DatabaseConnection(_get_config())
        db.connect()
        try:
            report = ImportService(db.connection, settings).import_file(
                staged.path,
                chat_id,
                user_id,
                file_name=staged.original_name,
                on_progress=progress_tracker.callback(import_id),
                import_id=import_id,
            )
        finally:
            db.close()
        status = report.status.value if report.status else "Failed"
        progress_tracker.finish(import_id, status, report.to_dict())
    except Exception:
        logger.exception(f"Background import {import_id} failed")
        progress_tracker.finish(import_id, "Failed", GENERIC_ERROR)
    finally:
        discard_upload(staged)


@app.post("/chats/{chat_id}/imports")
def create_import(
    chat_id: str,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    user_id: str = Form(...),
    format: Optional[str] = Form(None),
    enable_rollback: Optional[str] = Form(None),
    encoding: Optional[str] = Form(None),
    batch_size: Optional[str] = Form(None),
    background: bool = Form(False),
) -> JSONResponse:
    """
    Import an export file into a chat.

    Returns 200 with the import report, 422 when validation or parsing
    fails, or 202 with the import id when background=true.
    """
    settings = _settings_from_form(format, encoding, batch_size, enable_rollback)
    config = _get_config()
    import_id = str(uuid.uuid4())
    progress_tracker.start(import_id)

    if background:
        try:
            staged = stage_upload(
                file.file, config.upload_dir, file.filename, settings.max_file_size
            )
        except ValidationError as e:
            progress_tracker.finish(import_id, "Failed")
            return _upload_rejected(e, file.filename)
        background_tasks.add_task(
            _run_background_import, staged, chat_id, user_id, settings, import_id
        )
        return JSONResponse(
            status_code=202,
            content={"importId": import_id, "status": LedgerStatus.PENDING.value},
        )

    try:
        with staged_upload(
            file.file, config.upload_dir, file.filename, settings.max_file_size
        ) as staged:
            db = _open_db()
            try:
                report = ImportService(db.connection, settings).import_file(
                    staged.path,
                    chat_id,
                    user_id,
                    file_name=file.filename,
                    on_progress=progress_tracker.callback(import_id),
                    import_id=import_id,
                )
            finally:
                db.close()
    except ValidationError as e:
        progress_tracker.finish(import_id, "Failed")
        return _upload_rejected(e, file.filename)
    except HTTPException:
        raise
    except Exception:
        logger.exception(f"Import failed for chat {chat_id}")
        progress_tracker.finish(import_id, "Failed")
        return JSONResponse(status_code=500, content=GENERIC_ERROR)

    progress_tracker.finish(import_id, report.status.value if report.status else "Failed")
    return _report_response(report)


@app.get("/chats/{chat_id}/imports")
def list_imports(chat_id: str) -> Dict[str, Any]:
    """List a chat's imports, newest first."""
    db = _open_db()
    try:
        entries = ImportService(db.connection).get_import_stats(chat_id)
        return {"imports": [entry.to_dict() for entry in entries]}
    finally:
        db.close()


@app.get("/imports/{import_id}/progress")
def import_progress(import_id: str) -> Dict[str, Any]:
    """Latest progress event for an import started by this process."""
    entry = progress_tracker.get(import_id)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No progress for import: {import_id}")
    return entry


@app.delete("/chats/{chat_id}/imports/{import_id}")
def rollback_import(chat_id: str, import_id: str) -> JSONResponse:
    """Roll back a finished import. Safe to repeat; 409 while it is still running."""
    db = _open_db()
    try:
        result = ImportService(db.connection).rollback_import(chat_id, import_id)
    except ImportNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ImportInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    finally:
        db.close()

    status_code = 200 if result.success else 503
    return JSONResponse(status_code=status_code, content={"rollback": result.to_dict()})


@app.post("/chats/{chat_id}/participants")
def add_participant(
    chat_id: str,
    display_name: str = Form(...),
    participant_id: Optional[str] = Form(None),
) -> Dict[str, Any]:
    """Add a participant that sender labels can resolve to."""
    db = _open_db()
    try:
        participant = SQLiteParticipantDirectory(db.connection).add_participant(
            chat_id, display_name, participant_id
        )
    except sqlite3.IntegrityError:
        raise HTTPException(
            status_code=409, detail=f"Participant already exists: {participant_id}"
        )
    finally:
        db.close()
    return {"id": participant.id, "displayName": participant.display_name}


@app.get("/chats/{chat_id}/participants")
def list_participants(chat_id: str) -> Dict[str, Any]:
    """List a chat's participants in resolution order."""
    db = _open_db()
    try:
        participants = SQLiteParticipantDirectory(db.connection).get_participants(chat_id)
    finally:
        db.close()
    return {
        "participants": [{"id": p.id, "displayName": p.display_name} for p in participants]
    }
