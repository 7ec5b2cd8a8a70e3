"""
Error taxonomy for the importer.

Only StorageError, TransientWriteError, ImportNotFoundError and
ImportInProgressError are raised across module boundaries. Validation
problems, row-level parse failures, resolution ambiguities and rollback
failures are returned as data.
"""

from typing import Optional


class ChatImportError(Exception):
    """Base class for importer errors."""


class ConfigError(ChatImportError, ValueError):
    """Invalid import settings supplied at an entry point."""


class ValidationError(ChatImportError):
    """The file cannot be imported (size, encoding, layout, ...)."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason


class ParseError(ChatImportError):
    """A single row could not be normalized. Accumulated, never raised to callers."""

    def __init__(self, reason: str, message: str = ""):
        super().__init__(message or reason)
        self.reason = reason


class ResolutionAmbiguity(ChatImportError):
    """More than one participant matched a sender label equally well."""

    def __init__(self, label: str, candidates: list, chosen: str):
        super().__init__(f"Sender '{label}' matched {len(candidates)} participants")
        self.label = label
        self.candidates = candidates
        self.chosen = chosen


class TransientWriteError(ChatImportError):
    """A batch write failed in a way that is worth retrying (lock, busy)."""


class StorageError(ChatImportError):
    """The persistent store is unusable. Halts batch scheduling."""


class RollbackError(ChatImportError):
    """Compensating deletion failed. Safe to retry because rollback is idempotent."""

    def __init__(self, import_id: str, cause: Optional[BaseException] = None):
        super().__init__(f"Rollback of import {import_id} failed: {cause}")
        self.import_id = import_id
        self.cause = cause


class ImportNotFoundError(ChatImportError):
    """No ledger entry exists for the (chat, import) pair."""

    def __init__(self, chat_id: str, import_id: str):
        super().__init__(f"Import {import_id} not found for chat {chat_id}")
        self.chat_id = chat_id
        self.import_id = import_id


class ImportInProgressError(ChatImportError):
    """Rollback requested while the import is still Pending or Processing."""

    def __init__(self, import_id: str, status: str):
        super().__init__(f"Import {import_id} is still {status}; roll back after it finishes")
        self.import_id = import_id
        self.status = status
