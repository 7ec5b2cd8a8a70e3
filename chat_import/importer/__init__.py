"""
Chat export importer.

Turns third-party chat export files into committed conversation history,
one tagged import at a time.

Architecture Overview:
    export.csv
    ├── detector.py     validate + detect layout (formats.py templates)
    ├── parser.py       stream rows → NormalizedMessage (multilingual.py)
    ├── resolver.py     sender labels → participants
    ├── coordinator.py  tagged atomic batches, retries, rollback
    └── ledger.py       import_ledger / import_batch (schema.py, store.py)

service.py runs the whole flow. Import it (and detector, parser,
coordinator) from its module; this package only re-exports the leaf
modules that do not depend on chat_import.config.
"""

from chat_import.importer.errors import (
    ChatImportError,
    ConfigError,
    ImportNotFoundError,
    ParseError,
    ResolutionAmbiguity,
    RollbackError,
    StorageError,
    TransientWriteError,
    ValidationError,
)
from chat_import.importer.models import (
    BatchStatus,
    ImportLedgerEntry,
    LedgerStatus,
    NormalizedMessage,
    Participant,
    ScriptClass,
    SourceFormat,
    SystemGeneratedMessage,
    UserMessage,
)
from chat_import.importer.multilingual import classify_script, normalize_text
from chat_import.importer.resolver import resolve

__all__ = [
    # Errors
    "ChatImportError",
    "ConfigError",
    "ImportNotFoundError",
    "ParseError",
    "ResolutionAmbiguity",
    "RollbackError",
    "StorageError",
    "TransientWriteError",
    "ValidationError",
    # Models
    "BatchStatus",
    "ImportLedgerEntry",
    "LedgerStatus",
    "NormalizedMessage",
    "Participant",
    "ScriptClass",
    "SourceFormat",
    "SystemGeneratedMessage",
    "UserMessage",
    # Pure functions
    "classify_script",
    "normalize_text",
    "resolve",
]
