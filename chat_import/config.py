"""
Configuration module for the chat export importer.

Handles database and staging paths plus the validated import settings.

Paths:
    - chat_import.db: messages, participants and the import ledger
    - uploads/: staging directory for uploaded export files

Environment Variables:
    CHAT_IMPORT_DB_PATH: Override the database path.
    CHAT_IMPORT_UPLOAD_DIR: Override the staging directory.
    CHAT_IMPORT_BATCH_SIZE, CHAT_IMPORT_MAX_FILE_SIZE, CHAT_IMPORT_ENCODING,
    CHAT_IMPORT_MIN_PARSE_SUCCESS_RATIO, CHAT_IMPORT_MAX_EDIT_DISTANCE,
    CHAT_IMPORT_TIMEZONE: Defaults for ImportSettings.from_env().
"""

import codecs
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from chat_import.importer.errors import ConfigError
from chat_import.importer.models import SourceFormat


class Config:
    """Configuration class for the chat export importer."""

    # Default path for the import database
    DEFAULT_DATA_PATH = Path.home() / ".chat_import"
    DEFAULT_DB_NAME = "chat_import.db"
    DEFAULT_UPLOAD_DIR_NAME = "uploads"

    def __init__(
        self,
        db_path: Optional[str] = None,
        upload_dir: Optional[str] = None,
    ):
        """
        Initialize configuration.

        Args:
            db_path: Optional path to the import database. Falls back to
                    CHAT_IMPORT_DB_PATH, then ~/.chat_import/chat_import.db
            upload_dir: Optional staging directory for uploads. Falls back to
                    CHAT_IMPORT_UPLOAD_DIR, then ~/.chat_import/uploads
        """
        db_path = db_path or os.getenv("CHAT_IMPORT_DB_PATH")
        self._db_path: Path
        if db_path:
            self._db_path = Path(db_path)
        else:
            self._db_path = self.DEFAULT_DATA_PATH / self.DEFAULT_DB_NAME

        upload_dir = upload_dir or os.getenv("CHAT_IMPORT_UPLOAD_DIR")
        self._upload_dir: Path
        if upload_dir:
            self._upload_dir = Path(upload_dir)
        else:
            self._upload_dir = self._db_path.parent / self.DEFAULT_UPLOAD_DIR_NAME

    @property
    def db_path(self) -> Path:
        """Get the import database path."""
        return self._db_path

    @property
    def db_path_str(self) -> str:
        """Get the import database path as a string."""
        return str(self._db_path)

    @property
    def upload_dir(self) -> Path:
        """Get the upload staging directory."""
        return self._upload_dir

    def validate(self) -> bool:
        """
        Validate that the database exists and is readable.

        Returns:
            True if the database exists and is readable, False otherwise.
        """
        return self._db_path.exists() and os.access(self._db_path, os.R_OK)

    def ensure_data_dir(self) -> None:
        """
        Ensure the database and staging directories exist.

        Creates them if they don't exist.
        """
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._upload_dir.mkdir(parents=True, exist_ok=True)


@dataclass(frozen=True)
class ImportSettings:
    """
    Validated settings for one import, built once at the entry point.

    Every field has an explicit default. Construction runs the range checks,
    so an ImportSettings instance is always valid.
    """

    batch_size: int = 1000
    max_file_size: int = 50 * 1024 * 1024
    max_preview_rows: int = 100
    encoding: str = "auto"
    legacy_encoding: str = "cp1252"
    format: Optional[SourceFormat] = None
    enable_rollback: bool = True
    min_parse_success_ratio: float = 0.8
    max_edit_distance: int = 2
    max_write_retries: int = 3
    retry_delay_seconds: float = 0.5
    progress_every: int = 500
    default_timezone: str = "UTC"
    allowed_extensions: Tuple[str, ...] = (".csv", ".txt", ".tsv")

    def __post_init__(self) -> None:
        _check_range("batch_size", self.batch_size, 1, 10_000)
        _check_range("max_preview_rows", self.max_preview_rows, 1, 1000)
        _check_range("min_parse_success_ratio", self.min_parse_success_ratio, 0.0, 1.0)
        _check_range("max_edit_distance", self.max_edit_distance, 0, 5)
        _check_range("max_write_retries", self.max_write_retries, 0, 10)

        if self.max_file_size < 1:
            raise ConfigError(f"max_file_size must be positive, got {self.max_file_size}")
        if self.retry_delay_seconds < 0:
            raise ConfigError(f"retry_delay_seconds must be >= 0, got {self.retry_delay_seconds}")
        if self.progress_every < 1:
            raise ConfigError(f"progress_every must be >= 1, got {self.progress_every}")

        if self.encoding != "auto":
            _check_codec("encoding", self.encoding)
        _check_codec("legacy_encoding", self.legacy_encoding)

        try:
            ZoneInfo(self.default_timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"Unknown timezone: {self.default_timezone}") from e

        if self.format is not None and not isinstance(self.format, SourceFormat):
            object.__setattr__(self, "format", _parse_format(self.format))

    @property
    def tzinfo(self) -> ZoneInfo:
        """Zone used for timestamps that carry no offset."""
        return ZoneInfo(self.default_timezone)

    def with_overrides(self, **overrides: Any) -> "ImportSettings":
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    @classmethod
    def from_request(
        cls,
        format: Optional[str] = None,
        encoding: Optional[str] = None,
        batch_size: Optional[Any] = None,
        enable_rollback: Optional[Any] = None,
        base: Optional["ImportSettings"] = None,
    ) -> "ImportSettings":
        """
        Build settings from loosely-typed request input.

        Args:
            format: Format name, or "auto"/empty for detection.
            encoding: Encoding name, or "auto"/empty.
            batch_size: Batch size as int or numeric string.
            enable_rollback: Bool or a "true"/"false" style string.
            base: Settings supplying every other field.

        Returns:
            Validated ImportSettings.

        Raises:
            ConfigError: If any value is invalid or out of range.
        """
        settings = base or cls()
        overrides: dict = {}

        if format and format.lower() != "auto":
            overrides["format"] = _parse_format(format)
        if encoding:
            overrides["encoding"] = encoding.strip().lower()
        if batch_size not in (None, ""):
            overrides["batch_size"] = _parse_int("batch_size", batch_size)
        if enable_rollback not in (None, ""):
            overrides["enable_rollback"] = _parse_bool("enable_rollback", enable_rollback)

        return settings.with_overrides(**overrides)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ImportSettings":
        """
        Build settings from CHAT_IMPORT_* environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ).

        Returns:
            Validated ImportSettings.
        """
        environ = os.environ if environ is None else environ
        defaults = cls()
        values: dict = {}

        for f in fields(cls):
            raw = environ.get(f"CHAT_IMPORT_{f.name.upper()}")
            if raw is None or f.name in ("format", "allowed_extensions"):
                continue
            current = getattr(defaults, f.name)
            if isinstance(current, bool):
                values[f.name] = _parse_bool(f.name, raw)
            elif isinstance(current, int):
                values[f.name] = _parse_int(f.name, raw)
            elif isinstance(current, float):
                values[f.name] = _parse_float(f.name, raw)
            else:
                values[f.name] = raw

        timezone_name = environ.get("CHAT_IMPORT_TIMEZONE")
        if timezone_name:
            values["default_timezone"] = timezone_name

        return cls(**values)


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not low <= value <= high:
        raise ConfigError(f"{name} must be between {low} and {high}, got {value}")


def _check_codec(name: str, encoding: str) -> None:
    try:
        info = codecs.lookup(encoding)
    except LookupError as e:
        raise ConfigError(f"Unknown {name}: {encoding}") from e
    # rot13, base64, hex and friends are not bytes-to-str codecs
    if not getattr(info, "_is_text_encoding", True):
        raise ConfigError(f"{name} is not a text encoding: {encoding}")


def _parse_format(value: Any) -> SourceFormat:
    try:
        return SourceFormat(str(value).strip().lower())
    except ValueError as e:
        supported = ", ".join(f.value for f in SourceFormat)
        raise ConfigError(f"Unsupported format '{value}'. Supported: {supported}") from e


def _parse_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def _parse_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


# Global configuration instance
_config: Optional[Config] = None


def get_config(db_path: Optional[str] = None) -> Config:
    """
    Get or create the global configuration instance.

    Args:
        db_path: Optional path to the import database.

    Returns:
        Config instance.
    """
    global _config
    if _config is None or db_path is not None:
        _config = Config(db_path)
    return _config


def set_config(config: Config) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Config instance to use.
    """
    global _config
    _config = config
