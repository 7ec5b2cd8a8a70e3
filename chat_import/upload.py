"""
Upload staging for chat export files.

Uploaded exports are copied into a private staging directory under a
generated name, imported from there, and removed afterwards. The import
pipeline only ever reads staged copies, never the caller's stream.

Staging Strategy:
    1. Stream the upload into upload_YYYYmmdd_HHMMSS_<token><ext>
    2. Stop and discard the copy as soon as it exceeds max_size
    3. Hand the staged path to the importer
    4. Delete the staged file on every exit path (success, failure, error)

Files left behind by a crashed process are removed by cleanup_stale_uploads.
"""

from __future__ import annotations

import logging
import re
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Union

from chat_import.importer.detector import FILE_TOO_LARGE
from chat_import.importer.errors import ValidationError

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024

# Pattern to parse staged filenames: upload_YYYYmmdd_HHMMSS_<token>.<ext>
_STAGED_PATTERN = re.compile(r"^upload_(\d{8})_(\d{6})_([0-9a-f]{12})(\.[A-Za-z0-9]+)?$")
_SAFE_SUFFIX = re.compile(r"^\.[A-Za-z0-9]{1,8}$")


@dataclass(frozen=True)
class StagedUpload:
    """An uploaded export copied into the staging directory."""

    path: Path
    original_name: str
    size: int
    created_at: datetime


@dataclass(frozen=True)
class StagedFileInfo:
    """Information about a file found in the staging directory."""

    path: Path
    created_at: datetime

    @property
    def age_hours(self) -> float:
        """Get the age of the staged file in hours."""
        delta = datetime.now() - self.created_at
        return delta.total_seconds() / (60 * 60)


def _safe_suffix(original_name: str) -> str:
    """Keep the upload's extension only if it is short and alphanumeric."""
    suffix = Path(original_name).suffix.lower()
    return suffix if _SAFE_SUFFIX.match(suffix) else ""


def _staged_filename(original_name: str, created_at: datetime) -> str:
    """Generate a unique staging filename from the upload's name and time."""
    ts = created_at.strftime("%Y%m%d_%H%M%S")
    token = uuid.uuid4().hex[:12]
    return f"upload_{ts}_{token}{_safe_suffix(original_name)}"


def _parse_staged_filename(path: Path) -> Optional[StagedFileInfo]:
    """
    Parse a staged filename to extract its creation time.

    Args:
        path: Path of a file in the staging directory.

    Returns:
        StagedFileInfo if the name matches the staging pattern, None otherwise.
    """
    match = _STAGED_PATTERN.match(path.name)
    if not match:
        return None

    try:
        created_at = datetime.strptime(f"{match.group(1)}_{match.group(2)}", "%Y%m%d_%H%M%S")
    except ValueError:
        return None
    return StagedFileInfo(path=path, created_at=created_at)


def stage_upload(
    source: Union[BinaryIO, Path, str],
    upload_dir: Path,
    original_name: Optional[str] = None,
    max_size: Optional[int] = None,
) -> StagedUpload:
    """
    Copy an upload into the staging directory.

    Args:
        source: Binary file object (e.g. an UploadFile's file) or a path.
        upload_dir: Staging directory; created if missing.
        original_name: Name the client gave the file.
        max_size: Optional size limit in bytes.

    Returns:
        StagedUpload describing the copy.

    Raises:
        ValidationError: If the upload exceeds max_size. Nothing is left behind.
        OSError: If the copy cannot be written.
    """
    upload_dir = Path(upload_dir).expanduser().resolve()
    upload_dir.mkdir(parents=True, exist_ok=True)

    if isinstance(source, (str, Path)):
        source_path = Path(source)
        original_name = original_name or source_path.name
        with open(source_path, "rb") as f:
            return stage_upload(f, upload_dir, original_name, max_size)

    original_name = original_name or "upload.csv"
    created_at = datetime.now()
    staged_path = upload_dir / _staged_filename(original_name, created_at)

    size = 0
    try:
        with open(staged_path, "wb") as out:
            while True:
                chunk = source.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                size += len(chunk)
                if max_size is not None and size > max_size:
                    raise ValidationError(
                        FILE_TOO_LARGE,
                        f"Upload {original_name} exceeds the {max_size} byte limit",
                    )
                out.write(chunk)
    except BaseException:
        staged_path.unlink(missing_ok=True)
        raise

    logger.info(f"Staged upload {original_name} ({size} bytes) as {staged_path.name}")
    return StagedUpload(
        path=staged_path, original_name=original_name, size=size, created_at=created_at
    )


def discard_upload(staged: StagedUpload) -> bool:
    """
    Delete a staged upload.

    Returns:
        True if a file was removed, False if it was already gone.
    """
    try:
        staged.path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Failed to delete staged upload {staged.path}: {e}")
        return False
    logger.debug(f"Deleted staged upload: {staged.path.name}")
    return True


@contextmanager
def staged_upload(
    source: Union[BinaryIO, Path, str],
    upload_dir: Path,
    original_name: Optional[str] = None,
    max_size: Optional[int] = None,
) -> Iterator[StagedUpload]:
    """
    Stage an upload for the duration of a with-block.

    The staged copy is deleted when the block exits, however it exits.

    Example:
        with staged_upload(upload.file, config.upload_dir, upload.filename) as staged:
            service.import_file(staged.path, chat_id, user_id)
    """
    staged = stage_upload(source, upload_dir, original_name, max_size)
    try:
        yield staged
    finally:
        discard_upload(staged)


def list_staged_uploads(upload_dir: Path) -> List[StagedFileInfo]:
    """
    List staged files, sorted by creation time (newest first).

    Files that do not follow the staging name pattern are ignored.
    """
    upload_dir = Path(upload_dir).expanduser().resolve()
    if not upload_dir.exists():
        return []

    staged: List[StagedFileInfo] = []
    for f in upload_dir.iterdir():
        if not f.is_file():
            continue
        info = _parse_staged_filename(f)
        if info:
            staged.append(info)

    staged.sort(key=lambda s: s.created_at, reverse=True)
    return staged


def cleanup_stale_uploads(upload_dir: Path, max_age_hours: float = 24.0) -> List[Path]:
    """
    Remove staged files older than max_age_hours.

    Args:
        upload_dir: Staging directory.
        max_age_hours: Files older than this are deleted.

    Returns:
        List of paths that were deleted.
    """
    deleted: List[Path] = []
    for info in list_staged_uploads(upload_dir):
        if info.age_hours <= max_age_hours:
            continue
        try:
            info.path.unlink()
            deleted.append(info.path)
            logger.info(f"Deleted stale upload: {info.path.name}")
        except OSError as e:
            logger.warning(f"Failed to delete stale upload {info.path}: {e}")
    return deleted

