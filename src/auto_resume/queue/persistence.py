"""Atomic JSON persistence and backup snapshots for the queue document."""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from auto_resume.errors import CorruptStateError
from auto_resume.queue.models import QueueDocument
from auto_resume.timeutils import utc_now

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".auto_resume"
QUEUE_FILE_NAME = "task-queue.json"
LOCK_FILE_NAME = ".queue.lock"
PAUSE_MARKER_NAME = "usage-limit-pause.marker"

_BACKUP_STAMP_FORMAT = "%Y%m%d-%H%M%S-%f"
_BACKUP_NAME_RE = re.compile(r"^backup-(\d{8}-\d{6}-\d{6})-([A-Za-z0-9_-]+)\.json$")
_LABEL_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_-]+")


@dataclass(slots=True, frozen=True)
class QueuePaths:
    """File layout of one project's queue state."""

    queue_dir: Path

    @property
    def queue_file(self) -> Path:
        return self.queue_dir / QUEUE_FILE_NAME

    @property
    def backup_dir(self) -> Path:
        return self.queue_dir / "backups"

    @property
    def lock_file(self) -> Path:
        return self.queue_dir / LOCK_FILE_NAME

    @property
    def pause_marker(self) -> Path:
        return self.queue_dir / PAUSE_MARKER_NAME

    @classmethod
    def for_project(cls, project_dir: Path) -> QueuePaths:
        return cls(queue_dir=project_dir.resolve() / STATE_DIR_NAME / "queue")


def read_document(path: Path) -> QueueDocument:
    """Load the queue document; a missing file yields an empty document.

    Raises:
        CorruptStateError: the file exists but is not a valid queue document.
    """

    try:
        raw = path.read_text("utf-8")
    except FileNotFoundError:
        return QueueDocument.empty()
    except OSError as error:
        raise CorruptStateError(
            f"Cannot read queue file {path}: {error}",
            path=str(path),
        ) from error

    if not raw.strip():
        raise CorruptStateError(f"Queue file is empty: {path}", path=str(path))
    try:
        return QueueDocument.from_dict(json.loads(raw))
    except json.JSONDecodeError as error:
        raise CorruptStateError(
            f"Queue file is not valid JSON: {path} ({error.msg} at line {error.lineno})",
            path=str(path),
        ) from error
    except (KeyError, TypeError, ValueError) as error:
        raise CorruptStateError(
            f"Queue file failed schema validation: {path} ({error})",
            path=str(path),
        ) from error


def write_document(path: Path, document: QueueDocument) -> None:
    """Write the document atomically via temp file + rename in the same directory."""

    path.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(document.to_dict(), indent=2, ensure_ascii=False)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".queue_", suffix=".json.tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def write_backup(
    backup_dir: Path,
    document: QueueDocument,
    *,
    label: str,
    now: datetime | None = None,
) -> Path:
    """Write an immutable, sortable snapshot and return its path."""

    moment = (now or utc_now()).astimezone(UTC)
    safe_label = _LABEL_UNSAFE_RE.sub("-", label).strip("-") or "manual"
    target = backup_dir / f"backup-{moment.strftime(_BACKUP_STAMP_FORMAT)}-{safe_label}.json"
    counter = 1
    while target.exists():
        target = backup_dir / (
            f"backup-{moment.strftime(_BACKUP_STAMP_FORMAT)}-{safe_label}-{counter}.json"
        )
        counter += 1
    write_document(target, document)
    logger.debug("Queue backup written: %s", target)
    return target


def list_backups(backup_dir: Path) -> list[Path]:
    """Return snapshot paths, oldest first."""

    if not backup_dir.is_dir():
        return []
    return sorted(
        path
        for path in backup_dir.iterdir()
        if path.is_file() and _BACKUP_NAME_RE.match(path.name)
    )


def backup_created_at(path: Path) -> datetime:
    match = _BACKUP_NAME_RE.match(path.name)
    if match is not None:
        return datetime.strptime(match.group(1), _BACKUP_STAMP_FORMAT).replace(tzinfo=UTC)
    return datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)


def cleanup_backups(
    backup_dir: Path,
    *,
    retention_days: int,
    now: datetime | None = None,
) -> int:
    """Delete snapshots older than the retention window; return how many were removed."""

    cutoff = (now or utc_now()) - timedelta(days=retention_days)
    removed = 0
    for path in list_backups(backup_dir):
        if backup_created_at(path) >= cutoff:
            continue
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        removed += 1
    if removed:
        logger.info("Removed %d queue backups older than %d days", removed, retention_days)
    return removed
