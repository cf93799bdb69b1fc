"""Project identity and the bounded, persisted map of assistant sessions."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from auto_resume.errors import ValidationError
from auto_resume.timeutils import from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

PROJECT_SLUG_MAX_LENGTH = 40
PROJECT_HASH_LENGTH = 6

_SLUG_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_-]+")
_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9_-]+-[0-9a-f]{6}$")
_SESSION_NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_PROJECT_ID_CACHE: dict[str, str] = {}


class SessionState(str, Enum):
    """Lifecycle of one project's assistant session."""

    STARTING = "starting"
    RUNNING = "running"
    USAGE_LIMITED = "usage_limited"
    RECOVERING = "recovering"
    ERROR = "error"
    TERMINATED = "terminated"


@dataclass(slots=True)
class SessionRecord:
    """Tracked session for one project."""

    project_id: str
    session_handle: str
    session_name: str
    project_path: str
    state: SessionState
    last_seen: datetime
    restart_count: int = 0
    recovery_count: int = 0
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "session_handle": self.session_handle,
            "session_name": self.session_name,
            "project_path": self.project_path,
            "state": self.state.value,
            "last_seen": to_iso(self.last_seen),
            "restart_count": self.restart_count,
            "recovery_count": self.recovery_count,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionRecord:
        return cls(
            project_id=str(data["project_id"]),
            session_handle=str(data["session_handle"]),
            session_name=str(data.get("session_name") or data["session_handle"]),
            project_path=str(data["project_path"]),
            state=SessionState(data["state"]),
            last_seen=from_iso(str(data["last_seen"])),
            restart_count=int(data.get("restart_count") or 0),
            recovery_count=int(data.get("recovery_count") or 0),
            note=str(data.get("note") or ""),
        )


def project_id(path: str | Path) -> str:
    """Stable id for a project directory: path slug plus a short path hash.

    Equal absolute paths always map to the same id; the hash suffix keeps
    paths whose slugs collide apart. Results are cached per process.
    """

    resolved = str(Path(path).expanduser().resolve())
    cached = _PROJECT_ID_CACHE.get(resolved)
    if cached is not None:
        return cached
    slug = _SLUG_UNSAFE_RE.sub("-", resolved).strip("-")
    slug = slug[-PROJECT_SLUG_MAX_LENGTH:].strip("-") or "root"
    digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:PROJECT_HASH_LENGTH]
    value = f"{slug}-{digest}"
    _PROJECT_ID_CACHE[resolved] = value
    return value


def validate_project_id(value: str) -> str:
    if not _PROJECT_ID_RE.match(value):
        raise ValidationError(f"Invalid project id: {value!r}")
    return value


def build_session_name(prefix: str, project: str) -> str:
    """Session name ``<prefix>-<project_id>``; rejects characters tmux treats specially."""

    name = f"{prefix}-{validate_project_id(project)}"
    if not _SESSION_NAME_RE.match(name):
        raise ValidationError(f"Invalid session name: {name!r}")
    return name


class SessionRegistry:
    """Bidirectional project <-> session map with least-recently-seen eviction.

    One JSON file per project lives in ``session_dir`` so a restarted process
    can rebuild the map with ``load()``.
    """

    def __init__(
        self,
        session_dir: Path,
        *,
        max_tracked_sessions: int = 50,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_dir = session_dir
        self.max_tracked_sessions = max_tracked_sessions
        self._clock = clock or utc_now
        self._records: OrderedDict[str, SessionRecord] = OrderedDict()
        self._project_by_handle: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._records)

    def register(
        self,
        handle: str,
        name: str,
        path: str | Path,
        project: str | None = None,
        *,
        state: SessionState = SessionState.STARTING,
    ) -> SessionRecord:
        """Track ``handle`` as the session for ``project`` (derived from ``path`` if omitted)."""

        resolved_project = validate_project_id(project or project_id(path))
        previous = self._records.get(resolved_project)
        if previous is not None and previous.session_handle != handle:
            self._project_by_handle.pop(previous.session_handle, None)

        record = SessionRecord(
            project_id=resolved_project,
            session_handle=handle,
            session_name=name,
            project_path=str(Path(path).expanduser().resolve()),
            state=state,
            last_seen=self._clock(),
            restart_count=previous.restart_count if previous else 0,
            recovery_count=previous.recovery_count if previous else 0,
        )
        self._records[resolved_project] = record
        self._records.move_to_end(resolved_project)
        self._project_by_handle[handle] = resolved_project
        self._evict_over_bound()
        self.persist(resolved_project)
        logger.info(
            "Session registered: project_id=%s handle=%s state=%s",
            resolved_project,
            handle,
            state.value,
        )
        return record

    def find_by_project(self, project: str) -> str | None:
        record = self._records.get(project)
        return record.session_handle if record is not None else None

    def find_by_handle(self, handle: str) -> str | None:
        return self._project_by_handle.get(handle)

    def get(self, project: str) -> SessionRecord | None:
        return self._records.get(project)

    def records(self) -> list[SessionRecord]:
        return list(self._records.values())

    def touch(self, project: str) -> None:
        record = self._require(project)
        record.last_seen = self._clock()
        self._records.move_to_end(project)

    def update_state(self, project: str, state: SessionState, note: str = "") -> SessionRecord:
        record = self._require(project)
        if record.state != state:
            logger.info(
                "Session %s: %s -> %s%s",
                project,
                record.state.value,
                state.value,
                f" ({note})" if note else "",
            )
        record.state = state
        record.note = note
        record.last_seen = self._clock()
        self._records.move_to_end(project)
        self.persist(project)
        return record

    def increment_restart(self, project: str) -> int:
        record = self._require(project)
        record.restart_count += 1
        self.persist(project)
        return record.restart_count

    def increment_recovery(self, project: str) -> int:
        record = self._require(project)
        record.recovery_count += 1
        self.persist(project)
        return record.recovery_count

    def reset_recovery(self, project: str) -> None:
        record = self._require(project)
        if record.recovery_count:
            record.recovery_count = 0
            self.persist(project)

    def remove(self, project: str) -> None:
        record = self._records.pop(project, None)
        if record is None:
            return
        self._project_by_handle.pop(record.session_handle, None)
        try:
            self._file_for(project).unlink()
        except FileNotFoundError:
            pass
        logger.info("Session removed: project_id=%s", project)

    def cleanup_inactive(self, *, max_age_seconds: int) -> list[str]:
        """Drop terminated or errored sessions not seen within ``max_age_seconds``."""

        cutoff = self._clock() - timedelta(seconds=max_age_seconds)
        stale = [
            record.project_id
            for record in self._records.values()
            if record.last_seen < cutoff
            and record.state in {SessionState.TERMINATED, SessionState.ERROR}
        ]
        for project in stale:
            self.remove(project)
        return stale

    def load(self) -> int:
        """Rebuild the in-memory map from session files; returns records loaded."""

        self._records.clear()
        self._project_by_handle.clear()
        if not self.session_dir.is_dir():
            return 0
        loaded: list[SessionRecord] = []
        for path in sorted(self.session_dir.glob("*.json")):
            try:
                loaded.append(SessionRecord.from_dict(json.loads(path.read_text("utf-8"))))
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
                logger.warning("Ignoring unreadable session file %s: %s", path, error)
        for record in sorted(loaded, key=lambda item: item.last_seen):
            self._records[record.project_id] = record
            self._project_by_handle[record.session_handle] = record.project_id
        self._evict_over_bound()
        return len(self._records)

    def persist(self, project: str) -> None:
        record = self._records.get(project)
        if record is None:
            return
        target = self._file_for(project)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=target.parent, prefix=".session_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record.to_dict(), handle, indent=2)
            os.replace(temp_path, target)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def persist_all(self) -> None:
        for project in list(self._records):
            self.persist(project)

    def _file_for(self, project: str) -> Path:
        return self.session_dir / f"{validate_project_id(project)}.json"

    def _require(self, project: str) -> SessionRecord:
        record = self._records.get(project)
        if record is None:
            raise KeyError(f"Unknown project session: {project}")
        return record

    def _evict_over_bound(self) -> None:
        while self.max_tracked_sessions > 0 and len(self._records) > self.max_tracked_sessions:
            evicted_project, evicted = self._records.popitem(last=False)
            self._project_by_handle.pop(evicted.session_handle, None)
            logger.info(
                "Evicted least recently seen session: project_id=%s handle=%s",
                evicted_project,
                evicted.session_handle,
            )
