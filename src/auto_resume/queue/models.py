"""Domain models for the persisted task queue document."""

from __future__ import annotations

import json
import random
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from auto_resume.errors import ValidationError
from auto_resume.timeutils import from_iso, to_iso, utc_now

QUEUE_DOCUMENT_VERSION = "2.0.0"

_TASK_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_TASK_ID_MAX_LENGTH = 128


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class TaskType(str, Enum):
    """Kinds of work accepted by the queue."""

    CUSTOM = "custom"
    GITHUB_ISSUE = "github_issue"
    GITHUB_PR = "github_pr"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT})

# Terminal -> pending only goes through TaskQueue.requeue.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {
            TaskStatus.COMPLETED,
            TaskStatus.FAILED,
            TaskStatus.TIMEOUT,
            TaskStatus.PENDING,
        },
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.TIMEOUT: frozenset(),
}

_TASK_ID_PREFIXES = {
    TaskType.CUSTOM: "task",
    TaskType.GITHUB_ISSUE: "issue",
    TaskType.GITHUB_PR: "pr",
}

_TASK_FIELDS = frozenset(
    {
        "id",
        "type",
        "status",
        "priority",
        "payload",
        "created_at",
        "last_modified",
        "retry_count",
        "last_error",
        "clear_context",
        "timeout_seconds",
        "limit_detections",
        "history",
        "errors",
        "completed_at",
        "tracker",
    },
)
_METADATA_FIELDS = frozenset(
    {"created_at", "last_modified", "counts", "paused", "pause_reason", "paused_at"},
)
_DOCUMENT_FIELDS = frozenset({"version", "timestamp", "tasks", "metadata"})


@dataclass(slots=True)
class TaskHistoryEntry:
    """One recorded status change."""

    at: datetime
    status_from: TaskStatus | None
    status_to: TaskStatus
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": to_iso(self.at),
            "status_from": self.status_from.value if self.status_from else None,
            "status_to": self.status_to.value,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskHistoryEntry:
        status_from = data.get("status_from")
        return cls(
            at=from_iso(str(data["at"])),
            status_from=TaskStatus(status_from) if status_from else None,
            status_to=TaskStatus(data["status_to"]),
            note=str(data.get("note") or ""),
        )


@dataclass(slots=True)
class TaskErrorEntry:
    """One recorded execution error."""

    at: datetime
    message: str
    code: str

    def to_dict(self) -> dict[str, Any]:
        return {"at": to_iso(self.at), "message": self.message, "code": self.code}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskErrorEntry:
        return cls(
            at=from_iso(str(data["at"])),
            message=str(data.get("message") or ""),
            code=str(data.get("code") or "generic"),
        )


@dataclass(slots=True)
class Task:
    """Queued unit of work as stored in the queue document."""

    task_id: str
    task_type: TaskType
    status: TaskStatus
    priority: int
    payload: dict[str, Any]
    created_at: datetime
    last_modified: datetime
    retry_count: int = 0
    last_error: str | None = None
    clear_context: bool | None = None
    timeout_seconds: int | None = None
    limit_detections: int = 0
    history: list[TaskHistoryEntry] = field(default_factory=list)
    errors: list[TaskErrorEntry] = field(default_factory=list)
    completed_at: datetime | None = None
    tracker: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def description(self) -> str:
        value = self.payload.get("description")
        if isinstance(value, str) and value.strip():
            return value.strip()
        number = self.payload.get("number")
        if self.task_type == TaskType.GITHUB_ISSUE:
            return f"GitHub issue #{number}"
        if self.task_type == TaskType.GITHUB_PR:
            return f"GitHub pull request #{number}"
        return self.task_id

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk JSON shape, unknown fields included."""

        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "id": self.task_id,
                "type": self.task_type.value,
                "status": self.status.value,
                "priority": self.priority,
                "payload": self.payload,
                "created_at": to_iso(self.created_at),
                "last_modified": to_iso(self.last_modified),
                "retry_count": self.retry_count,
                "last_error": self.last_error,
                "clear_context": self.clear_context,
                "timeout_seconds": self.timeout_seconds,
                "limit_detections": self.limit_detections,
                "history": [entry.to_dict() for entry in self.history],
                "errors": [entry.to_dict() for entry in self.errors],
                "completed_at": to_iso(self.completed_at) if self.completed_at else None,
                "tracker": self.tracker,
            },
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        """Parse one task entry; raises ``ValueError``/``KeyError`` on bad shape."""

        if not isinstance(data, dict):
            raise ValueError(f"Task entry must be an object, got {type(data).__name__}")
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValueError(f"Task {data.get('id')!r} payload must be an object")
        created_at = from_iso(str(data["created_at"]))
        completed_at = data.get("completed_at")
        clear_context = data.get("clear_context")
        timeout_seconds = data.get("timeout_seconds")
        return cls(
            task_id=validate_task_id(str(data["id"])),
            task_type=TaskType(data["type"]),
            status=TaskStatus(data["status"]),
            priority=int(data["priority"]),
            payload=payload,
            created_at=created_at,
            last_modified=from_iso(str(data.get("last_modified") or data["created_at"])),
            retry_count=int(data.get("retry_count") or 0),
            last_error=data.get("last_error"),
            clear_context=bool(clear_context) if clear_context is not None else None,
            timeout_seconds=int(timeout_seconds) if timeout_seconds is not None else None,
            limit_detections=int(data.get("limit_detections") or 0),
            history=[TaskHistoryEntry.from_dict(item) for item in data.get("history") or []],
            errors=[TaskErrorEntry.from_dict(item) for item in data.get("errors") or []],
            completed_at=from_iso(str(completed_at)) if completed_at else None,
            tracker=data.get("tracker"),
            extra={key: value for key, value in data.items() if key not in _TASK_FIELDS},
        )


@dataclass(slots=True)
class QueueMetadata:
    """Document-level bookkeeping."""

    created_at: datetime
    last_modified: datetime
    counts: dict[str, int] = field(default_factory=dict)
    paused: bool = False
    pause_reason: str | None = None
    paused_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class QueueDocument:
    """Whole queue state for one project."""

    version: str
    tasks: list[Task]
    metadata: QueueMetadata
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def empty(cls, *, now: datetime | None = None) -> QueueDocument:
        created = now or utc_now()
        return cls(
            version=QUEUE_DOCUMENT_VERSION,
            tasks=[],
            metadata=QueueMetadata(created_at=created, last_modified=created),
        )

    def find(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def counts(self) -> dict[str, int]:
        result = {status.value: 0 for status in TaskStatus}
        for task in self.tasks:
            result[task.status.value] += 1
        result["total"] = len(self.tasks)
        return result

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-ready dict with refreshed counts."""

        self.metadata.counts = self.counts()
        metadata: dict[str, Any] = dict(self.metadata.extra)
        metadata.update(
            {
                "created_at": to_iso(self.metadata.created_at),
                "last_modified": to_iso(self.metadata.last_modified),
                "counts": self.metadata.counts,
                "paused": self.metadata.paused,
                "pause_reason": self.metadata.pause_reason,
                "paused_at": (
                    to_iso(self.metadata.paused_at) if self.metadata.paused_at else None
                ),
            },
        )
        data: dict[str, Any] = dict(self.extra)
        data.update(
            {
                "version": self.version,
                "timestamp": to_iso(self.metadata.last_modified),
                "tasks": [task.to_dict() for task in self.tasks],
                "metadata": metadata,
            },
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueDocument:
        """Parse a document; raises ``ValueError``/``KeyError``/``TypeError`` on bad shape."""

        if not isinstance(data, dict):
            raise ValueError("Queue document root must be an object")
        raw_tasks = data.get("tasks")
        if not isinstance(raw_tasks, list):
            raise ValueError("Queue document 'tasks' must be a list")
        raw_metadata = data.get("metadata") or {}
        if not isinstance(raw_metadata, dict):
            raise ValueError("Queue document 'metadata' must be an object")

        tasks = [Task.from_dict(item) for item in raw_tasks]
        seen: set[str] = set()
        for task in tasks:
            if task.task_id in seen:
                raise ValueError(f"Duplicate task id in queue document: {task.task_id}")
            seen.add(task.task_id)

        fallback = data.get("timestamp")
        created_raw = raw_metadata.get("created_at") or fallback
        modified_raw = raw_metadata.get("last_modified") or fallback
        now = utc_now()
        paused_at = raw_metadata.get("paused_at")
        metadata = QueueMetadata(
            created_at=from_iso(str(created_raw)) if created_raw else now,
            last_modified=from_iso(str(modified_raw)) if modified_raw else now,
            counts=dict(raw_metadata.get("counts") or {}),
            paused=bool(raw_metadata.get("paused", False)),
            pause_reason=raw_metadata.get("pause_reason"),
            paused_at=from_iso(str(paused_at)) if paused_at else None,
            extra={
                key: value for key, value in raw_metadata.items() if key not in _METADATA_FIELDS
            },
        )
        return cls(
            version=str(data.get("version") or QUEUE_DOCUMENT_VERSION),
            tasks=tasks,
            metadata=metadata,
            extra={key: value for key, value in data.items() if key not in _DOCUMENT_FIELDS},
        )


def validate_task_id(value: str) -> str:
    """Return ``value`` if it is a safe task id, else raise ``ValueError``."""

    if not value or len(value) > _TASK_ID_MAX_LENGTH or not _TASK_ID_RE.match(value):
        raise ValueError(f"Invalid task id: {value!r}")
    return value


def build_task_id(
    task_type: TaskType,
    *,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> str:
    """Build ``<prefix>-<unix-ts>-<rand>`` id for a new task."""

    moment = now or utc_now()
    suffix = (rng or random).randrange(10_000)  # noqa: S311
    prefix = _TASK_ID_PREFIXES[task_type]
    return validate_task_id(f"{prefix}-{int(moment.timestamp())}-{suffix:04d}")


def validate_task_payload(task_type: TaskType, payload: object) -> dict[str, Any]:
    """Check payload shape per task type; raise ``ValidationError`` when malformed."""

    if not isinstance(payload, dict):
        raise ValidationError(f"Task payload must be a mapping, got {type(payload).__name__}")
    try:
        json.dumps(payload)
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Task payload is not JSON-serializable: {error}") from error

    if task_type == TaskType.CUSTOM:
        description = payload.get("description")
        if not isinstance(description, str) or not description.strip():
            raise ValidationError("Custom task payload requires a non-empty 'description'.")
        return payload

    number = payload.get("number")
    if isinstance(number, bool) or not isinstance(number, int) or number <= 0:
        raise ValidationError(
            f"{task_type.value} payload requires a positive integer 'number', got {number!r}",
        )
    return payload


def parse_task_type(value: str | TaskType) -> TaskType:
    try:
        return TaskType(value)
    except ValueError as error:
        allowed = ", ".join(item.value for item in TaskType)
        raise ValidationError(f"Unknown task type {value!r}; expected one of: {allowed}") from error


def parse_task_status(value: str | TaskStatus) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError as error:
        allowed = ", ".join(item.value for item in TaskStatus)
        raise ValidationError(f"Unknown task status {value!r}; expected one of: {allowed}") from error
