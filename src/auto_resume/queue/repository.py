"""File-backed task queue with locked read-modify-write operations."""

from __future__ import annotations

import json
import logging
import random
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from auto_resume.errors import (
    CorruptStateError,
    InvalidTransitionError,
    TaskNotFoundError,
    ValidationError,
)
from auto_resume.queue.locking import QueueLock
from auto_resume.queue.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    QueueDocument,
    Task,
    TaskErrorEntry,
    TaskHistoryEntry,
    TaskStatus,
    TaskType,
    build_task_id,
    parse_task_status,
    parse_task_type,
    validate_task_id,
    validate_task_payload,
)
from auto_resume.queue.persistence import (
    QueuePaths,
    backup_created_at,
    cleanup_backups,
    list_backups,
    read_document,
    write_backup,
    write_document,
)
from auto_resume.timeutils import utc_now

logger = logging.getLogger(__name__)

_ID_GENERATION_ATTEMPTS = 100


@dataclass(slots=True)
class QueueStats:
    """Queue counters for CLI and monitor reporting."""

    counts: dict[str, int]
    paused: bool
    pause_reason: str | None


class TaskQueue:
    """Owns one project's queue document.

    Every mutating method takes the project lock, re-reads the document from
    disk, applies the change and writes it back before releasing the lock, so
    external writers between operations are never overwritten.
    """

    def __init__(  # noqa: PLR0913
        self,
        paths: QueuePaths,
        *,
        max_retries: int = 3,
        lock_timeout_seconds: float = 30.0,
        max_queue_size: int = 0,
        backup_retention_days: int = 30,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.paths = paths
        self.max_retries = max_retries
        self.max_queue_size = max_queue_size
        self.backup_retention_days = backup_retention_days
        self.lock = QueueLock(paths.lock_file, timeout_seconds=lock_timeout_seconds)
        self._clock = clock
        self._rng = rng or random.Random()  # noqa: S311

    @classmethod
    def for_project(cls, project_dir: Path, **kwargs: Any) -> TaskQueue:
        return cls(QueuePaths.for_project(project_dir), **kwargs)

    # -- persistence ---------------------------------------------------------

    def load(self) -> QueueDocument:
        """Read the current document; raises ``CorruptStateError`` when unreadable."""

        return read_document(self.paths.queue_file)

    def save(self, document: QueueDocument) -> None:
        """Replace the on-disk document with ``document`` atomically."""

        with self.lock.hold():
            document.metadata.last_modified = self._now()
            write_document(self.paths.queue_file, document)

    # -- submission ----------------------------------------------------------

    def add_task(  # noqa: PLR0913
        self,
        task_type: str | TaskType,
        priority: int,
        payload: dict[str, Any],
        *,
        clear_context: bool | None = None,
        timeout_seconds: int | None = None,
        task_id: str | None = None,
        tracker: dict[str, Any] | None = None,
    ) -> str:
        """Create a pending task and return its id."""

        resolved_type = parse_task_type(task_type)
        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 1:
            raise ValidationError(f"Task priority must be a positive integer, got {priority!r}")
        validated_payload = validate_task_payload(resolved_type, payload)
        if timeout_seconds is not None and (
            isinstance(timeout_seconds, bool)
            or not isinstance(timeout_seconds, int)
            or timeout_seconds <= 0
        ):
            raise ValidationError(f"Task timeout must be > 0 seconds, got {timeout_seconds!r}")
        if task_id is not None:
            try:
                validate_task_id(task_id)
            except ValueError as error:
                raise ValidationError(str(error)) from error

        with self._mutate() as document:
            now = self._now()
            existing = {task.task_id for task in document.tasks}
            if task_id is not None and task_id in existing:
                raise ValidationError(f"Task id already exists: {task_id}")
            new_id = task_id or self._unique_task_id(resolved_type, existing=existing, now=now)
            if self.max_queue_size > 0 and len(document.tasks) >= self.max_queue_size:
                _trim_to_size(document, max_size=self.max_queue_size - 1)
                if len(document.tasks) >= self.max_queue_size:
                    raise ValidationError(
                        f"Queue is full ({len(document.tasks)}/{self.max_queue_size} "
                        "active tasks).",
                    )
            task = Task(
                task_id=new_id,
                task_type=resolved_type,
                status=TaskStatus.PENDING,
                priority=priority,
                payload=validated_payload,
                created_at=now,
                last_modified=now,
                clear_context=clear_context,
                timeout_seconds=timeout_seconds,
                tracker=tracker,
                history=[
                    TaskHistoryEntry(
                        at=now,
                        status_from=None,
                        status_to=TaskStatus.PENDING,
                        note="created",
                    ),
                ],
            )
            document.tasks.append(task)

        logger.info(
            "Task added: task_id=%s type=%s priority=%d",
            new_id,
            resolved_type.value,
            priority,
        )
        return new_id

    # -- claiming and transitions -------------------------------------------

    def claim_next(self, status: str | TaskStatus = TaskStatus.PENDING) -> str | None:
        """Mark the most urgent task with ``status`` as in progress and return its id.

        Lowest priority value wins; ties go to the task added first.
        """

        source_status = parse_task_status(status)
        if TaskStatus.IN_PROGRESS not in ALLOWED_TRANSITIONS[source_status]:
            raise ValidationError(f"Tasks cannot be claimed from status={source_status.value}")

        with self.lock.hold():
            document = read_document(self.paths.queue_file)
            candidates = [
                (task.priority, index, task)
                for index, task in enumerate(document.tasks)
                if task.status == source_status
            ]
            if not candidates:
                return None
            _, _, task = min(candidates, key=lambda item: (item[0], item[1]))
            _apply_status(task, TaskStatus.IN_PROGRESS, note="claimed", now=self._now())
            self._write(document)

        logger.info("Task claimed: task_id=%s priority=%d", task.task_id, task.priority)
        return task.task_id

    def transition(
        self,
        task_id: str,
        new_status: str | TaskStatus,
        note: str = "",
    ) -> Task:
        """Move a task along the state machine, recording ``note`` in its history."""

        target = parse_task_status(new_status)
        with self._mutate() as document:
            task = _require_task(document, task_id)
            previous = task.status
            _apply_status(task, target, note=note, now=self._now())

        logger.info(
            "Task %s: %s -> %s%s",
            task_id,
            previous.value,
            target.value,
            f" ({note})" if note else "",
        )
        return task

    def requeue(self, task_id: str, note: str = "manual requeue") -> Task:
        """Return a terminal task to pending; the only way out of a terminal state."""

        with self._mutate() as document:
            task = _require_task(document, task_id)
            if task.status not in TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    task_id=task_id,
                    status_from=task.status.value,
                    status_to=TaskStatus.PENDING.value,
                )
            now = self._now()
            task.history.append(
                TaskHistoryEntry(
                    at=now,
                    status_from=task.status,
                    status_to=TaskStatus.PENDING,
                    note=note,
                ),
            )
            task.status = TaskStatus.PENDING
            task.completed_at = None
            task.retry_count = 0
            task.limit_detections = 0
            task.last_modified = now

        logger.info("Task re-queued: task_id=%s", task_id)
        return task

    def record_error(self, task_id: str, message: str, code: str = "generic") -> None:
        with self._mutate() as document:
            task = _require_task(document, task_id)
            _append_error(task, message=message, code=code, now=self._now())
        logger.warning("Task %s error [%s]: %s", task_id, code, message)

    def increment_retry(self, task_id: str) -> int:
        """Bump ``retry_count`` and return the new value."""

        with self._mutate() as document:
            task = _require_task(document, task_id)
            task.retry_count += 1
            task.last_modified = self._now()
            count = task.retry_count
        return count

    def check_retry_eligible(self, task_id: str) -> bool:
        task = self.get_task(task_id)
        return task.retry_count < self.max_retries

    def fail_attempt(
        self,
        task_id: str,
        *,
        message: str,
        code: str,
        timed_out: bool = False,
    ) -> TaskStatus:
        """Record a failed execution attempt and decide retry vs. final failure.

        Runs error recording, retry increment and the follow-up transition in a
        single lock acquisition. Returns the task's resulting status.
        """

        with self._mutate() as document:
            task = _require_task(document, task_id)
            now = self._now()
            _append_error(task, message=message, code=code, now=now)
            task.retry_count += 1
            task.limit_detections = 0
            if task.retry_count <= self.max_retries:
                target = TaskStatus.PENDING
                note = f"retry {task.retry_count}/{self.max_retries} after {code}"
            else:
                target = TaskStatus.TIMEOUT if timed_out else TaskStatus.FAILED
                note = f"retries exhausted after {code}"
            _apply_status(task, target, note=note, now=now)

        log = logger.warning if target == TaskStatus.PENDING else logger.error
        log("Task %s attempt failed [%s]: %s -> %s", task_id, code, message, target.value)
        return target

    def preempt_for_limit(self, task_id: str, note: str = "usage limit") -> int:
        """Put an in-progress task back to pending without spending a retry.

        Returns the number of consecutive limit detections for the task.
        """

        with self._mutate() as document:
            task = _require_task(document, task_id)
            _apply_status(task, TaskStatus.PENDING, note=note, now=self._now())
            task.limit_detections += 1
            detections = task.limit_detections

        logger.warning(
            "Task %s preempted by usage limit (consecutive detections=%d)",
            task_id,
            detections,
        )
        return detections

    def record_limit_detection(self, task_id: str) -> int:
        """Count a usage-limit hit without changing status; returns the consecutive total."""

        with self._mutate() as document:
            task = _require_task(document, task_id)
            task.limit_detections += 1
            detections = task.limit_detections
        return detections

    def reset_limit_detections(self, task_id: str) -> None:
        with self._mutate() as document:
            task = _require_task(document, task_id)
            task.limit_detections = 0

    def reset_stale_in_progress(self, *, older_than_seconds: int = 0) -> list[str]:
        """Return in-progress tasks left behind by a crashed process to pending."""

        reset: list[str] = []
        with self._mutate() as document:
            now = self._now()
            cutoff = now - timedelta(seconds=older_than_seconds)
            for task in document.tasks:
                if task.status != TaskStatus.IN_PROGRESS or task.last_modified > cutoff:
                    continue
                _apply_status(task, TaskStatus.PENDING, note="recovered stale claim", now=now)
                reset.append(task.task_id)

        for task_id in reset:
            logger.warning("Recovered stale in-progress task: %s", task_id)
        return reset

    # -- queries -------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        return _require_task(self.load(), task_id)

    def list_tasks(self, status: str | TaskStatus | None = None) -> list[Task]:
        document = self.load()
        if status is None:
            return list(document.tasks)
        wanted = parse_task_status(status)
        return [task for task in document.tasks if task.status == wanted]

    def stats(self) -> QueueStats:
        document = self.load()
        return QueueStats(
            counts=document.counts(),
            paused=document.metadata.paused,
            pause_reason=document.metadata.pause_reason,
        )

    def remove_task(self, task_id: str) -> None:
        with self._mutate() as document:
            task = _require_task(document, task_id)
            document.tasks.remove(task)
        logger.info("Task removed: task_id=%s", task_id)

    # -- pause / resume ------------------------------------------------------

    def pause(self, reason: str = "manual") -> None:
        with self._mutate() as document:
            document.metadata.paused = True
            document.metadata.pause_reason = reason
            document.metadata.paused_at = self._now()
        logger.info("Queue paused: %s", reason)

    def resume(self) -> None:
        with self._mutate() as document:
            document.metadata.paused = False
            document.metadata.pause_reason = None
            document.metadata.paused_at = None
        logger.info("Queue resumed")

    def is_paused(self) -> bool:
        return self.load().metadata.paused

    # -- backups -------------------------------------------------------------

    def backup(self, label: str = "manual") -> Path:
        """Snapshot the live document into the backup directory."""

        with self.lock.hold():
            document = read_document(self.paths.queue_file)
            path = write_backup(self.paths.backup_dir, document, label=label, now=self._now())
        logger.info("Queue backup created: %s", path)
        return path

    def scheduled_backup(self, *, min_interval_seconds: int) -> Path | None:
        """Snapshot when the newest backup is older than the interval, then prune by age."""

        backups = list_backups(self.paths.backup_dir)
        now = self._now()
        if backups and now - backup_created_at(backups[-1]) < timedelta(
            seconds=min_interval_seconds,
        ):
            return None
        path = self.backup(label="scheduled")
        self.cleanup_backups()
        return path

    def list_backups(self) -> list[Path]:
        return list_backups(self.paths.backup_dir)

    def cleanup_backups(self, retention_days: int | None = None) -> int:
        days = self.backup_retention_days if retention_days is None else retention_days
        return cleanup_backups(self.paths.backup_dir, retention_days=days, now=self._now())

    def recover_from_backup(self, path: Path | None = None) -> Path:
        """Replace the live document with a validated snapshot.

        With no ``path`` the newest snapshot that parses is used. The live file
        is snapshotted first when readable, or set aside when corrupt.
        """

        if path is not None:
            restored = read_document(path)
            source = path
        else:
            source, restored = self._newest_valid_backup()

        with self.lock.hold():
            now = self._now()
            try:
                current = read_document(self.paths.queue_file)
            except CorruptStateError:
                self._set_aside_corrupt_file(now=now)
            else:
                if self.paths.queue_file.exists():
                    write_backup(self.paths.backup_dir, current, label="before-restore", now=now)
            restored.metadata.last_modified = now
            write_document(self.paths.queue_file, restored)

        logger.warning("Queue restored from backup: %s", source)
        return source

    # -- maintenance ---------------------------------------------------------

    def cleanup_old(self, retention_days: int) -> int:
        """Drop finished tasks past retention; failed/timeout tasks are kept twice as long."""

        if retention_days < 0:
            raise ValidationError("retention_days must be >= 0")
        with self._mutate() as document:
            now = self._now()
            completed_cutoff = now - timedelta(days=retention_days)
            failed_cutoff = now - timedelta(days=retention_days * 2)
            kept: list[Task] = []
            for task in document.tasks:
                finished_at = task.completed_at or task.last_modified
                if task.status == TaskStatus.COMPLETED and finished_at < completed_cutoff:
                    continue
                if (
                    task.status in {TaskStatus.FAILED, TaskStatus.TIMEOUT}
                    and finished_at < failed_cutoff
                ):
                    continue
                kept.append(task)
            removed = len(document.tasks) - len(kept)
            document.tasks[:] = kept

        if removed:
            logger.info("Removed %d finished tasks older than %d days", removed, retention_days)
        return removed

    def enforce_size_limit(self, max_size: int | None = None) -> int:
        """Trim finished tasks, oldest first, until the queue fits ``max_size``."""

        limit = self.max_queue_size if max_size is None else max_size
        if limit <= 0:
            return 0
        with self._mutate() as document:
            removed = _trim_to_size(document, max_size=limit)
        if removed:
            logger.info("Queue size limit enforced: removed %d finished tasks", removed)
        return removed

    def repair(self) -> int:
        """Drop malformed or duplicate task entries; returns how many were removed."""

        with self.lock.hold():
            try:
                raw = json.loads(self.paths.queue_file.read_text("utf-8"))
            except FileNotFoundError:
                return 0
            except (OSError, json.JSONDecodeError) as error:
                raise CorruptStateError(
                    f"Queue file cannot be repaired in place: {error}",
                    path=str(self.paths.queue_file),
                ) from error
            if not isinstance(raw, dict) or not isinstance(raw.get("tasks"), list):
                raise CorruptStateError(
                    "Queue file has no task list to repair",
                    path=str(self.paths.queue_file),
                )

            kept: list[dict[str, Any]] = []
            seen: set[str] = set()
            for entry in raw["tasks"]:
                try:
                    task = Task.from_dict(entry)
                except (KeyError, TypeError, ValueError) as error:
                    logger.warning("Dropping malformed task entry: %s", error)
                    continue
                if task.task_id in seen:
                    logger.warning("Dropping duplicate task entry: %s", task.task_id)
                    continue
                seen.add(task.task_id)
                kept.append(entry)

            fixed = len(raw["tasks"]) - len(kept)
            if fixed == 0:
                return 0
            raw["tasks"] = kept
            document = QueueDocument.from_dict(raw)
            write_backup(self.paths.backup_dir, document, label="after-repair", now=self._now())
            self._write(document)

        logger.info("Fixed %d queue integrity issues", fixed)
        return fixed

    # -- internals -----------------------------------------------------------

    @contextmanager
    def _mutate(self) -> Iterator[QueueDocument]:
        with self.lock.hold():
            document = read_document(self.paths.queue_file)
            yield document
            self._write(document)

    def _write(self, document: QueueDocument) -> None:
        document.metadata.last_modified = self._now()
        write_document(self.paths.queue_file, document)

    def _now(self) -> datetime:
        return self._clock() if self._clock is not None else utc_now()

    def _unique_task_id(self, task_type: TaskType, *, existing: set[str], now: datetime) -> str:
        for _ in range(_ID_GENERATION_ATTEMPTS):
            candidate = build_task_id(task_type, now=now, rng=self._rng)
            if candidate not in existing:
                return candidate
        raise ValidationError("Could not generate a unique task id")

    def _newest_valid_backup(self) -> tuple[Path, QueueDocument]:
        for candidate in reversed(list_backups(self.paths.backup_dir)):
            try:
                return candidate, read_document(candidate)
            except CorruptStateError as error:
                logger.warning("Skipping unusable backup %s: %s", candidate.name, error)
        raise CorruptStateError(
            f"No valid queue backup found in {self.paths.backup_dir}",
            path=str(self.paths.backup_dir),
        )

    def _set_aside_corrupt_file(self, *, now: datetime) -> None:
        source = self.paths.queue_file
        if not source.exists():
            return
        target = source.with_name(f"{source.name}.corrupt-{now.strftime('%Y%m%d-%H%M%S')}")
        source.replace(target)
        logger.warning("Corrupt queue file moved aside: %s", target)


def _require_task(document: QueueDocument, task_id: str) -> Task:
    task = document.find(task_id)
    if task is None:
        raise TaskNotFoundError(f"Task not found: {task_id}")
    return task


def _apply_status(task: Task, target: TaskStatus, *, note: str, now: datetime) -> None:
    if target not in ALLOWED_TRANSITIONS[task.status]:
        raise InvalidTransitionError(
            task_id=task.task_id,
            status_from=task.status.value,
            status_to=target.value,
        )
    task.history.append(
        TaskHistoryEntry(at=now, status_from=task.status, status_to=target, note=note),
    )
    task.status = target
    task.last_modified = now
    if target in TERMINAL_STATUSES:
        task.completed_at = now


def _append_error(task: Task, *, message: str, code: str, now: datetime) -> None:
    task.errors.append(TaskErrorEntry(at=now, message=message, code=code))
    task.last_error = message
    task.last_modified = now


def _trim_to_size(document: QueueDocument, *, max_size: int) -> int:
    removed = 0
    for statuses in (
        {TaskStatus.COMPLETED},
        {TaskStatus.FAILED, TaskStatus.TIMEOUT},
    ):
        if len(document.tasks) <= max_size:
            break
        finished = sorted(
            (task for task in document.tasks if task.status in statuses),
            key=lambda task: task.completed_at or task.last_modified,
        )
        for task in finished:
            if len(document.tasks) <= max_size:
                break
            document.tasks.remove(task)
            removed += 1
    return removed
