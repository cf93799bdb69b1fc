"""Controllers for queue CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from auto_resume.config import Settings
from auto_resume.queue.models import Task, TaskStatus, TaskType, parse_task_status
from auto_resume.queue.persistence import backup_created_at
from auto_resume.queue.repository import TaskQueue


@dataclass(slots=True)
class QueueAddCommand:
    """CLI input for adding a task."""

    project_dir: Path | None
    task_type: str
    description: str | None
    number: int | None
    priority: int
    details: str | None = None
    clear_context: bool | None = None
    timeout_seconds: int | None = None
    task_id: str | None = None


@dataclass(slots=True)
class QueueListCommand:
    """CLI input for task listing."""

    project_dir: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueTaskCommand:
    """CLI input for single-task operations (inspect, requeue, remove)."""

    project_dir: Path | None
    task_id: str


@dataclass(slots=True)
class QueuePauseCommand:
    """CLI input for pausing queue processing."""

    project_dir: Path | None
    reason: str


@dataclass(slots=True)
class QueueProjectCommand:
    """CLI input for project-wide queue operations without extra arguments."""

    project_dir: Path | None


@dataclass(slots=True)
class QueueBackupCommand:
    """CLI input for a manual snapshot."""

    project_dir: Path | None
    label: str


@dataclass(slots=True)
class QueueRestoreCommand:
    """CLI input for restoring from a snapshot."""

    project_dir: Path | None
    backup_path: Path | None


@dataclass(slots=True)
class QueueCleanupCommand:
    """CLI input for retention cleanup."""

    project_dir: Path | None
    retention_days: int | None
    repair: bool = False


class QueueCliController:
    """Coordinates queue submission, inspection and maintenance CLI operations."""

    def add(self, command: QueueAddCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        queue = _queue(settings)
        task_type = TaskType(command.task_type)
        task_id = queue.add_task(
            task_type,
            command.priority,
            _payload(command, task_type=task_type),
            clear_context=command.clear_context,
            timeout_seconds=command.timeout_seconds,
            task_id=command.task_id,
        )
        task = queue.get_task(task_id)
        return [
            f"Task added: task_id={task.task_id} type={task.task_type.value} "
            f"priority={task.priority} status={task.status.value}",
        ]

    def list_tasks(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        status = parse_task_status(command.status) if command.status else None
        tasks = sorted(
            _queue(settings).list_tasks(status=status),
            key=lambda task: (task.status != TaskStatus.IN_PROGRESS, task.priority),
        )
        shown = tasks[: command.limit] if command.limit > 0 else tasks

        lines = [f"Tasks: {len(tasks)}"]
        for task in shown:
            lines.append(f"  {_task_line(task)}")
        if len(shown) < len(tasks):
            lines.append(f"  ... {len(tasks) - len(shown)} more")
        return lines

    def inspect(self, command: QueueTaskCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        task = _queue(settings).get_task(command.task_id)
        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type.value}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Description: {task.description}",
            f"Retries: {task.retry_count}",
            f"Limit detections: {task.limit_detections}",
            f"Clear context: {_tri_state(task.clear_context)}",
            f"Timeout: {task.timeout_seconds or settings.queue.task_timeout_seconds}s",
            f"Created: {task.created_at.isoformat()}",
            f"Last modified: {task.last_modified.isoformat()}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
            f"Last error: {task.last_error or '-'}",
            f"History: {len(task.history)}",
        ]
        for entry in task.history:
            status_from = entry.status_from.value if entry.status_from else "-"
            note = f" ({entry.note})" if entry.note else ""
            lines.append(
                f"  {entry.at.isoformat()} {status_from} -> {entry.status_to.value}{note}",
            )
        if task.errors:
            lines.append(f"Errors: {len(task.errors)}")
            for error in task.errors:
                lines.append(f"  {error.at.isoformat()} [{error.code}] {error.message}")
        return lines

    def requeue(self, command: QueueTaskCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        task = _queue(settings).requeue(command.task_id)
        return [f"Task re-queued: {task.task_id} status={task.status.value}"]

    def remove(self, command: QueueTaskCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        _queue(settings).remove_task(command.task_id)
        return [f"Task removed: {command.task_id}"]

    def pause(self, command: QueuePauseCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        _queue(settings).pause(command.reason)
        return [f"Queue paused: {command.reason}"]

    def resume(self, command: QueueProjectCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        _queue(settings).resume()
        return ["Queue resumed"]

    def stats(self, command: QueueProjectCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        queue = _queue(settings)
        stats = queue.stats()
        lines = [
            f"Queue: {queue.paths.queue_file}",
            "Paused: "
            + (f"yes ({stats.pause_reason or 'no reason'})" if stats.paused else "no"),
        ]
        for status in TaskStatus:
            lines.append(f"  {status.value}: {stats.counts.get(status.value, 0)}")
        lines.append(f"  total: {stats.counts.get('total', 0)}")
        lines.append(f"Backups: {len(queue.list_backups())}")
        return lines

    def backup(self, command: QueueBackupCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        path = _queue(settings).backup(label=command.label)
        return [f"Backup created: {path}"]

    def restore(self, command: QueueRestoreCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        source = _queue(settings).recover_from_backup(command.backup_path)
        return [f"Queue restored from: {source}"]

    def backups(self, command: QueueProjectCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        paths = _queue(settings).list_backups()
        lines = [f"Backups: {len(paths)}"]
        for path in reversed(paths):
            lines.append(f"  {backup_created_at(path).isoformat()} {path.name}")
        return lines

    def cleanup(self, command: QueueCleanupCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        queue = _queue(settings)
        lines: list[str] = []
        if command.repair:
            dropped = queue.repair()
            lines.append(f"Repair dropped malformed entries: {dropped}")
        retention_days = (
            settings.queue.completed_retention_days
            if command.retention_days is None
            else command.retention_days
        )
        removed = queue.cleanup_old(retention_days)
        trimmed = queue.enforce_size_limit()
        pruned = queue.cleanup_backups()
        lines.append(
            f"Cleanup: removed_tasks={removed} trimmed_over_limit={trimmed} "
            f"pruned_backups={pruned} retention_days={retention_days}",
        )
        return lines


def _queue(settings: Settings) -> TaskQueue:
    return TaskQueue.for_project(
        settings.project_dir,
        max_retries=settings.queue.max_retries,
        lock_timeout_seconds=settings.queue.lock_timeout_seconds,
        max_queue_size=settings.queue.max_queue_size,
        backup_retention_days=settings.queue.backup_retention_days,
    )


def _payload(command: QueueAddCommand, *, task_type: TaskType) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    if command.description:
        payload["description"] = command.description
    if command.details:
        payload["details"] = command.details
    if task_type != TaskType.CUSTOM and command.number is not None:
        payload["number"] = command.number
    return payload


def _task_line(task: Task) -> str:
    return (
        f"{task.task_id} type={task.task_type.value} status={task.status.value} "
        f"priority={task.priority} retries={task.retry_count} "
        f"description={task.description}"
    )


def _tri_state(value: bool | None) -> str:
    if value is None:
        return "default"
    return "yes" if value else "no"
