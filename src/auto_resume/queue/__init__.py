"""Crash-safe, lock-guarded task queue persisted as one JSON document per project."""

from auto_resume.queue.models import QueueDocument, Task, TaskStatus, TaskType
from auto_resume.queue.persistence import QueuePaths
from auto_resume.queue.repository import QueueStats, TaskQueue

__all__ = [
    "QueueDocument",
    "QueuePaths",
    "QueueStats",
    "Task",
    "TaskQueue",
    "TaskStatus",
    "TaskType",
]
