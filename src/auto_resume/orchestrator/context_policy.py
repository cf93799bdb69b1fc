"""Decide whether to reset the assistant's conversation after a task."""

from __future__ import annotations

from enum import Enum

from auto_resume.queue.models import Task

CLEAR_CONTEXT_COMMAND = "/clear"


class CompletionReason(str, Enum):
    """Why a task execution ended."""

    NORMAL = "normal"
    USAGE_LIMIT = "usage_limit"
    ERROR = "error"
    TIMEOUT = "timeout"


_PRESERVE_REASONS = frozenset(
    {CompletionReason.USAGE_LIMIT, CompletionReason.ERROR, CompletionReason.TIMEOUT},
)


def should_clear_context(
    task: Task | None,
    completion_reason: CompletionReason | str,
    *,
    default: bool = True,
) -> bool:
    """Return True when the conversation should be cleared before the next task.

    Limit preemption, errors and timeouts always keep context so the task can
    resume where it stopped. Otherwise the task's explicit ``clear_context``
    wins over ``default``.
    """

    reason = CompletionReason(completion_reason)
    if reason in _PRESERVE_REASONS:
        return False
    if task is not None and task.clear_context is not None:
        return task.clear_context
    return default
