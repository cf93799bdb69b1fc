from __future__ import annotations

import allure
import pytest

from auto_resume.orchestrator.context_policy import CompletionReason, should_clear_context
from auto_resume.queue.repository import TaskQueue

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Context Clearing Policy"),
]


@pytest.mark.parametrize(
    ("clear_context", "default", "expected"),
    [
        (None, True, True),
        (None, False, False),
        (True, False, True),
        (False, True, False),
    ],
)
def test_normal_completion_follows_task_then_default(
    queue: TaskQueue,
    clear_context: bool | None,
    default: bool,
    expected: bool,
) -> None:
    task_id = queue.add_task("custom", 1, {"description": "x"}, clear_context=clear_context)
    task = queue.get_task(task_id)

    assert should_clear_context(task, CompletionReason.NORMAL, default=default) is expected


@pytest.mark.parametrize("reason", ["usage_limit", "error", "timeout"])
def test_interrupted_tasks_always_keep_context(queue: TaskQueue, reason: str) -> None:
    task_id = queue.add_task("custom", 1, {"description": "x"}, clear_context=True)

    assert should_clear_context(queue.get_task(task_id), reason) is False


def test_missing_task_uses_default() -> None:
    assert should_clear_context(None, "normal") is True
    assert should_clear_context(None, "normal", default=False) is False


def test_unknown_reason_is_rejected() -> None:
    with pytest.raises(ValueError):
        should_clear_context(None, "finished")
