"""Text sent to the assistant for each task, including its completion marker."""

from __future__ import annotations

import re
from datetime import datetime

from auto_resume.queue.models import Task, TaskType
from auto_resume.timeutils import utc_now

COMPLETION_MARKER_PREFIX = "###TASK_COMPLETE:"
COMPLETION_MARKER_SUFFIX = "###"
MARKER_DESCRIPTION_MAX_LENGTH = 30

_MARKER_PREFIXES = {
    TaskType.CUSTOM: "TASK",
    TaskType.GITHUB_ISSUE: "ISSUE",
    TaskType.GITHUB_PR: "PR",
}
_MARKER_UNSAFE_RE = re.compile(r"[^A-Z0-9 ]+")
_MARKER_RE = re.compile(r"^[A-Z]+_[A-Z0-9_]*_\d+$")


def build_completion_marker(task: Task, *, now: datetime | None = None) -> str:
    """``<PREFIX>_<DESCRIPTION>_<unix-ts>`` with the description upper-cased and shortened."""

    moment = now or utc_now()
    cleaned = _MARKER_UNSAFE_RE.sub("", task.description.upper())
    body = "_".join(cleaned.split())[:MARKER_DESCRIPTION_MAX_LENGTH].strip("_")
    marker = f"{_MARKER_PREFIXES[task.task_type]}_{body}_{int(moment.timestamp())}"
    if not _MARKER_RE.match(marker):
        raise ValueError(f"Invalid completion marker: {marker!r}")
    return marker


def completion_token(marker: str) -> str:
    return f"{COMPLETION_MARKER_PREFIX}{marker}{COMPLETION_MARKER_SUFFIX}"


def build_task_prompt(task: Task, *, marker: str) -> str:
    """Render the instruction typed into the session.

    The full completion token is never spelled out verbatim, so the echoed
    prompt cannot be mistaken for the assistant's completion signal.
    """

    number = task.payload.get("number")
    title = task.payload.get("title")
    if task.task_type == TaskType.GITHUB_ISSUE:
        head = f"Please work on GitHub issue #{number}"
        head += f": {title}" if title else "."
    elif task.task_type == TaskType.GITHUB_PR:
        head = f"Please review GitHub pull request #{number}"
        head += f": {title}" if title else "."
    else:
        head = task.description
    details = task.payload.get("details")
    body = f"{head}\n\n{details}" if isinstance(details, str) and details.strip() else head
    return (
        f"{body}\n\n"
        "When the task is fully complete, print one line made of "
        f"{COMPLETION_MARKER_PREFIX} immediately followed by {marker} and then "
        f"{COMPLETION_MARKER_SUFFIX} with no spaces."
    )
