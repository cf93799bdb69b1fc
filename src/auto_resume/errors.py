"""Error taxonomy shared by the queue, session and orchestration layers."""

from __future__ import annotations


class AutoResumeError(RuntimeError):
    """Base class for all domain errors."""


class ValidationError(AutoResumeError):
    """Rejected input; nothing was persisted."""


class TaskNotFoundError(AutoResumeError):
    """Task id is not present in the queue document."""


class InvalidTransitionError(AutoResumeError):
    """Requested status change is not allowed by the task state machine."""

    def __init__(self, *, task_id: str, status_from: str, status_to: str) -> None:
        super().__init__(
            f"Task {task_id} cannot move from status={status_from} to status={status_to}",
        )
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class LockTimeoutError(AutoResumeError, TimeoutError):
    """Queue lock could not be acquired in time; the operation was not applied."""


class CorruptStateError(AutoResumeError):
    """Persisted document is unreadable or schema-invalid."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class CollaboratorError(AutoResumeError):
    """Session or execution collaborator failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
