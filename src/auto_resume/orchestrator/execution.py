"""Send one task to the assistant session and poll until it resolves."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from auto_resume.limits.detector import NO_LIMIT, UsageLimitSignal
from auto_resume.limits.scheduler import Clock, StopToken, sleep_with_stop
from auto_resume.orchestrator.output_classifier import (
    ErrorClass,
    OutputKind,
    classify_output,
    output_delta,
    strip_prompt_echo,
)
from auto_resume.orchestrator.prompts import build_completion_marker, build_task_prompt
from auto_resume.queue.models import Task
from auto_resume.sessions.base import SessionIO

logger = logging.getLogger(__name__)


class ExecutionOutcome(str, Enum):
    """How a task execution ended."""

    COMPLETED = "completed"
    USAGE_LIMITED = "usage_limited"
    ERROR = "error"
    TIMEOUT = "timeout"
    STOPPED = "stopped"


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of ``TaskExecutor.execute`` plus diagnostics for the queue record."""

    outcome: ExecutionOutcome
    detail: str
    elapsed_seconds: float
    final_output: str
    completion_marker: str
    error_class: ErrorClass | None = None
    limit_signal: UsageLimitSignal = NO_LIMIT


class TaskExecutor:
    """Types a task prompt into the session and watches the pane for a verdict.

    Output is polled every ``poll_interval_seconds``. A task whose output has
    not changed for its timeout (``task.timeout_seconds`` or
    ``default_timeout_seconds``) is reported as ``TIMEOUT``.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        stop: StopToken,
        poll_interval_seconds: float = 5.0,
        default_timeout_seconds: int = 3600,
        default_cooldown_seconds: int = 300,
    ) -> None:
        self.clock = clock
        self.stop = stop
        self.poll_interval_seconds = poll_interval_seconds
        self.default_timeout_seconds = default_timeout_seconds
        self.default_cooldown_seconds = default_cooldown_seconds

    def execute(self, task: Task, io: SessionIO) -> ExecutionResult:
        """Run ``task`` in the session behind ``io``; collaborator errors propagate."""

        started_at = self.clock.now()
        marker = build_completion_marker(task, now=started_at)
        timeout_seconds = task.timeout_seconds or self.default_timeout_seconds

        prompt = build_task_prompt(task, marker=marker)
        baseline = io.recent_output()
        io.send(prompt)
        logger.info(
            "Task %s sent to session (marker=%s, timeout=%ss)",
            task.task_id,
            marker,
            timeout_seconds,
        )

        last_output = baseline
        last_change_at = started_at
        while True:
            if not sleep_with_stop(self.clock, self.stop, self.poll_interval_seconds):
                return self._result(
                    ExecutionOutcome.STOPPED,
                    "stop requested while task was running",
                    started_at=started_at,
                    output=last_output,
                    marker=marker,
                )

            current = io.recent_output()
            now = self.clock.now()
            if current != last_output:
                last_output = current
                last_change_at = now

            classification = classify_output(
                strip_prompt_echo(output_delta(baseline, current), prompt),
                completion_marker=marker,
                now=now,
                default_cooldown_seconds=self.default_cooldown_seconds,
            )
            if classification.kind == OutputKind.COMPLETED:
                return self._result(
                    ExecutionOutcome.COMPLETED,
                    f"completed ({classification.matched_rule})",
                    started_at=started_at,
                    output=current,
                    marker=marker,
                )
            if classification.kind == OutputKind.USAGE_LIMITED:
                return self._result(
                    ExecutionOutcome.USAGE_LIMITED,
                    f"usage limit ({classification.limit_signal.describe()})",
                    started_at=started_at,
                    output=current,
                    marker=marker,
                    limit_signal=classification.limit_signal,
                )
            if classification.kind == OutputKind.ERROR:
                return self._result(
                    ExecutionOutcome.ERROR,
                    f"assistant reported an error: {classification.matched_pattern}",
                    started_at=started_at,
                    output=current,
                    marker=marker,
                    error_class=classification.error_class,
                )

            idle_seconds = (now - last_change_at).total_seconds()
            if idle_seconds >= timeout_seconds:
                return self._result(
                    ExecutionOutcome.TIMEOUT,
                    f"no session output for {idle_seconds:.0f}s (timeout {timeout_seconds}s)",
                    started_at=started_at,
                    output=current,
                    marker=marker,
                    error_class=ErrorClass.TIMEOUT_ERROR,
                )

    def _result(  # noqa: PLR0913
        self,
        outcome: ExecutionOutcome,
        detail: str,
        *,
        started_at: datetime,
        output: str,
        marker: str,
        error_class: ErrorClass | None = None,
        limit_signal: UsageLimitSignal = NO_LIMIT,
    ) -> ExecutionResult:
        elapsed = (self.clock.now() - started_at).total_seconds()
        return ExecutionResult(
            outcome=outcome,
            detail=detail,
            elapsed_seconds=elapsed,
            final_output=output,
            completion_marker=marker,
            error_class=error_class,
            limit_signal=limit_signal,
        )
