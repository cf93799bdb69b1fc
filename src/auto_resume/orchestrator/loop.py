"""Monitoring loop: usage limits, session health and queue processing per cycle."""

from __future__ import annotations

import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from auto_resume.errors import (
    AutoResumeError,
    CollaboratorError,
    CorruptStateError,
    LockTimeoutError,
)
from auto_resume.limits.detector import detect_usage_limit
from auto_resume.limits.scheduler import Clock, RecoveryScheduler, StopToken, sleep_with_stop
from auto_resume.limits.tracker import UsageLimitTracker
from auto_resume.orchestrator.context_policy import (
    CLEAR_CONTEXT_COMMAND,
    CompletionReason,
    should_clear_context,
)
from auto_resume.orchestrator.execution import ExecutionOutcome, ExecutionResult, TaskExecutor
from auto_resume.orchestrator.output_classifier import ErrorClass, output_delta
from auto_resume.queue.models import Task, TaskStatus
from auto_resume.queue.repository import TaskQueue
from auto_resume.sessions.base import SessionLauncher
from auto_resume.sessions.registry import SessionRegistry, SessionState, project_id
from auto_resume.timeutils import format_duration

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    """Where the monitor currently is within a cycle."""

    IDLE = "idle"
    CHECKING_LIMITS = "checking_limits"
    USAGE_LIMITED = "usage_limited"
    WAITING = "waiting"
    CHECKING_SESSION = "checking_session"
    UNHEALTHY = "unhealthy"
    RECOVERING = "recovering"
    PROCESSING_QUEUE = "processing_queue"
    TASK_RUNNING = "task_running"
    TASK_DONE = "task_done"
    TASK_FAILED = "task_failed"
    TASK_USAGE_LIMITED = "task_usage_limited"
    STOPPED = "stopped"


class MonitorFatalError(AutoResumeError):
    """Condition the loop cannot recover from; the run ends with exit code 1."""


class SessionRecoveryError(AutoResumeError):
    """Session stayed unhealthy after all recovery attempts."""


@dataclass(slots=True)
class CycleSummary:
    """What happened during one monitoring cycle."""

    cycle: int
    limited: bool = False
    waited_seconds: float = 0.0
    session_started: bool = False
    session_recovered: bool = False
    task_id: str | None = None
    task_outcome: str | None = None
    context_cleared: bool = False
    error: str | None = None

    def render(self) -> str:
        parts = [f"cycle={self.cycle}"]
        if self.limited:
            parts.append(f"usage_limited waited={format_duration(self.waited_seconds)}")
        if self.session_started:
            parts.append("session_started")
        if self.session_recovered:
            parts.append("session_recovered")
        if self.task_id is not None:
            parts.append(f"task={self.task_id} outcome={self.task_outcome or '-'}")
        if self.context_cleared:
            parts.append("context_cleared")
        if self.error is not None:
            parts.append(f"error={self.error}")
        return " ".join(parts)


@dataclass(slots=True)
class MonitorRunSummary:
    """Aggregated result of ``MonitorLoop.run``."""

    cycles: int = 0
    tasks_processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    preempted: int = 0
    timeouts: int = 0
    limit_pauses: int = 0
    recoveries: int = 0
    cycle_errors: int = 0
    exit_code: int = 0
    stop_reason: str | None = None
    usage_limits: str = ""

    def render_lines(self) -> list[str]:
        lines = [
            "Monitor run finished:",
            f"  cycles={self.cycles} exit_code={self.exit_code} "
            f"stop_reason={self.stop_reason or '-'}",
            f"  tasks processed={self.tasks_processed} completed={self.completed} "
            f"failed={self.failed} retried={self.retried} preempted={self.preempted} "
            f"timeouts={self.timeouts}",
            f"  limit_pauses={self.limit_pauses} session_recoveries={self.recoveries} "
            f"cycle_errors={self.cycle_errors}",
        ]
        if self.usage_limits:
            lines.append(f"  {self.usage_limits}")
        return lines


class MonitorLoop:
    """Keeps one project's assistant session alive and feeds it queued tasks.

    Each cycle checks for an active usage limit (waiting it out when found),
    makes sure a healthy session exists and, when queue processing is on,
    runs at most one task. All sleeps honour the shared stop token.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        project_dir: Path,
        queue: TaskQueue,
        registry: SessionRegistry,
        launcher: SessionLauncher,
        tracker: UsageLimitTracker,
        scheduler: RecoveryScheduler,
        executor: TaskExecutor,
        clock: Clock,
        stop: StopToken,
        check_interval_seconds: float = 300,
        max_cycles: int = 50,
        max_recovery_attempts: int = 3,
        recovery_delay_seconds: float = 10,
        transient_retry_limit: int = 3,
        max_limit_detections: int = 5,
        queue_processing: bool = True,
        context_clear_default: bool = True,
        stale_claim_seconds: int = 0,
        backup_interval_seconds: int = 3600,
    ) -> None:
        self.project_dir = project_dir.expanduser().resolve()
        self.project = project_id(self.project_dir)
        self.queue = queue
        self.registry = registry
        self.launcher = launcher
        self.tracker = tracker
        self.scheduler = scheduler
        self.executor = executor
        self.clock = clock
        self.stop = stop
        self.check_interval_seconds = check_interval_seconds
        self.max_cycles = max_cycles
        self.max_recovery_attempts = max_recovery_attempts
        self.recovery_delay_seconds = recovery_delay_seconds
        self.transient_retry_limit = transient_retry_limit
        self.max_limit_detections = max_limit_detections
        self.queue_processing = queue_processing
        self.context_clear_default = context_clear_default
        self.stale_claim_seconds = stale_claim_seconds
        self.backup_interval_seconds = backup_interval_seconds

        self.state = LoopState.IDLE
        self._handle: str | None = None
        self._output_baseline = ""
        self._run_summary = MonitorRunSummary()

    def run(self, max_cycles: int | None = None) -> MonitorRunSummary:
        """Run cycles until stopped, ``max_cycles`` is reached or a fatal error.

        ``max_cycles <= 0`` runs until a stop is requested.
        """

        limit = self.max_cycles if max_cycles is None else max_cycles
        summary = MonitorRunSummary()
        self._run_summary = summary
        consecutive_errors = 0

        with _stop_on_signals(self.stop):
            try:
                self._startup()
                while not self.stop.requested:
                    summary.cycles += 1
                    cycle = self._run_cycle_with_retries(summary.cycles)
                    logger.info("Cycle summary: %s", cycle.render())
                    if cycle.error is None:
                        consecutive_errors = 0
                    else:
                        summary.cycle_errors += 1
                        consecutive_errors += 1
                        if consecutive_errors >= self.transient_retry_limit:
                            raise MonitorFatalError(
                                f"{consecutive_errors} consecutive cycles failed; "
                                f"last error: {cycle.error}",
                            )
                    if limit > 0 and summary.cycles >= limit:
                        summary.stop_reason = f"max cycles reached ({limit})"
                        break
                    if self.stop.requested:
                        break
                    self._set_state(LoopState.IDLE)
                    sleep_with_stop(self.clock, self.stop, self.check_interval_seconds)
            except MonitorFatalError as error:
                logger.error("Monitor stopping: %s", error)
                summary.exit_code = 1
                summary.stop_reason = f"fatal: {error}"
            finally:
                self._shutdown(summary)
        return summary

    def run_cycle(self, cycle: int = 0) -> CycleSummary:
        """One pass: usage limits, then session health, then at most one task."""

        summary = CycleSummary(cycle=cycle)
        if self._check_usage_limits(summary) or self.stop.requested:
            return summary
        self._ensure_session(summary)
        if self.stop.requested or not self.queue_processing:
            return summary
        self._process_queue(summary)
        return summary

    # -- run scaffolding -----------------------------------------------------

    def _startup(self) -> None:
        loaded = self.registry.load()
        logger.info(
            "Monitor starting: project_id=%s path=%s known_sessions=%d",
            self.project,
            self.project_dir,
            loaded,
        )
        try:
            self.queue.reset_stale_in_progress(older_than_seconds=self.stale_claim_seconds)
        except CorruptStateError as error:
            self._restore_queue(error)
            self.queue.reset_stale_in_progress(older_than_seconds=self.stale_claim_seconds)

    def _shutdown(self, summary: MonitorRunSummary) -> None:
        if summary.stop_reason is None:
            summary.stop_reason = self.stop.reason or "stopped"
        summary.usage_limits = self.tracker.stats.render()
        self.registry.persist_all()
        self._set_state(LoopState.STOPPED)
        for line in summary.render_lines():
            logger.info("%s", line)

    def _run_cycle_with_retries(self, cycle: int) -> CycleSummary:
        attempt = 0
        while True:
            try:
                return self.run_cycle(cycle)
            except LockTimeoutError as error:
                failure: AutoResumeError = error
            except CollaboratorError as error:
                if not error.transient:
                    logger.error("Cycle %d failed: %s", cycle, error)
                    return CycleSummary(cycle=cycle, error=str(error))
                failure = error
            except CorruptStateError as error:
                self._restore_queue(error)
                failure = error
            except SessionRecoveryError as error:
                logger.error("Cycle %d failed: %s", cycle, error)
                return CycleSummary(cycle=cycle, error=str(error))

            attempt += 1
            if attempt > self.transient_retry_limit:
                logger.error(
                    "Cycle %d abandoned after %d retries: %s",
                    cycle,
                    self.transient_retry_limit,
                    failure,
                )
                return CycleSummary(cycle=cycle, error=str(failure))
            logger.warning(
                "Cycle %d hit a recoverable error (retry %d/%d): %s",
                cycle,
                attempt,
                self.transient_retry_limit,
                failure,
            )
            if not sleep_with_stop(self.clock, self.stop, self.recovery_delay_seconds):
                return CycleSummary(cycle=cycle, error=str(failure))

    def _restore_queue(self, error: CorruptStateError) -> None:
        logger.error("Queue document is corrupt: %s", error)
        try:
            source = self.queue.recover_from_backup()
        except (CorruptStateError, OSError) as recovery_error:
            raise MonitorFatalError(
                f"Queue is corrupt and could not be restored: {recovery_error}",
            ) from recovery_error
        logger.warning("Queue restored from %s", source.name)

    def _set_state(self, state: LoopState) -> None:
        if state != self.state:
            logger.debug("Monitor state: %s -> %s", self.state.value, state.value)
        self.state = state

    # -- usage limits --------------------------------------------------------

    def _check_usage_limits(self, summary: CycleSummary) -> bool:
        """Return True when the cycle was spent on a usage-limit pause."""

        self._set_state(LoopState.CHECKING_LIMITS)
        marker = self.tracker.read_marker()
        if marker is not None:
            if marker.resume_at > self.clock.now():
                logger.info(
                    "Resuming usage-limit pause recorded at %s",
                    marker.pause_time.isoformat(),
                )
                self._set_state(LoopState.USAGE_LIMITED)
                self._wait_for_limit(marker.resume_at, summary)
                return True
            logger.info("Usage-limit pause expired at %s", marker.resume_at.isoformat())
            self.tracker.clear_marker()
            self._refresh_baseline()
            return False

        handle = self._live_handle()
        if handle is None:
            return False
        output = self.launcher.attach(handle).recent_output()
        signal_ = detect_usage_limit(
            output_delta(self._output_baseline, output),
            now=self.clock.now(),
            default_cooldown_seconds=self.tracker.cooldown_seconds,
        )
        if not signal_.detected:
            self.tracker.forget_global()
            return False

        self._set_state(LoopState.USAGE_LIMITED)
        marker = self.tracker.plan_pause(signal_, now=self.clock.now())
        self._run_summary.limit_pauses += 1
        self._mark_session(SessionState.USAGE_LIMITED, signal_.describe())
        self._wait_for_limit(marker.resume_at, summary)
        return True

    def _wait_for_limit(self, resume_at: datetime, summary: CycleSummary) -> None:
        self._set_state(LoopState.WAITING)
        summary.limited = True
        outcome = self.scheduler.wait_until(resume_at, "usage limit")
        summary.waited_seconds += outcome.waited_seconds
        self.tracker.record_wait(outcome.waited_seconds)
        if not outcome.completed:
            return
        self.tracker.clear_marker()
        self._refresh_baseline()
        self._mark_session(SessionState.RUNNING, "usage limit lifted")

    # -- session -------------------------------------------------------------

    def _live_handle(self) -> str | None:
        handle = self._handle or self.registry.find_by_project(self.project)
        if handle is None or not self.launcher.session_exists(handle):
            return None
        return handle

    def _refresh_baseline(self) -> None:
        handle = self._live_handle()
        if handle is not None:
            self._output_baseline = self.launcher.attach(handle).recent_output()

    def _mark_session(self, state: SessionState, note: str) -> None:
        if self.registry.get(self.project) is not None:
            self.registry.update_state(self.project, state, note)

    def _ensure_session(self, summary: CycleSummary) -> None:
        self._set_state(LoopState.CHECKING_SESSION)
        handle = self._live_handle()
        if handle is None:
            self._start_session()
            summary.session_started = True
            return

        if self.launcher.health_check(handle):
            self._handle = handle
            record = self.registry.get(self.project)
            if record is None:
                self.registry.register(
                    handle,
                    handle,
                    self.project_dir,
                    self.project,
                    state=SessionState.RUNNING,
                )
            elif record.state != SessionState.RUNNING:
                self.registry.update_state(self.project, SessionState.RUNNING, "healthy")
            else:
                self.registry.touch(self.project)
            self.registry.reset_recovery(self.project)
            return

        self._set_state(LoopState.UNHEALTHY)
        logger.warning("Session %s failed its health check", handle)
        self._recover_session(handle)
        summary.session_recovered = True

    def _start_session(self) -> str:
        handle = self.launcher.start_session(self.project, self.project_dir)
        self.registry.register(
            handle,
            handle,
            self.project_dir,
            self.project,
            state=SessionState.RUNNING,
        )
        self._handle = handle
        self._output_baseline = self.launcher.attach(handle).recent_output()
        return handle

    def _recover_session(self, handle: str) -> None:
        if self.registry.get(self.project) is None:
            self.registry.register(handle, handle, self.project_dir, self.project)

        for attempt in range(1, self.max_recovery_attempts + 1):
            self._set_state(LoopState.RECOVERING)
            self.registry.update_state(
                self.project,
                SessionState.RECOVERING,
                f"recovery attempt {attempt}/{self.max_recovery_attempts}",
            )
            self.registry.increment_recovery(self.project)
            self.launcher.stop_session(handle)
            if not sleep_with_stop(self.clock, self.stop, self.recovery_delay_seconds):
                return
            handle = self._start_session()
            if self.launcher.health_check(handle):
                self.registry.increment_restart(self.project)
                self.registry.reset_recovery(self.project)
                self._run_summary.recoveries += 1
                logger.info("Session recovered on attempt %d: %s", attempt, handle)
                return
            logger.warning("Session still unhealthy after recovery attempt %d", attempt)

        self.registry.update_state(self.project, SessionState.ERROR, "recovery attempts exhausted")
        raise SessionRecoveryError(
            f"Session for {self.project} still unhealthy after "
            f"{self.max_recovery_attempts} recovery attempts",
        )

    # -- queue ---------------------------------------------------------------

    def _process_queue(self, summary: CycleSummary) -> None:
        self._set_state(LoopState.PROCESSING_QUEUE)
        if self.queue.is_paused():
            logger.info("Queue is paused; skipping task processing")
            return
        if self.backup_interval_seconds > 0:
            self.queue.scheduled_backup(min_interval_seconds=self.backup_interval_seconds)

        task_id = self.queue.claim_next()
        if task_id is None:
            logger.debug("No pending tasks")
            return
        task = self.queue.get_task(task_id)
        summary.task_id = task_id
        self._run_summary.tasks_processed += 1

        self._set_state(LoopState.TASK_RUNNING)
        handle = self._handle or self._start_session()
        try:
            result = self.executor.execute(task, self.launcher.attach(handle))
        except CollaboratorError as error:
            self._set_state(LoopState.TASK_FAILED)
            status = self.queue.fail_attempt(
                task_id,
                message=str(error),
                code=ErrorClass.SESSION_ERROR.value,
            )
            self._count_failure(status)
            summary.task_outcome = ErrorClass.SESSION_ERROR.value
            if error.transient:
                logger.warning("Task %s hit a transient session error: %s", task_id, error)
            else:
                summary.error = str(error)
            return
        self._finish_task(task, result, summary)

    def _finish_task(self, task: Task, result: ExecutionResult, summary: CycleSummary) -> None:
        task_id = task.task_id
        summary.task_outcome = result.outcome.value
        self._output_baseline = result.final_output
        logger.info(
            "Task %s finished: %s after %s (%s)",
            task_id,
            result.outcome.value,
            format_duration(result.elapsed_seconds),
            result.detail,
        )

        if result.outcome == ExecutionOutcome.COMPLETED:
            self._set_state(LoopState.TASK_DONE)
            self.queue.transition(task_id, TaskStatus.COMPLETED, note=result.detail)
            self.tracker.forget_task(task_id)
            self._run_summary.completed += 1
            reason = CompletionReason.NORMAL
        elif result.outcome == ExecutionOutcome.USAGE_LIMITED:
            self._set_state(LoopState.TASK_USAGE_LIMITED)
            self._handle_task_limit(task_id, result, summary)
            return
        elif result.outcome == ExecutionOutcome.ERROR:
            self._set_state(LoopState.TASK_FAILED)
            status = self.queue.fail_attempt(
                task_id,
                message=result.detail,
                code=(result.error_class or ErrorClass.GENERIC).value,
            )
            self._count_failure(status)
            reason = CompletionReason.ERROR
        elif result.outcome == ExecutionOutcome.TIMEOUT:
            self._set_state(LoopState.TASK_FAILED)
            status = self.queue.fail_attempt(
                task_id,
                message=result.detail,
                code=ErrorClass.TIMEOUT_ERROR.value,
                timed_out=True,
            )
            if status == TaskStatus.TIMEOUT:
                self._run_summary.timeouts += 1
            else:
                self._count_failure(status)
            reason = CompletionReason.TIMEOUT
        else:
            self.queue.transition(task_id, TaskStatus.PENDING, note="interrupted by shutdown")
            return

        self._apply_context_policy(task, reason, summary)

    def _handle_task_limit(
        self,
        task_id: str,
        result: ExecutionResult,
        summary: CycleSummary,
    ) -> None:
        detections = self.queue.preempt_for_limit(task_id, note=result.detail)
        self._run_summary.preempted += 1
        if detections >= self.max_limit_detections:
            self.queue.transition(
                task_id,
                TaskStatus.FAILED,
                note=f"usage limit hit {detections} times in a row",
            )
            self.tracker.forget_task(task_id)
            self._run_summary.failed += 1

        marker = self.tracker.plan_pause(result.limit_signal, now=self.clock.now(), task_id=task_id)
        self._run_summary.limit_pauses += 1
        self._mark_session(SessionState.USAGE_LIMITED, result.limit_signal.describe())
        self._wait_for_limit(marker.resume_at, summary)

    def _count_failure(self, status: TaskStatus) -> None:
        if status == TaskStatus.PENDING:
            self._run_summary.retried += 1
        else:
            self._run_summary.failed += 1

    def _apply_context_policy(
        self,
        task: Task,
        reason: CompletionReason,
        summary: CycleSummary,
    ) -> None:
        if not should_clear_context(task, reason, default=self.context_clear_default):
            logger.info("Keeping session context after task %s (%s)", task.task_id, reason.value)
            return
        if self._handle is None:
            return
        io = self.launcher.attach(self._handle)
        io.send(CLEAR_CONTEXT_COMMAND)
        self._output_baseline = io.recent_output()
        summary.context_cleared = True
        logger.info("Cleared session context after task %s", task.task_id)


@contextmanager
def _stop_on_signals(stop: StopToken) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a stop request while the loop runs."""

    if not hasattr(signal, "SIGINT"):
        yield
        return

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        stop.request(f"received {name}")

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)
    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in the main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
