"""Controllers for monitor and session CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from auto_resume.config import Settings
from auto_resume.limits.scheduler import RecoveryScheduler, StopToken, SystemClock
from auto_resume.limits.tracker import UsageLimitTracker
from auto_resume.orchestrator.execution import TaskExecutor
from auto_resume.orchestrator.loop import MonitorLoop
from auto_resume.queue.repository import TaskQueue
from auto_resume.sessions.registry import SessionRegistry, build_session_name, project_id
from auto_resume.sessions.tmux import TmuxLauncher


@dataclass(slots=True)
class MonitorRunCommand:
    """CLI input for the monitoring loop."""

    project_dir: Path | None
    max_cycles: int | None
    once: bool
    queue_processing: bool | None


@dataclass(slots=True)
class MonitorRunResult:
    """Run summary lines plus the process exit code."""

    lines: list[str]
    exit_code: int


@dataclass(slots=True)
class SessionIdCommand:
    """CLI input for project id resolution."""

    path: Path


@dataclass(slots=True)
class SessionListCommand:
    """CLI input for listing tracked sessions."""

    session_dir: Path | None


class MonitorCliController:
    """Wires settings into the monitoring loop and renders its result."""

    def run(self, command: MonitorRunCommand) -> MonitorRunResult:
        settings = Settings.from_env(project_dir=command.project_dir)
        settings.validate()
        loop = build_monitor_loop(settings, queue_processing=command.queue_processing)
        max_cycles = 1 if command.once else command.max_cycles
        summary = loop.run(max_cycles=max_cycles)
        return MonitorRunResult(lines=summary.render_lines(), exit_code=summary.exit_code)


class SessionCliController:
    """Read-only views over project identity and the session registry."""

    def project_id(self, command: SessionIdCommand) -> list[str]:
        settings = Settings.from_env()
        value = project_id(command.path)
        return [
            f"Project: {command.path.expanduser().resolve()}",
            f"Project id: {value}",
            f"Session name: {build_session_name(settings.sessions.session_prefix, value)}",
        ]

    def list_sessions(self, command: SessionListCommand) -> list[str]:
        settings = Settings.from_env()
        registry = SessionRegistry(
            command.session_dir or settings.sessions.session_dir,
            max_tracked_sessions=settings.sessions.max_tracked_sessions,
        )
        registry.load()
        records = sorted(registry.records(), key=lambda record: record.last_seen, reverse=True)
        lines = [f"Sessions: {len(records)}"]
        for record in records:
            lines.append(
                f"  {record.project_id} handle={record.session_handle} "
                f"state={record.state.value} restarts={record.restart_count} "
                f"last_seen={record.last_seen.isoformat()} path={record.project_path}",
            )
        return lines


def build_monitor_loop(settings: Settings, *, queue_processing: bool | None = None) -> MonitorLoop:
    """Assemble the loop and its tmux-backed collaborators from ``settings``."""

    clock = SystemClock()
    stop = StopToken()
    queue = TaskQueue.for_project(
        settings.project_dir,
        max_retries=settings.queue.max_retries,
        lock_timeout_seconds=settings.queue.lock_timeout_seconds,
        max_queue_size=settings.queue.max_queue_size,
        backup_retention_days=settings.queue.backup_retention_days,
    )
    tracker = UsageLimitTracker(
        queue.paths.pause_marker,
        cooldown_seconds=settings.limits.default_cooldown_seconds,
        backoff_factor=settings.limits.backoff_factor,
        max_wait_seconds=settings.limits.max_wait_seconds,
        min_wait_seconds=settings.limits.min_wait_seconds,
    )
    return MonitorLoop(
        project_dir=settings.project_dir,
        queue=queue,
        registry=SessionRegistry(
            settings.sessions.session_dir,
            max_tracked_sessions=settings.sessions.max_tracked_sessions,
        ),
        launcher=TmuxLauncher(
            session_prefix=settings.sessions.session_prefix,
            assistant_command=settings.sessions.assistant_command,
            tmux_binary=settings.sessions.tmux_binary,
        ),
        tracker=tracker,
        scheduler=RecoveryScheduler(clock=clock, stop=stop),
        executor=TaskExecutor(
            clock=clock,
            stop=stop,
            poll_interval_seconds=settings.monitor.poll_interval_seconds,
            default_timeout_seconds=settings.queue.task_timeout_seconds,
            default_cooldown_seconds=settings.limits.default_cooldown_seconds,
        ),
        clock=clock,
        stop=stop,
        check_interval_seconds=settings.monitor.check_interval_seconds,
        max_cycles=settings.monitor.max_cycles,
        max_recovery_attempts=settings.sessions.max_recovery_attempts,
        recovery_delay_seconds=settings.sessions.recovery_delay_seconds,
        transient_retry_limit=settings.monitor.transient_retry_limit,
        max_limit_detections=settings.limits.max_limit_detections,
        queue_processing=(
            settings.monitor.queue_processing if queue_processing is None else queue_processing
        ),
        context_clear_default=settings.monitor.context_clear_default,
        stale_claim_seconds=settings.monitor.stale_claim_seconds,
        backup_interval_seconds=settings.queue.backup_interval_seconds,
    )
