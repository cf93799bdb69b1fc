"""Runtime configuration for the queue, limit handling, sessions and monitor."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(slots=True)
class QueueSettings:
    """Task queue persistence and retention settings."""

    max_retries: int = 3
    lock_timeout_seconds: float = 30.0
    backup_retention_days: int = 30
    backup_interval_seconds: int = 3_600
    task_timeout_seconds: int = 3_600
    completed_retention_days: int = 7
    max_queue_size: int = 0


@dataclass(slots=True)
class LimitSettings:
    """Usage-limit detection and backoff settings."""

    default_cooldown_seconds: int = 300
    backoff_factor: float = 1.5
    max_wait_seconds: int = 1_800
    min_wait_seconds: int = 60
    max_limit_detections: int = 5


@dataclass(slots=True)
class SessionSettings:
    """Assistant session launch and registry settings."""

    max_tracked_sessions: int = 50
    max_recovery_attempts: int = 3
    recovery_delay_seconds: float = 10.0
    session_prefix: str = "claude-auto"
    assistant_command: str = "claude"
    tmux_binary: str = "tmux"
    session_dir: Path = Path("~/.auto_resume/sessions")


@dataclass(slots=True)
class MonitorSettings:
    """Monitoring loop cadence settings."""

    check_interval_seconds: float = 300.0
    max_cycles: int = 50
    poll_interval_seconds: float = 5.0
    transient_retry_limit: int = 3
    queue_processing: bool = True
    context_clear_default: bool = True
    stale_claim_seconds: int = 0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_dir: Path = Path(".")
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    limits: LimitSettings = field(default_factory=LimitSettings)
    sessions: SessionSettings = field(default_factory=SessionSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)

    @classmethod
    def from_env(cls, project_dir: Path | None = None) -> Settings:
        """Load settings from ``AUTO_RESUME_*`` environment variables."""

        return cls(
            project_dir=project_dir or Path(os.getenv("AUTO_RESUME_PROJECT_DIR", ".")),
            log_level=os.getenv("AUTO_RESUME_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                max_retries=int(os.getenv("AUTO_RESUME_MAX_RETRIES", "3")),
                lock_timeout_seconds=float(os.getenv("AUTO_RESUME_LOCK_TIMEOUT_SECONDS", "30")),
                backup_retention_days=int(os.getenv("AUTO_RESUME_BACKUP_RETENTION_DAYS", "30")),
                backup_interval_seconds=int(
                    os.getenv("AUTO_RESUME_BACKUP_INTERVAL_SECONDS", "3600"),
                ),
                task_timeout_seconds=int(os.getenv("AUTO_RESUME_TASK_TIMEOUT_SECONDS", "3600")),
                completed_retention_days=int(
                    os.getenv("AUTO_RESUME_COMPLETED_RETENTION_DAYS", "7"),
                ),
                max_queue_size=int(os.getenv("AUTO_RESUME_MAX_QUEUE_SIZE", "0")),
            ),
            limits=LimitSettings(
                default_cooldown_seconds=int(
                    os.getenv("AUTO_RESUME_DEFAULT_COOLDOWN_SECONDS", "300"),
                ),
                backoff_factor=float(os.getenv("AUTO_RESUME_BACKOFF_FACTOR", "1.5")),
                max_wait_seconds=int(os.getenv("AUTO_RESUME_MAX_WAIT_SECONDS", "1800")),
                min_wait_seconds=int(os.getenv("AUTO_RESUME_MIN_WAIT_SECONDS", "60")),
                max_limit_detections=int(os.getenv("AUTO_RESUME_MAX_LIMIT_DETECTIONS", "5")),
            ),
            sessions=SessionSettings(
                max_tracked_sessions=int(os.getenv("AUTO_RESUME_MAX_TRACKED_SESSIONS", "50")),
                max_recovery_attempts=int(os.getenv("AUTO_RESUME_MAX_RECOVERY_ATTEMPTS", "3")),
                recovery_delay_seconds=float(
                    os.getenv("AUTO_RESUME_RECOVERY_DELAY_SECONDS", "10"),
                ),
                session_prefix=os.getenv("AUTO_RESUME_SESSION_PREFIX", "claude-auto"),
                assistant_command=os.getenv("AUTO_RESUME_ASSISTANT_COMMAND", "claude"),
                tmux_binary=os.getenv("AUTO_RESUME_TMUX_BINARY", "tmux"),
                session_dir=Path(
                    os.getenv("AUTO_RESUME_SESSION_DIR", "~/.auto_resume/sessions"),
                ).expanduser(),
            ),
            monitor=MonitorSettings(
                check_interval_seconds=float(
                    os.getenv("AUTO_RESUME_CHECK_INTERVAL_SECONDS", "300"),
                ),
                max_cycles=int(os.getenv("AUTO_RESUME_MAX_CYCLES", "50")),
                poll_interval_seconds=float(os.getenv("AUTO_RESUME_POLL_INTERVAL_SECONDS", "5")),
                transient_retry_limit=int(os.getenv("AUTO_RESUME_TRANSIENT_RETRY_LIMIT", "3")),
                queue_processing=_env_bool("AUTO_RESUME_QUEUE_PROCESSING", default=True),
                context_clear_default=_env_bool(
                    "AUTO_RESUME_CONTEXT_CLEAR_DEFAULT",
                    default=True,
                ),
                stale_claim_seconds=int(os.getenv("AUTO_RESUME_STALE_CLAIM_SECONDS", "0")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"AUTO_RESUME_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}.",
            )
        if self.queue.max_retries < 0:
            raise ValueError("AUTO_RESUME_MAX_RETRIES must be >= 0.")
        if self.queue.lock_timeout_seconds <= 0:
            raise ValueError("AUTO_RESUME_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.queue.backup_retention_days < 0:
            raise ValueError("AUTO_RESUME_BACKUP_RETENTION_DAYS must be >= 0.")
        if self.queue.task_timeout_seconds <= 0:
            raise ValueError("AUTO_RESUME_TASK_TIMEOUT_SECONDS must be > 0.")
        if self.queue.completed_retention_days < 0:
            raise ValueError("AUTO_RESUME_COMPLETED_RETENTION_DAYS must be >= 0.")
        if self.queue.max_queue_size < 0:
            raise ValueError("AUTO_RESUME_MAX_QUEUE_SIZE must be >= 0.")
        if self.limits.default_cooldown_seconds <= 0:
            raise ValueError("AUTO_RESUME_DEFAULT_COOLDOWN_SECONDS must be > 0.")
        if self.limits.backoff_factor < 1:
            raise ValueError("AUTO_RESUME_BACKOFF_FACTOR must be >= 1.")
        if self.limits.max_wait_seconds < self.limits.min_wait_seconds:
            raise ValueError(
                "AUTO_RESUME_MAX_WAIT_SECONDS must be >= AUTO_RESUME_MIN_WAIT_SECONDS.",
            )
        if self.limits.max_limit_detections <= 0:
            raise ValueError("AUTO_RESUME_MAX_LIMIT_DETECTIONS must be > 0.")
        if self.sessions.max_tracked_sessions <= 0:
            raise ValueError("AUTO_RESUME_MAX_TRACKED_SESSIONS must be > 0.")
        if self.sessions.max_recovery_attempts < 0:
            raise ValueError("AUTO_RESUME_MAX_RECOVERY_ATTEMPTS must be >= 0.")
        if not self.sessions.assistant_command.strip():
            raise ValueError("AUTO_RESUME_ASSISTANT_COMMAND must not be empty.")
        if self.monitor.check_interval_seconds < 0:
            raise ValueError("AUTO_RESUME_CHECK_INTERVAL_SECONDS must be >= 0.")
        if self.monitor.poll_interval_seconds <= 0:
            raise ValueError("AUTO_RESUME_POLL_INTERVAL_SECONDS must be > 0.")
        if self.monitor.transient_retry_limit <= 0:
            raise ValueError("AUTO_RESUME_TRANSIENT_RETRY_LIMIT must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
