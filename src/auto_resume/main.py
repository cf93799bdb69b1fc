"""CLI entrypoint for auto-resume."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from auto_resume import __version__
from auto_resume.config import Settings
from auto_resume.errors import AutoResumeError
from auto_resume.orchestrator.controllers import (
    MonitorCliController,
    MonitorRunCommand,
    SessionCliController,
    SessionIdCommand,
    SessionListCommand,
)
from auto_resume.queue.controllers import (
    QueueAddCommand,
    QueueBackupCommand,
    QueueCleanupCommand,
    QueueCliController,
    QueueListCommand,
    QueuePauseCommand,
    QueueProjectCommand,
    QueueRestoreCommand,
    QueueTaskCommand,
)
from auto_resume.queue.models import TaskStatus, TaskType

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
MONITOR_CONTROLLER = MonitorCliController()
SESSION_CONTROLLER = SessionCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

project_dir_option = click.option(
    "--project-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project directory. Defaults to `AUTO_RESUME_PROJECT_DIR` or the current directory.",
)


@click.group()
@click.version_option(version=__version__, prog_name="auto-resume")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level. Defaults to `AUTO_RESUME_LOG_LEVEL` or INFO.",
)
def auto_resume(log_level: str | None) -> None:
    """Keep an AI coding assistant working through usage limits.

    Queue tasks per project, then run the **monitor** to feed them to the
    assistant session, waiting out usage limits and recovering the session.
    """

    with _cli_errors():
        level = (log_level or Settings.from_env().log_level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


@auto_resume.group()
def queue() -> None:
    """Task queue commands."""


@queue.command("add")
@project_dir_option
@click.option(
    "--type",
    "task_type",
    type=click.Choice([item.value for item in TaskType]),
    default=TaskType.CUSTOM.value,
    show_default=True,
    help="Task type.",
)
@click.option("--description", default=None, help="What the assistant should do.")
@click.option(
    "--number",
    type=click.IntRange(min=1),
    default=None,
    help="Issue or pull request number for GitHub task types.",
)
@click.option("--details", default=None, help="Extra instructions appended to the prompt.")
@click.option(
    "--priority",
    type=click.IntRange(min=1),
    default=5,
    show_default=True,
    help="Lower value is served first.",
)
@click.option(
    "--clear-context/--keep-context",
    default=None,
    help="Override the global context-clearing default for this task.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Inactivity timeout for this task.",
)
@click.option("--task-id", default=None, help="Explicit task id instead of a generated one.")
def queue_add(  # noqa: PLR0913
    project_dir: Path | None,
    task_type: str,
    description: str | None,
    number: int | None,
    details: str | None,
    priority: int,
    clear_context: bool | None,
    timeout_seconds: int | None,
    task_id: str | None,
) -> None:
    """Add a task to the project queue."""

    with _cli_errors():
        _emit_lines(
            QUEUE_CONTROLLER.add(
                QueueAddCommand(
                    project_dir=project_dir,
                    task_type=task_type,
                    description=description,
                    number=number,
                    priority=priority,
                    details=details,
                    clear_context=clear_context,
                    timeout_seconds=timeout_seconds,
                    task_id=task_id,
                ),
            ),
        )


@queue.command("list")
@project_dir_option
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus]),
    default=None,
    help="Only show tasks with this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=0),
    default=50,
    show_default=True,
    help="Maximum tasks to show; 0 shows all.",
)
def queue_list(project_dir: Path | None, status: str | None, limit: int) -> None:
    """List queued tasks, running ones first."""

    with _cli_errors():
        _emit_lines(
            QUEUE_CONTROLLER.list_tasks(
                QueueListCommand(project_dir=project_dir, status=status, limit=limit),
            ),
        )


@queue.command("inspect")
@project_dir_option
@click.argument("task_id")
def queue_inspect(project_dir: Path | None, task_id: str) -> None:
    """Show one task with its history and errors."""

    with _cli_errors():
        _emit_lines(
            QUEUE_CONTROLLER.inspect(QueueTaskCommand(project_dir=project_dir, task_id=task_id)),
        )


@queue.command("requeue")
@project_dir_option
@click.argument("task_id")
def queue_requeue(project_dir: Path | None, task_id: str) -> None:
    """Return a completed, failed or timed-out task to pending."""

    with _cli_errors():
        _emit_lines(
            QUEUE_CONTROLLER.requeue(QueueTaskCommand(project_dir=project_dir, task_id=task_id)),
        )


@queue.command("remove")
@project_dir_option
@click.argument("task_id")
def queue_remove(project_dir: Path | None, task_id: str) -> None:
    """Delete a task from the queue."""

    with _cli_errors():
        _emit_lines(
            QUEUE_CONTROLLER.remove(QueueTaskCommand(project_dir=project_dir, task_id=task_id)),
        )


@queue.command("pause")
@project_dir_option
@click.option("--reason", default="manual", show_default=True, help="Reason shown in stats.")
def queue_pause(project_dir: Path | None, reason: str) -> None:
    """Stop the monitor from claiming new tasks."""

    with _cli_errors():
        _emit_lines(
            QUEUE_CONTROLLER.pause(QueuePauseCommand(project_dir=project_dir, reason=reason)),
        )


@queue.command("resume")
@project_dir_option
def queue_resume(project_dir: Path | None) -> None:
    """Allow the monitor to claim tasks again."""

    with _cli_errors():
        _emit_lines(QUEUE_CONTROLLER.resume(QueueProjectCommand(project_dir=project_dir)))


@queue.command("stats")
@project_dir_option
def queue_stats(project_dir: Path | None) -> None:
    """Show task counts per status and pause state."""

    with _cli_errors():
        _emit_lines(QUEUE_CONTROLLER.stats(QueueProjectCommand(project_dir=project_dir)))


@queue.command("backup")
@project_dir_option
@click.option("--label", default="manual", show_default=True, help="Backup file label.")
def queue_backup(project_dir: Path | None, label: str) -> None:
    """Snapshot the queue document."""

    with _cli_errors():
        _emit_lines(
            QUEUE_CONTROLLER.backup(QueueBackupCommand(project_dir=project_dir, label=label)),
        )


@queue.command("restore")
@project_dir_option
@click.option(
    "--backup",
    "backup_path",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="Backup file to restore. Defaults to the newest valid backup.",
)
def queue_restore(project_dir: Path | None, backup_path: Path | None) -> None:
    """Replace the queue document with a backup."""

    with _cli_errors():
        _emit_lines(
            QUEUE_CONTROLLER.restore(
                QueueRestoreCommand(project_dir=project_dir, backup_path=backup_path),
            ),
        )


@queue.command("backups")
@project_dir_option
def queue_backups(project_dir: Path | None) -> None:
    """List queue backups, newest first."""

    with _cli_errors():
        _emit_lines(QUEUE_CONTROLLER.backups(QueueProjectCommand(project_dir=project_dir)))


@queue.command("cleanup")
@project_dir_option
@click.option(
    "--retention-days",
    type=click.IntRange(min=0),
    default=None,
    help="Completed-task retention. Defaults to `AUTO_RESUME_COMPLETED_RETENTION_DAYS`.",
)
@click.option(
    "--repair",
    is_flag=True,
    default=False,
    help="Drop malformed task entries before cleaning up.",
)
def queue_cleanup(project_dir: Path | None, retention_days: int | None, repair: bool) -> None:
    """Remove finished tasks past retention and prune old backups."""

    with _cli_errors():
        _emit_lines(
            QUEUE_CONTROLLER.cleanup(
                QueueCleanupCommand(
                    project_dir=project_dir,
                    retention_days=retention_days,
                    repair=repair,
                ),
            ),
        )


@auto_resume.group()
def monitor() -> None:
    """Monitoring loop commands."""


@monitor.command("run")
@project_dir_option
@click.option(
    "--max-cycles",
    type=click.IntRange(min=0),
    default=None,
    help="Stop after this many cycles; 0 runs until interrupted. "
    "Defaults to `AUTO_RESUME_MAX_CYCLES`.",
)
@click.option("--once", is_flag=True, default=False, help="Run a single cycle.")
@click.option(
    "--no-queue",
    is_flag=True,
    default=False,
    help="Only watch limits and session health; do not run queued tasks.",
)
def monitor_run(
    project_dir: Path | None,
    max_cycles: int | None,
    once: bool,
    no_queue: bool,
) -> None:
    """Run the monitoring loop for a project."""

    with _cli_errors():
        result = MONITOR_CONTROLLER.run(
            MonitorRunCommand(
                project_dir=project_dir,
                max_cycles=max_cycles,
                once=once,
                queue_processing=False if no_queue else None,
            ),
        )
    _emit_lines(result.lines)
    if result.exit_code != 0:
        raise click.ClickException("Monitor stopped after an unrecoverable error.")


@auto_resume.group()
def session() -> None:
    """Session registry commands."""


@session.command("id")
@click.argument("path", type=click.Path(path_type=Path, file_okay=False), default=".")
def session_id(path: Path) -> None:
    """Print the project id and session name for a directory."""

    with _cli_errors():
        _emit_lines(SESSION_CONTROLLER.project_id(SessionIdCommand(path=path)))


@session.command("list")
@click.option(
    "--session-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Session registry directory. Defaults to `AUTO_RESUME_SESSION_DIR`.",
)
def session_list(session_dir: Path | None) -> None:
    """List tracked assistant sessions."""

    with _cli_errors():
        _emit_lines(SESSION_CONTROLLER.list_sessions(SessionListCommand(session_dir=session_dir)))


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except (AutoResumeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    auto_resume()
