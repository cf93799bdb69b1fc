from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from auto_resume import __version__
from auto_resume.main import auto_resume
from auto_resume.queue.persistence import QueuePaths
from auto_resume.sessions.registry import project_id

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Queue, Monitor & Session Commands"),
]


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(auto_resume, list(args), catch_exceptions=False)


def test_version():
    assert __version__


def test_version_option(runner: CliRunner):
    result = runner.invoke(auto_resume, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_queue_add_list_and_stats(runner: CliRunner, project_dir: Path) -> None:
    first = _invoke(
        runner,
        "queue",
        "add",
        "--project-dir",
        str(project_dir),
        "--description",
        "Fix login redirect",
        "--priority",
        "2",
        "--keep-context",
    )
    second = _invoke(
        runner,
        "queue",
        "add",
        "--project-dir",
        str(project_dir),
        "--type",
        "github_issue",
        "--number",
        "42",
        "--priority",
        "1",
    )

    assert first.exit_code == 0
    assert "Task added: task_id=" in first.output
    assert "priority=2 status=pending" in first.output
    assert second.exit_code == 0

    listed = _invoke(runner, "queue", "list", "--project-dir", str(project_dir))
    lines = listed.output.splitlines()
    assert lines[0] == "Tasks: 2"
    assert "description=GitHub issue #42" in lines[1]
    assert "description=Fix login redirect" in lines[2]

    stats = _invoke(runner, "queue", "stats", "--project-dir", str(project_dir))
    assert "  pending: 2" in stats.output.splitlines()
    assert "Paused: no" in stats.output


def test_queue_add_rejects_missing_description(runner: CliRunner, project_dir: Path) -> None:
    result = runner.invoke(auto_resume, ["queue", "add", "--project-dir", str(project_dir)])

    assert result.exit_code == 1
    assert "description" in result.output
    assert not QueuePaths.for_project(project_dir).queue_file.exists()


def test_queue_inspect_requeue_and_remove(runner: CliRunner, project_dir: Path) -> None:
    added = _invoke(
        runner,
        "queue",
        "add",
        "--project-dir",
        str(project_dir),
        "--description",
        "Write docs",
        "--task-id",
        "task-1772441999-abcd",
    )
    assert added.exit_code == 0

    inspected = _invoke(
        runner,
        "queue",
        "inspect",
        "--project-dir",
        str(project_dir),
        "task-1772441999-abcd",
    )
    assert "Status: pending" in inspected.output
    assert "Clear context: default" in inspected.output

    requeue = runner.invoke(
        auto_resume,
        ["queue", "requeue", "--project-dir", str(project_dir), "task-1772441999-abcd"],
    )
    assert requeue.exit_code == 1

    removed = _invoke(
        runner,
        "queue",
        "remove",
        "--project-dir",
        str(project_dir),
        "task-1772441999-abcd",
    )
    assert "Task removed: task-1772441999-abcd" in removed.output

    missing = runner.invoke(
        auto_resume,
        ["queue", "inspect", "--project-dir", str(project_dir), "task-1772441999-abcd"],
    )
    assert missing.exit_code == 1
    assert "Task not found" in missing.output


def test_queue_pause_resume(runner: CliRunner, project_dir: Path) -> None:
    paused = _invoke(
        runner,
        "queue",
        "pause",
        "--project-dir",
        str(project_dir),
        "--reason",
        "release freeze",
    )
    assert "Queue paused: release freeze" in paused.output
    stats = _invoke(runner, "queue", "stats", "--project-dir", str(project_dir))
    assert "Paused: yes (release freeze)" in stats.output

    resumed = _invoke(runner, "queue", "resume", "--project-dir", str(project_dir))
    assert "Queue resumed" in resumed.output


def test_queue_backup_restore_and_cleanup(runner: CliRunner, project_dir: Path) -> None:
    _invoke(runner, "queue", "add", "--project-dir", str(project_dir), "--description", "A")

    backup = _invoke(runner, "queue", "backup", "--project-dir", str(project_dir))
    assert backup.output.startswith("Backup created: ")
    backups = _invoke(runner, "queue", "backups", "--project-dir", str(project_dir))
    assert backups.output.splitlines()[0] == "Backups: 1"

    paths = QueuePaths.for_project(project_dir)
    paths.queue_file.write_text("{broken", encoding="utf-8")
    restored = _invoke(runner, "queue", "restore", "--project-dir", str(project_dir))
    assert restored.output.startswith("Queue restored from: ")
    document = json.loads(paths.queue_file.read_text("utf-8"))
    assert len(document["tasks"]) == 1

    cleanup = _invoke(
        runner,
        "queue",
        "cleanup",
        "--project-dir",
        str(project_dir),
        "--retention-days",
        "0",
        "--repair",
    )
    assert "Repair dropped malformed entries: 0" in cleanup.output
    assert "Cleanup: removed_tasks=0" in cleanup.output


def test_session_id_prints_stable_identity(runner: CliRunner, project_dir: Path) -> None:
    result = _invoke(runner, "session", "id", str(project_dir))

    expected = project_id(project_dir)
    assert f"Project id: {expected}" in result.output
    assert f"Session name: claude-auto-{expected}" in result.output


def test_session_list_is_empty_without_registry(runner: CliRunner, tmp_path: Path) -> None:
    result = _invoke(runner, "session", "list", "--session-dir", str(tmp_path / "none"))

    assert result.output.splitlines() == ["Sessions: 0"]


def test_monitor_run_reports_invalid_configuration(
    runner: CliRunner,
    project_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AUTO_RESUME_POLL_INTERVAL_SECONDS", "0")

    result = runner.invoke(
        auto_resume,
        ["monitor", "run", "--project-dir", str(project_dir), "--once"],
    )

    assert result.exit_code == 1
    assert "AUTO_RESUME_POLL_INTERVAL_SECONDS must be > 0." in result.output
