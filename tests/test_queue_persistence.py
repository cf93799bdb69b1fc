from __future__ import annotations

import json
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from auto_resume.errors import CorruptStateError
from auto_resume.queue.models import QueueDocument, TaskStatus, TaskType
from auto_resume.queue.persistence import (
    QueuePaths,
    backup_created_at,
    cleanup_backups,
    list_backups,
    read_document,
    write_backup,
    write_document,
)
from auto_resume.queue.repository import TaskQueue

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Persistence & Recovery"),
]


def test_queue_paths_live_under_project_state_dir(tmp_path: Path) -> None:
    paths = QueuePaths.for_project(tmp_path)

    assert paths.queue_file == tmp_path.resolve() / ".auto_resume" / "queue" / "task-queue.json"
    assert paths.backup_dir.name == "backups"
    assert paths.pause_marker.parent == paths.queue_dir


def test_missing_file_reads_as_empty_document(tmp_path: Path) -> None:
    document = read_document(tmp_path / "absent.json")

    assert document.tasks == []
    assert document.version == "2.0.0"


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("", "empty"),
        ("{not json", "not valid JSON"),
        ('{"tasks": {}}', "schema validation"),
        ('{"tasks": [{"id": "x"}]}', "schema validation"),
    ],
)
def test_unreadable_document_raises_corrupt_state(
    tmp_path: Path,
    content: str,
    message: str,
) -> None:
    path = tmp_path / "task-queue.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(CorruptStateError, match=message):
        read_document(path)


def test_failed_write_keeps_previous_document(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    path = tmp_path / "task-queue.json"
    write_document(path, QueueDocument.empty())
    before = path.read_text("utf-8")

    def _fail_replace(src: str, dst: str) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", _fail_replace)
    document = QueueDocument.empty()
    document.extra["marker"] = "new"
    with pytest.raises(OSError, match="disk full"):
        write_document(path, document)

    assert path.read_text("utf-8") == before
    assert [item.name for item in tmp_path.iterdir()] == ["task-queue.json"]


def test_backups_sort_oldest_first_and_parse_their_timestamp(tmp_path: Path) -> None:
    moment = datetime(2026, 1, 5, 12, 30, 15, 250, tzinfo=UTC)
    later = write_backup(tmp_path, QueueDocument.empty(), label="manual", now=moment)
    earlier = write_backup(
        tmp_path,
        QueueDocument.empty(),
        label="scheduled",
        now=moment - timedelta(hours=1),
    )
    clash = write_backup(tmp_path, QueueDocument.empty(), label="manual", now=moment)

    backups = list_backups(tmp_path)
    assert backups[0] == earlier
    assert set(backups[1:]) == {later, clash}
    assert clash.name.endswith("-manual-1.json")
    assert backup_created_at(later) == moment


def test_cleanup_backups_honours_retention(tmp_path: Path) -> None:
    now = datetime(2026, 2, 1, tzinfo=UTC)
    old = write_backup(tmp_path, QueueDocument.empty(), label="old", now=now - timedelta(days=40))
    recent = write_backup(tmp_path, QueueDocument.empty(), label="new", now=now - timedelta(days=2))

    assert cleanup_backups(tmp_path, retention_days=30, now=now) == 1

    assert not old.exists()
    assert recent.exists()


def test_recover_from_backup_after_corruption(queue: TaskQueue, clock) -> None:
    first = queue.add_task(TaskType.CUSTOM, 1, {"description": "keep me"})
    second = queue.add_task(TaskType.GITHUB_PR, 2, {"number": 99})
    queue.claim_next()
    snapshot = queue.backup(label="manual")
    expected = queue.load().to_dict()["tasks"]

    queue.paths.queue_file.write_text('{"tasks": [', encoding="utf-8")
    with pytest.raises(CorruptStateError):
        queue.list_tasks()

    clock.advance(5)
    source = queue.recover_from_backup()

    assert source == snapshot
    assert queue.load().to_dict()["tasks"] == expected
    assert queue.get_task(first).status == TaskStatus.IN_PROGRESS
    assert queue.get_task(second).status == TaskStatus.PENDING
    corrupt = list(queue.paths.queue_dir.glob("task-queue.json.corrupt-*"))
    assert len(corrupt) == 1
    assert corrupt[0].read_text("utf-8") == '{"tasks": ['


def test_recover_skips_unusable_backups(queue: TaskQueue, clock) -> None:
    task_id = queue.add_task(TaskType.CUSTOM, 1, {"description": "good"})
    good = queue.backup(label="good")
    clock.advance(1)
    broken = queue.backup(label="broken")
    broken.write_text("garbage", encoding="utf-8")

    assert queue.recover_from_backup() == good
    assert [task.task_id for task in queue.list_tasks()] == [task_id]
    assert any("before-restore" in path.name for path in queue.list_backups())


def test_recover_without_valid_backup_raises(queue: TaskQueue) -> None:
    queue.paths.queue_file.parent.mkdir(parents=True, exist_ok=True)
    queue.paths.queue_file.write_text("garbage", encoding="utf-8")

    with pytest.raises(CorruptStateError, match="No valid queue backup"):
        queue.recover_from_backup()


def test_scheduled_backup_respects_interval(queue: TaskQueue, clock) -> None:
    queue.add_task(TaskType.CUSTOM, 1, {"description": "snapshot"})

    assert queue.scheduled_backup(min_interval_seconds=3600) is not None
    clock.advance(600)
    assert queue.scheduled_backup(min_interval_seconds=3600) is None
    clock.advance(3600)
    assert queue.scheduled_backup(min_interval_seconds=3600) is not None
    assert len(queue.list_backups()) == 2


def test_backup_round_trip_preserves_document(queue: TaskQueue) -> None:
    queue.add_task(TaskType.GITHUB_ISSUE, 3, {"number": 5, "title": "Crash on start"})
    path = queue.backup()

    restored = json.loads(path.read_text("utf-8"))

    assert restored["tasks"] == queue.load().to_dict()["tasks"]
