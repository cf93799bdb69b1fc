from __future__ import annotations

import multiprocessing
from pathlib import Path

import allure
import pytest

from auto_resume.errors import LockTimeoutError
from auto_resume.queue.locking import QueueLock, read_lock_owner
from auto_resume.queue.models import TaskStatus, TaskType
from auto_resume.queue.repository import TaskQueue

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Cross-Process Safety"),
]


def _claim_until_empty(  # pragma: no cover - executed in child process
    project_dir: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, list[str], str]],
) -> None:
    queue = TaskQueue.for_project(Path(project_dir), lock_timeout_seconds=20.0)
    claimed: list[str] = []
    try:
        start_event.wait(timeout=5)
        while True:
            task_id = queue.claim_next()
            if task_id is None:
                break
            claimed.append(task_id)
            queue.transition(task_id, TaskStatus.COMPLETED, note="done by child")
        result_queue.put(("ok", claimed, ""))
    except Exception as error:  # noqa: BLE001
        result_queue.put(("error", claimed, str(error)))


def _add_tasks(  # pragma: no cover - executed in child process
    project_dir: str,
    count: int,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, list[str], str]],
) -> None:
    queue = TaskQueue.for_project(Path(project_dir), lock_timeout_seconds=20.0)
    added: list[str] = []
    try:
        start_event.wait(timeout=5)
        for index in range(count):
            added.append(queue.add_task(TaskType.CUSTOM, 5, {"description": f"job {index}"}))
        result_queue.put(("ok", added, ""))
    except Exception as error:  # noqa: BLE001
        result_queue.put(("error", added, str(error)))


def test_concurrent_workers_never_claim_the_same_task(tmp_path: Path) -> None:
    queue = TaskQueue.for_project(tmp_path)
    expected = {
        queue.add_task(TaskType.CUSTOM, index % 3 + 1, {"description": f"job {index}"})
        for index in range(30)
    }

    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, list[str], str]] = context.Queue()
    workers = [
        context.Process(
            target=_claim_until_empty,
            args=(str(tmp_path), start_event, result_queue),
        )
        for _ in range(3)
    ]
    for worker in workers:
        worker.start()
    start_event.set()
    results = [result_queue.get(timeout=60) for _ in workers]
    for worker in workers:
        worker.join(timeout=10)
        assert worker.exitcode == 0

    assert [status for status, _, _ in results] == ["ok", "ok", "ok"], results
    claimed = [task_id for _, ids, _ in results for task_id in ids]
    assert len(claimed) == len(set(claimed))
    assert set(claimed) == expected
    tasks = queue.list_tasks()
    assert {task.status for task in tasks} == {TaskStatus.COMPLETED}
    for task in tasks:
        assert [entry.status_to for entry in task.history].count(TaskStatus.IN_PROGRESS) == 1


def test_concurrent_submitters_do_not_lose_writes(tmp_path: Path) -> None:
    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, list[str], str]] = context.Queue()
    submitters = [
        context.Process(target=_add_tasks, args=(str(tmp_path), 15, start_event, result_queue))
        for _ in range(2)
    ]
    for submitter in submitters:
        submitter.start()
    start_event.set()
    results = [result_queue.get(timeout=60) for _ in submitters]
    for submitter in submitters:
        submitter.join(timeout=10)
        assert submitter.exitcode == 0

    assert [status for status, _, _ in results] == ["ok", "ok"], results
    added = [task_id for _, ids, _ in results for task_id in ids]
    stored = [task.task_id for task in TaskQueue.for_project(tmp_path).list_tasks()]
    assert len(stored) == 30
    assert sorted(stored) == sorted(added)


def test_lock_times_out_while_another_holder_is_active(tmp_path: Path) -> None:
    lock_path = tmp_path / ".queue.lock"
    holder = QueueLock(lock_path)
    contender = QueueLock(lock_path, timeout_seconds=0.2, retry_interval_seconds=0.05)

    with holder.hold():
        owner = read_lock_owner(lock_path)
        assert owner is not None
        assert owner.startswith("pid=")
        with pytest.raises(LockTimeoutError, match="held by pid="):
            contender.acquire()

    with contender.hold():
        assert contender.held
    assert not contender.held


def test_lock_is_reentrant_for_its_owner(tmp_path: Path) -> None:
    lock = QueueLock(tmp_path / ".queue.lock", timeout_seconds=0.2)

    with lock.hold():
        with lock.hold():
            assert lock.held
        assert lock.held
    assert not lock.held


def test_queue_operation_fails_cleanly_when_lock_is_held(tmp_path: Path) -> None:
    queue = TaskQueue.for_project(tmp_path, lock_timeout_seconds=0.2)
    task_id = queue.add_task(TaskType.CUSTOM, 1, {"description": "locked out"})
    outsider = QueueLock(queue.paths.lock_file)

    with outsider.hold():
        with pytest.raises(LockTimeoutError):
            queue.claim_next()

    assert queue.get_task(task_id).status == TaskStatus.PENDING
