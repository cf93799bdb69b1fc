"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from auto_resume.limits.scheduler import StopToken
from auto_resume.queue.repository import TaskQueue

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Virtual clock: ``sleep`` advances ``now`` instantly."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[FakeClock], None] | None = None

    def __call__(self) -> datetime:
        return self.current

    def now(self) -> datetime:
        return self.current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)
        if self.on_sleep is not None:
            self.on_sleep(self)

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class FakeSessionIO:
    """Scripted pane: each ``send`` may append a canned response."""

    def __init__(self, launcher: FakeLauncher, handle: str) -> None:
        self.launcher = launcher
        self.handle = handle

    def send(self, text: str) -> None:
        self.launcher.sent.append(text)
        self.launcher.output += f"> {text}\n"
        respond = self.launcher.responder
        if respond is not None:
            self.launcher.output += respond(text)

    def recent_output(self) -> str:
        if self.launcher.capture_error is not None:
            error = self.launcher.capture_error
            self.launcher.capture_error = None
            raise error
        return self.launcher.output


class FakeLauncher:
    """In-memory stand-in for the tmux launcher."""

    def __init__(self) -> None:
        self.sessions: set[str] = set()
        self.unhealthy: set[str] = set()
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.sent: list[str] = []
        self.output = ""
        self.responder: Callable[[str], str] | None = None
        self.capture_error: Exception | None = None
        self.heal_on_restart = True

    def session_exists(self, handle: str) -> bool:
        return handle in self.sessions

    def start_session(self, project_id: str, path: Path) -> str:
        handle = f"claude-auto-{project_id}"
        self.sessions.add(handle)
        self.started.append(handle)
        if self.heal_on_restart:
            self.unhealthy.discard(handle)
        return handle

    def health_check(self, handle: str) -> bool:
        return handle in self.sessions and handle not in self.unhealthy

    def stop_session(self, handle: str) -> None:
        self.sessions.discard(handle)
        self.stopped.append(handle)

    def attach(self, handle: str) -> FakeSessionIO:
        return FakeSessionIO(self, handle)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def stop() -> StopToken:
    return StopToken()


@pytest.fixture()
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture()
def queue(project_dir: Path, clock: FakeClock) -> TaskQueue:
    return TaskQueue.for_project(project_dir, lock_timeout_seconds=2.0, clock=clock)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep developer AUTO_RESUME_* settings out of tests."""

    for name in list(os.environ):
        if name.startswith("AUTO_RESUME_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("AUTO_RESUME_SESSION_DIR", str(tmp_path / "sessions"))
