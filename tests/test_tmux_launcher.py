from __future__ import annotations

import subprocess
from pathlib import Path

import allure
import pytest

from auto_resume.errors import CollaboratorError
from auto_resume.sessions import tmux as tmux_module
from auto_resume.sessions.tmux import TmuxLauncher, TmuxSessionIO

pytestmark = [
    allure.epic("Sessions"),
    allure.feature("tmux Collaborator"),
]


class _FakeTmux:
    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.sessions: set[str] = set()
        self.pane = "line one\nline two\n"
        self.pane_dead = "0"

    def run(self, args: list[str], **kwargs) -> subprocess.CompletedProcess[str]:
        assert kwargs["check"] is False
        assert kwargs["timeout"] > 0
        self.calls.append(args)
        command = args[1]
        if command == "has-session":
            return self._result(args, 0 if args[3] in self.sessions else 1)
        if command == "new-session":
            self.sessions.add(args[args.index("-s") + 1])
            return self._result(args, 0)
        if command == "kill-session":
            self.sessions.discard(args[3])
            return self._result(args, 0)
        if command == "display-message":
            if args[4] not in self.sessions:
                return self._result(args, 1, stderr="can't find session")
            return self._result(args, 0, stdout=f"{self.pane_dead}\n")
        if command == "capture-pane":
            return self._result(args, 0, stdout=self.pane)
        if command == "send-keys":
            return self._result(args, 0)
        raise AssertionError(f"unexpected tmux call: {args}")

    @staticmethod
    def _result(
        args: list[str],
        returncode: int,
        *,
        stdout: str = "",
        stderr: str = "",
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(args, returncode, stdout=stdout, stderr=stderr)


@pytest.fixture()
def fake_tmux(monkeypatch: pytest.MonkeyPatch) -> _FakeTmux:
    fake = _FakeTmux()
    monkeypatch.setattr(tmux_module.subprocess, "run", fake.run)
    monkeypatch.setattr(tmux_module.time, "sleep", lambda _: None)
    return fake


def test_start_session_runs_assistant_in_project_dir(fake_tmux: _FakeTmux, tmp_path: Path) -> None:
    launcher = TmuxLauncher(assistant_command="claude --continue")

    handle = launcher.start_session("repo-abc123", tmp_path)

    assert handle == "claude-auto-repo-abc123"
    assert fake_tmux.calls[-1] == [
        "tmux",
        "new-session",
        "-d",
        "-s",
        handle,
        "-c",
        str(tmp_path),
        "claude",
        "--continue",
    ]
    assert launcher.session_exists(handle)


def test_start_session_reuses_existing_session(fake_tmux: _FakeTmux, tmp_path: Path) -> None:
    fake_tmux.sessions.add("claude-auto-repo-abc123")
    launcher = TmuxLauncher()

    assert launcher.start_session("repo-abc123", tmp_path) == "claude-auto-repo-abc123"
    assert [call[1] for call in fake_tmux.calls] == ["has-session"]


def test_health_check_reports_dead_or_missing_panes(fake_tmux: _FakeTmux) -> None:
    launcher = TmuxLauncher()
    fake_tmux.sessions.add("s")

    assert launcher.health_check("s")
    fake_tmux.pane_dead = "1"
    assert not launcher.health_check("s")
    assert not launcher.health_check("missing")


def test_stop_session_is_noop_when_absent(fake_tmux: _FakeTmux) -> None:
    launcher = TmuxLauncher()
    launcher.stop_session("missing")
    fake_tmux.sessions.add("s")
    launcher.stop_session("s")

    assert [call[1] for call in fake_tmux.calls] == ["has-session", "has-session", "kill-session"]
    assert "s" not in fake_tmux.sessions


def test_session_io_sends_literal_text_then_enter(fake_tmux: _FakeTmux) -> None:
    io = TmuxLauncher().attach("s")

    io.send("fix the bug; then C-c")
    output = io.recent_output()

    assert fake_tmux.calls[0] == [
        "tmux",
        "send-keys",
        "-t",
        "s",
        "-l",
        "--",
        "fix the bug; then C-c",
    ]
    assert fake_tmux.calls[1] == ["tmux", "send-keys", "-t", "s", "Enter"]
    assert fake_tmux.calls[2][:5] == ["tmux", "capture-pane", "-p", "-t", "s"]
    assert output == "line one\nline two\n"


def test_session_io_ends_options_before_text(fake_tmux: _FakeTmux) -> None:
    TmuxLauncher().attach("s").send("-v flag parsing is broken, fix it")

    argv = fake_tmux.calls[0]
    assert argv[-1] == "-v flag parsing is broken, fix it"
    assert argv[-2] == "--"
    assert argv.index("--") > argv.index("-l")


def test_missing_binary_is_a_permanent_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def _missing(*args, **kwargs):
        raise FileNotFoundError("tmux")

    monkeypatch.setattr(tmux_module.subprocess, "run", _missing)

    with pytest.raises(CollaboratorError, match="tmux binary not found") as error:
        TmuxLauncher().session_exists("s")
    assert error.value.transient is False


def test_command_timeout_is_transient(monkeypatch: pytest.MonkeyPatch) -> None:
    def _slow(args, **kwargs):
        raise subprocess.TimeoutExpired(args, kwargs["timeout"])

    monkeypatch.setattr(tmux_module.subprocess, "run", _slow)

    with pytest.raises(CollaboratorError, match="timed out") as error:
        TmuxSessionIO("s", command_timeout_seconds=1).recent_output()
    assert error.value.transient is True


def test_non_zero_exit_raises_with_stderr(
    fake_tmux: _FakeTmux,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _fail(args, **kwargs):
        return subprocess.CompletedProcess(args, 1, stdout="", stderr="no server running")

    monkeypatch.setattr(tmux_module.subprocess, "run", _fail)

    with pytest.raises(CollaboratorError, match="no server running"):
        TmuxSessionIO("s").send("hello")
