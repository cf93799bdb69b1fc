"""tmux-backed implementation of the session collaborators."""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from pathlib import Path

from auto_resume.errors import CollaboratorError
from auto_resume.sessions.registry import build_session_name

logger = logging.getLogger(__name__)


class TmuxSessionIO:
    """Sends keystrokes to and captures the pane of one tmux session."""

    def __init__(
        self,
        handle: str,
        *,
        tmux_binary: str = "tmux",
        command_timeout_seconds: float = 10.0,
        capture_lines: int = 200,
        submit_delay_seconds: float = 0.5,
    ) -> None:
        self.handle = handle
        self.tmux_binary = tmux_binary
        self.command_timeout_seconds = command_timeout_seconds
        self.capture_lines = capture_lines
        self.submit_delay_seconds = submit_delay_seconds

    def send(self, text: str) -> None:
        # Literal mode and "--" so task text is never parsed as key names or flags.
        _check(
            _run_tmux(
                [self.tmux_binary, "send-keys", "-t", self.handle, "-l", "--", text],
                timeout=self.command_timeout_seconds,
            ),
            action=f"send text to {self.handle}",
        )
        if self.submit_delay_seconds > 0:
            time.sleep(self.submit_delay_seconds)
        _check(
            _run_tmux(
                [self.tmux_binary, "send-keys", "-t", self.handle, "Enter"],
                timeout=self.command_timeout_seconds,
            ),
            action=f"submit input to {self.handle}",
        )

    def recent_output(self) -> str:
        result = _run_tmux(
            [
                self.tmux_binary,
                "capture-pane",
                "-p",
                "-t",
                self.handle,
                "-S",
                f"-{self.capture_lines}",
            ],
            timeout=self.command_timeout_seconds,
        )
        _check(result, action=f"capture output of {self.handle}")
        return result.stdout


class TmuxLauncher:
    """Runs the assistant CLI inside detached tmux sessions named per project."""

    def __init__(
        self,
        *,
        session_prefix: str = "claude-auto",
        assistant_command: str = "claude",
        tmux_binary: str = "tmux",
        command_timeout_seconds: float = 10.0,
    ) -> None:
        self.session_prefix = session_prefix
        self.assistant_command = assistant_command
        self.tmux_binary = tmux_binary
        self.command_timeout_seconds = command_timeout_seconds

    def session_exists(self, handle: str) -> bool:
        result = _run_tmux(
            [self.tmux_binary, "has-session", "-t", handle],
            timeout=self.command_timeout_seconds,
        )
        return result.returncode == 0

    def start_session(self, project_id: str, path: Path) -> str:
        name = build_session_name(self.session_prefix, project_id)
        if self.session_exists(name):
            logger.info("Reusing existing tmux session %s", name)
            return name
        _check(
            _run_tmux(
                [
                    self.tmux_binary,
                    "new-session",
                    "-d",
                    "-s",
                    name,
                    "-c",
                    str(path),
                    *shlex.split(self.assistant_command),
                ],
                timeout=self.command_timeout_seconds,
            ),
            action=f"start tmux session {name}",
        )
        logger.info("Started tmux session %s in %s", name, path)
        return name

    def health_check(self, handle: str) -> bool:
        result = _run_tmux(
            [self.tmux_binary, "display-message", "-p", "-t", handle, "#{pane_dead}"],
            timeout=self.command_timeout_seconds,
        )
        if result.returncode != 0:
            return False
        return result.stdout.strip() in {"0", ""}

    def stop_session(self, handle: str) -> None:
        if not self.session_exists(handle):
            return
        _check(
            _run_tmux(
                [self.tmux_binary, "kill-session", "-t", handle],
                timeout=self.command_timeout_seconds,
            ),
            action=f"stop tmux session {handle}",
        )
        logger.info("Stopped tmux session %s", handle)

    def attach(self, handle: str) -> TmuxSessionIO:
        return TmuxSessionIO(
            handle,
            tmux_binary=self.tmux_binary,
            command_timeout_seconds=self.command_timeout_seconds,
        )


def _run_tmux(args: list[str], *, timeout: float) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(  # noqa: S603
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as error:
        raise CollaboratorError(f"tmux binary not found: {args[0]}", transient=False) from error
    except subprocess.TimeoutExpired as error:
        raise CollaboratorError(
            f"tmux command timed out after {timeout:.0f}s: {' '.join(args[:3])}",
            transient=True,
        ) from error
    except OSError as error:
        raise CollaboratorError(f"tmux failed to start: {error}", transient=True) from error


def _check(result: subprocess.CompletedProcess[str], *, action: str) -> None:
    if result.returncode == 0:
        return
    detail = (result.stderr or result.stdout or "").strip() or f"exit code {result.returncode}"
    raise CollaboratorError(f"Failed to {action}: {detail}", transient=False)
