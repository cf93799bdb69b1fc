"""Collaborator interfaces for running and talking to the assistant session."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol


class SessionIO(Protocol):
    """Text channel to one live assistant session."""

    def send(self, text: str) -> None:
        """Type ``text`` into the session and submit it."""

    def recent_output(self) -> str:
        """Return the most recent visible output of the session."""


class SessionLauncher(Protocol):
    """Starts, probes and attaches to assistant sessions."""

    def session_exists(self, handle: str) -> bool:
        """Whether a session with ``handle`` is present."""

    def start_session(self, project_id: str, path: Path) -> str:
        """Start the assistant for ``project_id`` in ``path`` and return its handle."""

    def health_check(self, handle: str) -> bool:
        """Whether the session is alive and able to accept input."""

    def stop_session(self, handle: str) -> None:
        """Terminate the session if it exists."""

    def attach(self, handle: str) -> SessionIO:
        """Return the text channel for ``handle``."""
