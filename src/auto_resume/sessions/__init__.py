"""Assistant session identity, registry and launch collaborators."""

from auto_resume.sessions.base import SessionIO, SessionLauncher
from auto_resume.sessions.registry import (
    SessionRecord,
    SessionRegistry,
    SessionState,
    build_session_name,
    project_id,
)
from auto_resume.sessions.tmux import TmuxLauncher, TmuxSessionIO

__all__ = [
    "SessionIO",
    "SessionLauncher",
    "SessionRecord",
    "SessionRegistry",
    "SessionState",
    "TmuxLauncher",
    "TmuxSessionIO",
    "build_session_name",
    "project_id",
]
