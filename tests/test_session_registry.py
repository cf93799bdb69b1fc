from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from auto_resume.errors import ValidationError
from auto_resume.sessions.registry import (
    SessionRegistry,
    SessionState,
    build_session_name,
    project_id,
    validate_project_id,
)

pytestmark = [
    allure.epic("Sessions"),
    allure.feature("Project Identity & Registry"),
]


def test_project_id_is_deterministic_and_sanitized(tmp_path: Path) -> None:
    project = tmp_path / "My Project (v2)"
    project.mkdir()

    value = project_id(project)

    assert value == project_id(str(project))
    assert value == project_id(project / ".." / project.name)
    assert validate_project_id(value) == value
    slug, digest = value.rsplit("-", 1)
    assert len(digest) == 6
    assert len(slug) <= 40
    assert slug.endswith("My-Project-v2")


def test_project_id_distinguishes_paths_with_equal_slugs(tmp_path: Path) -> None:
    first = tmp_path / "a b"
    second = tmp_path / "a-b"
    first.mkdir()
    second.mkdir()

    assert project_id(first) != project_id(second)
    assert project_id(first).rsplit("-", 1)[0] == project_id(second).rsplit("-", 1)[0]


def test_session_name_validation() -> None:
    assert build_session_name("claude-auto", "repo-abc123") == "claude-auto-repo-abc123"
    with pytest.raises(ValidationError):
        build_session_name("claude-auto", "repo")
    with pytest.raises(ValidationError):
        build_session_name("claude auto", "repo-abc123")


def test_register_and_lookup_both_directions(tmp_path: Path, clock) -> None:
    registry = SessionRegistry(tmp_path / "sessions", clock=clock)
    project = tmp_path / "repo"

    record = registry.register("claude-auto-x", "claude-auto-x", project)

    assert registry.find_by_project(record.project_id) == "claude-auto-x"
    assert registry.find_by_handle("claude-auto-x") == record.project_id
    assert record.state == SessionState.STARTING
    saved = json.loads((tmp_path / "sessions" / f"{record.project_id}.json").read_text("utf-8"))
    assert saved["session_handle"] == "claude-auto-x"


def test_reregister_replaces_handle_and_keeps_counters(tmp_path: Path, clock) -> None:
    registry = SessionRegistry(tmp_path / "sessions", clock=clock)
    record = registry.register("old", "old", tmp_path)
    registry.increment_restart(record.project_id)

    replaced = registry.register("new", "new", tmp_path, record.project_id)

    assert replaced.restart_count == 1
    assert registry.find_by_handle("old") is None
    assert registry.find_by_handle("new") == record.project_id


def test_eviction_drops_least_recently_seen(tmp_path: Path, clock) -> None:
    registry = SessionRegistry(tmp_path / "sessions", max_tracked_sessions=2, clock=clock)
    ids = []
    for name in ("one", "two"):
        path = tmp_path / name
        ids.append(registry.register(f"h-{name}", f"h-{name}", path).project_id)
        clock.advance(10)
    registry.touch(ids[0])
    clock.advance(10)

    registry.register("h-three", "h-three", tmp_path / "three")

    assert len(registry) == 2
    assert registry.find_by_project(ids[1]) is None
    assert registry.find_by_handle("h-two") is None
    assert registry.find_by_project(ids[0]) == "h-one"


def test_state_updates_persist_and_reload(tmp_path: Path, clock) -> None:
    registry = SessionRegistry(tmp_path / "sessions", clock=clock)
    record = registry.register("h", "h", tmp_path / "repo", state=SessionState.RUNNING)
    registry.update_state(record.project_id, SessionState.USAGE_LIMITED, "rate limit")
    registry.increment_recovery(record.project_id)

    reloaded = SessionRegistry(tmp_path / "sessions", clock=clock)
    assert reloaded.load() == 1

    loaded = reloaded.get(record.project_id)
    assert loaded is not None
    assert loaded.state == SessionState.USAGE_LIMITED
    assert loaded.note == "rate limit"
    assert loaded.recovery_count == 1
    assert reloaded.find_by_handle("h") == record.project_id


def test_load_skips_unreadable_files(tmp_path: Path, clock) -> None:
    session_dir = tmp_path / "sessions"
    registry = SessionRegistry(session_dir, clock=clock)
    registry.register("h", "h", tmp_path / "repo")
    (session_dir / "broken-abcdef.json").write_text("{", encoding="utf-8")

    assert SessionRegistry(session_dir, clock=clock).load() == 1


def test_cleanup_inactive_only_removes_finished_sessions(tmp_path: Path, clock) -> None:
    registry = SessionRegistry(tmp_path / "sessions", clock=clock)
    dead = registry.register("dead", "dead", tmp_path / "dead").project_id
    alive = registry.register("alive", "alive", tmp_path / "alive").project_id
    registry.update_state(dead, SessionState.TERMINATED)
    clock.advance(7200)

    removed = registry.cleanup_inactive(max_age_seconds=3600)

    assert removed == [dead]
    assert registry.get(alive) is not None
    assert not (tmp_path / "sessions" / f"{dead}.json").exists()
