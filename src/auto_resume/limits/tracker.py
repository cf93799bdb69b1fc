"""Repeated-limit backoff, pause marker and usage-limit statistics."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from auto_resume.limits.detector import SignalKind, UsageLimitSignal
from auto_resume.timeutils import from_iso, to_iso

logger = logging.getLogger(__name__)
_GLOBAL_KEY = "global"


@dataclass(slots=True)
class PauseMarker:
    """Persisted record of an in-flight usage-limit pause."""

    pause_time: datetime
    resume_at: datetime
    task_id: str | None = None
    pattern: str | None = None
    occurrence: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "pause_time": to_iso(self.pause_time),
            "resume_at": to_iso(self.resume_at),
            "task_id": self.task_id,
            "pattern": self.pattern,
            "occurrence": self.occurrence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PauseMarker:
        return cls(
            pause_time=from_iso(str(data["pause_time"])),
            resume_at=from_iso(str(data["resume_at"])),
            task_id=data.get("task_id"),
            pattern=data.get("pattern"),
            occurrence=int(data.get("occurrence") or 1),
        )


@dataclass(slots=True)
class UsageLimitStats:
    """Process-lifetime usage-limit counters."""

    occurrences: int = 0
    total_wait_seconds: float = 0.0
    last_detected: datetime | None = None
    by_pattern: Counter[str] = field(default_factory=Counter)

    def render(self) -> str:
        last = self.last_detected.isoformat() if self.last_detected else "-"
        return (
            f"Usage limits: occurrences={self.occurrences} "
            f"total_wait_seconds={self.total_wait_seconds:.0f} last_detected={last}"
        )


class UsageLimitTracker:
    """Turns detector signals into resume timestamps and remembers the pause.

    Relative waits back off per ``task:pattern`` key as
    ``cooldown * backoff_factor ** (n - 1)``, clamped to
    ``[min_wait_seconds, max_wait_seconds]``. Absolute times are used as-is.
    """

    def __init__(  # noqa: PLR0913
        self,
        marker_path: Path,
        *,
        cooldown_seconds: int = 300,
        backoff_factor: float = 1.5,
        max_wait_seconds: int = 1800,
        min_wait_seconds: int = 60,
    ) -> None:
        self.marker_path = marker_path
        self.cooldown_seconds = cooldown_seconds
        self.backoff_factor = backoff_factor
        self.max_wait_seconds = max_wait_seconds
        self.min_wait_seconds = min_wait_seconds
        self.stats = UsageLimitStats()
        self._occurrences: Counter[str] = Counter()

    def backoff_seconds(self, occurrence: int, *, base_seconds: int | None = None) -> int:
        base = self.cooldown_seconds if base_seconds is None else base_seconds
        raw = base * (self.backoff_factor ** max(occurrence - 1, 0))
        capped = min(float(self.max_wait_seconds), raw)
        return int(max(float(self.min_wait_seconds), capped))

    def plan_pause(
        self,
        signal: UsageLimitSignal,
        *,
        now: datetime,
        task_id: str | None = None,
    ) -> PauseMarker:
        """Register a detection, persist the pause marker and return it."""

        pattern = signal.matched_pattern or "usage_limit"
        key = f"{task_id or _GLOBAL_KEY}:{pattern}"
        self._occurrences[key] += 1
        occurrence = self._occurrences[key]

        if signal.kind == SignalKind.ABSOLUTE_TIME and signal.resume_at is not None:
            resume_at = signal.resume_at
        else:
            wait_seconds = self.backoff_seconds(occurrence, base_seconds=signal.wait_seconds)
            resume_at = now + timedelta(seconds=wait_seconds)

        self.stats.occurrences += 1
        self.stats.last_detected = now
        self.stats.by_pattern[pattern] += 1

        marker = PauseMarker(
            pause_time=now,
            resume_at=resume_at,
            task_id=task_id,
            pattern=pattern,
            occurrence=occurrence,
        )
        self.write_marker(marker)
        logger.warning(
            "Usage limit detected (%s, occurrence %d); resuming at %s",
            pattern,
            occurrence,
            resume_at.isoformat(),
        )
        return marker

    def record_wait(self, seconds: float) -> None:
        self.stats.total_wait_seconds += max(0.0, seconds)

    def forget_task(self, task_id: str) -> None:
        prefix = f"{task_id}:"
        for key in [key for key in self._occurrences if key.startswith(prefix)]:
            del self._occurrences[key]

    def forget_global(self) -> None:
        """Reset backoff for limits seen outside any task."""

        self.forget_task(_GLOBAL_KEY)

    def read_marker(self) -> PauseMarker | None:
        """Load the pause marker; an unreadable marker is discarded."""

        try:
            raw = self.marker_path.read_text("utf-8")
        except FileNotFoundError:
            return None
        try:
            return PauseMarker.from_dict(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as error:
            logger.warning("Discarding unreadable pause marker %s: %s", self.marker_path, error)
            self.clear_marker()
            return None

    def write_marker(self, marker: PauseMarker) -> None:
        self.marker_path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=self.marker_path.parent,
            prefix=".marker_",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(marker.to_dict(), handle, indent=2)
            os.replace(temp_path, self.marker_path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def clear_marker(self) -> None:
        try:
            self.marker_path.unlink()
        except FileNotFoundError:
            return
