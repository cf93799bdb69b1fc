"""Cancellable countdown that blocks until a usage limit lifts."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from auto_resume.timeutils import format_duration, local_now

logger = logging.getLogger(__name__)


class Clock(Protocol):
    """Time source and sleep primitive; tests substitute a virtual clock."""

    def now(self) -> datetime:
        """Current aware datetime."""

    def sleep(self, seconds: float) -> None:
        """Block for ``seconds``."""


class SystemClock:
    """Local wall clock backed by ``time.sleep``; limit messages quote local times."""

    def now(self) -> datetime:
        return local_now()

    def sleep(self, seconds: float) -> None:
        time.sleep(max(0.0, seconds))


class StopToken:
    """Shared cancellation flag polled at every suspension point."""

    def __init__(self) -> None:
        self.requested = False
        self.reason: str | None = None

    def request(self, reason: str = "stop requested") -> None:
        if not self.requested:
            logger.info("Stop requested: %s", reason)
        self.requested = True
        self.reason = reason


@dataclass(slots=True)
class WaitProgress:
    """One countdown report."""

    reason: str
    elapsed_seconds: float
    remaining_seconds: float
    percent: float
    resume_at: datetime

    def render(self) -> str:
        return (
            f"Waiting for {self.reason}: {self.percent:.0f}% elapsed, "
            f"{format_duration(self.remaining_seconds)} remaining "
            f"(ETA {self.resume_at.strftime('%Y-%m-%d %H:%M:%S %Z').strip()})"
        )


@dataclass(slots=True)
class WaitOutcome:
    """Result of ``RecoveryScheduler.wait_until``."""

    completed: bool
    waited_seconds: float
    reports: int = 0


def sleep_with_stop(
    clock: Clock,
    stop: StopToken,
    seconds: float,
    *,
    poll_seconds: float = 1.0,
) -> bool:
    """Sleep up to ``seconds`` in slices; return False if stopped early."""

    remaining = seconds
    while remaining > 0:
        if stop.requested:
            return False
        chunk = min(poll_seconds, remaining)
        clock.sleep(chunk)
        remaining -= chunk
    return not stop.requested


class RecoveryScheduler:
    """Sleeps until a resume timestamp, reporting progress on every step.

    Steps are ``step_seconds`` long, shortened to ``final_step_seconds`` once
    less than ``final_threshold_seconds`` remain. The stop token is checked at
    least every ``poll_seconds``; a cancelled wait leaves nothing behind, and
    callers re-derive the remaining time from the resume timestamp on restart.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        clock: Clock | None = None,
        stop: StopToken | None = None,
        reporter: Callable[[WaitProgress], None] | None = None,
        step_seconds: float = 60.0,
        final_step_seconds: float = 30.0,
        final_threshold_seconds: float = 300.0,
        poll_seconds: float = 1.0,
    ) -> None:
        self.clock = clock or SystemClock()
        self.stop = stop or StopToken()
        self.reporter = reporter or _log_progress
        self.step_seconds = step_seconds
        self.final_step_seconds = final_step_seconds
        self.final_threshold_seconds = final_threshold_seconds
        self.poll_seconds = poll_seconds

    def wait_until(self, resume_at: datetime, reason: str = "usage limit") -> WaitOutcome:
        """Block until ``resume_at`` or until the stop token is set."""

        started_at = self.clock.now()
        total = (resume_at - started_at).total_seconds()
        if total <= 0:
            return WaitOutcome(completed=True, waited_seconds=0.0)

        logger.info(
            "Pausing for %s until %s (%s)",
            reason,
            resume_at.isoformat(),
            format_duration(total),
        )
        reports = 0
        while True:
            now = self.clock.now()
            remaining = (resume_at - now).total_seconds()
            if remaining <= 0:
                break
            step = (
                self.final_step_seconds
                if remaining <= self.final_threshold_seconds
                else self.step_seconds
            )
            finished = sleep_with_stop(
                self.clock,
                self.stop,
                min(step, remaining),
                poll_seconds=self.poll_seconds,
            )
            now = self.clock.now()
            elapsed = (now - started_at).total_seconds()
            if not finished:
                logger.info(
                    "Wait for %s cancelled with %s remaining",
                    reason,
                    format_duration((resume_at - now).total_seconds()),
                )
                return WaitOutcome(completed=False, waited_seconds=elapsed, reports=reports)
            remaining = max(0.0, (resume_at - now).total_seconds())
            self.reporter(
                WaitProgress(
                    reason=reason,
                    elapsed_seconds=elapsed,
                    remaining_seconds=remaining,
                    percent=min(100.0, max(0.0, elapsed / total * 100)),
                    resume_at=resume_at,
                ),
            )
            reports += 1

        waited = (self.clock.now() - started_at).total_seconds()
        logger.info("Wait for %s finished after %s", reason, format_duration(waited))
        return WaitOutcome(completed=True, waited_seconds=waited, reports=reports)


def _log_progress(progress: WaitProgress) -> None:
    logger.info("%s", progress.render())
