"""Usage-limit detection, backoff and recovery waiting."""

from auto_resume.limits.detector import (
    NO_LIMIT,
    SignalKind,
    UsageLimitSignal,
    detect_usage_limit,
)
from auto_resume.limits.scheduler import (
    Clock,
    RecoveryScheduler,
    StopToken,
    SystemClock,
    WaitOutcome,
    WaitProgress,
)
from auto_resume.limits.tracker import PauseMarker, UsageLimitStats, UsageLimitTracker

__all__ = [
    "NO_LIMIT",
    "Clock",
    "PauseMarker",
    "RecoveryScheduler",
    "SignalKind",
    "StopToken",
    "SystemClock",
    "UsageLimitSignal",
    "UsageLimitStats",
    "UsageLimitTracker",
    "WaitOutcome",
    "WaitProgress",
    "detect_usage_limit",
]
