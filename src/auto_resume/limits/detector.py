"""Usage-limit detection over free-form assistant output."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from auto_resume.timeutils import local_now

USAGE_LIMIT_DETECTOR_VERSION = 1
DEFAULT_COOLDOWN_SECONDS = 300

_LIMIT_PHRASES: tuple[str, ...] = (
    "daily usage limit",
    "hourly rate limit",
    "api quota exceeded",
    "request limit exceeded",
    "service temporarily overloaded",
    "please try again later",
    "usage limit",
    "rate limit",
    "too many requests",
    "quota exceeded",
    "temporarily unavailable",
    "try again later",
)
_TIME_INTRO_PHRASES: tuple[str, ...] = (
    "blocked until",
    "try again at",
    "available again at",
    "wait until",
    "retry at",
    "reset at",
    "resets at",
    "limit will reset",
)
_HTTP_429_RE = re.compile(r"(?<![\d.])429(?![\d.])")
_MERIDIEM_TIME_RE = re.compile(
    r"(?<![\d:])(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s?m\b\.?",
    re.IGNORECASE,
)
_CLOCK_TIME_RE = re.compile(
    r"\b(?:until|at|after)\s+(\d{1,2}):(\d{2})\b(?!\s*[ap]\.?\s?m\b)",
    re.IGNORECASE,
)


class SignalKind(str, Enum):
    """Variants of a detection result."""

    NONE = "none"
    RELATIVE_WAIT = "relative_wait"
    ABSOLUTE_TIME = "absolute_time"


@dataclass(slots=True, frozen=True)
class UsageLimitSignal:
    """Tagged detection result; ``resume_at`` is set for every detected variant."""

    kind: SignalKind
    wait_seconds: int | None = None
    hour: int | None = None
    minute: int | None = None
    meridiem: str | None = None
    resume_at: datetime | None = None
    matched_pattern: str | None = None

    @property
    def detected(self) -> bool:
        return self.kind != SignalKind.NONE

    def remaining_seconds(self, now: datetime) -> float:
        if self.resume_at is None:
            return 0.0
        return max(0.0, (self.resume_at - now).total_seconds())

    def describe(self) -> str:
        if self.kind == SignalKind.ABSOLUTE_TIME and self.resume_at is not None:
            return f"absolute_time {self.resume_at.isoformat()} ({self.matched_pattern})"
        if self.kind == SignalKind.RELATIVE_WAIT:
            return f"relative_wait {self.wait_seconds}s ({self.matched_pattern})"
        return "none"


NO_LIMIT = UsageLimitSignal(kind=SignalKind.NONE)


def detect_usage_limit(
    text: object,
    *,
    now: datetime | None = None,
    default_cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
) -> UsageLimitSignal:
    """Classify ``text`` as no limit, a relative wait or an absolute resume time.

    Explicit wall-clock times win over keyword matches. A time is only trusted
    when the text also carries a limit phrase or a time-introducing phrase, and
    the first valid time token is used. The resume moment is the next
    occurrence of that clock time strictly after ``now``. Malformed input
    yields ``NO_LIMIT``; this function does not raise.
    """

    if not isinstance(text, str) or not text.strip():
        return NO_LIMIT
    moment = now or local_now()
    haystack = text.lower()

    limit_phrase = _first_limit_phrase(haystack)
    intro_phrase = _first_match(haystack, _TIME_INTRO_PHRASES)
    if limit_phrase is not None or intro_phrase is not None:
        clock = _extract_clock_time(text)
        if clock is not None:
            hour, minute, meridiem = clock
            return UsageLimitSignal(
                kind=SignalKind.ABSOLUTE_TIME,
                hour=hour,
                minute=minute,
                meridiem=meridiem,
                resume_at=next_occurrence(moment, hour=hour, minute=minute),
                matched_pattern=intro_phrase or limit_phrase,
            )

    if limit_phrase is not None:
        wait_seconds = max(0, int(default_cooldown_seconds))
        return UsageLimitSignal(
            kind=SignalKind.RELATIVE_WAIT,
            wait_seconds=wait_seconds,
            resume_at=moment + timedelta(seconds=wait_seconds),
            matched_pattern=limit_phrase,
        )
    return NO_LIMIT


def next_occurrence(now: datetime, *, hour: int, minute: int) -> datetime:
    """Next ``hour:minute`` strictly after ``now``, in ``now``'s timezone."""

    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def to_24_hour(hour: int, meridiem: str) -> int:
    """Convert a 1-12 hour with ``am``/``pm`` to 0-23."""

    if meridiem == "am":
        return 0 if hour == 12 else hour  # noqa: PLR2004
    return hour if hour == 12 else hour + 12  # noqa: PLR2004


def _extract_clock_time(text: str) -> tuple[int, int, str | None] | None:
    for match in _MERIDIEM_TIME_RE.finditer(text):
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:  # noqa: PLR2004
            continue
        meridiem = f"{match.group(3).lower()}m"
        return to_24_hour(hour, meridiem), minute, meridiem

    for match in _CLOCK_TIME_RE.finditer(text):
        hour = int(match.group(1))
        minute = int(match.group(2))
        if hour > 23 or minute > 59:  # noqa: PLR2004
            continue
        return hour, minute, None
    return None


def _first_limit_phrase(haystack: str) -> str | None:
    phrase = _first_match(haystack, _LIMIT_PHRASES)
    if phrase is not None:
        return phrase
    if _HTTP_429_RE.search(haystack):
        return "429"
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
