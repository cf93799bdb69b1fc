"""Deterministic classification of session output while a task runs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from auto_resume.limits.detector import NO_LIMIT, UsageLimitSignal, detect_usage_limit
from auto_resume.orchestrator.prompts import completion_token

OUTPUT_CLASSIFIER_VERSION = 1
_ECHO_ANCHOR_LENGTH = 24

_COMPLETION_PHRASES: tuple[str, ...] = (
    "✅ task completed successfully",
    "task completed successfully",
)
_AUTH_ERROR_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "authentication failed",
    "authentication_error",
    "please run /login",
    "oauth token has expired",
    "unauthorized",
)
_NETWORK_ERROR_PATTERNS: tuple[str, ...] = (
    "connection refused",
    "connection reset",
    "connection error",
    "network error",
    "could not resolve host",
    "econnreset",
    "etimedout",
    "host unreachable",
)
_SESSION_ERROR_PATTERNS: tuple[str, ...] = (
    "no server running",
    "session not found",
    "can't find session",
    "session expired",
    "broken pipe",
)
_TIMEOUT_ERROR_PATTERNS: tuple[str, ...] = (
    "request timed out",
    "api request timeout",
    "gateway timeout",
    "deadline exceeded",
)
_SYNTAX_ERROR_PATTERNS: tuple[str, ...] = (
    "unknown slash command",
    "unknown command",
    "command not found",
    "invalid option",
)
_GENERIC_ERROR_PATTERNS: tuple[str, ...] = (
    "api error:",
    "fatal error",
    "internal server error",
    "out of memory",
    "no space left on device",
)


class OutputKind(str, Enum):
    """What the latest output says about the running task."""

    RUNNING = "running"
    COMPLETED = "completed"
    USAGE_LIMITED = "usage_limited"
    ERROR = "error"


class ErrorClass(str, Enum):
    """Error families recorded on failed attempts."""

    NETWORK_ERROR = "network_error"
    SESSION_ERROR = "session_error"
    AUTH_ERROR = "auth_error"
    SYNTAX_ERROR = "syntax_error"
    TIMEOUT_ERROR = "timeout_error"
    GENERIC = "generic"


@dataclass(slots=True)
class OutputClassification:
    """Normalized classification result."""

    kind: OutputKind
    matched_rule: str
    matched_pattern: str | None = None
    error_class: ErrorClass | None = None
    limit_signal: UsageLimitSignal = NO_LIMIT


_ERROR_RULES: tuple[tuple[ErrorClass, tuple[str, ...]], ...] = (
    (ErrorClass.AUTH_ERROR, _AUTH_ERROR_PATTERNS),
    (ErrorClass.NETWORK_ERROR, _NETWORK_ERROR_PATTERNS),
    (ErrorClass.SESSION_ERROR, _SESSION_ERROR_PATTERNS),
    (ErrorClass.TIMEOUT_ERROR, _TIMEOUT_ERROR_PATTERNS),
    (ErrorClass.SYNTAX_ERROR, _SYNTAX_ERROR_PATTERNS),
    (ErrorClass.GENERIC, _GENERIC_ERROR_PATTERNS),
)


def classify_output(
    output: str,
    *,
    completion_marker: str | None,
    now: datetime,
    default_cooldown_seconds: int,
) -> OutputClassification:
    """Classify new session output.

    Precedence: usage limit, then completion, then error families. A limit
    phrase therefore wins over an error phrase in the same output.
    """

    signal = detect_usage_limit(
        output,
        now=now,
        default_cooldown_seconds=default_cooldown_seconds,
    )
    if signal.detected:
        return OutputClassification(
            kind=OutputKind.USAGE_LIMITED,
            matched_rule=f"usage_limit_{signal.kind.value}",
            matched_pattern=signal.matched_pattern,
            limit_signal=signal,
        )

    if completion_marker is not None and completion_token(completion_marker) in output:
        return OutputClassification(
            kind=OutputKind.COMPLETED,
            matched_rule="completion_marker",
            matched_pattern=completion_marker,
        )

    haystack = output.lower()
    pattern = _first_match(haystack, _COMPLETION_PHRASES)
    if pattern is not None:
        return OutputClassification(
            kind=OutputKind.COMPLETED,
            matched_rule="completion_phrase",
            matched_pattern=pattern,
        )

    for error_class, patterns in _ERROR_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return OutputClassification(
                kind=OutputKind.ERROR,
                matched_rule=error_class.value,
                matched_pattern=pattern,
                error_class=error_class,
            )

    return OutputClassification(kind=OutputKind.RUNNING, matched_rule="no_signal")


def classify_error_message(message: str) -> ErrorClass:
    """Map a collaborator error message to an error family."""

    haystack = message.lower()
    for error_class, patterns in _ERROR_RULES:
        if _first_match(haystack, patterns) is not None:
            return error_class
    if "timed out" in haystack or "timeout" in haystack:
        return ErrorClass.TIMEOUT_ERROR
    return ErrorClass.GENERIC


def output_delta(before: str, after: str) -> str:
    """Return the part of ``after`` that appeared since ``before`` was captured.

    Pane captures scroll, so when ``after`` no longer starts with ``before``
    the last lines of ``before`` are located in ``after`` instead. If no
    overlap is found the whole of ``after`` is new.
    """

    if not before:
        return after
    if after.startswith(before):
        return after[len(before) :]

    before_lines = before.rstrip("\n").splitlines()
    after_lines = after.splitlines()
    for size in range(min(len(before_lines), 20), 0, -1):
        tail = before_lines[-size:]
        if not any(line.strip() for line in tail):
            continue
        for start in range(len(after_lines) - size, -1, -1):
            if after_lines[start : start + size] == tail:
                return "\n".join(after_lines[start + size :])
    return after


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def strip_prompt_echo(output: str, prompt: str) -> str:
    """Drop the echoed ``prompt`` from ``output`` so task text is not classified.

    The end of the prompt is used as an anchor; when the terminal has wrapped
    it beyond recognition, lines that repeat prompt lines are dropped instead.
    """

    prompt_lines = [line.strip() for line in prompt.splitlines() if line.strip()]
    if not prompt_lines:
        return output
    anchor = prompt_lines[-1][-_ECHO_ANCHOR_LENGTH:]
    index = output.rfind(anchor)
    if index != -1:
        return output[index + len(anchor) :]
    known = set(prompt_lines)
    return "\n".join(line for line in output.splitlines() if line.strip() not in known)
