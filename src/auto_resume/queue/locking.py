"""Advisory file lock guarding every queue read-modify-write cycle."""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from auto_resume.errors import LockTimeoutError
from auto_resume.timeutils import to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETRY_INTERVAL_SECONDS = 0.1


class QueueLock:
    """Exclusive ``fcntl.flock`` lock on a per-project lock file.

    The lock is re-entrant for the owning instance: nested ``hold()`` blocks
    share the outer acquisition, so composite operations never release the
    lock halfway through a cycle. An instance must not be shared across
    threads; give each thread its own ``TaskQueue``.
    """

    def __init__(
        self,
        path: Path,
        *,
        timeout_seconds: float = 30.0,
        retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
    ) -> None:
        self.path = path
        self.timeout_seconds = timeout_seconds
        self.retry_interval_seconds = retry_interval_seconds
        self._fd: int | None = None
        self._depth = 0

    @property
    def held(self) -> bool:
        return self._fd is not None

    @contextmanager
    def hold(self, *, timeout_seconds: float | None = None) -> Iterator[None]:
        """Hold the lock for the duration of the block, releasing on any exit."""

        self.acquire(timeout_seconds=timeout_seconds)
        try:
            yield
        finally:
            self.release()

    def acquire(self, *, timeout_seconds: float | None = None) -> None:
        """Acquire the lock or raise ``LockTimeoutError`` after the timeout."""

        if self._fd is not None:
            self._depth += 1
            return

        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            fd = _try_lock(self.path)
            if fd is not None:
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                owner = read_lock_owner(self.path)
                raise LockTimeoutError(
                    f"Timed out after {timeout:.1f}s waiting for queue lock {self.path}"
                    + (f" (held by {owner})" if owner else ""),
                )
            time.sleep(min(self.retry_interval_seconds, remaining))

        self._fd = fd
        self._depth = 1
        _write_owner(fd)

    def release(self) -> None:
        if self._fd is None:
            return
        self._depth -= 1
        if self._depth > 0:
            return
        fd = self._fd
        self._fd = None
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as error:
            logger.warning("Failed to unlock %s cleanly: %s", self.path, error)
        finally:
            os.close(fd)


def read_lock_owner(path: Path) -> str | None:
    """Return the ``pid=... since=...`` note written by the current holder."""

    try:
        content = path.read_text("utf-8").strip()
    except OSError:
        return None
    return content or None


def _try_lock(path: Path) -> int | None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (BlockingIOError, OSError):
        os.close(fd)
        return None
    return fd


def _write_owner(fd: int) -> None:
    note = f"pid={os.getpid()} since={to_iso(utc_now())}\n".encode()
    try:
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, note)
    except OSError as error:
        logger.debug("Could not record lock owner: %s", error)
