"""Same-machine named locks backed by advisory file locks.

A named lock maps to a well-known file under ``~/.m8ctl/locks``. Holding the
lock means holding an exclusive ``flock`` (POSIX) or ``msvcrt.locking``
(Windows) on that file, so it excludes other processes as well as other
threads of the same process that acquire it independently.

Usage:
    with acquire_lock(AUTH_FLOW_LOCK_NAME) as lock:
        ...  # at most one holder on this machine
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable

logger = logging.getLogger(__name__)

AUTH_FLOW_LOCK_NAME = "m8ctl-auth-flow"
CONFIG_LOCK_NAME = "m8ctl-config"


def get_lock_dir() -> Path:
    """Get the directory holding lock files (~/.m8ctl/locks)."""
    return Path.home() / ".m8ctl" / "locks"


@dataclass
class LockConfig:
    """Retry behaviour while waiting for a contended lock.

    Attributes:
        initial_interval_seconds: First wait between attempts.
        max_interval_seconds: Upper bound for the wait between attempts.
        backoff_factor: Multiplier applied to the wait after each attempt.
        detection_timeout_seconds: After this long without the lock, the
            ``on_contended`` callback fires once. Acquisition keeps waiting.
        timeout_seconds: Give up after this long. ``None`` waits forever.
    """

    initial_interval_seconds: float = 0.05
    max_interval_seconds: float = 1.0
    backoff_factor: float = 2.0
    detection_timeout_seconds: float = 0.5
    timeout_seconds: float | None = None


class ProcessLock:
    """A held named lock.

    ``release()`` is idempotent. Use as a context manager to release on every
    exit path.
    """

    def __init__(self, name: str, path: Path, handle: IO[bytes]) -> None:
        self.name = name
        self.path = path
        self._handle: IO[bytes] | None = handle
        self._guard = threading.Lock()

    def release(self) -> None:
        with self._guard:
            if self._handle is None:
                return
            handle, self._handle = self._handle, None
        try:
            _unlock(handle)
        finally:
            handle.close()
        logger.debug(f"Released lock {self.name}")

    def __enter__(self) -> "ProcessLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


def acquire_lock(
    name: str,
    *,
    config: LockConfig | None = None,
    on_contended: Callable[[], None] | None = None,
    lock_dir: Path | None = None,
) -> ProcessLock:
    """Acquire the named lock, blocking with exponential backoff.

    Args:
        name: Lock name. Equal names are mutually exclusive.
        config: Retry configuration.
        on_contended: Called once if the lock was not obtained within
            ``config.detection_timeout_seconds``.
        lock_dir: Directory of the lock file (default: ``get_lock_dir()``).

    Returns:
        The held lock.

    Raises:
        TimeoutError: If ``config.timeout_seconds`` elapsed first.
    """
    config = config or LockConfig()
    directory = lock_dir or get_lock_dir()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.lock"

    # The lock file is never removed; unlinking would let a waiter lock a
    # stale inode.
    handle = open(path, "a+b")
    start = time.monotonic()
    interval = config.initial_interval_seconds
    notified = False

    try:
        while not _try_lock(handle):
            elapsed = time.monotonic() - start
            if (
                not notified
                and on_contended is not None
                and elapsed >= config.detection_timeout_seconds
            ):
                notified = True
                on_contended()
            if config.timeout_seconds is not None and elapsed >= config.timeout_seconds:
                raise TimeoutError(
                    f"Timeout after {config.timeout_seconds}s waiting for lock {name}"
                )
            logger.debug(f"Lock {name} is held elsewhere, retrying in {interval:.2f}s")
            time.sleep(interval)
            interval = min(interval * config.backoff_factor, config.max_interval_seconds)
    except BaseException:
        handle.close()
        raise

    logger.debug(f"Acquired lock {name} ({path})")
    return ProcessLock(name, path, handle)


def _try_lock(handle: IO[bytes]) -> bool:
    try:
        if os.name == "nt":
            import msvcrt

            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl

            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _unlock(handle: IO[bytes]) -> None:
    if os.name == "nt":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(handle, fcntl.LOCK_UN)
