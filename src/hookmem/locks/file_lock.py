"""Exclusive, timeout-bounded advisory lock over a named file."""

from __future__ import annotations

import logging
import os
import random
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from ..liveness import is_valid_pid
from ..files import create_exclusive, safe_unlink

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
DEFAULT_STALE_AFTER = 5.0
RETRY_DELAY = 0.05


def _lock_content() -> str:
    return f"{os.getpid()}\n{int(time.time() * 1000)}"


def _parse_lock_content(content: str) -> tuple[int, int] | None:
    parts = content.strip().split("\n")
    if len(parts) != 2:
        return None
    try:
        pid, created_ms = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not is_valid_pid(pid) or created_ms <= 0:
        return None
    return pid, created_ms


def _remove_holder(lock_path: Path) -> bool:
    try:
        safe_unlink(lock_path)
    except OSError as exc:
        logger.warning("Cannot remove lock file", extra={"path": str(lock_path), "error": str(exc)})
        return False
    return True


def acquire_lock(
    path: Path,
    timeout: float = DEFAULT_TIMEOUT,
    *,
    stale_after: float = DEFAULT_STALE_AFTER,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Take the lock at ``path``, waiting up to ``timeout`` seconds.

    Existing locks with corrupt content or older than ``stale_after`` seconds
    are removed and the acquisition retried.
    """

    lock_path = Path(path)
    deadline = time.monotonic() + timeout

    while True:
        try:
            if create_exclusive(lock_path, _lock_content()):
                return True
        except OSError as exc:
            logger.warning("Failed to create lock file", extra={"path": str(lock_path), "error": str(exc)})
            return False

        try:
            content = lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.debug("Unreadable lock file", extra={"path": str(lock_path), "error": str(exc)})
            content = ""

        parsed = _parse_lock_content(content)
        if parsed is None:
            logger.warning("Removing corrupt lock file", extra={"path": str(lock_path)})
            if not _remove_holder(lock_path):
                return False
            continue

        _, created_ms = parsed
        age = time.time() - created_ms / 1000
        if age > stale_after:
            logger.info(
                "Removing stale lock file",
                extra={"path": str(lock_path), "age_seconds": round(age, 3)},
            )
            if not _remove_holder(lock_path):
                return False
            continue

        if time.monotonic() >= deadline:
            return False
        sleep(RETRY_DELAY + random.uniform(0, RETRY_DELAY))


def release_lock(path: Path) -> None:
    """Remove the lock file; releasing an absent lock is a no-op."""

    try:
        safe_unlink(Path(path))
    except OSError as exc:
        logger.debug("Failed to remove lock file", extra={"path": str(path), "error": str(exc)})


@contextmanager
def file_lock(path: Path, timeout: float = DEFAULT_TIMEOUT) -> Iterator[bool]:
    """Hold the lock for the body; yields whether it was actually acquired."""

    acquired = acquire_lock(path, timeout)
    try:
        yield acquired
    finally:
        if acquired:
            release_lock(path)


__all__ = ["acquire_lock", "file_lock", "release_lock"]
