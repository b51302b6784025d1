"""Per-session counter of in-flight background jobs.

Teardown of a session waits for this counter to reach zero. The counter file
exists only while the count is positive.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..locks.file_lock import file_lock
from ..files import ensure_dir, safe_session_filename, safe_unlink

logger = logging.getLogger(__name__)


class PendingJobCounter:
    def __init__(self, sessions_dir: Path, *, lock_timeout: float = 5.0) -> None:
        self._dir = Path(sessions_dir)
        self._lock_timeout = lock_timeout

    def counter_path(self, session_id: str) -> Path:
        return self._dir / f"{safe_session_filename(session_id)}.pending"

    def lock_path(self, session_id: str) -> Path:
        return self._dir / f"{safe_session_filename(session_id)}.pending.lock"

    def count(self, session_id: str, *, conservative: bool = False) -> int:
        """Read the current count.

        With ``conservative`` set, unreadable or half-written content counts as
        one pending job, so waiters never mistake a write in progress for zero.
        """

        path = self.counter_path(session_id)
        try:
            content = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return 0
        except OSError:
            return 1 if conservative else 0
        try:
            return max(int(content), 0)
        except ValueError:
            return 1 if conservative else 0

    def increment(self, session_id: str) -> bool:
        ensure_dir(self._dir)
        with file_lock(self.lock_path(session_id), self._lock_timeout) as acquired:
            if not acquired:
                logger.warning("Could not lock job counter, skipping increment", extra={"session_id": session_id})
                return False
            current = self.count(session_id)
            self.counter_path(session_id).write_text(str(current + 1), encoding="utf-8")
            return True

    def decrement(self, session_id: str) -> bool:
        with file_lock(self.lock_path(session_id), self._lock_timeout) as acquired:
            if not acquired:
                logger.warning("Could not lock job counter, skipping decrement", extra={"session_id": session_id})
                return False
            current = self.count(session_id)
            path = self.counter_path(session_id)
            if current <= 1:
                safe_unlink(path)
            else:
                path.write_text(str(current - 1), encoding="utf-8")
            return True

    @contextmanager
    def track(self, session_id: str) -> Iterator[None]:
        """Count the body as one in-flight job."""

        incremented = self.increment(session_id)
        try:
            yield
        finally:
            if incremented:
                self.decrement(session_id)

    def wait_for_zero(self, session_id: str, max_wait: float, *, poll_interval: float = 0.1) -> bool:
        """Block until no jobs are pending or ``max_wait`` elapses; True if zero was seen."""

        deadline = time.monotonic() + max_wait
        while True:
            if self.count(session_id, conservative=True) <= 0:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(poll_interval, remaining))

    def clear(self, session_id: str) -> None:
        safe_unlink(self.counter_path(session_id))
        safe_unlink(self.lock_path(session_id))


__all__ = ["PendingJobCounter"]
