"""Two-phase process lock for session finalization.

1. Reservation: a fast-exiting stop hook creates the lock with
   ``status="reserved"`` before spawning the detached finalizer.
2. Claim: the finalizer rewrites the lock as ``status="running"`` with its
   own PID, which stays meaningful for liveness checks.

At most one RUNNING owner exists per session. Stale records (expired
reservations, dead owners, unparsable files) are deleted on sight.
"""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from ..liveness import ProcessLivenessOracle
from ..files import atomic_write_text, create_exclusive, ensure_dir, safe_unlink, sanitize_session_id
from .file_lock import acquire_lock, release_lock
from .models import RESERVATION_TTL, ReservedLock, RunningLock, lock_record_adapter

logger = logging.getLogger(__name__)

_MAX_ACQUIRE_ATTEMPTS = 3
_CLAIM_RETRIES = 3
_CLAIM_RETRY_DELAY = 0.05
_CLAIM_GUARD_TIMEOUT = 2.0


class ProcessLock:
    """Per-session reservation/claim lock stored as one JSON file per session."""

    def __init__(
        self,
        locks_dir: Path,
        *,
        oracle: ProcessLivenessOracle | None = None,
        clock: Callable[[], datetime] | None = None,
        liveness_timeout: float = 0.5,
        pid: int | None = None,
    ) -> None:
        self._locks_dir = Path(locks_dir)
        self._oracle = oracle or ProcessLivenessOracle()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._liveness_timeout = liveness_timeout
        self._pid = pid or os.getpid()

    @property
    def locks_dir(self) -> Path:
        return self._locks_dir

    def lock_path(self, session_id: str) -> Path:
        return self._locks_dir / f"{sanitize_session_id(session_id)}.lock"

    def claim_guard_path(self, session_id: str) -> Path:
        return self._locks_dir / f"{sanitize_session_id(session_id)}.claim"

    def _now_ms(self) -> int:
        return int(self._clock().timestamp() * 1000)

    def read(self, session_id: str) -> ReservedLock | RunningLock | None:
        """Return the validated lock record, or None.

        Unparsable or out-of-window records are deleted and reported as absent.
        """

        path = self.lock_path(session_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Unreadable lock file", extra={"session_id": session_id, "error": str(exc)})
            return None

        try:
            return lock_record_adapter.validate_json(content, context={"now_ms": self._now_ms()})
        except ValidationError as exc:
            logger.info(
                "Discarding invalid lock file",
                extra={"session_id": session_id, "error": exc.errors()[0]["msg"]},
            )
            safe_unlink(path)
            return None

    def acquire_reservation(self, session_id: str) -> bool:
        """Create a RESERVED record; False if a live owner or fresh reservation exists."""

        ensure_dir(self._locks_dir)
        path = self.lock_path(session_id)

        for _ in range(_MAX_ACQUIRE_ATTEMPTS):
            record = ReservedLock(session_id=session_id, reserved_at=self._now_ms())
            try:
                if create_exclusive(path, record.model_dump_json(indent=2)):
                    logger.debug("Reservation acquired", extra={"session_id": session_id})
                    return True
            except OSError as exc:
                logger.warning("Failed to create reservation", extra={"session_id": session_id, "error": str(exc)})
                return False

            existing = self.read(session_id)
            if existing is None:
                continue

            if isinstance(existing, ReservedLock):
                age_ms = self._now_ms() - existing.reserved_at
                if age_ms > RESERVATION_TTL.total_seconds() * 1000:
                    safe_unlink(path)
                    continue
                return False

            if self._oracle.alive_and_matches(existing.pid, existing.pid_started_at, self._liveness_timeout):
                return False

            logger.info(
                "Removing lock held by dead process",
                extra={"session_id": session_id, "pid": existing.pid},
            )
            safe_unlink(path)

        return False

    def claim(self, session_id: str) -> bool:
        """Turn a RESERVED record into RUNNING for this process.

        The state check and the rewrite happen under a per-session guard file,
        so concurrent claimers of one reservation yield a single owner.
        """

        guard = self.claim_guard_path(session_id)
        if not acquire_lock(guard, _CLAIM_GUARD_TIMEOUT):
            logger.warning("Claim guard busy", extra={"session_id": session_id})
            return False
        try:
            return self._claim_reserved(session_id)
        finally:
            release_lock(guard)

    def _claim_reserved(self, session_id: str) -> bool:
        existing = self.read(session_id)
        if not isinstance(existing, ReservedLock):
            return False

        record = RunningLock(
            session_id=session_id,
            pid=self._pid,
            started_at=self._now_ms(),
            pid_started_at=self._oracle.start_time(self._pid),
        )
        content = record.model_dump_json(indent=2)

        for attempt in range(_CLAIM_RETRIES):
            try:
                atomic_write_text(self.lock_path(session_id), content)
                return True
            except PermissionError as exc:
                # Windows reports a busy target as a permission error.
                if attempt == _CLAIM_RETRIES - 1:
                    logger.error("Failed to claim lock", extra={"session_id": session_id, "error": str(exc)})
                    return False
                time.sleep(_CLAIM_RETRY_DELAY)
            except OSError as exc:
                logger.error("Failed to claim lock", extra={"session_id": session_id, "error": str(exc)})
                return False
        return False

    def release(self, session_id: str) -> None:
        try:
            safe_unlink(self.lock_path(session_id))
        except OSError as exc:
            logger.warning("Failed to release lock", extra={"session_id": session_id, "error": str(exc)})

    def cleanup_stale(self) -> list[str]:
        """Remove expired reservations and locks of dead owners; return their names."""

        if not self._locks_dir.exists():
            return []

        cleaned: list[str] = []
        for path in sorted(self._locks_dir.glob("*.lock")):
            name = path.stem
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                session_id = raw.get("session_id") or name
            except (OSError, ValueError, AttributeError):
                session_id = name

            record = self.read(session_id)
            if record is None:
                if not path.exists():
                    cleaned.append(session_id)
                continue

            if isinstance(record, RunningLock) and not self._oracle.alive_and_matches(
                record.pid, record.pid_started_at, self._liveness_timeout
            ):
                safe_unlink(path)
                cleaned.append(session_id)

        if cleaned:
            logger.info("Removed stale process locks", extra={"count": len(cleaned)})
        return cleaned


__all__ = ["ProcessLock"]
