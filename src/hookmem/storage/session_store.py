"""File-backed session store.

Layout per session, under ``sessions_dir``:

- ``<safe>.json``: metadata, always replaced atomically
- ``<safe>.observations.jsonl``: append-only observation log
- ``<safe>.lock``: file lock serialising appends

Status moves ``active -> stopped -> completed``; ``completed`` is final.
"""

from __future__ import annotations

import json
import logging
import math
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from ..locks.file_lock import acquire_lock, release_lock
from ..files import atomic_write_text, ensure_dir, safe_session_filename, safe_unlink
from .job_counter import PendingJobCounter
from .models import EndType, ObservationRecord, SessionRecord

logger = logging.getLogger(__name__)

_WRITABLE_STATUSES = frozenset({"active", "stopped"})


def _round_minutes(seconds: float) -> int:
    return int(math.floor(seconds / 60 + 0.5))


class SessionStore:
    """Session metadata plus observation log, safe for concurrent hook processes."""

    def __init__(
        self,
        sessions_dir: Path,
        *,
        counter: PendingJobCounter | None = None,
        lock_timeout: float = 5.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._dir = Path(sessions_dir)
        self._counter = counter or PendingJobCounter(self._dir, lock_timeout=lock_timeout)
        self._lock_timeout = lock_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def sessions_dir(self) -> Path:
        return self._dir

    @property
    def counter(self) -> PendingJobCounter:
        return self._counter

    def metadata_path(self, session_id: str) -> Path:
        return self._dir / f"{safe_session_filename(session_id)}.json"

    def observations_path(self, session_id: str) -> Path:
        return self._dir / f"{safe_session_filename(session_id)}.observations.jsonl"

    def lock_path(self, session_id: str) -> Path:
        return self._dir / f"{safe_session_filename(session_id)}.lock"

    # -- metadata ---------------------------------------------------------

    def get(self, session_id: str) -> SessionRecord | None:
        return self._read_metadata(self.metadata_path(session_id))

    def _read_metadata(self, path: Path) -> SessionRecord | None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Unreadable session metadata", extra={"path": str(path), "error": str(exc)})
            return None
        try:
            return SessionRecord.model_validate_json(content)
        except ValidationError:
            logger.warning("Corrupt session metadata", extra={"path": str(path)})
            return None

    def _write_metadata(self, record: SessionRecord) -> SessionRecord:
        ensure_dir(self._dir)
        record.last_updated = self._clock()
        atomic_write_text(self.metadata_path(record.id), record.model_dump_json(indent=2))
        return record

    def start_session(self, session_id: str, project: str, project_path: str) -> SessionRecord:
        now = self._clock()
        record = SessionRecord(
            id=session_id,
            project=project,
            project_path=project_path,
            start_time=now,
            status="active",
            last_updated=now,
        )
        return self._write_metadata(record)

    def end_session(self, session_id: str, end_type: EndType) -> SessionRecord | None:
        """Apply a stop or end event.

        ``stop`` moves active to stopped. ``end`` moves active or stopped to
        completed. A repeated stop and anything on a completed session leave
        the record untouched.
        """

        record = self.get(session_id)
        if record is None:
            return None
        if record.status == "completed":
            return record
        if record.status == "stopped" and end_type == "stop":
            return record

        end_time = self._clock()
        record.end_time = end_time
        record.status = "stopped" if end_type == "stop" else "completed"
        record.duration_minutes = _round_minutes((end_time - record.start_time).total_seconds())
        return self._write_metadata(record)

    def reactivate_session(
        self,
        session_id: str,
        project: str | None = None,
        project_path: str | None = None,
    ) -> bool:
        """Resume a stopped session; completed sessions are never reopened."""

        record = self.get(session_id)
        if record is None or record.status != "stopped":
            return False

        record.status = "active"
        record.end_time = None
        record.duration_minutes = None
        if project and project != record.project:
            record.project = project
        if project_path and project_path != record.project_path:
            record.project_path = project_path
        self._write_metadata(record)
        return True

    def update_summary(self, session_id: str, summary: str) -> bool:
        record = self.get(session_id)
        if record is None:
            return False
        record.summary = summary
        self._write_metadata(record)
        return True

    # -- observations -----------------------------------------------------

    def add_observation(self, session_id: str, observation: ObservationRecord) -> bool:
        """Append under the session lock; rejected once the session is completed."""

        record = self.get(session_id)
        if record is None or record.status not in _WRITABLE_STATUSES:
            return False

        ensure_dir(self._dir)
        lock_path = self.lock_path(session_id)
        if not acquire_lock(lock_path, self._lock_timeout):
            logger.error("Failed to lock observation log, observation dropped", extra={"session_id": session_id})
            return False

        try:
            line = observation.model_dump_json() + "\n"
            with self.observations_path(session_id).open("a", encoding="utf-8") as handle:
                handle.write(line)
            return True
        except OSError as exc:
            logger.error("Failed to append observation", extra={"session_id": session_id, "error": str(exc)})
            return False
        finally:
            release_lock(lock_path)

    def read_observations(self, session_id: str) -> list[ObservationRecord]:
        path = self.observations_path(session_id)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []

        observations: list[ObservationRecord] = []
        for line in content.splitlines():
            stripped = line.strip()
            if not stripped:
                continue
            try:
                observations.append(ObservationRecord.model_validate_json(stripped))
            except ValidationError:
                logger.warning(
                    "Skipping malformed observation line",
                    extra={"session_id": session_id, "line": stripped[:100]},
                )
        return observations

    # -- teardown ---------------------------------------------------------

    def clear_session(self, session_id: str, max_wait: float = 5.0) -> None:
        """Delete every artifact of the session once in-flight jobs finish.

        Waits at most ``max_wait`` seconds for the job counter to reach zero,
        then proceeds regardless.
        """

        if not self._counter.wait_for_zero(session_id, max_wait):
            logger.warning(
                "Pending jobs still running, clearing session anyway",
                extra={"session_id": session_id, "max_wait": max_wait},
            )

        lock_path = self.lock_path(session_id)
        acquired = acquire_lock(lock_path, self._lock_timeout)
        if not acquired:
            logger.warning("Could not lock session for clearing, proceeding anyway", extra={"session_id": session_id})

        try:
            for path in (self.metadata_path(session_id), self.observations_path(session_id)):
                try:
                    safe_unlink(path)
                except OSError as exc:
                    logger.warning("Failed to remove session file", extra={"path": str(path), "error": str(exc)})
            self._counter.clear(session_id)
        finally:
            release_lock(lock_path)

    def list_active(self) -> list[SessionRecord]:
        return [record for record in self._iter_records() if record.status == "active"]

    def _iter_records(self) -> list[SessionRecord]:
        if not self._dir.exists():
            return []
        records: list[SessionRecord] = []
        for path in sorted(self._dir.glob("*.json")):
            record = self._read_metadata(path)
            if record is not None:
                records.append(record)
        return records

    def _last_activity(self, session_id: str) -> float:
        latest = 0.0
        for path in (self.metadata_path(session_id), self.observations_path(session_id)):
            try:
                latest = max(latest, path.stat().st_mtime)
            except FileNotFoundError:
                continue
        return latest

    def cleanup_stale_sessions(self, max_age_hours: float = 24) -> list[SessionRecord]:
        """Remove sessions with no activity for ``max_age_hours``; return what was removed."""

        cutoff = time.time() - max_age_hours * 3600
        removed: list[SessionRecord] = []
        for record in self._iter_records():
            if self._last_activity(record.id) >= cutoff:
                continue
            if record.status == "active":
                record.status = "stopped"
                record.end_time = self._clock()
            removed.append(record)
            self.clear_session(record.id, max_wait=0)
        return removed


__all__ = ["SessionStore"]
