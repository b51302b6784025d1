"""JSON fallback for hook events when the SQLite datastore is unavailable.

One ``<safe>.json`` document per session under ``fallback_dir``. Updates are
read-modify-write under a per-session file lock and replaced atomically.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from ..files import atomic_write_text, create_exclusive, ensure_dir, safe_session_filename
from ..locks.file_lock import file_lock
from .models import FallbackPrompt, FallbackSession, FallbackToolUse, RowStatus

logger = logging.getLogger(__name__)


class FallbackStore:
    def __init__(
        self,
        fallback_dir: Path,
        *,
        lock_timeout: float = 5.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._dir = Path(fallback_dir)
        self._lock_timeout = lock_timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def session_path(self, session_id: str) -> Path:
        return self._dir / f"{safe_session_filename(session_id)}.json"

    def _lock_path(self, session_id: str) -> Path:
        return self._dir / f"{safe_session_filename(session_id)}.lock"

    def exists(self, session_id: str) -> bool:
        return self.session_path(session_id).exists()

    def read(self, session_id: str) -> FallbackSession | None:
        path = self.session_path(session_id)
        try:
            return FallbackSession.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as exc:
            logger.warning("Unreadable fallback session", extra={"path": str(path), "error": str(exc)})
            return None

    def init_session(self, session_id: str, project: str) -> bool:
        """Create the document; an existing one is kept. True if created."""

        ensure_dir(self._dir)
        session = FallbackSession(session_id=session_id, project=project, started_at=self._clock())
        return create_exclusive(self.session_path(session_id), session.model_dump_json(indent=2))

    def _update(self, session_id: str, change: Callable[[FallbackSession], None]) -> FallbackSession | None:
        with file_lock(self._lock_path(session_id), self._lock_timeout) as acquired:
            if not acquired:
                logger.warning("Could not lock fallback session", extra={"session_id": session_id})
                return None
            session = self.read(session_id)
            if session is None:
                return None
            change(session)
            atomic_write_text(self.session_path(session_id), session.model_dump_json(indent=2))
            return session

    def add_prompt(self, session_id: str, prompt_text: str) -> int | None:
        """Append a prompt under the next number; None if the session has no document."""

        numbers: list[int] = []

        def _append(session: FallbackSession) -> None:
            number = session.next_prompt_number()
            session.prompts.append(
                FallbackPrompt(prompt_number=number, prompt_text=prompt_text, created_at=self._clock())
            )
            numbers.append(number)

        if self._update(session_id, _append) is None:
            return None
        return numbers[0]

    def add_tool_use(
        self,
        session_id: str,
        tool_name: str,
        tool_input: str,
        tool_output: str,
        cwd: str | None = None,
    ) -> bool:
        def _append(session: FallbackSession) -> None:
            session.tool_uses.append(
                FallbackToolUse(
                    prompt_number=max(session.next_prompt_number() - 1, 0),
                    tool_name=tool_name,
                    tool_input=tool_input,
                    tool_output=tool_output,
                    cwd=cwd,
                    created_at=self._clock(),
                )
            )

        return self._update(session_id, _append) is not None

    def update_status(self, session_id: str, status: RowStatus) -> bool:
        def _set(session: FallbackSession) -> None:
            session.status = status

        return self._update(session_id, _set) is not None


__all__ = ["FallbackStore"]
