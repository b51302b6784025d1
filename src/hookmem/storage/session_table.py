"""Session rows, summaries and agent output in the shared datastore."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Callable

from .database import retry_on_busy, transaction
from .models import RowStatus, SessionRow, UserPrompt


def _row_to_session(row: sqlite3.Row) -> SessionRow:
    return SessionRow(
        session_id=row["session_id"],
        project=row["project"],
        started_at=row["started_at"],
        started_at_epoch=row["started_at_epoch"],
        status=row["status"],
        completed_at=row["completed_at"],
        completed_at_epoch=row["completed_at_epoch"],
        processing_started_at=row["processing_started_at"],
    )


class SessionTable:
    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._conn = conn
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> tuple[str, int]:
        now = self._clock()
        return now.isoformat(), int(now.timestamp() * 1000)

    def create(self, session_id: str, project: str) -> SessionRow:
        """Insert an active row; an existing row is left as is."""

        started_at, started_epoch = self._now()
        retry_on_busy(
            lambda: self._conn.execute(
                """
                INSERT OR IGNORE INTO sessions (session_id, project, started_at, started_at_epoch, status)
                VALUES (?, ?, ?, ?, 'active')
                """,
                (session_id, project, started_at, started_epoch),
            )
        )
        row = self.get(session_id)
        assert row is not None
        return row

    def reactivate(self, session_id: str, project: str | None = None) -> bool:
        """Set a failed row back to active (resumed conversation).

        Completed rows stay completed, matching the file store, which never
        reopens a completed session.
        """

        def _update() -> int:
            if project:
                return self._conn.execute(
                    """
                    UPDATE sessions
                    SET status = 'active', completed_at = NULL, completed_at_epoch = NULL,
                        processing_started_at = NULL, project = ?
                    WHERE session_id = ? AND status = 'failed'
                    """,
                    (project, session_id),
                ).rowcount
            return self._conn.execute(
                """
                UPDATE sessions
                SET status = 'active', completed_at = NULL, completed_at_epoch = NULL,
                    processing_started_at = NULL
                WHERE session_id = ? AND status = 'failed'
                """,
                (session_id,),
            ).rowcount

        return retry_on_busy(_update) > 0

    def get(self, session_id: str) -> SessionRow | None:
        row = retry_on_busy(
            lambda: self._conn.execute("SELECT * FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        )
        return _row_to_session(row) if row is not None else None

    def update_status(self, session_id: str, status: RowStatus) -> None:
        completed_at, completed_epoch = self._now()
        retry_on_busy(
            lambda: self._conn.execute(
                """
                UPDATE sessions
                SET status = ?, completed_at = ?, completed_at_epoch = ?
                WHERE session_id = ?
                """,
                (status, completed_at, completed_epoch, session_id),
            )
        )

    def mark_processing(self, session_id: str) -> None:
        """Record that a finalizer started; informational only."""

        _, now_epoch = self._now()
        retry_on_busy(
            lambda: self._conn.execute(
                "UPDATE sessions SET processing_started_at = ? WHERE session_id = ?",
                (now_epoch, session_id),
            )
        )

    def active_sessions(self, limit: int | None = None, *, with_pending: bool = False) -> list[SessionRow]:
        """Active rows, oldest first; ``with_pending`` keeps only those with unclaimed queue rows."""

        pending_filter = (
            """
            AND EXISTS (
                SELECT 1 FROM pending_messages p
                WHERE p.session_id = sessions.session_id AND p.claimed_at IS NULL
            )
            """
            if with_pending
            else ""
        )
        rows = retry_on_busy(
            lambda: self._conn.execute(
                f"""
                SELECT * FROM sessions WHERE status = 'active' {pending_filter}
                ORDER BY started_at_epoch ASC, id ASC LIMIT ?
                """,
                (limit if limit is not None else -1,),
            ).fetchall()
        )
        return [_row_to_session(row) for row in rows]

    def fail_orphans(self, max_age_hours: float = 24) -> list[str]:
        """Mark active rows started more than ``max_age_hours`` ago as failed."""

        completed_at, now_epoch = self._now()
        cutoff = now_epoch - int(max_age_hours * 3600 * 1000)
        rows = retry_on_busy(
            lambda: self._conn.execute(
                """
                UPDATE sessions
                SET status = 'failed', completed_at = ?, completed_at_epoch = ?
                WHERE status = 'active' AND started_at_epoch < ?
                RETURNING session_id
                """,
                (completed_at, now_epoch, cutoff),
            ).fetchall()
        )
        return [row["session_id"] for row in rows]

    def cleanup_old_sessions(self, retention: int) -> list[str]:
        """Delete finished sessions beyond the ``retention`` most recent; return their ids.

        Leftover queue rows of the pruned sessions go with them.
        """

        def _cleanup() -> list[str]:
            with transaction(self._conn, immediate=True):
                rows = self._conn.execute(
                    """
                    SELECT session_id FROM sessions
                    WHERE status IN ('completed', 'failed')
                    ORDER BY completed_at_epoch DESC, id DESC
                    LIMIT -1 OFFSET ?
                    """,
                    (retention,),
                ).fetchall()
                ids = [row["session_id"] for row in rows]
                params = [(sid,) for sid in ids]
                self._conn.executemany("DELETE FROM sessions WHERE session_id = ?", params)
                self._conn.executemany("DELETE FROM pending_messages WHERE session_id = ?", params)
            return ids

        return retry_on_busy(_cleanup)

    def next_prompt_number(self, session_id: str) -> int:
        row = retry_on_busy(
            lambda: self._conn.execute(
                "SELECT MAX(prompt_number) AS max_num FROM user_prompts WHERE session_id = ?", (session_id,)
            ).fetchone()
        )
        return (row["max_num"] or 0) + 1

    def add_user_prompt(self, session_id: str, prompt_text: str) -> int:
        """Record a prompt under the next free number for the session and return that number."""

        created_at, created_epoch = self._now()

        def _insert() -> int:
            with transaction(self._conn, immediate=True):
                number = self.next_prompt_number(session_id)
                self._conn.execute(
                    """
                    INSERT INTO user_prompts (session_id, prompt_number, prompt_text, created_at, created_at_epoch)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (session_id, number, prompt_text, created_at, created_epoch),
                )
            return number

        return retry_on_busy(_insert)

    def user_prompts(self, session_id: str) -> list[UserPrompt]:
        rows = retry_on_busy(
            lambda: self._conn.execute(
                """
                SELECT prompt_number, prompt_text, created_at, created_at_epoch FROM user_prompts
                WHERE session_id = ? ORDER BY prompt_number ASC
                """,
                (session_id,),
            ).fetchall()
        )
        return [
            UserPrompt(
                prompt_number=row["prompt_number"],
                prompt_text=row["prompt_text"],
                created_at=row["created_at"],
                created_at_epoch=row["created_at_epoch"],
            )
            for row in rows
        ]

    def upsert_summary(self, session_id: str, project: str, summary: str) -> None:
        created_at, created_epoch = self._now()
        retry_on_busy(
            lambda: self._conn.execute(
                """
                INSERT INTO session_summaries (session_id, project, summary, created_at, created_at_epoch)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET summary = excluded.summary
                """,
                (session_id, project, summary, created_at, created_epoch),
            )
        )

    def get_summary(self, session_id: str) -> str | None:
        row = retry_on_busy(
            lambda: self._conn.execute(
                "SELECT summary FROM session_summaries WHERE session_id = ?", (session_id,)
            ).fetchone()
        )
        return row["summary"] if row is not None else None

    def add_agent_observation(self, session_id: str, project: str, content: str) -> None:
        created_at, created_epoch = self._now()
        retry_on_busy(
            lambda: self._conn.execute(
                """
                INSERT INTO agent_observations (session_id, project, content, created_at, created_at_epoch)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, project, content, created_at, created_epoch),
            )
        )

    def agent_observations(self, session_id: str) -> list[str]:
        rows = retry_on_busy(
            lambda: self._conn.execute(
                "SELECT content FROM agent_observations WHERE session_id = ? ORDER BY id ASC", (session_id,)
            ).fetchall()
        )
        return [row["content"] for row in rows]


__all__ = ["SessionTable"]
