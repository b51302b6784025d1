"""Durable claim-and-delete work queue in SQLite.

A row with ``claimed_at`` NULL is claimable. Claiming stamps the time; the
owner deletes the row after processing or releases it on failure. Claims
left behind by a crashed owner are released by ``cleanup_stale_claims``, so
delivery is at-least-once and consumers must tolerate repeats.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from .database import retry_on_busy, transaction
from .models import MESSAGE_TYPES, PendingMessage

_COLUMNS = "id, session_id, message_type, payload, created_at, created_at_epoch, claimed_at, claimed_at_epoch"


def _row_to_message(row: sqlite3.Row) -> PendingMessage:
    return PendingMessage(
        id=row["id"],
        session_id=row["session_id"],
        message_type=row["message_type"],
        payload=row["payload"],
        created_at=row["created_at"],
        created_at_epoch=row["created_at_epoch"],
        claimed_at=row["claimed_at"],
        claimed_at_epoch=row["claimed_at_epoch"],
    )


def _sorted(messages: Iterable[PendingMessage]) -> list[PendingMessage]:
    return sorted(messages, key=lambda message: (message.created_at_epoch, message.id))


class PendingQueue:
    """Queue operations over the ``pending_messages`` table."""

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

    def enqueue(self, session_id: str, message_type: str, payload: Mapping[str, Any]) -> PendingMessage:
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"Unsupported message type: {message_type}")

        body = json.dumps(dict(payload))
        created_at, created_epoch = self._now()

        def _insert() -> int:
            cursor = self._conn.execute(
                """
                INSERT INTO pending_messages (session_id, message_type, payload, created_at, created_at_epoch)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, message_type, body, created_at, created_epoch),
            )
            return int(cursor.lastrowid)

        message_id = retry_on_busy(_insert)
        return PendingMessage(
            id=message_id,
            session_id=session_id,
            message_type=message_type,
            payload=body,
            created_at=created_at,
            created_at_epoch=created_epoch,
        )

    def claim_all(self, session_id: str) -> list[PendingMessage]:
        """Claim every unclaimed message of the session in a single statement.

        Concurrent claimers receive disjoint sets.
        """

        claimed_at, claimed_epoch = self._now()

        def _claim() -> list[PendingMessage]:
            with transaction(self._conn, immediate=True):
                rows = self._conn.execute(
                    f"""
                    UPDATE pending_messages
                    SET claimed_at = ?, claimed_at_epoch = ?
                    WHERE session_id = ? AND claimed_at IS NULL
                    RETURNING {_COLUMNS}
                    """,
                    (claimed_at, claimed_epoch, session_id),
                ).fetchall()
            return _sorted(_row_to_message(row) for row in rows)

        return retry_on_busy(_claim)

    def claim(self, session_id: str, limit: int = 10) -> list[PendingMessage]:
        """Claim up to ``limit`` of the oldest unclaimed messages."""

        claimed_at, claimed_epoch = self._now()

        def _claim() -> list[PendingMessage]:
            with transaction(self._conn, immediate=True):
                rows = self._conn.execute(
                    f"""
                    UPDATE pending_messages
                    SET claimed_at = ?, claimed_at_epoch = ?
                    WHERE id IN (
                        SELECT id FROM pending_messages
                        WHERE session_id = ? AND claimed_at IS NULL
                        ORDER BY created_at_epoch ASC, id ASC
                        LIMIT ?
                    )
                    RETURNING {_COLUMNS}
                    """,
                    (claimed_at, claimed_epoch, session_id, limit),
                ).fetchall()
            return _sorted(_row_to_message(row) for row in rows)

        return retry_on_busy(_claim)

    def delete(self, message_ids: Iterable[int]) -> int:
        ids = list(message_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        return retry_on_busy(
            lambda: self._conn.execute(f"DELETE FROM pending_messages WHERE id IN ({placeholders})", ids).rowcount
        )

    def release(self, message_ids: Iterable[int]) -> int:
        """Make claimed messages claimable again."""

        ids = list(message_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        return retry_on_busy(
            lambda: self._conn.execute(
                f"""
                UPDATE pending_messages
                SET claimed_at = NULL, claimed_at_epoch = NULL
                WHERE id IN ({placeholders})
                """,
                ids,
            ).rowcount
        )

    def cleanup_stale_claims(self, max_age: float = 60.0) -> int:
        """Release claims older than ``max_age`` seconds; returns how many."""

        _, now_epoch = self._now()
        cutoff = now_epoch - int(max_age * 1000)
        return retry_on_busy(
            lambda: self._conn.execute(
                """
                UPDATE pending_messages
                SET claimed_at = NULL, claimed_at_epoch = NULL
                WHERE claimed_at IS NOT NULL AND claimed_at_epoch < ?
                """,
                (cutoff,),
            ).rowcount
        )

    def pending_count(self, session_id: str) -> int:
        row = retry_on_busy(
            lambda: self._conn.execute(
                "SELECT COUNT(*) AS count FROM pending_messages WHERE session_id = ? AND claimed_at IS NULL",
                (session_id,),
            ).fetchone()
        )
        return int(row["count"])

    def has_pending(self, session_id: str) -> bool:
        return self.pending_count(session_id) > 0

    def messages(self, session_id: str) -> list[PendingMessage]:
        """All messages of the session, claimed or not, oldest first."""

        rows = retry_on_busy(
            lambda: self._conn.execute(
                f"""
                SELECT {_COLUMNS} FROM pending_messages
                WHERE session_id = ?
                ORDER BY created_at_epoch ASC, id ASC
                """,
                (session_id,),
            ).fetchall()
        )
        return [_row_to_message(row) for row in rows]

    def delete_session_messages(self, session_id: str) -> int:
        return retry_on_busy(
            lambda: self._conn.execute("DELETE FROM pending_messages WHERE session_id = ?", (session_id,)).rowcount
        )


__all__ = ["PendingQueue"]
