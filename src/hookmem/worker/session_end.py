"""Detached finalizer run after a session stops.

The stop hook takes a reservation on the session's process lock and spawns
this processor, which claims the lock and then drains the queue, requests a
final summary, marks the session completed, writes the vault note and tidies
up. Every step after the claim logs its failure and lets the next step run;
the lock is released whatever happens.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from ..locks.process_lock import ProcessLock
from ..storage.session_store import SessionStore
from ..storage.session_table import SessionTable
from ..vault import VaultWriter
from .service import WorkerService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionEndProcessor:
    def __init__(
        self,
        lock: ProcessLock,
        worker: WorkerService,
        table: SessionTable,
        store: SessionStore,
        *,
        vault: VaultWriter | None = None,
        retention: int = 50,
        counter_wait: float = 5.0,
    ) -> None:
        self._lock = lock
        self._worker = worker
        self._table = table
        self._store = store
        self._vault = vault
        self._retention = retention
        self._counter_wait = counter_wait

    def _step(self, name: str, session_id: str, operation: Callable[..., T], *args: Any) -> T | None:
        try:
            return operation(*args)
        except Exception as exc:
            logger.warning(
                "Session-end step failed, continuing",
                extra={"step": name, "session_id": session_id, "error": str(exc)},
            )
            return None

    def run(self, session_id: str) -> bool:
        """Finalize ``session_id``; False when another process owns the lock."""

        if not self._lock.claim(session_id):
            logger.warning("Failed to claim lock, another process may own it", extra={"session_id": session_id})
            return False

        logger.info("Session-end processing started", extra={"session_id": session_id})
        try:
            self._finalize(session_id)
        except Exception:
            logger.exception("Session-end processing failed", extra={"session_id": session_id})
            raise
        finally:
            self._step("release lock", session_id, self._lock.release, session_id)
        logger.info("Session-end processing completed", extra={"session_id": session_id})
        return True

    def _finalize(self, session_id: str) -> None:
        self._step("mark processing", session_id, self._table.mark_processing, session_id)

        if self._step("load session", session_id, self._table.get, session_id) is None:
            logger.warning("Session not found, nothing to finalize", extra={"session_id": session_id})
            return

        if self._step("check pending", session_id, self._worker.queue.has_pending, session_id):
            drained = self._step("drain queue", session_id, self._worker.process_session, session_id)
            if drained is not None and not drained.ok:
                logger.warning(
                    "Processing remaining messages failed",
                    extra={"session_id": session_id, "error": drained.error},
                )

        enqueued = self._step(
            "enqueue summary request",
            session_id,
            self._worker.queue.enqueue,
            session_id,
            "summary_request",
            {"last_assistant_message": ""},
        )
        if enqueued is not None:
            summarized = self._step("summarize", session_id, self._worker.process_session, session_id)
            if summarized is not None and not summarized.ok:
                logger.warning("Summary generation failed", extra={"session_id": session_id, "error": summarized.error})

        self._worker.clear_context(session_id)

        self._step("mark completed", session_id, self._table.update_status, session_id, "completed")
        self._step("end file session", session_id, self._store.end_session, session_id, "end")

        if self._vault is not None:
            self._step("write vault note", session_id, self._write_vault, session_id)

        self._step("clear file session", session_id, self._store.clear_session, session_id, self._counter_wait)

        pruned = self._step("prune old sessions", session_id, self._table.cleanup_old_sessions, self._retention)
        if pruned:
            logger.info("Pruned old sessions", extra={"count": len(pruned)})

    def _write_vault(self, session_id: str) -> None:
        assert self._vault is not None
        session = self._table.get(session_id)
        if session is None:
            logger.warning("Session row missing, skipping vault note", extra={"session_id": session_id})
            return
        result = self._vault.write_session(
            session,
            self._table.get_summary(session_id),
            self._table.agent_observations(session_id),
        )
        if not result.success:
            logger.warning("Vault write failed", extra={"session_id": session_id, "error": result.error})


__all__ = ["SessionEndProcessor"]
