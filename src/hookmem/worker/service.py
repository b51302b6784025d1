"""Polling worker that drains the pending message queue.

One cycle releases stale claims, then walks a bounded batch of active
sessions and processes each session's claimable messages synchronously. A
stop request is honoured between sessions, never in the middle of one.
"""

from __future__ import annotations

import logging
import signal
import threading
from dataclasses import dataclass, field
from types import FrameType

from ..agent.processor import AgentContext, MessageProcessor
from ..storage.pending_queue import PendingQueue
from ..storage.session_table import SessionTable

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_STALE_CLAIM_TIMEOUT = 60.0
DEFAULT_MAX_SESSIONS_PER_CYCLE = 10


@dataclass(slots=True)
class SessionResult:
    session_id: str
    processed: int = 0
    observations: int = 0
    summary: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class CycleResult:
    stale_released: int = 0
    sessions_processed: int = 0
    messages_processed: int = 0
    observations_created: int = 0
    errors: list[str] = field(default_factory=list)


class WorkerService:
    """Queue consumer; holds the per-session agent contexts for its lifetime."""

    def __init__(
        self,
        queue: PendingQueue,
        sessions: SessionTable,
        processor: MessageProcessor,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stale_claim_timeout: float = DEFAULT_STALE_CLAIM_TIMEOUT,
        max_sessions_per_cycle: int = DEFAULT_MAX_SESSIONS_PER_CYCLE,
    ) -> None:
        self._queue = queue
        self._sessions = sessions
        self._processor = processor
        self._poll_interval = poll_interval
        self._stale_claim_timeout = stale_claim_timeout
        self._max_sessions = max_sessions_per_cycle
        self._stop = threading.Event()
        self.contexts: dict[str, AgentContext] = {}

    @property
    def queue(self) -> PendingQueue:
        return self._queue

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def context_for(self, session_id: str, project: str) -> AgentContext:
        context = self.contexts.get(session_id)
        if context is None:
            context = AgentContext(session_id=session_id, project=project)
            self.contexts[session_id] = context
        return context

    def clear_context(self, session_id: str) -> bool:
        return self.contexts.pop(session_id, None) is not None

    def process_session(self, session_id: str) -> SessionResult:
        """Claim everything pending for the session and hand it to the processor.

        Messages are deleted on success and released on failure; errors are
        reported in the result rather than raised.
        """

        session = self._sessions.get(session_id)
        if session is None:
            logger.error("Session not found", extra={"session_id": session_id})
            return SessionResult(session_id=session_id, error="session not found")

        messages = self._queue.claim_all(session_id)
        if not messages:
            return SessionResult(session_id=session_id)

        ids = [message.id for message in messages]
        logger.info("Processing pending messages", extra={"session_id": session_id, "count": len(messages)})
        try:
            outcome = self._processor.process(messages, session, self.context_for(session_id, session.project))
        except Exception as exc:
            released = self._queue.release(ids)
            logger.error(
                "Error processing messages, released claims",
                extra={"session_id": session_id, "released": released, "error": str(exc)},
            )
            return SessionResult(session_id=session_id, error=str(exc))

        self._queue.delete(ids)
        return SessionResult(
            session_id=session_id,
            processed=len(messages),
            observations=len(outcome.observations),
            summary=outcome.summary,
        )

    def run_cycle(self) -> CycleResult:
        result = CycleResult()
        result.stale_released = self._queue.cleanup_stale_claims(self._stale_claim_timeout)
        if result.stale_released:
            logger.info("Released stale claims", extra={"count": result.stale_released})

        for session in self._sessions.active_sessions(limit=self._max_sessions, with_pending=True):
            if self._stop.is_set():
                break
            if not self._queue.has_pending(session.session_id):
                continue

            outcome = self.process_session(session.session_id)
            if outcome.error is not None:
                result.errors.append(f"{session.session_id}: {outcome.error}")
                continue
            result.sessions_processed += 1
            result.messages_processed += outcome.processed
            result.observations_created += outcome.observations
            logger.info(
                "Session processed",
                extra={"session_id": session.session_id, "processed": outcome.processed, "observations": outcome.observations},
            )
        return result

    def run_daemon(self, max_cycles: int | None = None) -> int:
        """Run cycles until stopped (or ``max_cycles`` ran); returns the cycle count."""

        logger.info("Worker daemon starting", extra={"poll_interval": self._poll_interval})
        cycles = 0
        while not self._stop.is_set():
            try:
                result = self.run_cycle()
                if result.messages_processed:
                    logger.info("Cycle completed", extra={"messages": result.messages_processed})
            except Exception as exc:
                logger.error("Cycle error", extra={"error": str(exc)})
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            self._stop.wait(self._poll_interval)
        logger.info("Worker daemon stopped", extra={"cycles": cycles})
        return cycles

    def install_signal_handlers(self) -> None:
        def _handle(signum: int, frame: FrameType | None) -> None:
            logger.info("Received signal, shutting down", extra={"signal": signal.Signals(signum).name})
            self.request_stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)


__all__ = ["CycleResult", "SessionResult", "WorkerService"]
