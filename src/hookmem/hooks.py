"""Hook entry points invoked by the assistant for session lifecycle events.

Hooks run as short-lived processes: they record the event, hand any heavy
work to the queue or to a detached finalizer, and exit. They never raise to
the caller; failures are logged and skipped.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import subprocess
import sys
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .agent.utils import is_agent_session, sanitize_environment
from .config import HookmemSettings
from .liveness import ProcessLivenessOracle
from .locks.process_lock import ProcessLock
from .storage import database
from .storage.fallback import FallbackStore
from .storage.job_counter import PendingJobCounter
from .storage.models import ObservationRecord
from .storage.pending_queue import PendingQueue
from .storage.session_store import SessionStore
from .storage.session_table import SessionTable

logger = logging.getLogger(__name__)

ORPHAN_TIMEOUT_HOURS = 24

Spawner = Callable[[Sequence[str]], Any]


class HookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: str = Field(..., min_length=1)
    cwd: str | None = None


class PromptPayload(HookPayload):
    prompt: str = ""


class ToolUsePayload(HookPayload):
    tool_name: str = Field(..., min_length=1)
    tool_input: Any = None
    tool_response: Any = None


def detect_project(cwd: str | None) -> str:
    if not cwd:
        return "unknown"
    return Path(cwd).name or "unknown"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _is_error_response(response: Any) -> bool:
    return isinstance(response, Mapping) and bool(response.get("is_error") or response.get("error"))


def spawn_detached(args: Sequence[str]) -> subprocess.Popen[bytes]:
    """Start ``args`` in its own session with no stdio; the caller never waits on it."""

    return subprocess.Popen(
        list(args),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        env=sanitize_environment(),
    )


@dataclass(slots=True)
class HookContext:
    """Collaborators shared by all hook handlers of one process."""

    settings: HookmemSettings
    store: SessionStore
    counter: PendingJobCounter
    lock: ProcessLock
    fallback: FallbackStore
    agent_session: bool = False
    spawn: Spawner = spawn_detached
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls,
        settings: HookmemSettings,
        *,
        env: Mapping[str, str] | None = None,
        spawn: Spawner = spawn_detached,
    ) -> "HookContext":
        counter = PendingJobCounter(settings.sessions_dir, lock_timeout=settings.lock_timeout)
        store = SessionStore(settings.sessions_dir, counter=counter, lock_timeout=settings.lock_timeout)
        lock = ProcessLock(
            settings.locks_dir,
            oracle=ProcessLivenessOracle(),
            liveness_timeout=settings.pid_validation_timeout,
        )
        return cls(
            settings=settings,
            store=store,
            counter=counter,
            lock=lock,
            fallback=FallbackStore(settings.fallback_dir, lock_timeout=settings.lock_timeout),
            agent_session=is_agent_session(env),
            spawn=spawn,
        )

    @contextmanager
    def open_database(self) -> Iterator[sqlite3.Connection]:
        conn = database.connect(self.settings.database_file)
        try:
            yield conn
        finally:
            database.close(conn)

    def finalizer_command(self, session_id: str) -> list[str]:
        return [sys.executable, "-m", "hookmem", "session-end", session_id]


def _validate(model: type[HookPayload], payload: Mapping[str, Any], hook: str) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Invalid hook payload", extra={"hook": hook, "error": exc.errors()[0]["msg"]})
        return None


def handle_session_start(ctx: HookContext, payload: Mapping[str, Any]) -> str | None:
    """Start or resume the session and run housekeeping; returns context text for the assistant."""

    data = _validate(HookPayload, payload, "session-start")
    if data is None:
        return None
    project = detect_project(data.cwd)

    stale_locks = ctx.lock.cleanup_stale()
    if stale_locks:
        logger.info("Cleaned up stale lock files", extra={"count": len(stale_locks)})
    stale_sessions = ctx.store.cleanup_stale_sessions(ORPHAN_TIMEOUT_HOURS)
    if stale_sessions:
        logger.info("Cleaned up stale session files", extra={"count": len(stale_sessions)})

    if not ctx.store.reactivate_session(data.session_id, project, data.cwd):
        if ctx.store.get(data.session_id) is None:
            ctx.store.start_session(data.session_id, project, data.cwd or "")

    try:
        with ctx.open_database() as conn:
            table = SessionTable(conn, clock=ctx.clock)
            orphans = table.fail_orphans(ORPHAN_TIMEOUT_HOURS)
            for orphan in orphans:
                logger.info("Marked orphan session as failed", extra={"session_id": orphan})
            if not table.reactivate(data.session_id, project):
                table.create(data.session_id, project)
    except sqlite3.Error as exc:
        logger.warning(
            "Datastore error, using fallback storage",
            extra={"session_id": data.session_id, "error": str(exc)},
        )
        ctx.fallback.init_session(data.session_id, project)

    logger.info("Session started", extra={"session_id": data.session_id, "project": project})
    return f"<!-- Memory context for {project} -->"


def handle_user_prompt(ctx: HookContext, payload: Mapping[str, Any]) -> int | None:
    """Number and record the prompt, then queue it; returns the prompt number."""

    data = _validate(PromptPayload, payload, "user-prompt")
    if data is None or not data.prompt.strip():
        return None

    try:
        with ctx.open_database() as conn:
            table = SessionTable(conn, clock=ctx.clock)
            if table.get(data.session_id) is None:
                logger.warning("Session not found, skipping prompt recording", extra={"session_id": data.session_id})
                return None
            number = table.add_user_prompt(data.session_id, data.prompt)
            PendingQueue(conn, clock=ctx.clock).enqueue(
                data.session_id,
                "prompt",
                {"prompt_text": data.prompt, "prompt_number": number},
            )
    except sqlite3.Error as exc:
        logger.warning(
            "Datastore error, using fallback storage",
            extra={"session_id": data.session_id, "error": str(exc)},
        )
        if not ctx.fallback.exists(data.session_id):
            logger.warning("Fallback session not found, cannot record prompt", extra={"session_id": data.session_id})
            return None
        return ctx.fallback.add_prompt(data.session_id, data.prompt)

    logger.info("User prompt recorded", extra={"session_id": data.session_id, "prompt_number": number})
    return number


def handle_post_tool_use(ctx: HookContext, payload: Mapping[str, Any]) -> None:
    """Record the tool call in the session log and queue it for the worker."""

    data = _validate(ToolUsePayload, payload, "post-tool-use")
    if data is None:
        return

    now = ctx.clock()
    tool_input = _as_text(data.tool_input)
    tool_output = _as_text(data.tool_response)
    with ctx.counter.track(data.session_id):
        observation = ObservationRecord(
            id=uuid.uuid4().hex,
            timestamp=now,
            type="tool_use",
            tool=data.tool_name,
            data={"input": tool_input, "output": tool_output, "cwd": data.cwd},
            is_error=_is_error_response(data.tool_response),
        )
        if not ctx.store.add_observation(data.session_id, observation):
            logger.debug("Observation not recorded", extra={"session_id": data.session_id, "tool": data.tool_name})

        try:
            with ctx.open_database() as conn:
                PendingQueue(conn, clock=ctx.clock).enqueue(
                    data.session_id,
                    "tool_use",
                    {
                        "tool_name": data.tool_name,
                        "tool_input": tool_input,
                        "tool_output": tool_output,
                        "cwd": data.cwd,
                        "created_at_epoch": int(now.timestamp() * 1000),
                    },
                )
        except sqlite3.Error as exc:
            logger.warning(
                "Datastore error, using fallback storage",
                extra={"session_id": data.session_id, "error": str(exc)},
            )
            if not ctx.fallback.add_tool_use(data.session_id, data.tool_name, tool_input, tool_output, data.cwd):
                logger.warning("Fallback session not found, cannot record tool use", extra={"session_id": data.session_id})


def _start_finalizer(ctx: HookContext, session_id: str) -> bool:
    if not ctx.lock.acquire_reservation(session_id):
        logger.info("Session already reserved or being processed, skipping", extra={"session_id": session_id})
        return False
    try:
        child = ctx.spawn(ctx.finalizer_command(session_id))
    except OSError as exc:
        logger.error("Failed to spawn session-end processor", extra={"session_id": session_id, "error": str(exc)})
        ctx.lock.release(session_id)
        return False
    logger.info("Session-end processor started", extra={"session_id": session_id, "pid": getattr(child, "pid", None)})
    return True


def handle_stop(ctx: HookContext, payload: Mapping[str, Any]) -> bool:
    """Stop the session and hand finalization to a detached process."""

    data = _validate(HookPayload, payload, "stop")
    if data is None:
        return False
    ctx.store.end_session(data.session_id, "stop")
    return _start_finalizer(ctx, data.session_id)


def handle_session_end(ctx: HookContext, payload: Mapping[str, Any]) -> bool:
    data = _validate(HookPayload, payload, "session-end")
    if data is None:
        return False
    ctx.store.end_session(data.session_id, "end")
    if ctx.fallback.exists(data.session_id):
        ctx.fallback.update_status(data.session_id, "completed")
    return _start_finalizer(ctx, data.session_id)


HANDLERS: dict[str, Callable[[HookContext, Mapping[str, Any]], Any]] = {
    "session-start": handle_session_start,
    "user-prompt": handle_user_prompt,
    "post-tool-use": handle_post_tool_use,
    "stop": handle_stop,
    "session-end": handle_session_end,
}


def run_hook(ctx: HookContext, name: str, payload: Mapping[str, Any]) -> Any:
    """Dispatch ``name``; never raises."""

    if ctx.agent_session:
        logger.debug("Skipping hook inside agent session", extra={"hook": name})
        return None
    handler = HANDLERS.get(name)
    if handler is None:
        logger.warning("Unknown hook", extra={"hook": name})
        return None
    try:
        return handler(ctx, payload)
    except Exception:
        logger.exception("Hook failed", extra={"hook": name})
        return None


__all__ = [
    "HANDLERS",
    "HookContext",
    "HookPayload",
    "PromptPayload",
    "ToolUsePayload",
    "detect_project",
    "handle_post_tool_use",
    "handle_session_end",
    "handle_session_start",
    "handle_stop",
    "handle_user_prompt",
    "run_hook",
    "spawn_detached",
]
