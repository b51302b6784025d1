from __future__ import annotations

import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Sequence

import pytest

from hookmem.agent.processor import AgentContext, AgentProcessingError, ProcessingResult
from hookmem.storage import PendingQueue, SessionTable, close, connect
from hookmem.storage.models import PendingMessage, SessionRow
from hookmem.worker import WorkerService


class RecordingProcessor:
    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.batches: list[tuple[str, list[int]]] = []
        self.contexts: list[AgentContext] = []

    def process(
        self,
        messages: Sequence[PendingMessage],
        session: SessionRow,
        context: AgentContext,
    ) -> ProcessingResult:
        self.batches.append((session.session_id, [m.id for m in messages]))
        self.contexts.append(context)
        if session.session_id in self.fail_for:
            raise AgentProcessingError("agent down")
        return ProcessingResult(processed=len(messages), observations=["obs"])


@pytest.fixture()
def conn(tmp_path: Path):
    connection = connect(tmp_path / "hookmem.db")
    yield connection
    close(connection)


def _worker(conn: sqlite3.Connection, processor: RecordingProcessor, **kwargs) -> WorkerService:  # type: ignore[no-untyped-def]
    return WorkerService(PendingQueue(conn), SessionTable(conn), processor, **kwargs)


def test_process_session_deletes_on_success(conn: sqlite3.Connection) -> None:
    SessionTable(conn).create("s1", "demo")
    queue = PendingQueue(conn)
    queue.enqueue("s1", "prompt", {"prompt_text": "a"})
    queue.enqueue("s1", "tool_use", {"tool_name": "Bash"})
    processor = RecordingProcessor()

    result = _worker(conn, processor).process_session("s1")

    assert result.ok
    assert result.processed == 2
    assert result.observations == 1
    assert queue.messages("s1") == []


def test_process_session_releases_on_failure(conn: sqlite3.Connection) -> None:
    SessionTable(conn).create("s1", "demo")
    queue = PendingQueue(conn)
    queue.enqueue("s1", "prompt", {"prompt_text": "a"})

    result = _worker(conn, RecordingProcessor(fail_for={"s1"})).process_session("s1")

    assert not result.ok
    assert result.error == "agent down"
    messages = queue.messages("s1")
    assert len(messages) == 1
    assert not messages[0].claimed


def test_process_session_without_row_or_messages(conn: sqlite3.Connection) -> None:
    processor = RecordingProcessor()
    worker = _worker(conn, processor)

    assert worker.process_session("ghost").error == "session not found"

    SessionTable(conn).create("s1", "demo")
    assert worker.process_session("s1").processed == 0
    assert processor.batches == []


def test_context_is_per_worker_and_reused(conn: sqlite3.Connection) -> None:
    SessionTable(conn).create("s1", "demo")
    queue = PendingQueue(conn)
    processor = RecordingProcessor()
    worker = _worker(conn, processor)
    other = _worker(conn, RecordingProcessor())

    queue.enqueue("s1", "prompt", {})
    worker.process_session("s1")
    queue.enqueue("s1", "prompt", {})
    worker.process_session("s1")

    assert processor.contexts[0] is processor.contexts[1]
    assert "s1" in worker.contexts
    assert other.contexts == {}
    assert worker.clear_context("s1")
    assert not worker.clear_context("s1")


def test_cycle_processes_active_sessions_within_batch(conn: sqlite3.Connection) -> None:
    table = SessionTable(conn)
    queue = PendingQueue(conn)
    for name in ("a", "b", "c", "done"):
        table.create(name, "demo")
        queue.enqueue(name, "prompt", {})
    table.update_status("done", "completed")
    table.create("idle", "demo")
    processor = RecordingProcessor(fail_for={"b"})

    result = _worker(conn, processor, max_sessions_per_cycle=3).run_cycle()

    assert [session for session, _ in processor.batches] == ["a", "b", "c"]
    assert result.sessions_processed == 2
    assert result.messages_processed == 2
    assert result.observations_created == 2
    assert result.errors == ["b: agent down"]
    assert queue.has_pending("b")
    assert queue.has_pending("done")


def test_idle_sessions_do_not_starve_the_batch(conn: sqlite3.Connection) -> None:
    table = SessionTable(conn)
    queue = PendingQueue(conn)
    for name in ("idle-1", "idle-2"):
        table.create(name, "demo")
    table.create("busy", "demo")
    queue.enqueue("busy", "prompt", {})
    processor = RecordingProcessor()

    result = _worker(conn, processor, max_sessions_per_cycle=2).run_cycle()

    assert [session for session, _ in processor.batches] == ["busy"]
    assert result.sessions_processed == 1
    assert not queue.has_pending("busy")


def test_cycle_releases_stale_claims(conn: sqlite3.Connection) -> None:
    table = SessionTable(conn)
    table.create("s1", "demo")
    past = PendingQueue(conn, clock=lambda: datetime.now(timezone.utc) - timedelta(minutes=5))
    past.enqueue("s1", "prompt", {})
    past.claim_all("s1")
    processor = RecordingProcessor()

    result = _worker(conn, processor, stale_claim_timeout=60).run_cycle()

    assert result.stale_released == 1
    assert result.messages_processed == 1
    assert PendingQueue(conn).messages("s1") == []


def test_stop_flag_checked_between_sessions(conn: sqlite3.Connection) -> None:
    table = SessionTable(conn)
    queue = PendingQueue(conn)
    for name in ("a", "b"):
        table.create(name, "demo")
        queue.enqueue(name, "prompt", {})

    class StoppingProcessor(RecordingProcessor):
        worker: WorkerService

        def process(self, messages, session, context):  # type: ignore[no-untyped-def]
            self.worker.request_stop()
            return super().process(messages, session, context)

    processor = StoppingProcessor()
    worker = _worker(conn, processor)
    processor.worker = worker

    result = worker.run_cycle()

    assert result.sessions_processed == 1
    assert queue.has_pending("b")
    assert worker.stop_requested


def test_daemon_runs_bounded_cycles(conn: sqlite3.Connection) -> None:
    worker = _worker(conn, RecordingProcessor(), poll_interval=0.01)

    assert worker.run_daemon(max_cycles=3) == 3


def test_stop_request_wakes_daemon(tmp_path: Path) -> None:
    db_path = tmp_path / "daemon.db"
    ready = threading.Event()
    holder: dict[str, WorkerService] = {}

    def _run() -> None:
        conn = connect(db_path)
        try:
            holder["worker"] = _worker(conn, RecordingProcessor(), poll_interval=30)
            ready.set()
            holder["worker"].run_daemon()
        finally:
            close(conn)

    thread = threading.Thread(target=_run)
    thread.start()
    assert ready.wait(10)
    time.sleep(0.1)
    started = time.monotonic()
    holder["worker"].request_stop()
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert time.monotonic() - started < 5
