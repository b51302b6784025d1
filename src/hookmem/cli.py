"""hookmem command line: queue worker, session finalizer and hook dispatch."""

from __future__ import annotations

import argparse
import json
import logging
import sqlite3
import sys
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Sequence

from . import __version__
from .agent.processor import AgentContext, AgentProcessingError, AgentProcessor, MessageProcessor, ProcessingResult
from .agent.runner import AgentNotFoundError, AgentRunner
from .config import HookmemSettings, get_settings
from .hooks import HookContext, run_hook
from .liveness import ProcessLivenessOracle
from .locks.process_lock import ProcessLock
from .storage import database
from .files import ensure_dir
from .storage.job_counter import PendingJobCounter
from .storage.models import PendingMessage, SessionRow
from .storage.pending_queue import PendingQueue
from .storage.session_store import SessionStore
from .storage.session_table import SessionTable
from .vault import SessionNoteWriter
from .worker.service import WorkerService
from .worker.session_end import SessionEndProcessor

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_MAX_BYTES = 10 * 1024 * 1024


def configure_logging(level: str, log_dir: Path | None = None, filename: str = "hookmem.log") -> None:
    """Configure root logging; with ``log_dir`` also write to a rotating file."""

    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
    if log_dir is None:
        return
    try:
        ensure_dir(Path(log_dir))
        handler = RotatingFileHandler(Path(log_dir) / filename, maxBytes=LOG_MAX_BYTES, backupCount=1, encoding="utf-8")
    except OSError as exc:
        logger.warning("File logging unavailable", extra={"log_dir": str(log_dir), "error": str(exc)})
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)


class UnavailableProcessor:
    """Stands in when the assistant CLI is missing; every batch is released for later."""

    def __init__(self, reason: str) -> None:
        self._reason = reason

    def process(
        self,
        messages: Sequence[PendingMessage],
        session: SessionRow,
        context: AgentContext,
    ) -> ProcessingResult:
        raise AgentProcessingError(self._reason)


def build_processor(settings: HookmemSettings, table: SessionTable) -> MessageProcessor:
    try:
        runner = AgentRunner(settings.agent_path)
    except AgentNotFoundError as exc:
        logger.warning("Assistant CLI unavailable", extra={"error": str(exc)})
        return UnavailableProcessor(str(exc))
    return AgentProcessor(runner, table, timeout=settings.agent_timeout)


def build_worker(settings: HookmemSettings, conn: sqlite3.Connection) -> WorkerService:
    table = SessionTable(conn)
    return WorkerService(
        PendingQueue(conn),
        table,
        build_processor(settings, table),
        poll_interval=settings.poll_interval,
        stale_claim_timeout=settings.stale_claim_timeout,
        max_sessions_per_cycle=settings.max_sessions_per_cycle,
    )


def cmd_worker(args: argparse.Namespace) -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_directory, "worker.log")
    conn = database.connect(settings.database_file)
    try:
        worker = build_worker(settings, conn)
        if args.session:
            result = worker.process_session(args.session)
            print(json.dumps(asdict(result), indent=2))
            if not result.ok:
                raise SystemExit(1)
        elif args.once:
            logger.info("Worker running once")
            print(json.dumps(asdict(worker.run_cycle()), indent=2))
        else:
            worker.install_signal_handlers()
            worker.run_daemon()
    finally:
        database.close(conn)


def cmd_session_end(args: argparse.Namespace) -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_directory, "session-end.log")
    conn = database.connect(settings.database_file)
    try:
        counter = PendingJobCounter(settings.sessions_dir, lock_timeout=settings.lock_timeout)
        processor = SessionEndProcessor(
            ProcessLock(
                settings.locks_dir,
                oracle=ProcessLivenessOracle(),
                liveness_timeout=settings.pid_validation_timeout,
            ),
            build_worker(settings, conn),
            SessionTable(conn),
            SessionStore(settings.sessions_dir, counter=counter, lock_timeout=settings.lock_timeout),
            vault=SessionNoteWriter(settings.vault_path, settings.vault_folder),
            retention=settings.retention_sessions,
            counter_wait=settings.counter_wait,
        )
        try:
            processor.run(args.session_id)
        except Exception:
            raise SystemExit(1)
    finally:
        database.close(conn)


def cmd_hook(args: argparse.Namespace) -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_directory, "hooks.log")
    try:
        payload = json.load(sys.stdin)
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse hook input", extra={"hook": args.name, "error": str(exc)})
        return
    if not isinstance(payload, dict):
        logger.warning("Hook input is not an object", extra={"hook": args.name})
        return

    output = run_hook(HookContext.from_settings(settings), args.name, payload)
    if isinstance(output, str):
        print(output)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hookmem", description="Session memory background processing")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="cmd")

    p_worker = sub.add_parser("worker", help="Process pending messages")
    mode = p_worker.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    mode.add_argument("--session", help="Process only this session and exit")
    p_worker.set_defaults(func=cmd_worker)

    p_end = sub.add_parser("session-end", help="Finalize a stopped session (spawned by the stop hook)")
    p_end.add_argument("session_id")
    p_end.set_defaults(func=cmd_session_end)

    p_hook = sub.add_parser("hook", help="Handle a hook event read as JSON from stdin")
    p_hook.add_argument("name", choices=["session-start", "user-prompt", "post-tool-use", "stop", "session-end"])
    p_hook.set_defaults(func=cmd_hook)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


__all__ = ["build_parser", "build_processor", "build_worker", "configure_logging", "main"]
