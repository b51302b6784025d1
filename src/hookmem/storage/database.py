"""SQLite connection management, schema migrations and busy-retry helpers."""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from ..files import ensure_dir

logger = logging.getLogger(__name__)

T = TypeVar("T")

BUSY_TIMEOUT_MS = 5000
CONFIGURE_RETRIES = 3
CONFIGURE_INITIAL_DELAY = 0.05

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL UNIQUE,
        project TEXT NOT NULL,
        started_at TEXT NOT NULL,
        started_at_epoch INTEGER NOT NULL,
        completed_at TEXT,
        completed_at_epoch INTEGER,
        status TEXT NOT NULL CHECK(status IN ('active', 'completed', 'failed')),
        processing_started_at INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        message_type TEXT NOT NULL CHECK(message_type IN ('tool_use', 'prompt', 'summary_request')),
        payload TEXT NOT NULL,
        claimed_at TEXT,
        claimed_at_epoch INTEGER,
        created_at TEXT NOT NULL,
        created_at_epoch INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_summaries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL UNIQUE,
        project TEXT NOT NULL,
        summary TEXT NOT NULL,
        created_at TEXT NOT NULL,
        created_at_epoch INTEGER NOT NULL,
        FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_prompts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        prompt_number INTEGER NOT NULL,
        prompt_text TEXT NOT NULL,
        created_at TEXT NOT NULL,
        created_at_epoch INTEGER NOT NULL,
        UNIQUE (session_id, prompt_number),
        FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS agent_observations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        project TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,
        created_at_epoch INTEGER NOT NULL,
        FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status)",
    "CREATE INDEX IF NOT EXISTS idx_pending_session_claimed ON pending_messages(session_id, claimed_at)",
    "CREATE INDEX IF NOT EXISTS idx_pending_claimed_epoch ON pending_messages(claimed_at_epoch)",
    "CREATE INDEX IF NOT EXISTS idx_agent_observations_session ON agent_observations(session_id)",
)


def is_busy_error(error: BaseException) -> bool:
    """True for SQLite's transient lock contention errors."""

    if not isinstance(error, sqlite3.OperationalError):
        return False
    message = str(error).lower()
    return "database is locked" in message or "busy" in message or "database table is locked" in message


def retry_on_busy(operation: Callable[[], T], *, max_retries: int = 3) -> T:
    """Run ``operation``, retrying immediately on busy errors.

    SQLite's ``busy_timeout`` already waits for the writer lock; this only
    smooths the edge cases it does not cover.
    """

    for attempt in range(max_retries):
        try:
            return operation()
        except sqlite3.OperationalError as exc:
            if not is_busy_error(exc) or attempt == max_retries - 1:
                raise
            logger.debug("Database busy, retrying", extra={"attempt": attempt + 1})
    raise RuntimeError("retry_on_busy called with max_retries < 1")


@contextmanager
def transaction(conn: sqlite3.Connection, *, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """Explicit transaction on an autocommit connection."""

    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def _configure(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute("PRAGMA cache_size = -10000")


def _configure_with_retry(conn: sqlite3.Connection) -> None:
    for attempt in range(CONFIGURE_RETRIES):
        try:
            _configure(conn)
            return
        except sqlite3.OperationalError as exc:
            if not is_busy_error(exc) or attempt == CONFIGURE_RETRIES - 1:
                logger.error("Database configuration failed", extra={"attempts": attempt + 1, "error": str(exc)})
                raise
            delay = CONFIGURE_INITIAL_DELAY * (2**attempt)
            logger.debug("Database configuration busy, retrying", extra={"attempt": attempt + 1, "delay": delay})
            time.sleep(delay)


def run_migrations(conn: sqlite3.Connection) -> None:
    with transaction(conn, immediate=True):
        for statement in _SCHEMA:
            conn.execute(statement)


def connect(path: Path) -> sqlite3.Connection:
    """Open (creating if needed) the datastore at ``path`` and apply the schema."""

    db_path = Path(path)
    ensure_dir(db_path.parent)
    conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT_MS / 1000, isolation_level=None)
    conn.row_factory = sqlite3.Row
    try:
        os.chmod(db_path, 0o600)
    except OSError as exc:
        logger.warning("Failed to set database permissions", extra={"path": str(db_path), "error": str(exc)})

    _configure_with_retry(conn)
    retry_on_busy(lambda: run_migrations(conn))
    return conn


def close(conn: sqlite3.Connection) -> None:
    try:
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
    except sqlite3.Error as exc:
        logger.debug("WAL checkpoint failed", extra={"error": str(exc)})
    conn.close()


__all__ = ["close", "connect", "is_busy_error", "retry_on_busy", "run_migrations", "transaction"]
