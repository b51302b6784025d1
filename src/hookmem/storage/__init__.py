"""Persistence for hookmem: session files, job counters and the SQLite datastore."""

from .database import close, connect, retry_on_busy, transaction
from .fallback import FallbackStore
from .job_counter import PendingJobCounter
from .models import ObservationRecord, PendingMessage, SessionRecord, SessionRow
from .pending_queue import PendingQueue
from .session_store import SessionStore
from .session_table import SessionTable

__all__ = [
    "FallbackStore",
    "ObservationRecord",
    "PendingJobCounter",
    "PendingMessage",
    "PendingQueue",
    "SessionRecord",
    "SessionRow",
    "SessionStore",
    "SessionTable",
    "close",
    "connect",
    "retry_on_busy",
    "transaction",
]
