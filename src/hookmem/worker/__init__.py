"""Queue worker and session finalizer."""

from .service import CycleResult, SessionResult, WorkerService
from .session_end import SessionEndProcessor

__all__ = ["CycleResult", "SessionEndProcessor", "SessionResult", "WorkerService"]
