"""File-based locks coordinating hook processes and the worker."""

from .file_lock import acquire_lock, file_lock, release_lock
from .models import RESERVATION_TTL, RUNNING_LOCK_MAX_AGE, ReservedLock, RunningLock
from .process_lock import ProcessLock

__all__ = [
    "ProcessLock",
    "RESERVATION_TTL",
    "RUNNING_LOCK_MAX_AGE",
    "ReservedLock",
    "RunningLock",
    "acquire_lock",
    "file_lock",
    "release_lock",
]
