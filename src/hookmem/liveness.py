"""Process liveness checks with PID-reuse protection.

A PID recorded in a lock file may outlive its process and be handed to an
unrelated one. Liveness is therefore confirmed by comparing the OS-reported
process start time against the time recorded alongside the PID.
"""

from __future__ import annotations

import logging
import sys
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Protocol

import psutil

logger = logging.getLogger(__name__)

MAX_PID = 2**31 - 1
START_TIME_TOLERANCE = 1.0


def is_valid_pid(pid: object) -> bool:
    """Return True when ``pid`` is a positive 32-bit integer."""

    return isinstance(pid, int) and not isinstance(pid, bool) and 0 < pid <= MAX_PID


class StartTimeLookup(Protocol):
    """Resolve a process start time as epoch seconds, or None when unknown."""

    def get_start_time(self, pid: int) -> float | None:
        ...


class PsutilStartTimeLookup:
    """Start time from psutil's native backend for the running platform."""

    def get_start_time(self, pid: int) -> float | None:
        try:
            return psutil.Process(pid).create_time()
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None
        except psutil.AccessDenied:
            logger.debug("Access denied reading start time", extra={"pid": pid})
            return None


class UnknownStartTimeLookup:
    """Used on platforms without a supported lookup; never knows the answer."""

    def get_start_time(self, pid: int) -> float | None:
        return None


_SUPPORTED_PLATFORMS = ("linux", "darwin", "win32")


def select_start_time_lookup(platform: str | None = None) -> StartTimeLookup:
    """Pick the start-time lookup for ``platform`` (defaults to ``sys.platform``)."""

    platform = platform or sys.platform
    if platform.startswith(_SUPPORTED_PLATFORMS):
        return PsutilStartTimeLookup()
    logger.warning(
        "Start-time validation unavailable on this platform",
        extra={"platform": platform},
    )
    return UnknownStartTimeLookup()


class ProcessLivenessOracle:
    """Answers whether a PID is alive and still the process that was recorded."""

    def __init__(
        self,
        lookup: StartTimeLookup | None = None,
        *,
        tolerance: float = START_TIME_TOLERANCE,
    ) -> None:
        self._lookup = lookup or select_start_time_lookup()
        self._tolerance = tolerance

    def alive(self, pid: int) -> bool:
        """Existence-only check; never sends a terminating signal."""

        if not is_valid_pid(pid):
            logger.warning("Invalid PID", extra={"pid": pid})
            return False
        try:
            return psutil.pid_exists(pid)
        except OSError:
            return False

    def start_time(self, pid: int) -> float | None:
        if not is_valid_pid(pid):
            return None
        return self._lookup.get_start_time(pid)

    def alive_and_matches(self, pid: int, expected_start: float | None, timeout: float) -> bool:
        """Return True if ``pid`` is alive and started at ``expected_start`` (epoch seconds).

        A lookup that takes longer than ``timeout`` seconds counts as alive, as
        does a process whose start time cannot be determined.
        """

        if not is_valid_pid(pid):
            logger.warning("Invalid PID", extra={"pid": pid})
            return False

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="liveness")
        try:
            future = executor.submit(self._check, pid, expected_start)
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.warning(
                "Liveness lookup timed out, assuming alive",
                extra={"pid": pid, "timeout": timeout},
            )
            return True
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _check(self, pid: int, expected_start: float | None) -> bool:
        if not self.alive(pid):
            return False
        if expected_start is None:
            return True

        actual = self._lookup.get_start_time(pid)
        if actual is None:
            logger.warning(
                "Start time unavailable, using existence-only check",
                extra={"pid": pid},
            )
            return self.alive(pid)

        return abs(actual - expected_start) < self._tolerance


__all__ = [
    "MAX_PID",
    "ProcessLivenessOracle",
    "PsutilStartTimeLookup",
    "StartTimeLookup",
    "UnknownStartTimeLookup",
    "is_valid_pid",
    "select_start_time_lookup",
]
