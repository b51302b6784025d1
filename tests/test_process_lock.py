from __future__ import annotations

import json
import multiprocessing
import os
import subprocess
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from hookmem.liveness import ProcessLivenessOracle, PsutilStartTimeLookup, UnknownStartTimeLookup
from hookmem.locks import ProcessLock, ReservedLock, RunningLock

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _lock(tmp_path: Path, now: datetime | None = None) -> ProcessLock:
    return ProcessLock(
        tmp_path / "locks",
        oracle=ProcessLivenessOracle(PsutilStartTimeLookup()),
        clock=(lambda: now) if now is not None else None,
    )


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def _write(lock: ProcessLock, session_id: str, record: ReservedLock | RunningLock) -> Path:
    path = lock.lock_path(session_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(record.model_dump_json())
    return path


def _race(locks_dir: str, session_id: str, barrier, results) -> None:  # type: ignore[no-untyped-def]
    lock = ProcessLock(Path(locks_dir))
    barrier.wait()
    results.put(lock.acquire_reservation(session_id))


def test_second_reservation_is_refused(tmp_path: Path) -> None:
    lock = _lock(tmp_path, NOW)

    assert lock.acquire_reservation("s1")
    assert not lock.acquire_reservation("s1")

    record = lock.read("s1")
    assert isinstance(record, ReservedLock)
    assert record.reserved_at == _ms(NOW)


def test_release_allows_new_reservation(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    assert lock.acquire_reservation("s1")

    lock.release("s1")
    lock.release("s1")

    assert lock.acquire_reservation("s1")


def test_claim_turns_reservation_into_running(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    assert lock.acquire_reservation("s1")

    assert lock.claim("s1")

    record = lock.read("s1")
    assert isinstance(record, RunningLock)
    assert record.pid == os.getpid()
    assert record.pid_started_at is not None
    assert not lock.acquire_reservation("s1")


def test_claim_requires_reservation(tmp_path: Path) -> None:
    lock = _lock(tmp_path)

    assert not lock.claim("absent")

    assert lock.acquire_reservation("s1")
    assert lock.claim("s1")
    assert not lock.claim("s1")


def test_expired_reservation_is_replaced(tmp_path: Path) -> None:
    earlier = _lock(tmp_path, NOW)
    assert earlier.acquire_reservation("s1")

    still_fresh = _lock(tmp_path, NOW + timedelta(minutes=4))
    assert not still_fresh.acquire_reservation("s1")

    later = _lock(tmp_path, NOW + timedelta(minutes=6))
    assert later.read("s1") is None
    assert later.acquire_reservation("s1")


def test_dead_owner_lock_is_replaced(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    now_ms = _ms(datetime.now(timezone.utc))
    _write(lock, "s1", RunningLock(session_id="s1", pid=_dead_pid(), started_at=now_ms, pid_started_at=1.0))

    assert lock.acquire_reservation("s1")
    assert isinstance(lock.read("s1"), ReservedLock)


def test_live_owner_keeps_lock(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    start = PsutilStartTimeLookup().get_start_time(os.getpid())
    now_ms = _ms(datetime.now(timezone.utc))
    _write(lock, "s1", RunningLock(session_id="s1", pid=os.getpid(), started_at=now_ms, pid_started_at=start))

    assert not lock.acquire_reservation("s1")
    assert isinstance(lock.read("s1"), RunningLock)


def test_reused_pid_is_not_the_owner(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    start = PsutilStartTimeLookup().get_start_time(os.getpid())
    now_ms = _ms(datetime.now(timezone.utc))
    _write(
        lock,
        "s1",
        RunningLock(session_id="s1", pid=os.getpid(), started_at=now_ms, pid_started_at=start - 3600),
    )

    assert lock.acquire_reservation("s1")


def test_running_lock_older_than_a_day_is_absent(tmp_path: Path) -> None:
    lock = _lock(tmp_path, NOW)
    old = RunningLock(session_id="s1", pid=os.getpid(), started_at=_ms(NOW - timedelta(hours=25)))
    path = _write(lock, "s1", old)

    assert lock.read("s1") is None
    assert not path.exists()


def test_future_timestamp_is_discarded(tmp_path: Path) -> None:
    lock = _lock(tmp_path, NOW)
    path = _write(lock, "s1", ReservedLock(session_id="s1", reserved_at=_ms(NOW + timedelta(minutes=5))))

    assert lock.read("s1") is None
    assert not path.exists()


@pytest.mark.parametrize(
    "content",
    [
        "not json",
        json.dumps({"session_id": "s1", "status": "paused", "reserved_at": 1}),
        json.dumps({"session_id": "s1", "status": "running", "pid": -4, "started_at": 1}),
        json.dumps({"status": "reserved"}),
    ],
)
def test_invalid_record_is_deleted(tmp_path: Path, content: str) -> None:
    lock = _lock(tmp_path, NOW)
    path = lock.lock_path("s1")
    path.parent.mkdir(parents=True)
    path.write_text(content)

    assert lock.read("s1") is None
    assert not path.exists()
    assert lock.acquire_reservation("s1")


def test_session_id_is_sanitised_in_path(tmp_path: Path) -> None:
    lock = _lock(tmp_path)

    path = lock.lock_path("../../etc/passwd")

    assert path.parent == tmp_path / "locks"
    assert path.name == "______etc_passwd.lock"


def test_cleanup_stale_removes_dead_owners_only(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    now_ms = _ms(datetime.now(timezone.utc))
    _write(lock, "dead", RunningLock(session_id="dead", pid=_dead_pid(), started_at=now_ms))
    _write(lock, "fresh", ReservedLock(session_id="fresh", reserved_at=now_ms))

    cleaned = lock.cleanup_stale()

    assert cleaned == ["dead"]
    assert not lock.lock_path("dead").exists()
    assert lock.lock_path("fresh").exists()


@pytest.mark.skipif(sys.platform == "win32", reason="requires fork start method")
def test_concurrent_reservations_have_one_winner(tmp_path: Path) -> None:
    ctx = multiprocessing.get_context("fork")
    contenders = 6
    barrier = ctx.Barrier(contenders)
    results = ctx.Queue()
    processes = [
        ctx.Process(target=_race, args=(str(tmp_path / "locks"), "race", barrier, results))
        for _ in range(contenders)
    ]
    for process in processes:
        process.start()
    outcomes = [results.get(timeout=30) for _ in processes]
    for process in processes:
        process.join(timeout=30)

    assert outcomes.count(True) == 1
    assert outcomes.count(False) == contenders - 1


class SlowReadLock(ProcessLock):
    """Widens the gap between reading the record and rewriting it."""

    def read(self, session_id: str) -> ReservedLock | RunningLock | None:
        record = super().read(session_id)
        time.sleep(0.1)
        return record


def test_concurrent_claims_have_one_owner(tmp_path: Path) -> None:
    oracle = ProcessLivenessOracle(UnknownStartTimeLookup())
    contenders = {name: SlowReadLock(tmp_path / "locks", oracle=oracle, pid=pid) for name, pid in (("a", 1), ("b", 2))}
    assert contenders["a"].acquire_reservation("s1")
    barrier = threading.Barrier(len(contenders))
    claims: dict[str, bool] = {}

    def _claim(name: str) -> None:
        barrier.wait()
        claims[name] = contenders[name].claim("s1")

    threads = [threading.Thread(target=_claim, args=(name,)) for name in contenders]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(claims.values()) == [False, True]
    record = contenders["a"].read("s1")
    assert isinstance(record, RunningLock)
    assert record.pid == (1 if claims["a"] else 2)
    assert not contenders["a"].claim_guard_path("s1").exists()


def test_cleanup_stale_removes_reused_pid_owner(tmp_path: Path) -> None:
    lock = _lock(tmp_path)
    start = PsutilStartTimeLookup().get_start_time(os.getpid())
    now_ms = _ms(datetime.now(timezone.utc))
    _write(
        lock,
        "reused",
        RunningLock(session_id="reused", pid=os.getpid(), started_at=now_ms, pid_started_at=start - 3600),
    )
    _write(lock, "live", RunningLock(session_id="live", pid=os.getpid(), started_at=now_ms, pid_started_at=start))

    assert lock.cleanup_stale() == ["reused"]
    assert lock.lock_path("live").exists()
