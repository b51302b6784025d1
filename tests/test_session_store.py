from __future__ import annotations

import multiprocessing
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from hookmem.storage import ObservationRecord, SessionStore
from hookmem.files import atomic_write_text, create_exclusive, safe_session_filename

START = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


class StepClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def _observation(identifier: str, tool: str = "Bash") -> ObservationRecord:
    return ObservationRecord(id=identifier, timestamp=START, type="tool_use", tool=tool, data={"n": identifier})


def _append_many(sessions_dir: str, session_id: str, worker: int, count: int) -> None:
    store = SessionStore(Path(sessions_dir), lock_timeout=20.0)
    for index in range(count):
        assert store.add_observation(session_id, _observation(f"{worker}-{index}"))


@pytest.fixture()
def clock() -> StepClock:
    return StepClock(START)


@pytest.fixture()
def store(tmp_path: Path, clock: StepClock) -> SessionStore:
    return SessionStore(tmp_path / "sessions", clock=clock)


def test_metadata_roundtrip(store: SessionStore) -> None:
    created = store.start_session("s1", "demo", "/work/demo")

    loaded = store.get("s1")

    assert loaded == created
    assert loaded is not None and loaded.status == "active"


def test_stop_then_end_scenario(store: SessionStore, clock: StepClock) -> None:
    store.start_session("s1", "demo", "/work/demo")
    clock.advance(minutes=12, seconds=40)

    stopped = store.end_session("s1", "stop")
    assert stopped is not None
    assert stopped.status == "stopped"
    assert stopped.end_time == START + timedelta(minutes=12, seconds=40)
    assert stopped.duration_minutes == 13

    clock.advance(minutes=5)
    again = store.end_session("s1", "stop")
    assert again == stopped

    ended = store.end_session("s1", "end")
    assert ended is not None
    assert ended.status == "completed"
    assert ended.duration_minutes == 18


def test_completed_is_final(store: SessionStore, clock: StepClock) -> None:
    store.start_session("s1", "demo", "/work/demo")
    completed = store.end_session("s1", "end")

    clock.advance(minutes=1)
    assert store.end_session("s1", "stop") == completed
    assert store.end_session("s1", "end") == completed
    assert not store.reactivate_session("s1")
    assert store.get("s1") == completed
    assert not store.add_observation("s1", _observation("late"))


def test_reactivate_stopped_session(store: SessionStore, clock: StepClock) -> None:
    store.start_session("s1", "demo", "/work/demo")
    clock.advance(minutes=3)
    store.end_session("s1", "stop")

    assert store.reactivate_session("s1", project="renamed")

    record = store.get("s1")
    assert record is not None
    assert record.status == "active"
    assert record.end_time is None
    assert record.duration_minutes is None
    assert record.project == "renamed"
    assert record.project_path == "/work/demo"


def test_reactivate_active_or_missing_is_refused(store: SessionStore) -> None:
    assert not store.reactivate_session("missing")
    store.start_session("s1", "demo", "/work/demo")
    assert not store.reactivate_session("s1")


def test_missing_session_operations(store: SessionStore) -> None:
    assert store.get("nope") is None
    assert store.end_session("nope", "stop") is None
    assert not store.update_summary("nope", "x")
    assert not store.add_observation("nope", _observation("a"))


def test_corrupt_metadata_reads_as_absent(store: SessionStore) -> None:
    path = store.metadata_path("s1")
    path.parent.mkdir(parents=True)
    path.write_text("{not json")

    assert store.get("s1") is None


def test_observations_append_in_order(store: SessionStore) -> None:
    store.start_session("s1", "demo", "/work/demo")
    for identifier in ("a", "b", "c"):
        assert store.add_observation("s1", _observation(identifier))

    store.end_session("s1", "stop")
    assert store.add_observation("s1", _observation("d"))

    assert [o.id for o in store.read_observations("s1")] == ["a", "b", "c", "d"]
    assert not store.lock_path("s1").exists()


def test_malformed_observation_lines_are_skipped(store: SessionStore) -> None:
    store.start_session("s1", "demo", "/work/demo")
    store.add_observation("s1", _observation("a"))
    with store.observations_path("s1").open("a", encoding="utf-8") as handle:
        handle.write("{broken\n\n")
    store.add_observation("s1", _observation("b"))

    assert [o.id for o in store.read_observations("s1")] == ["a", "b"]


def test_update_summary(store: SessionStore) -> None:
    store.start_session("s1", "demo", "/work/demo")

    assert store.update_summary("s1", "Did things")

    record = store.get("s1")
    assert record is not None and record.summary == "Did things"


def test_clear_session_removes_every_artifact(store: SessionStore) -> None:
    store.start_session("s1", "demo", "/work/demo")
    store.add_observation("s1", _observation("a"))
    store.counter.increment("s1")
    store.counter.decrement("s1")

    store.clear_session("s1", max_wait=0.5)

    assert store.get("s1") is None
    assert not store.observations_path("s1").exists()
    assert not store.counter.counter_path("s1").exists()
    assert list(store.sessions_dir.iterdir()) == []


def test_clear_session_proceeds_when_jobs_never_finish(store: SessionStore) -> None:
    store.start_session("s1", "demo", "/work/demo")
    store.counter.increment("s1")

    started = time.monotonic()
    store.clear_session("s1", max_wait=0.2)

    assert time.monotonic() - started >= 0.2
    assert store.get("s1") is None


def test_list_active(store: SessionStore) -> None:
    store.start_session("a", "demo", "/w")
    store.start_session("b", "demo", "/w")
    store.end_session("b", "stop")

    assert [record.id for record in store.list_active()] == ["a"]


def test_cleanup_stale_sessions(store: SessionStore) -> None:
    store.start_session("old", "demo", "/w")
    store.start_session("new", "demo", "/w")
    old_time = time.time() - 48 * 3600
    os.utime(store.metadata_path("old"), (old_time, old_time))

    removed = store.cleanup_stale_sessions(max_age_hours=24)

    assert [record.id for record in removed] == ["old"]
    assert store.get("old") is None
    assert store.get("new") is not None


def test_safe_filenames_do_not_collide() -> None:
    first = safe_session_filename("a/b")
    second = safe_session_filename("a_b")

    assert first != second
    assert "/" not in first


def test_atomic_write_replaces_content(tmp_path: Path) -> None:
    target = tmp_path / "data" / "file.json"
    atomic_write_text(target, "one")
    atomic_write_text(target, "two")

    assert target.read_text() == "two"
    assert [p.name for p in target.parent.iterdir()] == ["file.json"]


def test_create_exclusive_only_once(tmp_path: Path) -> None:
    target = tmp_path / "x.lock"

    assert create_exclusive(target, "first")
    assert not create_exclusive(target, "second")
    assert target.read_text() == "first"
    assert [p.name for p in tmp_path.iterdir()] == ["x.lock"]


@pytest.mark.skipif(sys.platform == "win32", reason="requires fork start method")
def test_concurrent_appenders_lose_nothing(tmp_path: Path) -> None:
    sessions_dir = tmp_path / "sessions"
    SessionStore(sessions_dir).start_session("shared", "demo", "/w")

    ctx = multiprocessing.get_context("fork")
    workers, per_worker = 4, 25
    processes = [
        ctx.Process(target=_append_many, args=(str(sessions_dir), "shared", worker, per_worker))
        for worker in range(workers)
    ]
    for process in processes:
        process.start()
    for process in processes:
        process.join(timeout=120)
        assert process.exitcode == 0

    content = SessionStore(sessions_dir).observations_path("shared").read_text().splitlines()
    ids = {ObservationRecord.model_validate_json(line).id for line in content}

    assert len(content) == workers * per_worker
    assert ids == {f"{w}-{i}" for w in range(workers) for i in range(per_worker)}
