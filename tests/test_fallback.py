from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from hookmem.storage import FallbackStore

START = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def fallback(tmp_path: Path) -> FallbackStore:
    return FallbackStore(tmp_path / "fallback", lock_timeout=1.0, clock=lambda: START)


def test_init_keeps_existing_document(fallback: FallbackStore) -> None:
    assert fallback.init_session("s1", "demo")
    fallback.add_prompt("s1", "hello")

    assert not fallback.init_session("s1", "other")

    saved = fallback.read("s1")
    assert saved is not None
    assert saved.project == "demo"
    assert len(saved.prompts) == 1


def test_tool_use_is_attached_to_latest_prompt(fallback: FallbackStore) -> None:
    fallback.init_session("s1", "demo")

    assert fallback.add_tool_use("s1", "Bash", "ls", "")
    assert fallback.add_prompt("s1", "first") == 1
    assert fallback.add_tool_use("s1", "Read", "a.py", "text", "/work")

    saved = fallback.read("s1")
    assert saved is not None
    assert [(t.tool_name, t.prompt_number) for t in saved.tool_uses] == [("Bash", 0), ("Read", 1)]
    assert saved.tool_uses[1].cwd == "/work"


def test_missing_or_corrupt_document(fallback: FallbackStore) -> None:
    assert fallback.read("s1") is None
    assert fallback.add_prompt("s1", "lost") is None
    assert not fallback.update_status("s1", "completed")

    fallback.init_session("s2", "demo")
    fallback.session_path("s2").write_text("{not json", encoding="utf-8")

    assert fallback.read("s2") is None
    assert fallback.add_prompt("s2", "lost") is None


def test_session_ids_map_to_distinct_documents(fallback: FallbackStore) -> None:
    fallback.init_session("a/b", "demo")
    fallback.init_session("a_b", "demo")

    assert fallback.session_path("a/b") != fallback.session_path("a_b")
    assert fallback.update_status("a/b", "completed")
    assert fallback.read("a/b").status == "completed"  # type: ignore[union-attr]
    assert fallback.read("a_b").status == "active"  # type: ignore[union-attr]
