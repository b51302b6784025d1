from __future__ import annotations

from pathlib import Path

import yaml

from hookmem.storage.models import SessionRow
from hookmem.vault import SessionNoteWriter, slugify_project


def _row(**overrides) -> SessionRow:  # type: ignore[no-untyped-def]
    values = dict(
        session_id="abc123",
        project="My Project",
        started_at="2025-01-01T09:00:00+00:00",
        started_at_epoch=1735722000000,
        status="completed",
        completed_at="2025-01-01T09:30:00+00:00",
        completed_at_epoch=1735723800000,
    )
    values.update(overrides)
    return SessionRow(**values)


def test_note_has_frontmatter_and_sections(tmp_path: Path) -> None:
    writer = SessionNoteWriter(tmp_path, "_mem")

    result = writer.write_session(_row(), "Fixed the parser.", ["Read a.py", "Ran tests"])

    assert result.success
    [path] = result.written_notes
    assert path.parent == tmp_path / "_mem" / "projects" / "my-project" / "sessions"
    assert path.name.startswith("2025-01-01_")

    text = path.read_text()
    _, frontmatter, body = text.split("---\n", 2)
    meta = yaml.safe_load(frontmatter)
    assert meta["session_id"] == "abc123"
    assert meta["project"] == "My Project"
    assert meta["tags"] == ["session", "project/my-project"]
    assert "Fixed the parser." in body
    assert "## Observations" in body
    assert "Ran tests" in body


def test_note_without_summary(tmp_path: Path) -> None:
    writer = SessionNoteWriter(tmp_path)

    result = writer.write_session(_row(), None, [])

    text = result.written_notes[0].read_text()
    assert "_No summary recorded._" in text
    assert "## Observations" not in text


def test_write_failure_is_reported(tmp_path: Path) -> None:
    blocker = tmp_path / "vault"
    blocker.write_text("not a directory")

    result = SessionNoteWriter(blocker).write_session(_row(), "x", [])

    assert not result.success
    assert result.error


def test_slugify_project() -> None:
    assert slugify_project("Hello, World!") == "hello-world"
    assert slugify_project("***") == "unknown"
