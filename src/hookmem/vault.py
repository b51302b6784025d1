"""Knowledge sink invoked once per finalized session."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Sequence

import yaml

from .files import atomic_write_text, ensure_dir, safe_session_filename
from .storage.models import SessionRow

logger = logging.getLogger(__name__)

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


@dataclass(slots=True)
class VaultWriteResult:
    success: bool
    written_notes: list[Path] = field(default_factory=list)
    error: str | None = None


class VaultWriter(Protocol):
    def write_session(
        self,
        session: SessionRow,
        summary: str | None,
        observations: Sequence[str],
    ) -> VaultWriteResult:
        ...


def slugify_project(name: str) -> str:
    slug = _SLUG_PATTERN.sub("-", name.lower()).strip("-")
    return slug or "unknown"


class SessionNoteWriter:
    """Write one markdown note with YAML frontmatter per session.

    Notes land in ``<vault>/<folder>/projects/<project-slug>/sessions/``.
    """

    def __init__(self, vault_path: Path, folder: str = "_claude-mem") -> None:
        self._root = Path(vault_path) / folder

    def note_path(self, session: SessionRow) -> Path:
        day = (session.started_at or "")[:10] or "undated"
        return (
            self._root
            / "projects"
            / slugify_project(session.project)
            / "sessions"
            / f"{day}_{safe_session_filename(session.session_id)}.md"
        )

    def render(self, session: SessionRow, summary: str | None, observations: Sequence[str]) -> str:
        frontmatter = {
            "type": "session",
            "session_id": session.session_id,
            "project": session.project,
            "started": session.started_at,
            "completed": session.completed_at,
            "status": session.status,
            "tags": ["session", f"project/{slugify_project(session.project)}"],
        }
        lines = ["---", yaml.safe_dump(frontmatter, sort_keys=False).rstrip(), "---", ""]
        lines.append(f"# Session {session.session_id}")
        lines.append("")
        lines.append("## Summary")
        lines.append("")
        lines.append(summary.strip() if summary else "_No summary recorded._")
        if observations:
            lines.append("")
            lines.append("## Observations")
            for observation in observations:
                lines.append("")
                lines.append(observation.strip())
        return "\n".join(lines) + "\n"

    def write_session(
        self,
        session: SessionRow,
        summary: str | None,
        observations: Sequence[str],
    ) -> VaultWriteResult:
        path = self.note_path(session)
        try:
            ensure_dir(path.parent, mode=0o755)
            atomic_write_text(path, self.render(session, summary, observations))
        except OSError as exc:
            logger.warning("Failed to write session note", extra={"path": str(path), "error": str(exc)})
            return VaultWriteResult(success=False, error=str(exc))
        logger.info("Wrote session note", extra={"session_id": session.session_id, "path": str(path)})
        return VaultWriteResult(success=True, written_notes=[path])


__all__ = ["SessionNoteWriter", "VaultWriteResult", "VaultWriter", "slugify_project"]
