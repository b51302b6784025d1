"""Filesystem helpers shared by the file-backed stores and locks."""

from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Mapping

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def sanitize_session_id(session_id: str) -> str:
    """Replace anything outside ``[A-Za-z0-9_-]`` so the id is path-safe."""

    return _UNSAFE_ID_CHARS.sub("_", session_id)


def safe_session_filename(session_id: str) -> str:
    """Readable prefix plus a hash, so distinct ids never collide after sanitising."""

    digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:16]
    prefix = re.sub(r"[^a-zA-Z0-9]", "", session_id[:8]).lower() or "session"
    return f"{prefix}_{digest}"


def ensure_dir(path: Path, mode: int = 0o700) -> Path:
    path.mkdir(parents=True, exist_ok=True, mode=mode)
    return path


def atomic_write_text(path: Path, data: str) -> None:
    """Write ``data`` to ``path`` via a sibling temp file and ``os.replace``."""

    target = Path(path)
    ensure_dir(target.parent)

    fd, temp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
        os.replace(temp_path, target)
    except BaseException:
        safe_unlink(Path(temp_path))
        raise


def atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2) + "\n")


def create_exclusive(path: Path, data: str) -> bool:
    """Create ``path`` holding ``data`` only if it does not exist yet.

    The content is written to a temp file first and hard-linked into place, so
    no reader ever sees the file half written. Filesystems without hard links
    fall back to ``O_EXCL`` creation.
    """

    target = Path(path)
    ensure_dir(target.parent)

    fd, temp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
        try:
            os.link(temp_path, target)
            return True
        except FileExistsError:
            return False
        except (AttributeError, OSError):
            return _create_exclusive_fallback(target, data)
    finally:
        safe_unlink(Path(temp_path))


def _create_exclusive_fallback(target: Path, data: str) -> bool:
    try:
        fd = os.open(target, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(data)
    return True


def safe_unlink(path: Path) -> bool:
    """Delete ``path``; a missing file is not an error. Returns True if removed."""

    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False


__all__ = [
    "atomic_write_json",
    "atomic_write_text",
    "create_exclusive",
    "ensure_dir",
    "safe_session_filename",
    "safe_unlink",
    "sanitize_session_id",
]
