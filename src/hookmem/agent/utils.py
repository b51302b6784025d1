"""Environment helpers for the assistant CLI subprocess."""

from __future__ import annotations

import os
from typing import Mapping

AGENT_SESSION_MARKER = "HOOKMEM_AGENT_SESSION"

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a copy of the process environment without interpreter overrides."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def agent_environment() -> dict[str, str]:
    """Environment for a spawned assistant; its own hooks see the marker and stand down."""

    return sanitize_environment({AGENT_SESSION_MARKER: "1"})


def is_agent_session(env: Mapping[str, str] | None = None) -> bool:
    source = os.environ if env is None else env
    return source.get(AGENT_SESSION_MARKER) == "1"


__all__ = ["AGENT_SESSION_MARKER", "agent_environment", "is_agent_session", "sanitize_environment"]
