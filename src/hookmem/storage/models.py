"""Data models for session state and the pending message queue."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

SessionStatus = Literal["active", "stopped", "completed"]
EndType = Literal["stop", "end"]
MessageType = Literal["tool_use", "prompt", "summary_request"]
RowStatus = Literal["active", "completed", "failed"]

MESSAGE_TYPES: tuple[str, ...] = ("tool_use", "prompt", "summary_request")


class SessionRecord(BaseModel):
    """Metadata for one assistant session, stored as a JSON file."""

    id: str = Field(..., min_length=1)
    project: str
    project_path: str
    start_time: datetime
    end_time: datetime | None = None
    duration_minutes: int | None = None
    status: SessionStatus = "active"
    summary: str | None = None
    last_updated: datetime


class ObservationRecord(BaseModel):
    """One captured tool or prompt event; appended to the session log, never mutated."""

    id: str = Field(..., min_length=1)
    timestamp: datetime
    type: str
    tool: str
    data: dict[str, Any] = Field(default_factory=dict)
    is_error: bool = False


@dataclass(slots=True)
class PendingMessage:
    """A row of the ``pending_messages`` table."""

    id: int
    session_id: str
    message_type: str
    payload: str
    created_at: str
    created_at_epoch: int
    claimed_at: str | None = None
    claimed_at_epoch: int | None = None

    @property
    def claimed(self) -> bool:
        return self.claimed_at is not None

    def payload_data(self) -> dict[str, Any]:
        data = json.loads(self.payload)
        return data if isinstance(data, dict) else {"value": data}


@dataclass(slots=True)
class SessionRow:
    """A row of the ``sessions`` table used by the worker and finalizer."""

    session_id: str
    project: str
    started_at: str
    started_at_epoch: int
    status: str
    completed_at: str | None = None
    completed_at_epoch: int | None = None
    processing_started_at: int | None = None


@dataclass(slots=True)
class UserPrompt:
    """A row of the ``user_prompts`` table."""

    prompt_number: int
    prompt_text: str
    created_at: str
    created_at_epoch: int


class FallbackPrompt(BaseModel):
    prompt_number: int = Field(..., ge=1)
    prompt_text: str
    created_at: datetime


class FallbackToolUse(BaseModel):
    prompt_number: int = Field(default=0, ge=0)
    tool_name: str
    tool_input: str = ""
    tool_output: str = ""
    cwd: str | None = None
    created_at: datetime


class FallbackSession(BaseModel):
    """Session kept as one JSON document while the datastore is unavailable."""

    session_id: str = Field(..., min_length=1)
    project: str
    started_at: datetime
    status: RowStatus = "active"
    prompts: list[FallbackPrompt] = Field(default_factory=list)
    tool_uses: list[FallbackToolUse] = Field(default_factory=list)

    def next_prompt_number(self) -> int:
        return max((p.prompt_number for p in self.prompts), default=0) + 1


__all__ = [
    "EndType",
    "FallbackPrompt",
    "FallbackSession",
    "FallbackToolUse",
    "MESSAGE_TYPES",
    "MessageType",
    "ObservationRecord",
    "PendingMessage",
    "RowStatus",
    "SessionRecord",
    "SessionRow",
    "SessionStatus",
    "UserPrompt",
]
