"""Default external processing step: turn claimed queue batches into agent output.

The worker hands each claimed batch to a :class:`MessageProcessor`. The
default implementation sends tool uses and summary requests to the assistant
CLI and stores the responses in the datastore. Any failure raises, so the
worker releases the batch and it is retried later; the same batch may
therefore be processed more than once.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, Sequence

from ..storage.models import PendingMessage, SessionRow
from ..storage.session_table import SessionTable
from .runner import DEFAULT_TIMEOUT, AgentRunner, AgentRunnerError

logger = logging.getLogger(__name__)

MAX_HISTORY = 20
MAX_FIELD_CHARS = 2000


class AgentProcessingError(RuntimeError):
    """Raised when a batch could not be processed and must be released."""


@dataclass(slots=True)
class HistoryEntry:
    role: Literal["user", "assistant"]
    content: str


@dataclass(slots=True)
class AgentContext:
    """Per-session conversation state kept by one worker instance."""

    session_id: str
    project: str
    prompt_number: int = 0
    history: list[HistoryEntry] = field(default_factory=list)

    def remember(self, role: Literal["user", "assistant"], content: str) -> None:
        self.history.append(HistoryEntry(role=role, content=content))
        if len(self.history) > MAX_HISTORY:
            del self.history[: len(self.history) - MAX_HISTORY]

    def last_prompt(self) -> str | None:
        for entry in reversed(self.history):
            if entry.role == "user" and entry.content.startswith("User prompt"):
                return entry.content
        return None


@dataclass(slots=True)
class ProcessingResult:
    processed: int
    observations: list[str] = field(default_factory=list)
    summary: str | None = None


class MessageProcessor(Protocol):
    def process(
        self,
        messages: Sequence[PendingMessage],
        session: SessionRow,
        context: AgentContext,
    ) -> ProcessingResult:
        ...


def _clip(value: Any) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    if len(text) > MAX_FIELD_CHARS:
        return text[:MAX_FIELD_CHARS] + "..."
    return text


def _payload(message: PendingMessage) -> dict[str, Any]:
    try:
        return message.payload_data()
    except json.JSONDecodeError:
        logger.warning("Skipping message with unparsable payload", extra={"message_id": message.id})
        return {}


def build_observation_prompt(payload: dict[str, Any]) -> str:
    lines = [f"Tool: {payload.get('tool_name', 'unknown')}"]
    if payload.get("cwd"):
        lines.append(f"Working directory: {payload['cwd']}")
    lines.append(f"Input: {_clip(payload.get('tool_input', ''))}")
    lines.append(f"Output: {_clip(payload.get('tool_output', ''))}")
    return "\n".join(lines)


def build_summary_prompt(context: AgentContext, last_message: str | None) -> str:
    parts = [f"Summarize session {context.session_id} in project {context.project}."]
    prompt = context.last_prompt()
    if prompt:
        parts.append(prompt)
    if last_message:
        parts.append(f"Last assistant message: {_clip(last_message)}")
    return "\n\n".join(parts)


class AgentProcessor:
    """:class:`MessageProcessor` backed by the assistant CLI."""

    def __init__(self, runner: AgentRunner, table: SessionTable, *, timeout: float = DEFAULT_TIMEOUT) -> None:
        self._runner = runner
        self._table = table
        self._timeout = timeout

    def _ask(self, context: AgentContext, prompt: str) -> str | None:
        context.remember("user", prompt)
        try:
            result = self._runner.prompt_sync(prompt, timeout=self._timeout)
        except AgentRunnerError as exc:
            raise AgentProcessingError(str(exc)) from exc
        except OSError as exc:
            raise AgentProcessingError(f"Failed to start assistant CLI: {exc}") from exc

        if not result.ok:
            logger.error(
                "Assistant CLI failed",
                extra={"session_id": context.session_id, "returncode": result.returncode, "stderr": result.stderr[:500]},
            )
            raise AgentProcessingError(f"Assistant CLI exited with {result.returncode}")

        response = result.stdout.strip()
        if response:
            context.remember("assistant", response)
        return response or None

    def process(
        self,
        messages: Sequence[PendingMessage],
        session: SessionRow,
        context: AgentContext,
    ) -> ProcessingResult:
        prompts = [m for m in messages if m.message_type == "prompt"]
        tool_uses = [m for m in messages if m.message_type == "tool_use"]
        summary_requests = [m for m in messages if m.message_type == "summary_request"]

        result = ProcessingResult(processed=len(messages))

        for message in prompts:
            payload = _payload(message)
            context.prompt_number = int(payload.get("prompt_number") or context.prompt_number + 1)
            context.remember("user", f"User prompt #{context.prompt_number}: {_clip(payload.get('prompt_text', ''))}")

        if tool_uses:
            combined = "\n\n".join(build_observation_prompt(_payload(m)) for m in tool_uses)
            response = self._ask(context, combined)
            if response:
                self._table.add_agent_observation(session.session_id, session.project, response)
                result.observations.append(response)

        for message in summary_requests:
            payload = _payload(message)
            response = self._ask(context, build_summary_prompt(context, payload.get("last_assistant_message")))
            if response is None:
                logger.warning("No summary returned", extra={"session_id": session.session_id})
                continue
            self._table.upsert_summary(session.session_id, session.project, response)
            result.summary = response

        logger.debug(
            "Processed batch",
            extra={
                "session_id": session.session_id,
                "prompts": len(prompts),
                "tool_uses": len(tool_uses),
                "summary_requests": len(summary_requests),
            },
        )
        return result


__all__ = [
    "AgentContext",
    "AgentProcessingError",
    "AgentProcessor",
    "HistoryEntry",
    "MessageProcessor",
    "ProcessingResult",
    "build_observation_prompt",
    "build_summary_prompt",
]
