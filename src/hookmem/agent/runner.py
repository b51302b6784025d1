"""Async runner for the assistant CLI used as the external processing step."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Coroutine, Iterable, TypeVar

from .utils import agent_environment

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT = 120.0
PROMPT_ARGS: tuple[str, ...] = ("-p", "--output-format", "text")


class AgentRunnerError(RuntimeError):
    """Base class for assistant runner errors."""


class AgentNotFoundError(AgentRunnerError):
    """Raised when the assistant CLI executable cannot be located."""


class AgentTimeoutError(AgentRunnerError):
    """Raised when the assistant CLI exceeds its timeout and was killed."""


@dataclass(slots=True)
class AgentExecutionResult:
    """Holds the outcome of an assistant CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class AgentRunner:
    """Execute single-turn assistant prompts asynchronously."""

    def __init__(self, executable: Path | str | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | str | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            binary = shutil.which(str(explicit))
            if binary is not None:
                return Path(binary)
            raise AgentNotFoundError(f"Assistant executable not found at {candidate}")

        binary = shutil.which("claude")
        if binary is None:
            raise AgentNotFoundError("Assistant CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def prompt(self, text: str, *, timeout: float = DEFAULT_TIMEOUT) -> AgentExecutionResult:
        """Send ``text`` on stdin as a one-shot prompt."""

        return await self._invoke(*PROMPT_ARGS, input_text=text, timeout=timeout)

    def prompt_sync(self, text: str, *, timeout: float = DEFAULT_TIMEOUT) -> AgentExecutionResult:
        return run_sync(self.prompt(text, timeout=timeout))

    async def _invoke(self, *args: str, input_text: str = "", timeout: float = DEFAULT_TIMEOUT) -> AgentExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=agent_environment(),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(input_text.encode("utf-8")),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.error("Assistant CLI timed out and was killed", extra={"timeout": timeout, "pid": process.pid})
            raise AgentTimeoutError(f"Assistant CLI exceeded {timeout:g}s timeout") from None

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return AgentExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


class FakeAgentRunner(AgentRunner):
    """Test double that returns canned assistant responses."""

    def __init__(self, responses: Iterable[AgentExecutionResult | BaseException] | None = None) -> None:  # type: ignore[override]
        self._responses = list(responses or [])
        self._invocations: list[tuple[str, ...]] = []
        self._inputs: list[str] = []
        self._executable_path = Path("/tmp/fake-claude")

    async def _invoke(self, *args: str, input_text: str = "", timeout: float = DEFAULT_TIMEOUT) -> AgentExecutionResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        self._inputs.append(input_text)
        if self._responses:
            response = self._responses.pop(0)
            if isinstance(response, BaseException):
                raise response
            return response
        return AgentExecutionResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations

    @property
    def inputs(self) -> list[str]:
        return self._inputs


__all__ = [
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "AgentTimeoutError",
    "FakeAgentRunner",
    "run_sync",
]
