"""Assistant CLI orchestration used as the external processing step."""

from .processor import AgentContext, AgentProcessingError, AgentProcessor, MessageProcessor, ProcessingResult
from .runner import (
    AgentExecutionResult,
    AgentNotFoundError,
    AgentRunner,
    AgentRunnerError,
    AgentTimeoutError,
)
from .utils import AGENT_SESSION_MARKER, is_agent_session

__all__ = [
    "AGENT_SESSION_MARKER",
    "AgentContext",
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentProcessingError",
    "AgentProcessor",
    "AgentRunner",
    "AgentRunnerError",
    "AgentTimeoutError",
    "MessageProcessor",
    "ProcessingResult",
    "is_agent_session",
]
