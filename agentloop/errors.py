"""
Exception taxonomy for the agent loop.

Tool and backend failures are recovered inside a turn and turned into
conversation messages; only registration-time contract violations
(DuplicateToolError) are meant to propagate to the caller.
"""

from __future__ import annotations

from enum import Enum


class AgentLoopError(Exception):
    """Base class for every error raised by agentloop."""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class DuplicateToolError(AgentLoopError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str):
        super().__init__(f"Tool '{name}' is already registered")
        self.name = name


class ValidationError(AgentLoopError):
    """
    Tool parameters are missing or have the wrong type.

    Carries every problem found, keyed by parameter name, so the model can
    fix all of them in one retry.
    """

    def __init__(self, tool_name: str, problems: dict[str, str]):
        self.tool_name = tool_name
        self.problems = dict(problems)
        detail = "; ".join(f"{field}: {reason}" for field, reason in self.problems.items())
        super().__init__(f"Invalid parameters - {detail}")


class ToolExecutionError(AgentLoopError):
    """A tool was not found, or ran and failed."""

    def __init__(self, tool_name: str, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.tool_name = tool_name
        self.cause = cause


# ---------------------------------------------------------------------------
# Reliability
# ---------------------------------------------------------------------------

class BreakerOpenError(AgentLoopError):
    """The circuit breaker rejected the call without invoking it."""

    def __init__(self, name: str):
        super().__init__(f"Circuit breaker '{name}' is open")
        self.name = name


# ---------------------------------------------------------------------------
# Model backend
# ---------------------------------------------------------------------------

class BackendErrorKind(str, Enum):
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    RATE_LIMITED = "rate_limited"
    UNKNOWN = "unknown"


class BackendError(AgentLoopError):
    """The model call failed for a reason other than breaker rejection."""

    def __init__(
        self,
        message: str,
        kind: BackendErrorKind = BackendErrorKind.UNKNOWN,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.cause = cause


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

class ConversationNotFoundError(AgentLoopError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation '{conversation_id}' not found")
        self.conversation_id = conversation_id


class ConversationBusyError(AgentLoopError):
    """A turn is already running for this conversation."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation '{conversation_id}' already has a turn in progress")
        self.conversation_id = conversation_id
