"""
Data structures exchanged with the model backend.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from agentloop.tools.base import ToolCall

ChatRole = Literal["system", "user", "assistant", "tool"]


class ChatMessage(BaseModel):
    """
    One message in the context sent to the model.

    Only the four roles every backend understands are allowed here;
    transcript roles such as ``thinking`` are remapped by the context
    builder before they reach this type.
    """

    role: ChatRole
    content: str = ""
    name: str | None = Field(None, description="Tool name for role='tool'")
    tool_call_id: str | None = Field(None, description="Native call id this tool message answers")
    tool_calls: list[ToolCall] = Field(
        default_factory=list, description="Native calls issued by an assistant message"
    )


class ChatOptions(BaseModel):
    """Per-call overrides; None falls back to the backend's settings."""

    temperature: float | None = None
    max_tokens: int | None = None


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


class ModelResponse(BaseModel):
    """
    Raw model output for one call.

    ``tool_calls`` holds the backend's native structured calls, if any.
    Calls embedded in ``text`` are found later by the tool call parser.
    """

    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    model: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)
