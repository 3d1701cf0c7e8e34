"""
Conversation and message records.

The message list of a conversation is its canonical, append-only
transcript. Narration roles (thinking, status, plan) are stored like any
other message; the context builder decides which of them the model sees.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

MessageRole = Literal["user", "assistant", "tool", "error", "status", "thinking", "plan"]

NARRATION_ROLES: frozenset[str] = frozenset({"thinking", "status", "plan"})

DEFAULT_TITLE = "New Conversation"
TITLE_MAX_LENGTH = 50
PREVIEW_MAX_LENGTH = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


def truncate(text: str, limit: int) -> str:
    """Shorten ``text`` to ``limit`` characters, ending with '...' when cut."""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class Message(BaseModel):
    """A single transcript entry."""

    id: str = Field(default_factory=_new_id)
    conversation_id: str
    role: MessageRole
    content: str
    tool_name: str | None = Field(None, description="Set when role='tool'")
    created_at: datetime = Field(default_factory=_utcnow)


class Conversation(BaseModel):
    """
    A conversation between one user and the agent.

    ``working_context`` is a small key/value memory of entities the
    conversation has discovered (current_repo_id, current_file_path, ...),
    shown to the model on every call.
    """

    id: str = Field(default_factory=_new_id)
    user_id: str
    title: str = DEFAULT_TITLE
    working_context: dict[str, Any] = Field(default_factory=dict)
    last_message: str = ""
    last_role: MessageRole | None = None
    max_iterations: int | None = Field(
        None, ge=1, description="Per-conversation override of the agent's iteration cap"
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def update_working_context(self, updates: dict[str, Any]) -> bool:
        """Merge ``updates`` into the working context. Returns True if anything changed."""
        changed = {key: value for key, value in updates.items() if self.working_context.get(key) != value}
        if not changed:
            return False
        self.working_context.update(changed)
        self.touch()
        return True

    def clear_working_context(self) -> None:
        self.working_context = {}
        self.touch()

    def update_last_message(self, content: str, role: MessageRole) -> None:
        self.last_message = truncate(content, PREVIEW_MAX_LENGTH)
        self.last_role = role
        self.touch()

    def generate_title(self, first_user_message: str) -> bool:
        """Title the conversation after its first user message, once."""
        if self.title != DEFAULT_TITLE or not first_user_message.strip():
            return False
        self.title = truncate(first_user_message.strip(), TITLE_MAX_LENGTH)
        self.touch()
        return True
