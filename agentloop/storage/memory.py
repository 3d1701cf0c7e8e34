"""In-process conversation store, used by tests and the default server."""

from __future__ import annotations

from agentloop.errors import ConversationNotFoundError
from agentloop.storage.base import ConversationStore
from agentloop.storage.models import Conversation, DEFAULT_TITLE, Message, MessageRole


class InMemoryConversationStore(ConversationStore):
    """
    Dict-backed store. Returns copies so callers can't mutate stored state
    without going through save_conversation().
    """

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def create_conversation(self, user_id: str, title: str | None = None) -> Conversation:
        conversation = Conversation(user_id=user_id, title=title or DEFAULT_TITLE)
        self._conversations[conversation.id] = conversation
        self._messages[conversation.id] = []
        return conversation.model_copy(deep=True)

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return self._require(conversation_id).model_copy(deep=True)

    async def list_conversations(self, user_id: str | None = None) -> list[Conversation]:
        conversations = [
            c.model_copy(deep=True)
            for c in self._conversations.values()
            if user_id is None or c.user_id == user_id
        ]
        return sorted(conversations, key=lambda c: c.updated_at, reverse=True)

    async def save_conversation(self, conversation: Conversation) -> None:
        self._require(conversation.id)
        self._conversations[conversation.id] = conversation.model_copy(deep=True)

    async def delete_conversation(self, conversation_id: str) -> None:
        self._require(conversation_id)
        del self._conversations[conversation_id]
        del self._messages[conversation_id]

    async def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        tool_name: str | None = None,
    ) -> Message:
        self._require(conversation_id)
        message = Message(
            conversation_id=conversation_id, role=role, content=content, tool_name=tool_name
        )
        self._messages[conversation_id].append(message)
        return message.model_copy()

    async def get_messages(self, conversation_id: str) -> list[Message]:
        self._require(conversation_id)
        return [m.model_copy() for m in self._messages[conversation_id]]
