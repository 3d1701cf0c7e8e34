"""
Conversation store interface.

The agent loop only needs a handful of async operations from persistence;
anything that implements ConversationStore can back it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from agentloop.storage.models import Conversation, Message, MessageRole


class ConversationStore(ABC):
    """
    Abstract async store for conversations and their messages.

    Messages are returned in creation order. Deleting a conversation
    deletes its messages.
    """

    @abstractmethod
    async def create_conversation(self, user_id: str, title: str | None = None) -> Conversation:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation:
        """
        Raises:
            ConversationNotFoundError: If no conversation has this id
        """

    @abstractmethod
    async def list_conversations(self, user_id: str | None = None) -> list[Conversation]:
        """Conversations, most recently updated first, optionally for one user."""

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> None:
        """
        Persist changes to an existing conversation.

        Raises:
            ConversationNotFoundError: If the conversation was deleted
        """

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        """
        Raises:
            ConversationNotFoundError: If no conversation has this id
        """

    @abstractmethod
    async def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        tool_name: str | None = None,
    ) -> Message:
        """
        Append a message to a conversation's transcript.

        Raises:
            ConversationNotFoundError: If no conversation has this id
        """

    @abstractmethod
    async def get_messages(self, conversation_id: str) -> list[Message]:
        """
        Raises:
            ConversationNotFoundError: If no conversation has this id
        """

    async def initialize(self) -> None:
        """Prepare the store. Default: nothing to do."""

    async def close(self) -> None:
        """Release resources. Default: nothing to do."""

    async def __aenter__(self) -> ConversationStore:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
