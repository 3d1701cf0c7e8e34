"""
Storage Layer.

Conversation/message records and the async stores that persist them.
"""

from agentloop.storage.base import ConversationStore
from agentloop.storage.json_store import JsonConversationStore
from agentloop.storage.memory import InMemoryConversationStore
from agentloop.storage.models import Conversation, Message, MessageRole

__all__ = [
    "Conversation",
    "ConversationStore",
    "InMemoryConversationStore",
    "JsonConversationStore",
    "Message",
    "MessageRole",
]
