"""
JSON-file conversation store.

Each conversation lives in ``<data_path>/<conversation_id>.json`` together
with its messages:

    {"conversation": {...}, "messages": [{...}, ...]}

Files are rewritten whole on every change. A store-wide asyncio lock keeps
concurrent writers in one process from interleaving; it is not meant for
several processes sharing one directory.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import aiofiles
import aiofiles.os

from agentloop.config.logging import get_logger
from agentloop.errors import ConversationNotFoundError
from agentloop.storage.base import ConversationStore
from agentloop.storage.models import Conversation, DEFAULT_TITLE, Message, MessageRole

logger = get_logger(__name__)


class JsonConversationStore(ConversationStore):
    """
    File-backed store.

    Args:
        data_path: Directory holding one JSON file per conversation
    """

    def __init__(self, data_path: str | Path):
        self.data_path = Path(data_path)
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        await aiofiles.os.makedirs(self.data_path, exist_ok=True)
        logger.info(f"JSON conversation store at {self.data_path}")

    def _path_for(self, conversation_id: str) -> Path:
        # Ids are generated hex strings; reject anything that could leave the directory
        if not conversation_id or "/" in conversation_id or "\\" in conversation_id or ".." in conversation_id:
            raise ConversationNotFoundError(conversation_id)
        return self.data_path / f"{conversation_id}.json"

    async def _read(self, conversation_id: str) -> tuple[Conversation, list[Message]]:
        path = self._path_for(conversation_id)
        if not await aiofiles.os.path.exists(path):
            raise ConversationNotFoundError(conversation_id)

        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            raw = json.loads(await f.read())

        conversation = Conversation.model_validate(raw["conversation"])
        messages = [Message.model_validate(m) for m in raw.get("messages", [])]
        return conversation, messages

    async def _write(self, conversation: Conversation, messages: list[Message]) -> None:
        path = self._path_for(conversation.id)
        payload = {
            "conversation": conversation.model_dump(mode="json"),
            "messages": [m.model_dump(mode="json") for m in messages],
        }
        tmp_path = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(payload, indent=2))
        await aiofiles.os.replace(tmp_path, path)

    async def create_conversation(self, user_id: str, title: str | None = None) -> Conversation:
        conversation = Conversation(user_id=user_id, title=title or DEFAULT_TITLE)
        async with self._lock:
            await aiofiles.os.makedirs(self.data_path, exist_ok=True)
            await self._write(conversation, [])
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        conversation, _ = await self._read(conversation_id)
        return conversation

    async def list_conversations(self, user_id: str | None = None) -> list[Conversation]:
        if not await aiofiles.os.path.exists(self.data_path):
            return []

        conversations = []
        for filename in await aiofiles.os.listdir(self.data_path):
            if not filename.endswith(".json"):
                continue
            try:
                conversation, _ = await self._read(filename[: -len(".json")])
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable conversation file {filename}: {e}")
                continue
            if user_id is None or conversation.user_id == user_id:
                conversations.append(conversation)
        return sorted(conversations, key=lambda c: c.updated_at, reverse=True)

    async def save_conversation(self, conversation: Conversation) -> None:
        async with self._lock:
            _, messages = await self._read(conversation.id)
            await self._write(conversation, messages)

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._lock:
            path = self._path_for(conversation_id)
            if not await aiofiles.os.path.exists(path):
                raise ConversationNotFoundError(conversation_id)
            await aiofiles.os.remove(path)

    async def add_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        tool_name: str | None = None,
    ) -> Message:
        async with self._lock:
            conversation, messages = await self._read(conversation_id)
            message = Message(
                conversation_id=conversation_id, role=role, content=content, tool_name=tool_name
            )
            messages.append(message)
            await self._write(conversation, messages)
        return message

    async def get_messages(self, conversation_id: str) -> list[Message]:
        _, messages = await self._read(conversation_id)
        return messages
