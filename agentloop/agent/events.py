"""
Streaming progress events.

A turn reports its progress as an ordered sequence of events:

    status / thinking / tool ...    while the loop runs
    start, chunk × n, complete, done    when it produces an answer
    error                               when it does not

Exactly one terminal outcome is emitted per turn: either the
start…complete+done sequence or a single error. The responder enforces
this; anything emitted after the terminal outcome is dropped.

Events go into an asyncio.Queue so the producer (the agent loop) never
waits on the consumer (an HTTP response, a terminal). The consumer
iterates events() until the stream closes.
"""

from __future__ import annotations

import asyncio
import json
import time
from enum import Enum
from typing import Any, AsyncIterator

from pydantic import BaseModel, Field

from agentloop.config.logging import get_logger
from agentloop.config.settings import StreamSettings
from agentloop.llm.models import TokenUsage
from agentloop.tools.base import ToolResult

logger = get_logger(__name__)

SPINNER_MARKER = "⏳"


class EventType(str, Enum):
    STATUS = "status"
    THINKING = "thinking"
    TOOL = "tool"
    START = "start"
    CHUNK = "chunk"
    COMPLETE = "complete"
    DONE = "done"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({EventType.DONE, EventType.ERROR})


class StreamEvent(BaseModel):
    event: EventType
    data: str = ""

    def to_sse(self) -> str:
        return format_sse(self.event.value, self.data)


def format_sse(event: str, data: str) -> str:
    """
    Render one Server-Sent Events frame.

    Multi-line payloads become several ``data:`` lines, which SSE clients
    join back together with newlines.
    """
    lines = [f"event: {event}"]
    lines.extend(f"data: {line}" for line in data.split("\n"))
    return "\n".join(lines) + "\n\n"


class TurnMetrics(BaseModel):
    """Timing and usage for one turn."""

    started_at: float = Field(default_factory=time.monotonic)
    finished_at: float | None = None
    thinking_duration: float = 0.0
    tool_duration: float = 0.0
    tool_calls: int = 0
    iterations: int = 0
    usage: TokenUsage = Field(default_factory=TokenUsage)

    @property
    def total_duration(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def finish(self) -> None:
        if self.finished_at is None:
            self.finished_at = time.monotonic()

    def summary(self) -> str:
        text = f"⚡ {self.total_duration:.1f}s total | 🤔 {self.thinking_duration:.1f}s thinking"
        if self.tool_calls:
            text += f" | 🔧 {self.tool_calls} tools in {self.tool_duration:.1f}s"
        return text

    def as_payload(self) -> dict[str, Any]:
        return {
            "total_duration": round(self.total_duration, 3),
            "thinking_duration": round(self.thinking_duration, 3),
            "tool_duration": round(self.tool_duration, 3),
            "tool_calls": self.tool_calls,
            "iterations": self.iterations,
            "prompt_tokens": self.usage.prompt_tokens,
            "completion_tokens": self.usage.completion_tokens,
            "summary": self.summary(),
        }


class StreamingResponder:
    """
    Ordered event channel for one turn.

    Args:
        settings: Chunk size, chunk delay and tool output truncation
    """

    def __init__(self, settings: StreamSettings | None = None):
        self._settings = settings or StreamSettings()
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self._terminal: EventType | None = None

    @property
    def terminated(self) -> bool:
        return self._terminal is not None

    @property
    def terminal_event(self) -> EventType | None:
        return self._terminal

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def status(self, text: str, spinner: bool = True) -> None:
        await self._emit(EventType.STATUS, f"{SPINNER_MARKER} {text}" if spinner and text else text)

    async def thinking(self, text: str) -> None:
        await self._emit(EventType.THINKING, text)

    async def tool(self, result: ToolResult, ordinal: int, total: int) -> None:
        output = result.output
        limit = self._settings.tool_output_limit
        truncated = len(output) > limit
        if truncated:
            output = output[:limit] + "..."
        payload = {
            "tool": result.tool_name,
            "ordinal": ordinal,
            "total": total,
            "success": result.success,
            "duration": round(result.duration, 3),
            "output": output,
            "truncated": truncated,
        }
        await self._emit(EventType.TOOL, json.dumps(payload))

    # ------------------------------------------------------------------
    # Terminal outcomes
    # ------------------------------------------------------------------

    async def complete(self, content: str, metrics: TurnMetrics | None = None) -> None:
        """Stream the final answer in chunks, then complete and done."""
        if self.terminated:
            logger.warning("Ignoring complete(): stream already terminated")
            return

        await self._emit(EventType.START, "")
        size = self._settings.chunk_size
        for offset in range(0, len(content), size):
            await self._emit(EventType.CHUNK, content[offset:offset + size])
            if self._settings.chunk_delay:
                await asyncio.sleep(self._settings.chunk_delay)

        payload: dict[str, Any] = {"content": content}
        if metrics is not None:
            payload["metrics"] = metrics.as_payload()
        await self._emit(EventType.COMPLETE, json.dumps(payload))
        await self._emit(EventType.DONE, "")

    async def error(self, message: str) -> None:
        await self._emit(EventType.ERROR, message)

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield events in order until the terminal event has been delivered."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def _emit(self, event_type: EventType, data: str) -> None:
        if self._terminal is not None:
            logger.debug(f"Dropping {event_type.value} event after {self._terminal.value}")
            return

        await self._queue.put(StreamEvent(event=event_type, data=data))
        if event_type in TERMINAL_EVENTS:
            self._terminal = event_type
            await self._queue.put(None)
