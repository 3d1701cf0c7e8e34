"""
Agent Layer.

The agentic loop and its collaborators:

- ToolCallParser: finds tool calls in a model response
- ContextWindowBuilder: bounded context per model call
- AgenticLoopController: the turn state machine
- StreamingResponder: ordered progress events for the client
"""

from agentloop.agent.context import ContextWindowBuilder, compress_tool_output
from agentloop.agent.controller import (
    AgenticLoopController,
    ConversationLocks,
    LoopState,
    StopReason,
    TurnResult,
)
from agentloop.agent.events import EventType, StreamEvent, StreamingResponder, TurnMetrics
from agentloop.agent.parser import NativeCalls, ParsedFromText, ToolCallParser

__all__ = [
    "AgenticLoopController",
    "ContextWindowBuilder",
    "ConversationLocks",
    "EventType",
    "LoopState",
    "NativeCalls",
    "ParsedFromText",
    "StopReason",
    "StreamEvent",
    "StreamingResponder",
    "ToolCallParser",
    "TurnMetrics",
    "TurnResult",
    "compress_tool_output",
]
