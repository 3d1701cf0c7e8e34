"""
LLM Backend Layer.

The ModelBackend capability consumed by the agent loop, and its LiteLLM
implementation (provider-agnostic: Ollama, OpenAI, Anthropic, ...).

    ContextWindowBuilder.build()  →  list[ChatMessage]
                                         ↓
    ModelBackend.chat_with_tools(messages, tools)
                                         ↓
                                   ModelResponse  →  ToolCallParser
"""

from agentloop.llm.backend import LiteLLMBackend, ModelBackend
from agentloop.llm.models import ChatMessage, ChatOptions, ModelResponse, TokenUsage

__all__ = [
    "ChatMessage",
    "ChatOptions",
    "LiteLLMBackend",
    "ModelBackend",
    "ModelResponse",
    "TokenUsage",
]
