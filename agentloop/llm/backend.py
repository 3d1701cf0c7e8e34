"""
Model backends.

ModelBackend is the capability the agent loop consumes: send a message
list plus tool schemas, get back text and (optionally) native tool calls.
LiteLLMBackend implements it over LiteLLM so the same engine can talk to
Ollama, OpenAI, Anthropic and friends by changing a model string.

Design decisions:
- Backend failures are classified into a small set of BackendErrorKinds
  (timeout / unavailable / rate-limited / unknown) so the loop can show
  actionable text instead of a stack trace.
- Native tool-call arguments that are not valid JSON don't fail the call.
  The ToolCall carries an ``arguments_error`` and the loop reports it back
  to the model as an invalid-parameters result.
- Tool messages replayed from the transcript have no native call id.
  Providers reject orphan ``tool`` messages, so those are sent as user
  messages labelled with the tool name.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from litellm import acompletion
from litellm.exceptions import (
    APIConnectionError,
    InternalServerError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from agentloop.config.settings import LLMSettings
from agentloop.errors import BackendError, BackendErrorKind
from agentloop.llm.models import ChatMessage, ChatOptions, ModelResponse, TokenUsage
from agentloop.tools.base import ToolCall

logger = logging.getLogger(__name__)


class ModelBackend(ABC):
    """Abstract chat-with-tools capability."""

    @property
    def supported_tools(self) -> list[str] | None:
        """Tool names this backend handles; None means every tool."""
        return None

    @abstractmethod
    async def chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]],
        options: ChatOptions | None = None,
    ) -> ModelResponse:
        """
        Send one request to the model.

        Must have no side effects when it raises, so it can be retried
        safely by a later turn.

        Args:
            messages: Ordered context from the context window builder
            tools: Provider-native tool schemas (possibly empty)
            options: Per-call overrides

        Raises:
            BackendError: On any failure
        """


class LiteLLMBackend(ModelBackend):
    """
    ModelBackend over LiteLLM's ``acompletion``.

    Args:
        settings: LLM configuration (model, temperature, max_tokens, api_key, ...)
    """

    def __init__(self, settings: LLMSettings):
        self._settings = settings

    @property
    def model(self) -> str:
        return self._settings.model

    @property
    def supported_tools(self) -> list[str] | None:
        return self._settings.supported_tools

    async def chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[dict[str, Any]],
        options: ChatOptions | None = None,
    ) -> ModelResponse:
        options = options or ChatOptions()
        call_kwargs: dict[str, Any] = {
            "model": self._settings.model,
            "messages": to_provider_messages(messages),
            "temperature": (
                options.temperature if options.temperature is not None else self._settings.temperature
            ),
            "max_tokens": options.max_tokens or self._settings.max_tokens,
            "timeout": self._settings.request_timeout,
        }
        if self._settings.api_key:
            call_kwargs["api_key"] = self._settings.api_key
        if self._settings.api_base:
            call_kwargs["api_base"] = self._settings.api_base
        if tools:
            call_kwargs["tools"] = tools

        try:
            response = await acompletion(**call_kwargs)
        except Exception as e:
            raise classify_backend_error(e) from e

        try:
            return parse_provider_response(response)
        except (AttributeError, IndexError, TypeError) as e:
            raise BackendError(
                f"Malformed response from {self._settings.model}: {e}",
                kind=BackendErrorKind.UNKNOWN,
                cause=e,
            ) from e


def to_provider_messages(messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert engine messages to the OpenAI chat format LiteLLM accepts."""
    provider_messages: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "tool":
            if message.tool_call_id:
                provider_messages.append({
                    "role": "tool",
                    "tool_call_id": message.tool_call_id,
                    "content": message.content,
                })
            else:
                label = f"[Tool result: {message.name}]" if message.name else "[Tool result]"
                provider_messages.append({"role": "user", "content": f"{label}\n{message.content}"})
            continue

        if message.role == "assistant" and message.tool_calls:
            native_calls = [call for call in message.tool_calls if call.id]
            if native_calls:
                provider_messages.append({
                    "role": "assistant",
                    "content": message.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments),
                            },
                        }
                        for call in native_calls
                    ],
                })
                continue

        provider_messages.append({"role": message.role, "content": message.content})
    return provider_messages


def parse_provider_response(response: Any) -> ModelResponse:
    """Extract text, native tool calls and usage from a LiteLLM response."""
    assistant_message = response.choices[0].message
    tool_calls = [_parse_native_call(raw) for raw in (assistant_message.tool_calls or [])]

    usage = TokenUsage()
    if getattr(response, "usage", None) is not None:
        usage = TokenUsage(
            prompt_tokens=response.usage.prompt_tokens or 0,
            completion_tokens=response.usage.completion_tokens or 0,
        )

    return ModelResponse(
        text=assistant_message.content or "",
        tool_calls=tool_calls,
        model=getattr(response, "model", "") or "",
        usage=usage,
    )


def _parse_native_call(raw: Any) -> ToolCall:
    name = raw.function.name
    raw_arguments = raw.function.arguments
    call_id = getattr(raw, "id", None)

    if raw_arguments is None or raw_arguments == "":
        return ToolCall(name=name, arguments={}, id=call_id)
    if isinstance(raw_arguments, dict):
        return ToolCall(name=name, arguments=raw_arguments, id=call_id)

    try:
        arguments = json.loads(raw_arguments)
    except (TypeError, json.JSONDecodeError) as e:
        logger.warning(f"Unparseable arguments for tool '{name}': {e}")
        return ToolCall(name=name, id=call_id, arguments_error=f"arguments are not valid JSON: {e}")

    if not isinstance(arguments, dict):
        return ToolCall(name=name, id=call_id, arguments_error="arguments must be a JSON object")
    return ToolCall(name=name, arguments=arguments, id=call_id)


def classify_backend_error(error: Exception) -> BackendError:
    """Map a LiteLLM/transport exception to a BackendError with a kind."""
    if isinstance(error, BackendError):
        return error
    if isinstance(error, (Timeout, asyncio.TimeoutError, TimeoutError)):
        kind = BackendErrorKind.TIMEOUT
    elif isinstance(error, RateLimitError):
        kind = BackendErrorKind.RATE_LIMITED
    elif isinstance(
        error, (APIConnectionError, ServiceUnavailableError, InternalServerError, ConnectionError)
    ):
        kind = BackendErrorKind.UNAVAILABLE
    else:
        kind = BackendErrorKind.UNKNOWN
    return BackendError(f"LLM API call failed: {error}", kind=kind, cause=error)


_USER_MESSAGES = {
    BackendErrorKind.TIMEOUT: "The AI service took too long to respond. Please try again.",
    BackendErrorKind.UNAVAILABLE: (
        "AI service is initializing or unavailable. Please wait a moment and try again."
    ),
    BackendErrorKind.RATE_LIMITED: (
        "The AI service is receiving too many requests. Please try again shortly."
    ),
    BackendErrorKind.UNKNOWN: "Failed to get AI response. Please try again.",
}

DEGRADED_SERVICE_MESSAGE = (
    "AI service is temporarily unavailable after repeated failures. Please try again shortly."
)


def user_message_for(error: BackendError) -> str:
    """Actionable, user-facing text for a backend failure."""
    return _USER_MESSAGES.get(error.kind, _USER_MESSAGES[BackendErrorKind.UNKNOWN])
