"""
Agentic loop controller: the core state machine of a turn.

A turn starts with a user message and ends with exactly one persisted
outcome (an assistant answer or an error) and exactly one terminal
stream event:

    AWAITING_MODEL ──▶ HAS_TOOL_CALLS ──▶ EXECUTING_TOOLS ──▶ AWAITING_FOLLOW_UP
          ▲                                                          │
          └──────────────────────────────────────────────────────────┘
          │
          ├──▶ COMPLETE   answer without tool calls, completion phrase,
          │               iteration cap, fallback summary, timeout with text
          └──▶ ABORTED    backend error, open breaker, cancellation,
                          timeout without text

Data flow per model call:
    ContextWindowBuilder.build()  →  breaker("model-backend")  →  ModelBackend
                                                                    ↓
                                   ToolCallParser.parse()  ←  ModelResponse
                                          ↓
    ToolRegistry.execute() via breaker("tool:<name>")  →  tool Message + tool event

Design decisions:
- The loop is sequential; tool calls are never parallelized. Backend and
  tool calls are the only suspension points, and cancellation is checked
  before each of them.
- Tool failures (unknown tool, bad parameters, tool errors, a tripped tool
  breaker) are results, not exceptions: they are persisted, shown to the
  model and the loop continues. Only model-backend failures abort a turn.
- Parameters are validated before the tool breaker is entered, so a model
  that keeps sending bad arguments cannot trip a healthy tool's breaker.
- Turns of one conversation are serialized with a per-conversation
  asyncio.Lock (ConversationLocks).
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from agentloop.agent.context import (
    ContextWindowBuilder,
    extract_context_from_answer,
    extract_context_from_tool_call,
)
from agentloop.agent.events import StreamingResponder, TurnMetrics
from agentloop.agent.parser import ToolCallParser
from agentloop.agent import policies
from agentloop.config.logging import get_logger
from agentloop.config.settings import AgentSettings
from agentloop.errors import (
    AgentLoopError,
    BackendError,
    BreakerOpenError,
    ConversationBusyError,
    ConversationNotFoundError,
    ToolExecutionError,
    ValidationError,
)
from agentloop.llm.backend import DEGRADED_SERVICE_MESSAGE, ModelBackend, user_message_for
from agentloop.llm.models import ChatMessage, ChatOptions, ModelResponse
from agentloop.reliability.breaker import BreakerManager, get_breaker_manager
from agentloop.storage.base import ConversationStore
from agentloop.storage.models import Conversation, Message, MessageRole
from agentloop.tools.base import ToolCall, ToolResult
from agentloop.tools.registry import ToolRegistry

logger = get_logger(__name__)

MODEL_BREAKER_NAME = "model-backend"
CANCELLED_MESSAGE = "Execution cancelled"
TIMEOUT_MESSAGE = "The request took too long and was stopped before an answer was ready. Please try again."


def tool_breaker_name(tool_name: str) -> str:
    return f"tool:{tool_name}"


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    HAS_TOOL_CALLS = "has_tool_calls"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_FOLLOW_UP = "awaiting_follow_up"
    COMPLETE = "complete"
    ABORTED = "aborted"


class StopReason(str, Enum):
    ANSWERED = "answered"
    COMPLETION_PHRASE = "completion_phrase"
    ITERATION_CAP = "iteration_cap"
    FALLBACK = "fallback"
    TIMEOUT = "timeout"
    BACKEND_ERROR = "backend_error"
    BREAKER_OPEN = "breaker_open"
    CANCELLED = "cancelled"


class AgentIteration(BaseModel):
    """Transient record of one loop iteration; discarded with the turn."""

    index: int
    text: str = ""
    pending_calls: list[ToolCall] = Field(default_factory=list)
    context_updates: dict[str, Any] = Field(default_factory=dict)


class TurnResult(BaseModel):
    """What a finished turn produced."""

    conversation_id: str
    state: LoopState
    reason: StopReason
    final_message: Message | None = None
    tool_results: list[ToolResult] = Field(default_factory=list)
    iterations: int = 0
    metrics: TurnMetrics


class TurnCancelled(AgentLoopError):
    """Raised inside the loop when the turn's cancel event is set."""


class ConversationLocks:
    """
    One asyncio.Lock per conversation id.

    Locks are created on first use. They are only dropped explicitly
    (conversation deleted) so that a waiter never ends up holding a lock
    nobody else can see.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def is_busy(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return lock is not None and lock.locked()

    def discard(self, conversation_id: str) -> None:
        lock = self._locks.get(conversation_id)
        if lock is not None and not lock.locked():
            del self._locks[conversation_id]


class _Turn:
    """Mutable state of one running turn, shared with the timeout handler."""

    def __init__(
        self,
        conversation: Conversation,
        history: list[Message],
        user_message: str,
        caller_id: str,
        responder: StreamingResponder,
        cancel_event: asyncio.Event,
        max_iterations: int,
    ):
        self.conversation = conversation
        self.history = history
        self.user_message = user_message
        self.caller_id = caller_id
        self.responder = responder
        self.cancel_event = cancel_event
        self.max_iterations = max_iterations

        self.state = LoopState.AWAITING_MODEL
        self.messages: list[ChatMessage] = []
        self.tool_results: list[ToolResult] = []
        self.partial_text = ""
        self.iterations = 0
        self.current = AgentIteration(index=0)
        self.metrics = TurnMetrics()

        # Set once the final answer is persisted; streamed after the budget
        self.final_answer: str | None = None
        self.final_message: Message | None = None
        self.final_reason: StopReason | None = None


class AgenticLoopController:
    """
    Drives one conversation turn from user message to final answer.

    Args:
        backend: The model backend
        registry: Registered tools
        store: Conversation persistence
        context_builder: Builds the bounded context for each model call
        settings: Loop policy (iteration cap, timeout, phrases, ...)
        breakers: Breaker map; defaults to the process-wide manager
        parser: Tool call parser; defaults to one that knows the registry's tools
        chat_options: Per-call overrides passed to the backend

    Example:
        >>> controller = AgenticLoopController(backend, registry, store, builder, settings.agent)
        >>> responder = StreamingResponder(settings.stream)
        >>> result = await controller.run_turn(conversation.id, "explore the repo", responder)
    """

    def __init__(
        self,
        backend: ModelBackend,
        registry: ToolRegistry,
        store: ConversationStore,
        context_builder: ContextWindowBuilder,
        settings: AgentSettings | None = None,
        breakers: BreakerManager | None = None,
        parser: ToolCallParser | None = None,
        chat_options: ChatOptions | None = None,
    ):
        self._backend = backend
        self._registry = registry
        self._store = store
        self._context_builder = context_builder
        self._settings = settings or AgentSettings()
        self._breakers = breakers or get_breaker_manager()
        self._parser = parser or ToolCallParser(known_tools=registry.names)
        self._chat_options = chat_options or ChatOptions()

        self.locks = ConversationLocks()
        self._cancel_events: dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_busy(self, conversation_id: str) -> bool:
        return self.locks.is_busy(conversation_id)

    def cancel(self, conversation_id: str) -> bool:
        """
        Ask the running turn of a conversation to stop at its next suspension point.

        Returns:
            True if a turn was running
        """
        event = self._cancel_events.get(conversation_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for conversation {conversation_id}")
        return True

    async def run_turn(
        self,
        conversation_id: str,
        user_message: str,
        responder: StreamingResponder,
        caller_id: str | None = None,
        wait: bool = True,
    ) -> TurnResult:
        """
        Run one full turn for a user message.

        The responder always receives exactly one terminal outcome, even
        when this method raises.

        Args:
            conversation_id: Conversation to continue
            user_message: The user's new message (persisted here)
            responder: Receives progress and the final outcome
            caller_id: Identity tools run on behalf of; defaults to the conversation owner
            wait: If False, raise instead of queueing behind a running turn

        Raises:
            ConversationBusyError: wait=False and a turn is already running
            ConversationNotFoundError: Unknown conversation id
        """
        lock = self.locks.get(conversation_id)
        try:
            if not wait and lock.locked():
                raise ConversationBusyError(conversation_id)
            async with lock:
                cancel_event = asyncio.Event()
                self._cancel_events[conversation_id] = cancel_event
                try:
                    return await self._run_locked(
                        conversation_id, user_message, responder, caller_id, cancel_event
                    )
                finally:
                    self._cancel_events.pop(conversation_id, None)
        except (ConversationBusyError, ConversationNotFoundError) as e:
            await responder.error(str(e))
            raise
        finally:
            if not responder.terminated:
                logger.error(f"Turn for conversation {conversation_id} ended without an outcome")
                await responder.error("Something went wrong while processing your message.")

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    async def _run_locked(
        self,
        conversation_id: str,
        user_message: str,
        responder: StreamingResponder,
        caller_id: str | None,
        cancel_event: asyncio.Event,
    ) -> TurnResult:
        conversation = await self._store.get_conversation(conversation_id)

        await self._store.add_message(conversation_id, "user", user_message)
        conversation.generate_title(user_message)
        conversation.update_last_message(user_message, "user")
        await self._store.save_conversation(conversation)

        history = await self._store.get_messages(conversation_id)
        turn = _Turn(
            conversation=conversation,
            history=history,
            user_message=user_message,
            caller_id=caller_id or conversation.user_id,
            responder=responder,
            cancel_event=cancel_event,
            max_iterations=conversation.max_iterations or self._settings.max_iterations,
        )
        logger.info(
            f"Turn started for conversation {conversation_id} "
            f"({len(history)} messages, max {turn.max_iterations} iterations)"
        )

        # The budget covers deciding and persisting the answer, not streaming it
        try:
            result = await asyncio.wait_for(self._loop(turn), timeout=self._settings.turn_timeout)
        except asyncio.TimeoutError:
            result = await self._on_timeout(turn)
        except TurnCancelled:
            return await self._on_cancelled(turn)
        except asyncio.CancelledError:
            await self._on_cancelled(turn)
            raise

        if turn.final_answer is not None:
            await responder.complete(turn.final_answer, turn.metrics)
        return result

    async def _loop(self, turn: _Turn) -> TurnResult:
        settings = self._settings
        exploration = settings.encourage_exploration and policies.is_exploration_request(
            turn.user_message, settings.exploration_keywords
        )
        nudged = False
        empty_retry_used = False
        answer_prefix = ""

        await turn.responder.status(
            policies.initial_status(turn.user_message, len(self._registry) > 0, exploration)
        )

        while True:
            turn.state = LoopState.AWAITING_MODEL
            try:
                response = await self._call_model(turn)
            except (BackendError, BreakerOpenError) as e:
                return await self._on_backend_failure(turn, e)

            parsed = self._parser.parse(response)
            text = parsed.text
            turn.current = AgentIteration(index=turn.iterations, text=text, pending_calls=parsed.calls)

            if not parsed.calls:
                if not text.strip():
                    if turn.tool_results and not empty_retry_used:
                        empty_retry_used = True
                        logger.warning("Empty response after tool execution, requesting regeneration")
                        turn.messages.append(
                            ChatMessage(role="system", content=policies.ANALYZE_RESULTS_PROMPT)
                        )
                        continue
                    if turn.tool_results:
                        logger.warning("Model stayed silent after retry, using fallback summary")
                        answer = answer_prefix + policies.fallback_summary(turn.tool_results)
                    else:
                        answer = answer_prefix.strip() or policies.EMPTY_ANSWER_FALLBACK
                    return await self._complete(turn, answer, StopReason.FALLBACK)

                if (
                    exploration
                    and not nudged
                    and turn.iterations < settings.min_iterations
                    and not policies.contains_completion_phrase(text, settings.completion_phrases)
                ):
                    nudged = True
                    logger.info("Exploration request answered early, encouraging continuation")
                    answer_prefix += text + "\n\n"
                    turn.partial_text = answer_prefix.strip()
                    turn.messages.append(ChatMessage(role="assistant", content=text))
                    turn.messages.append(ChatMessage(role="system", content=policies.EXPLORATION_PROMPT))
                    continue

                return await self._complete(turn, answer_prefix + text, StopReason.ANSWERED)

            # The model asked for tools
            turn.state = LoopState.HAS_TOOL_CALLS
            if text:
                turn.partial_text = (answer_prefix + text).strip()
                await turn.responder.thinking(text)
                await self._store.add_message(turn.conversation.id, "thinking", text)

            if policies.contains_completion_phrase(text, settings.completion_phrases):
                logger.info("Model signalled completion, ignoring remaining tool calls")
                return await self._complete(turn, answer_prefix + text, StopReason.COMPLETION_PHRASE)

            if turn.iterations >= turn.max_iterations:
                logger.info(f"Iteration cap of {turn.max_iterations} reached")
                answer = policies.iteration_cap_answer(
                    turn.partial_text, turn.tool_results, turn.max_iterations
                )
                return await self._complete(turn, answer, StopReason.ITERATION_CAP)

            await self._execute_step(turn, parsed.calls, text)
            empty_retry_used = False
            turn.iterations += 1
            turn.metrics.iterations = turn.iterations
            turn.state = LoopState.AWAITING_FOLLOW_UP
            logger.debug(f"Iteration {turn.iterations} complete")

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def _call_model(self, turn: _Turn) -> ModelResponse:
        self._check_cancelled(turn)
        messages = self._context_builder.build(
            turn.history, turn.conversation.working_context, turn.messages
        )
        tools = self._registry.provider_tools(self._backend.supported_tools)
        breaker = self._breakers.get_or_create(MODEL_BREAKER_NAME)

        started = time.monotonic()
        try:
            response = await breaker.call(
                self._backend.chat_with_tools, messages, tools, self._chat_options
            )
        finally:
            turn.metrics.thinking_duration += time.monotonic() - started

        turn.metrics.usage = turn.metrics.usage + response.usage
        return response

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _execute_step(self, turn: _Turn, calls: list[ToolCall], text: str) -> None:
        turn.state = LoopState.EXECUTING_TOOLS
        if self._settings.single_tool_per_step:
            to_run, deferred = calls[:1], calls[1:]
        else:
            to_run, deferred = calls, []

        turn.messages.append(ChatMessage(role="assistant", content=text, tool_calls=to_run))

        step_results: list[ToolResult] = []
        for ordinal, call in enumerate(to_run, start=1):
            result = await self._execute_tool(turn, call, ordinal, len(to_run))
            step_results.append(result)

        notes = []
        if deferred:
            logger.info(f"Deferred {len(deferred)} extra tool call(s): {[c.name for c in deferred]}")
            notes.append(policies.single_tool_note(to_run[0].name, [c.name for c in deferred]))
        for call in to_run:
            if call.name not in self._registry:
                notes.append(policies.unknown_tool_note(call.name, self._registry.names))
        for note in notes:
            turn.messages.append(ChatMessage(role="system", content=note))
            await self._store.add_message(turn.conversation.id, "status", note)

        last_tool = to_run[-1].name
        await turn.responder.thinking(
            policies.THINKING_AFTER_TOOL.get(last_tool, policies.DEFAULT_THINKING_AFTER_TOOL)
        )
        turn.messages.append(
            ChatMessage(role="system", content=policies.follow_up_prompt(last_tool, step_results))
        )
        await turn.responder.status("Processing...")

    async def _execute_tool(self, turn: _Turn, call: ToolCall, ordinal: int, total: int) -> ToolResult:
        self._check_cancelled(turn)
        await turn.responder.status(f"Running {call.name}...")

        started = time.monotonic()
        success = False
        try:
            output = await self._invoke_tool(turn, call)
            success = True
        except (ValidationError, ToolExecutionError, BreakerOpenError) as e:
            output = str(e)
        duration = time.monotonic() - started

        result = ToolResult(tool_name=call.name, success=success, output=output, duration=duration)
        if success:
            logger.info(f"Tool '{call.name}' succeeded in {duration:.2f}s")
        else:
            logger.warning(f"Tool '{call.name}' failed: {output}")

        turn.tool_results.append(result)
        turn.metrics.tool_calls += 1
        turn.metrics.tool_duration += duration

        content = result.to_message()
        await self._store.add_message(turn.conversation.id, "tool", content, tool_name=call.name)
        turn.messages.append(
            ChatMessage(role="tool", name=call.name, tool_call_id=call.id, content=content)
        )
        await turn.responder.tool(result, ordinal, total)

        if success:
            updates = extract_context_from_tool_call(call.name, call.arguments, output)
            turn.current.context_updates.update(updates)
            if turn.conversation.update_working_context(updates):
                logger.debug(f"Working context updated: {updates}")
                await self._store.save_conversation(turn.conversation)
        return result

    async def _invoke_tool(self, turn: _Turn, call: ToolCall) -> str:
        """
        Run one tool call through its breaker.

        Raises:
            ValidationError: Undecodable or invalid parameters
            ToolExecutionError: Unknown tool, or the tool failed
            BreakerOpenError: The tool's breaker is open
        """
        if call.arguments_error:
            raise ValidationError(call.name, {"arguments": call.arguments_error})

        # Unknown tools and bad parameters never reach the breaker
        self._registry.validate_params(call.name, call.arguments)

        breaker = self._breakers.get_or_create(tool_breaker_name(call.name))
        return await breaker.call(
            self._registry.execute, call.name, call.arguments, turn.caller_id
        )

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _complete(self, turn: _Turn, answer: str, reason: StopReason) -> TurnResult:
        answer = answer.strip() or policies.EMPTY_ANSWER_FALLBACK
        conversation = turn.conversation

        message = await self._store.add_message(conversation.id, "assistant", answer)
        turn.final_answer = answer
        turn.final_message = message
        turn.final_reason = reason

        updates = extract_context_from_answer(answer)
        if conversation.update_working_context(updates):
            logger.debug(f"Working context updated from answer: {updates}")
        conversation.update_last_message(answer, "assistant")
        await self._store.save_conversation(conversation)

        if turn.iterations:
            await turn.responder.thinking(
                f"Completed after {turn.iterations} iterations. Preparing response..."
            )
        turn.state = LoopState.COMPLETE
        turn.metrics.finish()
        logger.info(
            f"Turn complete for conversation {conversation.id} ({reason.value}): "
            f"{turn.metrics.summary()}"
        )
        return self._result(turn, LoopState.COMPLETE, reason, message)

    async def _abort(
        self, turn: _Turn, user_text: str, reason: StopReason, role: MessageRole | None = "error"
    ) -> TurnResult:
        message = None
        if role is not None:
            message = await self._store.add_message(turn.conversation.id, role, user_text)
            turn.conversation.update_last_message(user_text, role)
            await self._store.save_conversation(turn.conversation)
        turn.state = LoopState.ABORTED
        turn.metrics.finish()
        await turn.responder.error(user_text)
        return self._result(turn, LoopState.ABORTED, reason, message)

    async def _on_backend_failure(self, turn: _Turn, error: Exception) -> TurnResult:
        if isinstance(error, BreakerOpenError):
            logger.error(f"Model backend rejected by open breaker: {error}")
            return await self._abort(turn, DEGRADED_SERVICE_MESSAGE, StopReason.BREAKER_OPEN)
        logger.error(f"Model backend call failed ({error.kind.value}): {error}")
        return await self._abort(turn, user_message_for(error), StopReason.BACKEND_ERROR)

    async def _on_timeout(self, turn: _Turn) -> TurnResult:
        logger.warning(
            f"Turn for conversation {turn.conversation.id} exceeded "
            f"{self._settings.turn_timeout:.0f}s budget"
        )
        if turn.final_message is not None:
            # The answer was persisted before the budget ran out
            turn.conversation.update_last_message(turn.final_answer, "assistant")
            await self._store.save_conversation(turn.conversation)
            turn.state = LoopState.COMPLETE
            turn.metrics.finish()
            return self._result(turn, LoopState.COMPLETE, turn.final_reason, turn.final_message)
        if turn.partial_text.strip():
            return await self._complete(turn, turn.partial_text, StopReason.TIMEOUT)
        return await self._abort(turn, TIMEOUT_MESSAGE, StopReason.TIMEOUT)

    async def _on_cancelled(self, turn: _Turn) -> TurnResult:
        logger.info(f"Turn for conversation {turn.conversation.id} cancelled")
        return await self._abort(turn, CANCELLED_MESSAGE, StopReason.CANCELLED, role=None)

    def _check_cancelled(self, turn: _Turn) -> None:
        if turn.cancel_event.is_set():
            raise TurnCancelled(CANCELLED_MESSAGE)

    def _result(
        self, turn: _Turn, state: LoopState, reason: StopReason, message: Message | None
    ) -> TurnResult:
        return TurnResult(
            conversation_id=turn.conversation.id,
            state=state,
            reason=reason,
            final_message=message,
            tool_results=list(turn.tool_results),
            iterations=turn.iterations,
            metrics=turn.metrics,
        )
