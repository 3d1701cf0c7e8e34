"""
Unit tests for AgenticLoopController.

Tests cover:
- End-to-end turns: tool then answer, unknown tool, model breaker tripping
- Single tool per step, iteration cap, completion phrases
- Never ending a turn with a blank answer (retry, then fallback)
- Exploration nudge and working context updates
- Tool failures as results (validation, undecodable arguments, open tool breaker)
- Cancellation, turn timeout and per-conversation serialization
"""

import asyncio
import json
from typing import Any

import pytest
import pytest_asyncio

from conftest import FailingTool, ScriptedBackend, collect, descriptor, text, tool_call
from agentloop.agent.controller import (
    CANCELLED_MESSAGE,
    MODEL_BREAKER_NAME,
    TIMEOUT_MESSAGE,
    AgenticLoopController,
    LoopState,
    StopReason,
)
from agentloop.agent.events import EventType, StreamingResponder
from agentloop.agent import policies
from agentloop.config.settings import AgentSettings, StreamSettings
from agentloop.errors import BackendError, BackendErrorKind, ConversationBusyError, ConversationNotFoundError
from agentloop.llm.backend import DEGRADED_SERVICE_MESSAGE
from agentloop.llm.models import ModelResponse
from agentloop.reliability.breaker import BreakerConfig, BreakerState
from agentloop.tools.base import ParamSpec, Tool, ToolCall


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class GatedBackend(ScriptedBackend):
    """Scripted backend whose calls block until the gate opens."""

    def __init__(self, script, gate: asyncio.Event):
        super().__init__(script)
        self.gate = gate

    async def chat_with_tools(self, messages, tools, options=None):
        await self.gate.wait()
        return await super().chat_with_tools(messages, tools, options)


class HangingBackend(ScriptedBackend):
    """Replays its script, then hangs forever."""

    async def chat_with_tools(self, messages, tools, options=None):
        if not self.script:
            self.calls.append(list(messages))
            await asyncio.sleep(3600)
        return await super().chat_with_tools(messages, tools, options)


class CancellingTool(Tool):
    """Requests cancellation of its own turn while running."""

    def __init__(self):
        self.controller: AgenticLoopController | None = None
        self.conversation_id: str | None = None

    async def execute(self, params: dict[str, Any], caller_id: str) -> str:
        self.controller.cancel(self.conversation_id)
        return "partial output"


class BrittleValidatorTool(Tool):
    """Validator that crashes on an explicit null."""

    def __init__(self):
        self.invocations = 0

    def validate_params(self, params: dict[str, Any]) -> None:
        if params.get("depth", 1) < 1:
            raise ValueError("depth must be positive")

    async def execute(self, params: dict[str, Any], caller_id: str) -> str:
        self.invocations += 1
        return "walked"


async def _roles(store, conversation_id: str) -> list[str]:
    return [m.role for m in await store.get_messages(conversation_id)]


def _kinds(events) -> list[EventType]:
    return [e.event for e in events]


def _contents(messages) -> list[str]:
    return [m.content for m in messages]


@pytest_asyncio.fixture
async def conversation(store):
    return await store.create_conversation("u1")


def _controller_with(backend, registry, store, context_builder, breakers, settings):
    return AgenticLoopController(
        backend=backend,
        registry=registry,
        store=store,
        context_builder=context_builder,
        settings=settings,
        breakers=breakers,
    )


# ---------------------------------------------------------------------------
# End-to-end turns
# ---------------------------------------------------------------------------

class TestEndToEnd:
    """Whole turns against a scripted model."""

    @pytest.mark.asyncio
    async def test_tool_then_answer(self, make_controller, store, conversation, responder, list_repos_tool):
        controller, backend = make_controller([
            tool_call("list_repos"),
            text("I found alpha and beta - want details on one?"),
        ])

        result = await controller.run_turn(conversation.id, "list repositories", responder)

        assert result.state is LoopState.COMPLETE
        assert result.reason is StopReason.ANSWERED
        assert result.iterations == 1
        assert result.final_message.content == "I found alpha and beta - want details on one?"
        assert list_repos_tool.invocations == [({}, "u1")]

        messages = await store.get_messages(conversation.id)
        assert [m.role for m in messages] == ["user", "tool", "assistant"]
        assert messages[1].content == "Tool 'list_repos' result:\nFound 2 repositories: alpha, beta"
        assert messages[1].tool_name == "list_repos"

        stored = await store.get_conversation(conversation.id)
        assert stored.working_context == {}
        assert stored.title == "list repositories"
        assert stored.last_role == "assistant"

        # The tool result is fed back as a native tool message
        follow_up = backend.calls[1]
        tool_messages = [m for m in follow_up if m.role == "tool"]
        assert tool_messages[0].tool_call_id == "call_1"
        assert tool_messages[0].content == messages[1].content
        assert follow_up[-1].role == "system"
        assert follow_up[-1].content.startswith(policies.FOLLOW_UP_PROMPTS["list_repos"])

    @pytest.mark.asyncio
    async def test_event_stream(self, make_controller, conversation, responder):
        controller, _ = make_controller([tool_call("list_repos"), text("Two repos.")])

        await controller.run_turn(conversation.id, "list repositories", responder)
        events = await collect(responder)
        kinds = _kinds(events)

        assert kinds[0] is EventType.STATUS
        assert kinds.count(EventType.DONE) == 1
        assert EventType.ERROR not in kinds
        assert kinds[-3:] == [EventType.CHUNK, EventType.COMPLETE, EventType.DONE]

        tool_event = next(e for e in events if e.event is EventType.TOOL)
        assert json.loads(tool_event.data)["tool"] == "list_repos"
        complete = json.loads(events[-2].data)
        assert complete["content"] == "Two repos."
        assert complete["metrics"]["tool_calls"] == 1

    @pytest.mark.asyncio
    async def test_unknown_tool(self, make_controller, store, conversation, responder, breakers):
        controller, backend = make_controller([
            tool_call("delete_repo", repo_id="7"),
            text("I can't delete repositories, but I can list them."),
        ])

        result = await controller.run_turn(conversation.id, "delete repo 7", responder)

        assert result.reason is StopReason.ANSWERED
        assert result.tool_results[0].success is False

        messages = await store.get_messages(conversation.id)
        assert [m.role for m in messages] == ["user", "tool", "status", "assistant"]
        assert messages[1].content == "Error: Tool 'delete_repo' failed: Tool 'delete_repo' not found"
        assert messages[2].content.startswith("Tool 'delete_repo' does not exist.")
        assert "list_repos, read_file" in messages[2].content

        notes = [m.content for m in backend.calls[1] if m.role == "system"]
        assert any("does not exist" in note for note in notes)
        assert policies.FAILURE_PROMPT in notes
        # Unknown tools never reach a breaker
        assert breakers.get("tool:delete_repo") is None

    @pytest.mark.asyncio
    async def test_model_breaker_trips(self, make_controller, store, conversation, stream_settings, breakers):
        failures = [BackendError("connection refused", BackendErrorKind.UNAVAILABLE) for _ in range(5)]
        controller, backend = make_controller(failures)

        for _ in range(5):
            responder = StreamingResponder(stream_settings)
            result = await controller.run_turn(conversation.id, "hello?", responder)
            assert result.reason is StopReason.BACKEND_ERROR
            events = await collect(responder)
            assert events[-1].event is EventType.ERROR
            assert "unavailable" in events[-1].data

        assert breakers.get(MODEL_BREAKER_NAME).state is BreakerState.OPEN

        responder = StreamingResponder(stream_settings)
        result = await controller.run_turn(conversation.id, "hello?", responder)

        assert result.state is LoopState.ABORTED
        assert result.reason is StopReason.BREAKER_OPEN
        assert len(backend.calls) == 5
        events = await collect(responder)
        assert events[-1].event is EventType.ERROR
        assert events[-1].data == DEGRADED_SERVICE_MESSAGE

        roles = await _roles(store, conversation.id)
        assert "assistant" not in roles
        assert roles.count("error") == 6
        assert result.final_message.content == DEGRADED_SERVICE_MESSAGE

    @pytest.mark.asyncio
    async def test_textual_tool_call(self, make_controller, conversation, responder, read_file_tool):
        controller, backend = make_controller([
            text('Checking.\n<tool_call>{"tool": "read_file", "params": {"path": "a.py"}}</tool_call>'),
            text("It prints hello."),
        ])

        result = await controller.run_turn(conversation.id, "what does a.py do", responder)

        assert result.reason is StopReason.ANSWERED
        assert read_file_tool.invocations == [({"path": "a.py"}, "u1")]
        tool_message = next(m for m in backend.calls[1] if m.role == "tool")
        assert tool_message.tool_call_id is None
        assert tool_message.name == "read_file"

    @pytest.mark.asyncio
    async def test_answer_without_tools(self, make_controller, store, conversation, responder):
        controller, _ = make_controller([text("Hello! How can I help?")])

        result = await controller.run_turn(conversation.id, "hi", responder)

        assert result.reason is StopReason.ANSWERED
        assert result.iterations == 0
        assert await _roles(store, conversation.id) == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_caller_id_passed_to_tools(self, make_controller, conversation, responder, list_repos_tool):
        controller, _ = make_controller([tool_call("list_repos"), text("ok")])
        await controller.run_turn(conversation.id, "list", responder, caller_id="admin")
        assert list_repos_tool.invocations[0][1] == "admin"


# ---------------------------------------------------------------------------
# Loop policies
# ---------------------------------------------------------------------------

class TestPolicies:
    """Single tool per step, iteration cap, completion and exploration."""

    @pytest.mark.asyncio
    async def test_single_tool_per_step(
        self, make_controller, store, conversation, responder, read_file_tool, list_repos_tool
    ):
        many = ModelResponse(tool_calls=[
            ToolCall(name="read_file", arguments={"path": "README.md"}, id="c1"),
            ToolCall(name="list_repos", id="c2"),
            ToolCall(name="read_file", arguments={"path": "go.mod"}, id="c3"),
        ])
        controller, backend = make_controller([many, text("Read the README.")])

        result = await controller.run_turn(conversation.id, "read things", responder)

        assert len(result.tool_results) == 1
        assert read_file_tool.invocations == [({"path": "README.md"}, "u1")]
        assert list_repos_tool.invocations == []

        messages = await store.get_messages(conversation.id)
        status = [m.content for m in messages if m.role == "status"]
        assert len(status) == 1
        assert status[0].startswith("You requested 3 tools at once. Only 'read_file' was executed")
        assert "deferred: 'list_repos', 'read_file'" in status[0]

        assistant_call = next(m for m in backend.calls[1] if m.role == "assistant" and m.tool_calls)
        assert [c.id for c in assistant_call.tool_calls] == ["c1"]

    @pytest.mark.asyncio
    async def test_all_tools_when_single_step_disabled(
        self, make_controller, conversation, responder, list_repos_tool
    ):
        many = ModelResponse(tool_calls=[ToolCall(name="list_repos", id="c1"), ToolCall(name="list_repos", id="c2")])
        controller, _ = make_controller(
            [many, text("done")],
            settings=AgentSettings(single_tool_per_step=False, project_context_paths=[]),
        )

        result = await controller.run_turn(conversation.id, "list twice", responder)

        assert len(result.tool_results) == 2
        assert len(list_repos_tool.invocations) == 2

    @pytest.mark.asyncio
    async def test_iteration_cap(self, make_controller, conversation, responder, list_repos_tool):
        settings = AgentSettings(max_iterations=3, project_context_paths=[])
        controller, backend = make_controller(
            [tool_call("list_repos", call_id=f"c{i}") for i in range(10)], settings=settings
        )

        result = await controller.run_turn(conversation.id, "keep listing", responder)

        assert result.reason is StopReason.ITERATION_CAP
        assert result.state is LoopState.COMPLETE
        assert result.iterations == 3
        assert len(list_repos_tool.invocations) == 3
        assert len(backend.calls) == 4
        assert "I reached the limit of 3 tool steps" in result.final_message.content
        assert result.final_message.content.count("Tool 'list_repos' result:") == 3

    @pytest.mark.asyncio
    async def test_conversation_iteration_override(self, make_controller, store, conversation, responder, list_repos_tool):
        conversation.max_iterations = 1
        await store.save_conversation(conversation)
        controller, _ = make_controller([tool_call("list_repos", call_id=f"c{i}") for i in range(5)])

        result = await controller.run_turn(conversation.id, "keep listing", responder)

        assert result.reason is StopReason.ITERATION_CAP
        assert len(list_repos_tool.invocations) == 1

    @pytest.mark.asyncio
    async def test_completion_phrase_stops_turn(self, make_controller, store, conversation, responder, list_repos_tool):
        controller, _ = make_controller([tool_call("list_repos", content="All done, task complete.")])

        result = await controller.run_turn(conversation.id, "wrap up", responder)

        assert result.reason is StopReason.COMPLETION_PHRASE
        assert result.final_message.content == "All done, task complete."
        assert list_repos_tool.invocations == []
        assert await _roles(store, conversation.id) == ["user", "thinking", "assistant"]

    @pytest.mark.asyncio
    async def test_thinking_text_streamed_and_persisted(self, make_controller, store, conversation, responder):
        controller, _ = make_controller([
            tool_call("read_file", content="Let me read the README first.", path="README.md"),
            text("It says hello."),
        ])

        await controller.run_turn(conversation.id, "what is this", responder)

        events = await collect(responder)
        thinking = [e.data for e in events if e.event is EventType.THINKING]
        assert thinking[0] == "Let me read the README first."
        assert await _roles(store, conversation.id) == ["user", "thinking", "tool", "assistant"]

    @pytest.mark.asyncio
    async def test_exploration_nudge(self, make_controller, conversation, responder):
        controller, backend = make_controller([
            text("Here is a quick overview."),
            tool_call("list_repos"),
            text("Alpha is the main service."),
        ])

        result = await controller.run_turn(conversation.id, "explore my repositories", responder)

        assert result.reason is StopReason.ANSWERED
        assert result.final_message.content == "Here is a quick overview.\n\nAlpha is the main service."
        assert backend.calls[1][-1].content == policies.EXPLORATION_PROMPT

    @pytest.mark.asyncio
    async def test_exploration_nudged_only_once(self, make_controller, conversation, responder):
        controller, backend = make_controller([text("Overview."), text("Still just an overview.")])

        result = await controller.run_turn(conversation.id, "explore", responder)

        assert result.reason is StopReason.ANSWERED
        assert len(backend.calls) == 2


# ---------------------------------------------------------------------------
# Blank answers
# ---------------------------------------------------------------------------

class TestNoBlankTurn:
    """A turn never ends with an empty answer."""

    @pytest.mark.asyncio
    async def test_retry_after_empty_response(self, make_controller, conversation, responder):
        controller, backend = make_controller([tool_call("list_repos"), text(""), text("Alpha and beta.")])

        result = await controller.run_turn(conversation.id, "list", responder)

        assert result.reason is StopReason.ANSWERED
        assert result.final_message.content == "Alpha and beta."
        assert backend.calls[2][-1].content == policies.ANALYZE_RESULTS_PROMPT

    @pytest.mark.asyncio
    async def test_fallback_summary_after_second_empty(self, make_controller, conversation, responder):
        controller, backend = make_controller([tool_call("list_repos"), text(""), text("  ")])

        result = await controller.run_turn(conversation.id, "list", responder)

        assert result.reason is StopReason.FALLBACK
        assert result.final_message.content == (
            "Here's what I discovered:\nTool 'list_repos' result:\nFound 2 repositories: alpha, beta"
        )
        assert len(backend.calls) == 3

    @pytest.mark.asyncio
    async def test_empty_without_tools(self, make_controller, conversation, responder):
        controller, _ = make_controller([text("")])

        result = await controller.run_turn(conversation.id, "hi", responder)

        assert result.reason is StopReason.FALLBACK
        assert result.final_message.content == policies.EMPTY_ANSWER_FALLBACK
        events = await collect(responder)
        assert json.loads(events[-2].data)["content"] == policies.EMPTY_ANSWER_FALLBACK


# ---------------------------------------------------------------------------
# Tool failures
# ---------------------------------------------------------------------------

class TestToolFailures:
    """Tool problems are results the model sees, not aborted turns."""

    @pytest.mark.asyncio
    async def test_missing_parameter(self, make_controller, store, conversation, responder, breakers, read_file_tool):
        controller, _ = make_controller([tool_call("read_file"), text("I need a path.")])

        result = await controller.run_turn(conversation.id, "read", responder)

        assert result.reason is StopReason.ANSWERED
        assert read_file_tool.invocations == []
        messages = await store.get_messages(conversation.id)
        assert messages[1].content == (
            "Error: Tool 'read_file' failed: Invalid parameters - path: missing required parameter"
        )
        assert breakers.get("tool:read_file") is None

    @pytest.mark.asyncio
    async def test_undecodable_arguments(self, make_controller, store, conversation, responder, read_file_tool):
        bad = ModelResponse(tool_calls=[
            ToolCall(name="read_file", id="c1", arguments_error="arguments are not valid JSON: Expecting value")
        ])
        controller, _ = make_controller([bad, text("Sorry.")])

        await controller.run_turn(conversation.id, "read", responder)

        messages = await store.get_messages(conversation.id)
        assert "arguments: arguments are not valid JSON" in messages[1].content
        assert read_file_tool.invocations == []

    @pytest.mark.asyncio
    async def test_tool_exception(self, registry, make_controller, store, conversation, responder):
        registry.register(descriptor("flaky"), FailingTool(RuntimeError("disk full")))
        controller, _ = make_controller([tool_call("flaky"), text("The tool failed.")])

        result = await controller.run_turn(conversation.id, "run flaky", responder)

        assert result.reason is StopReason.ANSWERED
        messages = await store.get_messages(conversation.id)
        assert messages[1].content == "Error: Tool 'flaky' failed: Tool 'flaky' execution failed: disk full"

    @pytest.mark.asyncio
    async def test_crashing_validator(self, registry, make_controller, store, conversation, responder, breakers):
        brittle = BrittleValidatorTool()
        registry.register(descriptor("walk", depth=ParamSpec(type="integer")), brittle)
        controller, _ = make_controller([tool_call("walk", depth=None), text("Walking did not work.")])

        result = await controller.run_turn(conversation.id, "walk the tree", responder)

        assert result.state is LoopState.COMPLETE
        assert result.reason is StopReason.ANSWERED
        assert brittle.invocations == 0
        assert result.tool_results[0].success is False
        messages = await store.get_messages(conversation.id)
        assert messages[1].content.startswith("Error: Tool 'walk' failed: Tool 'walk' rejected its parameters")
        assert breakers.get("tool:walk") is None

    @pytest.mark.asyncio
    async def test_open_tool_breaker(self, make_controller, store, conversation, responder, breakers, list_repos_tool):
        breaker = breakers.get_or_create("tool:list_repos", BreakerConfig(max_failures=1))

        async def _boom():
            raise RuntimeError("down")

        with pytest.raises(RuntimeError):
            await breaker.call(_boom)

        controller, _ = make_controller([tool_call("list_repos"), text("Repos are unavailable right now.")])
        result = await controller.run_turn(conversation.id, "list", responder)

        assert result.reason is StopReason.ANSWERED
        assert list_repos_tool.invocations == []
        messages = await store.get_messages(conversation.id)
        assert messages[1].content == "Error: Tool 'list_repos' failed: Circuit breaker 'tool:list_repos' is open"

    @pytest.mark.asyncio
    async def test_working_context_updated(self, make_controller, store, conversation, responder):
        controller, backend = make_controller([
            tool_call("read_file", path="cmd/server/main.go"),
            text("It starts the HTTP server."),
        ])

        await controller.run_turn(conversation.id, "read the server entry point", responder)

        stored = await store.get_conversation(conversation.id)
        assert stored.working_context == {
            "current_file_path": "cmd/server/main.go",
            "current_directory": "cmd/server",
        }
        assert backend.calls[1][1].content.startswith("Working Context: ")

    @pytest.mark.asyncio
    async def test_failed_tool_does_not_update_context(self, make_controller, store, conversation, responder):
        controller, _ = make_controller([tool_call("read_file", path=5), text("ok")])

        result = await controller.run_turn(conversation.id, "read", responder)

        assert result.tool_results[0].output == "Invalid parameters - path: expected string, got int"
        stored = await store.get_conversation(conversation.id)
        assert stored.working_context == {}


# ---------------------------------------------------------------------------
# Cancellation, timeout, concurrency
# ---------------------------------------------------------------------------

class TestLifecycle:
    """Stopping turns and serializing them per conversation."""

    @pytest.mark.asyncio
    async def test_cancel_mid_turn(self, registry, make_controller, store, conversation, responder):
        stopper = CancellingTool()
        registry.register(descriptor("stopper"), stopper)
        controller, backend = make_controller([tool_call("stopper"), text("never sent")])
        stopper.controller = controller
        stopper.conversation_id = conversation.id

        result = await controller.run_turn(conversation.id, "run it", responder)

        assert result.state is LoopState.ABORTED
        assert result.reason is StopReason.CANCELLED
        assert len(backend.calls) == 1
        events = await collect(responder)
        assert events[-1].event is EventType.ERROR
        assert events[-1].data == CANCELLED_MESSAGE
        assert "error" not in await _roles(store, conversation.id)

    def test_cancel_without_running_turn(self, make_controller):
        controller, _ = make_controller([])
        assert controller.cancel("nothing-running") is False

    @pytest.mark.asyncio
    async def test_timeout_without_text(
        self, registry, store, conversation, responder, context_builder, breakers
    ):
        settings = AgentSettings(turn_timeout=0.05, project_context_paths=[])
        controller = _controller_with(HangingBackend([]), registry, store, context_builder, breakers, settings)

        result = await controller.run_turn(conversation.id, "slow question", responder)

        assert result.reason is StopReason.TIMEOUT
        assert result.state is LoopState.ABORTED
        events = await collect(responder)
        assert events[-1].event is EventType.ERROR
        assert events[-1].data == TIMEOUT_MESSAGE
        assert (await _roles(store, conversation.id))[-1] == "error"
        assert breakers.get(MODEL_BREAKER_NAME).stats()["total_failures"] == 0

    @pytest.mark.asyncio
    async def test_timeout_with_partial_text(
        self, registry, store, conversation, responder, context_builder, breakers
    ):
        settings = AgentSettings(turn_timeout=0.1, project_context_paths=[])
        backend = HangingBackend([tool_call("list_repos", content="Alpha looks like the main repo.")])
        controller = _controller_with(backend, registry, store, context_builder, breakers, settings)

        result = await controller.run_turn(conversation.id, "which repo matters", responder)

        assert result.reason is StopReason.TIMEOUT
        assert result.state is LoopState.COMPLETE
        assert result.final_message.content == "Alpha looks like the main repo."
        events = await collect(responder)
        assert events[-1].event is EventType.DONE

    @pytest.mark.asyncio
    async def test_slow_stream_outlasting_budget_completes_once(
        self, registry, store, conversation, context_builder, breakers
    ):
        answer = "hello world, here is the answer"
        settings = AgentSettings(turn_timeout=0.3, project_context_paths=[])
        # One character per chunk takes well past the turn budget to stream
        responder = StreamingResponder(StreamSettings(chunk_size=1, chunk_delay=0.02))
        controller = _controller_with(
            ScriptedBackend([text(answer)]), registry, store, context_builder, breakers, settings
        )

        result = await controller.run_turn(conversation.id, "say hello", responder)

        assert result.state is LoopState.COMPLETE
        assert result.reason is StopReason.ANSWERED
        events = await collect(responder)
        kinds = _kinds(events)
        assert EventType.ERROR not in kinds
        assert kinds[-2:] == [EventType.COMPLETE, EventType.DONE]
        assert "".join(e.data for e in events if e.event is EventType.CHUNK) == answer
        assert await _roles(store, conversation.id) == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_busy_conversation_rejected(
        self, registry, store, conversation, stream_settings, context_builder, breakers, agent_settings
    ):
        gate = asyncio.Event()
        backend = GatedBackend([text("first"), text("second")], gate)
        controller = _controller_with(backend, registry, store, context_builder, breakers, agent_settings)

        first = asyncio.create_task(
            controller.run_turn(conversation.id, "one", StreamingResponder(stream_settings))
        )
        while not controller.is_busy(conversation.id):
            await asyncio.sleep(0)

        rejected = StreamingResponder(stream_settings)
        with pytest.raises(ConversationBusyError):
            await controller.run_turn(conversation.id, "two", rejected, wait=False)
        assert (await collect(rejected))[-1].event is EventType.ERROR

        gate.set()
        result = await first
        assert result.final_message.content == "first"
        assert not controller.is_busy(conversation.id)

    @pytest.mark.asyncio
    async def test_turns_are_serialized(
        self, registry, store, conversation, stream_settings, context_builder, breakers, agent_settings
    ):
        gate = asyncio.Event()
        backend = GatedBackend([text("answer one"), text("answer two")], gate)
        controller = _controller_with(backend, registry, store, context_builder, breakers, agent_settings)

        first = asyncio.create_task(
            controller.run_turn(conversation.id, "question one", StreamingResponder(stream_settings))
        )
        second = asyncio.create_task(
            controller.run_turn(conversation.id, "question two", StreamingResponder(stream_settings))
        )
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(first, second)

        messages = await store.get_messages(conversation.id)
        assert _contents(messages) == ["question one", "answer one", "question two", "answer two"]

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, make_controller, responder):
        controller, _ = make_controller([text("unused")])

        with pytest.raises(ConversationNotFoundError):
            await controller.run_turn("missing", "hello", responder)

        events = await collect(responder)
        assert len(events) == 1
        assert events[0].data == "Conversation 'missing' not found"
