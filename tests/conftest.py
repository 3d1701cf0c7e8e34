"""
Shared fakes and fixtures.

ScriptedBackend replays a list of ModelResponses (or raises the
exceptions placed in the script), so controller tests never touch
LiteLLM.
"""

import os
from typing import Any

# Use LiteLLM's bundled model cost map instead of fetching it over the
# network at import time (the offline fetch path deadlocks under pytest).
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import pytest

from agentloop.agent.context import ContextWindowBuilder
from agentloop.agent.controller import AgenticLoopController
from agentloop.agent.events import StreamEvent, StreamingResponder
from agentloop.config.settings import AgentSettings, ContextSettings, StreamSettings
from agentloop.llm.backend import ModelBackend
from agentloop.llm.models import ChatMessage, ChatOptions, ModelResponse
from agentloop.reliability.breaker import BreakerManager
from agentloop.storage.memory import InMemoryConversationStore
from agentloop.tools.base import ParamSpec, Tool, ToolCall, ToolDescriptor
from agentloop.tools.registry import ToolRegistry


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class ScriptedBackend(ModelBackend):
    """Backend that returns (or raises) scripted items in order."""

    def __init__(self, script: list[Any] | None = None, supported: list[str] | None = None):
        self.script = list(script or [])
        self.calls: list[list[ChatMessage]] = []
        self.tools_seen: list[list[dict]] = []
        self._supported = supported

    @property
    def supported_tools(self):
        return self._supported

    async def chat_with_tools(
        self,
        messages: list[ChatMessage],
        tools: list[dict],
        options: ChatOptions | None = None,
    ) -> ModelResponse:
        self.calls.append(list(messages))
        self.tools_seen.append(tools)
        if not self.script:
            raise AssertionError("ScriptedBackend ran out of responses")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class StaticTool(Tool):
    """Tool that returns a fixed output and records its invocations."""

    def __init__(self, output: str = "ok"):
        self.output = output
        self.invocations: list[tuple[dict, str]] = []

    async def execute(self, params: dict[str, Any], caller_id: str) -> str:
        self.invocations.append((params, caller_id))
        return self.output


class FailingTool(Tool):
    def __init__(self, error: Exception | None = None):
        self.error = error or RuntimeError("boom")
        self.invocations = 0

    async def execute(self, params: dict[str, Any], caller_id: str) -> str:
        self.invocations += 1
        raise self.error


def text(content: str) -> ModelResponse:
    return ModelResponse(text=content)


def tool_call(name: str, call_id: str | None = "call_1", content: str = "", **arguments) -> ModelResponse:
    return ModelResponse(text=content, tool_calls=[ToolCall(name=name, arguments=arguments, id=call_id)])


def descriptor(name: str, description: str = "", **params: ParamSpec) -> ToolDescriptor:
    return ToolDescriptor(name=name, description=description or f"The {name} tool", parameters=params)


async def collect(responder: StreamingResponder) -> list[StreamEvent]:
    return [event async for event in responder.events()]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def list_repos_tool():
    return StaticTool("Found 2 repositories: alpha, beta")


@pytest.fixture
def read_file_tool():
    return StaticTool("print('hello')")


@pytest.fixture
def registry(list_repos_tool, read_file_tool):
    registry = ToolRegistry()
    registry.register(descriptor("list_repos", "List repositories"), list_repos_tool)
    registry.register(
        descriptor(
            "read_file",
            "Read a file",
            path=ParamSpec(type="string", required=True, description="Relative path"),
        ),
        read_file_tool,
    )
    return registry


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def breakers():
    return BreakerManager()


@pytest.fixture
def agent_settings():
    return AgentSettings(
        max_iterations=10,
        min_iterations=2,
        turn_timeout=5.0,
        project_context_paths=[],
    )


@pytest.fixture
def stream_settings():
    return StreamSettings(chunk_size=50, chunk_delay=0)


@pytest.fixture
def context_builder(registry):
    return ContextWindowBuilder(
        ContextSettings(),
        registry,
        system_template="You are a test agent.\n{tool_block}{project_block}",
    )


@pytest.fixture
def make_controller(registry, store, breakers, agent_settings, context_builder):
    """Build a controller around a scripted backend."""

    def _make(script: list[Any], settings: AgentSettings | None = None) -> tuple[AgenticLoopController, ScriptedBackend]:
        backend = ScriptedBackend(script)
        controller = AgenticLoopController(
            backend=backend,
            registry=registry,
            store=store,
            context_builder=context_builder,
            settings=settings or agent_settings,
            breakers=breakers,
        )
        return controller, backend

    return _make


@pytest.fixture
def responder(stream_settings):
    return StreamingResponder(stream_settings)
