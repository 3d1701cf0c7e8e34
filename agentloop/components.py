"""
Component factory.

Centralises the construction of agent components from settings, so the
CLI, the HTTP server and tests wire things the same way.
"""

from __future__ import annotations

from agentloop.agent.context import ContextWindowBuilder, load_project_context
from agentloop.agent.controller import AgenticLoopController
from agentloop.agent.events import StreamingResponder
from agentloop.config.logging import get_logger
from agentloop.config.settings import Settings
from agentloop.llm.backend import LiteLLMBackend, ModelBackend
from agentloop.reliability.breaker import BreakerConfig, BreakerManager, get_breaker_manager
from agentloop.storage.base import ConversationStore
from agentloop.storage.json_store import JsonConversationStore
from agentloop.storage.memory import InMemoryConversationStore
from agentloop.tools.files import workspace_tools
from agentloop.tools.mcp import McpToolSource
from agentloop.tools.registry import ToolRegistry

logger = get_logger(__name__)


class AgentComponents:
    """
    Factory for building agent components from settings.

    Example::

        factory = AgentComponents(settings)
        async with factory.create_runtime() as runtime:
            responder = factory.create_responder()
            await runtime.controller.run_turn(conversation_id, "hello", responder)
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def create_registry(self) -> ToolRegistry:
        """Create a ToolRegistry holding the built-in workspace tools, if configured."""
        registry = ToolRegistry()
        root = self.settings.tools.workspace_root
        if root:
            for tool in workspace_tools(root):
                registry.register(tool.DESCRIPTOR, tool)
        return registry

    def create_mcp_source(self) -> McpToolSource | None:
        """Create an McpToolSource if an MCP server command is configured."""
        if not self.settings.tools.mcp_server_command:
            return None
        return McpToolSource(
            command=self.settings.tools.mcp_server_command,
            args=self.settings.tools.mcp_server_args,
        )

    def create_backend(self) -> LiteLLMBackend:
        return LiteLLMBackend(self.settings.llm)

    def create_store(self) -> ConversationStore:
        if self.settings.storage.backend == "json":
            return JsonConversationStore(self.settings.storage.data_path)
        return InMemoryConversationStore()

    def create_breaker_manager(self) -> BreakerManager:
        """The process-wide breaker map, configured from settings on first use."""
        return get_breaker_manager(BreakerConfig(**self.settings.breaker.model_dump()))

    def create_context_builder(self, registry: ToolRegistry) -> ContextWindowBuilder:
        project_context = load_project_context(self.settings.agent.project_context_paths)
        return ContextWindowBuilder.from_template_file(
            self.settings.context, registry, project_context=project_context
        )

    def create_controller(
        self,
        backend: ModelBackend,
        registry: ToolRegistry,
        store: ConversationStore,
        breakers: BreakerManager | None = None,
    ) -> AgenticLoopController:
        return AgenticLoopController(
            backend=backend,
            registry=registry,
            store=store,
            context_builder=self.create_context_builder(registry),
            settings=self.settings.agent,
            breakers=breakers or self.create_breaker_manager(),
        )

    def create_responder(self) -> StreamingResponder:
        return StreamingResponder(self.settings.stream)

    def create_runtime(self, backend: ModelBackend | None = None) -> AgentRuntime:
        return AgentRuntime(self, backend=backend)


class AgentRuntime:
    """
    A fully wired agent with managed resources.

    Entering the runtime initializes the store, starts the MCP server (if
    configured) and registers its tools, then builds the controller.
    Exiting releases all of it.
    """

    def __init__(self, components: AgentComponents, backend: ModelBackend | None = None):
        self.components = components
        self.registry = components.create_registry()
        self.store = components.create_store()
        self.backend = backend or components.create_backend()
        self.breakers = components.create_breaker_manager()
        self.mcp_source = components.create_mcp_source()
        self._controller: AgenticLoopController | None = None

    @property
    def controller(self) -> AgenticLoopController:
        if self._controller is None:
            raise RuntimeError("AgentRuntime not started; use 'async with'")
        return self._controller

    async def start(self) -> None:
        await self.store.initialize()
        if self.mcp_source is not None:
            await self.mcp_source.initialize()
            await self.mcp_source.register_all(self.registry)
        self._controller = self.components.create_controller(
            self.backend, self.registry, self.store, self.breakers
        )
        logger.info(
            f"Agent runtime ready: model={self.components.settings.llm.model}, "
            f"tools={self.registry.names}"
        )

    async def stop(self) -> None:
        if self.mcp_source is not None:
            await self.mcp_source.shutdown()
        await self.store.close()

    async def __aenter__(self) -> AgentRuntime:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
