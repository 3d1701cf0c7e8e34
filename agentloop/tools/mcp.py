"""
MCP-based tool source.

Spawns an MCP server as a subprocess, asks it which tools it offers, and
exposes each one as an engine Tool backed by the shared client session.
"""

from __future__ import annotations

from typing import Any

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client

from agentloop.config.logging import get_logger
from agentloop.errors import ToolExecutionError
from agentloop.tools.base import ParamSpec, Tool, ToolDescriptor
from agentloop.tools.registry import ToolRegistry

logger = get_logger(__name__)

_JSON_TYPES = {"string", "integer", "number", "boolean", "object", "array"}


class McpToolSource:
    """
    Connection to one MCP server over stdio.

    Use as an async context manager; the session lives until exit, so the
    source must outlive every tool it registered.

    Example:
        >>> async with McpToolSource("node", ["repo-server/dist/index.js"]) as source:
        ...     await source.register_all(registry)
    """

    def __init__(self, command: str, args: list[str] | None = None):
        self._command = command
        self._args = list(args or [])
        self._initialized = False
        self._session: ClientSession | None = None
        self._stdio_context = None
        self._session_context = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Start the MCP server subprocess and perform the handshake."""
        server_params = StdioServerParameters(command=self._command, args=self._args)

        self._stdio_context = stdio_client(server_params)
        read_stream, write_stream = await self._stdio_context.__aenter__()

        self._session_context = ClientSession(read_stream, write_stream)
        self._session = await self._session_context.__aenter__()
        await self._session.initialize()

        self._initialized = True
        logger.info(f"MCP server started: {self._command} {' '.join(self._args)}")

    async def shutdown(self) -> None:
        """Close the session and terminate the subprocess."""
        if not self._initialized:
            return

        if self._session_context is not None:
            await self._session_context.__aexit__(None, None, None)
            self._session_context = None
            self._session = None

        if self._stdio_context is not None:
            await self._stdio_context.__aexit__(None, None, None)
            self._stdio_context = None

        self._initialized = False

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, *_args):
        await self.shutdown()
        return None

    async def call(self, tool_name: str, arguments: dict[str, Any]) -> str:
        """Call a tool on the MCP server and join its text content blocks."""
        if not self._initialized:
            raise RuntimeError("MCP tool source not initialized")

        result = await self._session.call_tool(tool_name, arguments)

        text_parts = [content.text for content in result.content if hasattr(content, "text")]
        text = " ".join(text_parts)
        if getattr(result, "isError", False):
            raise ToolExecutionError(
                tool_name, f"Tool '{tool_name}' execution failed: {text or 'MCP server reported an error'}"
            )
        return text

    async def list_descriptors(self) -> list[ToolDescriptor]:
        """Convert the server's tool list into ToolDescriptors."""
        if not self._initialized:
            raise RuntimeError("MCP tool source not initialized")

        result = await self._session.list_tools()
        return [
            descriptor_from_schema(tool.name, tool.description or "", tool.inputSchema or {})
            for tool in result.tools
        ]

    async def register_all(self, registry: ToolRegistry) -> list[str]:
        """Register every server tool into ``registry``; returns the names added."""
        names = []
        for descriptor in await self.list_descriptors():
            registry.register(descriptor, McpTool(self, descriptor.name))
            names.append(descriptor.name)
        logger.info(f"Registered {len(names)} MCP tool(s): {names}")
        return names


class McpTool(Tool):
    """A single tool living on an MCP server."""

    def __init__(self, source: McpToolSource, name: str):
        self._source = source
        self._name = name

    async def execute(self, params: dict[str, Any], caller_id: str) -> str:
        return await self._source.call(self._name, params)


def descriptor_from_schema(name: str, description: str, input_schema: dict[str, Any]) -> ToolDescriptor:
    """Flatten a JSON Schema object into a ToolDescriptor."""
    required = set(input_schema.get("required", []))
    parameters = {}
    for param, schema in input_schema.get("properties", {}).items():
        param_type = schema.get("type", "string")
        if isinstance(param_type, list):
            param_type = next((t for t in param_type if t != "null"), "string")
        if param_type not in _JSON_TYPES:
            param_type = "string"
        parameters[param] = ParamSpec(
            type=param_type,
            required=param in required,
            description=schema.get("description", ""),
        )
    return ToolDescriptor(name=name, description=description, parameters=parameters)
