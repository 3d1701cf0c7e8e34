"""
Tool registry: a name-keyed dispatch table for tools.

Tools are registered once at startup and never change afterwards, so
lookups need no locking. Iteration order is registration order, which
keeps the generated catalogue (and therefore the system prompt)
reproducible.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from agentloop.errors import DuplicateToolError, ToolExecutionError, ValidationError
from agentloop.tools.base import Tool, ToolDescriptor, validate_against_descriptor

logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    Holds tools and executes them by name.

    The registry performs no retries and adds nothing to a tool's output;
    retry and backpressure policy belongs to the circuit breaker wrapping
    each call.

    Example:
        >>> registry = ToolRegistry()
        >>> registry.register(ReadFileTool.DESCRIPTOR, ReadFileTool(root))
        >>> await registry.execute("read_file", {"path": "README.md"}, caller_id="u1")
    """

    def __init__(self) -> None:
        self._entries: dict[str, tuple[ToolDescriptor, Tool]] = {}

    def register(self, descriptor: ToolDescriptor, tool: Tool) -> None:
        """
        Add a tool.

        Raises:
            DuplicateToolError: If a tool with this name already exists
        """
        if descriptor.name in self._entries:
            raise DuplicateToolError(descriptor.name)
        self._entries[descriptor.name] = (descriptor, tool)
        logger.debug(f"Registered tool '{descriptor.name}'")

    def get(self, name: str) -> tuple[ToolDescriptor, Tool] | None:
        return self._entries.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def names(self) -> list[str]:
        return list(self._entries)

    @property
    def descriptors(self) -> list[ToolDescriptor]:
        return [descriptor for descriptor, _ in self._entries.values()]

    def validate_params(self, name: str, params: dict[str, Any]) -> None:
        """
        Validate parameters against the descriptor, then the tool's own rules.

        A tool validator that raises anything other than ValidationError is
        reported as a ToolExecutionError.

        Raises:
            ToolExecutionError: If the tool is not registered, or its validator crashed
            ValidationError: Listing every missing or invalid parameter
        """
        entry = self._entries.get(name)
        if entry is None:
            raise ToolExecutionError(name, f"Tool '{name}' not found")
        descriptor, tool = entry
        validate_against_descriptor(descriptor, params)
        try:
            tool.validate_params(params)
        except ValidationError:
            raise
        except Exception as e:
            logger.warning(f"Validator of tool '{name}' raised {type(e).__name__}: {e}")
            raise ToolExecutionError(name, f"Tool '{name}' rejected its parameters: {e}", cause=e) from e

    async def execute(self, name: str, params: dict[str, Any], caller_id: str) -> str:
        """
        Look up, validate and run a tool.

        Returns:
            The tool's output, verbatim

        Raises:
            ToolExecutionError: Tool not found, or the tool raised
            ValidationError: Parameters failed validation
        """
        self.validate_params(name, params)
        _, tool = self._entries[name]
        try:
            return await tool.execute(params, caller_id)
        except (ToolExecutionError, ValidationError):
            raise
        except Exception as e:
            raise ToolExecutionError(name, f"Tool '{name}' execution failed: {e}", cause=e) from e

    def describe_all(self) -> str:
        """
        Render a human-readable catalogue of every tool and its parameters.

        Returns an empty string when nothing is registered, so prompt
        templates can drop the section entirely.
        """
        if not self._entries:
            return ""

        lines = ["You have access to the following tools:", ""]
        for descriptor, _ in self._entries.values():
            lines.append(f"- **{descriptor.name}**: {descriptor.description}")
            if descriptor.parameters:
                lines.append("  Parameters:")
                for param, spec in descriptor.parameters.items():
                    required = " (required)" if spec.required else ""
                    lines.append(f"    - {param} ({spec.type}): {spec.description}{required}")
        return "\n".join(lines)

    def provider_tools(self, supported: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """
        Project the catalogue into the OpenAI function-calling format LiteLLM expects.

        Args:
            supported: Tool names the provider handles. None means all tools.
        """
        allowed = set(supported) if supported is not None else None
        return [
            {
                "type": "function",
                "function": {
                    "name": descriptor.name,
                    "description": descriptor.description,
                    "parameters": descriptor.json_schema(),
                },
            }
            for descriptor, _ in self._entries.values()
            if allowed is None or descriptor.name in allowed
        ]
