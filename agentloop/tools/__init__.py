"""
Tool Layer.

Tool contract, descriptors, the name-keyed registry, built-in workspace
file tools and an MCP tool source.
"""

from agentloop.tools.base import (
    ParamSpec,
    Tool,
    ToolCall,
    ToolDescriptor,
    ToolResult,
    format_tool_result,
    is_failed_tool_result,
)
from agentloop.tools.registry import ToolRegistry

__all__ = [
    "ParamSpec",
    "Tool",
    "ToolCall",
    "ToolDescriptor",
    "ToolRegistry",
    "ToolResult",
    "format_tool_result",
    "is_failed_tool_result",
]
