"""
Base classes for tools.

A tool is anything the model may invoke mid-conversation: a file reader,
a repository query, a command runner, a tool exposed by an MCP server.
The engine only knows the two-method Tool contract and the immutable
ToolDescriptor that describes its parameters.

This module also owns the persisted tool-result format. The loop decides
whether a tool failed by looking at the message prefix, so the two
formats below must stay distinguishable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from agentloop.errors import ValidationError

ParamType = Literal["string", "integer", "number", "boolean", "object", "array"]

TOOL_SUCCESS_PREFIX = "Tool '"
TOOL_FAILURE_PREFIX = "Error: Tool '"


class ParamSpec(BaseModel):
    """Schema for a single tool parameter."""

    type: ParamType = Field(default="string", description="JSON type of the parameter")
    required: bool = Field(default=False, description="Whether the parameter must be present")
    description: str = Field(default="", description="Shown to the model in the catalogue")

    model_config = ConfigDict(frozen=True)


class ToolDescriptor(BaseModel):
    """
    Immutable description of a registered tool.

    Example:
        >>> ToolDescriptor(
        ...     name="read_file",
        ...     description="Read a file from the workspace",
        ...     parameters={"path": ParamSpec(type="string", required=True,
        ...                                   description="Relative file path")},
        ... )
    """

    name: str = Field(min_length=1, description="Unique tool name used in tool calls")
    description: str = Field(description="What the tool does and when to use it")
    parameters: dict[str, ParamSpec] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def required_params(self) -> list[str]:
        return [name for name, spec in self.parameters.items() if spec.required]

    def json_schema(self) -> dict[str, Any]:
        """Render the parameters as a JSON Schema object (OpenAI function format)."""
        return {
            "type": "object",
            "properties": {
                name: {"type": spec.type, "description": spec.description}
                for name, spec in self.parameters.items()
            },
            "required": self.required_params,
        }


class ToolCall(BaseModel):
    """
    A single tool invocation requested by the model.

    ``arguments_error`` is set when the backend delivered arguments that
    could not be decoded; the call is then reported back to the model as
    invalid instead of being executed.
    """

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    id: str | None = None
    arguments_error: str | None = None


class ToolResult(BaseModel):
    """Outcome of one tool execution."""

    tool_name: str
    success: bool
    output: str = Field(description="Result text on success, error description on failure")
    duration: float = Field(default=0.0, ge=0, description="Wall-clock seconds")

    def to_message(self) -> str:
        return format_tool_result(self.tool_name, self.output, success=self.success)


class Tool(ABC):
    """
    Abstract base class for tools.

    Concrete tools do their own typed extraction of ``params``; the
    default validate_params is a no-op because the registry has already
    checked presence and JSON types against the descriptor.
    """

    def validate_params(self, params: dict[str, Any]) -> None:
        """
        Tool-specific validation beyond the descriptor schema.

        Raises:
            ValidationError: If the parameters are unusable
        """
        return None

    @abstractmethod
    async def execute(self, params: dict[str, Any], caller_id: str) -> str:
        """
        Run the tool.

        Args:
            params: Parameters supplied by the model (already validated)
            caller_id: Identity of the user on whose behalf the tool runs

        Returns:
            Result text, passed back to the model verbatim

        Raises:
            Exception: Any failure; the registry wraps it in ToolExecutionError
        """


def check_param_type(value: Any, expected: ParamType) -> bool:
    """Return True if ``value`` is compatible with the JSON type ``expected``."""
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "object":
        return isinstance(value, dict)
    if expected == "array":
        return isinstance(value, (list, tuple))
    return False


def validate_against_descriptor(descriptor: ToolDescriptor, params: dict[str, Any]) -> None:
    """
    Check ``params`` against the descriptor schema.

    Every problem is collected before raising. Unknown extra parameters
    are tolerated; models often add harmless keys.

    Raises:
        ValidationError: Listing each missing or mistyped parameter
    """
    problems: dict[str, str] = {}
    for name, spec in descriptor.parameters.items():
        if name not in params or params[name] is None:
            if spec.required:
                problems[name] = "missing required parameter"
            continue
        if not check_param_type(params[name], spec.type):
            problems[name] = f"expected {spec.type}, got {type(params[name]).__name__}"
    if problems:
        raise ValidationError(descriptor.name, problems)


def format_tool_result(tool_name: str, output: str, success: bool = True) -> str:
    """Format a tool outcome as the content of a ``tool`` message."""
    if success:
        return f"{TOOL_SUCCESS_PREFIX}{tool_name}' result:\n{output}"
    return f"{TOOL_FAILURE_PREFIX}{tool_name}' failed: {output}"


def is_failed_tool_result(content: str) -> bool:
    return content.startswith(TOOL_FAILURE_PREFIX)


def split_tool_result(content: str) -> tuple[str | None, bool, str]:
    """
    Reverse format_tool_result.

    Returns:
        (tool_name, success, body). tool_name is None when ``content`` is
        not in the persisted format, in which case body is the content.
    """
    if content.startswith(TOOL_FAILURE_PREFIX):
        rest = content[len(TOOL_FAILURE_PREFIX):]
        name, sep, body = rest.partition("' failed: ")
        if sep:
            return name, False, body
    elif content.startswith(TOOL_SUCCESS_PREFIX):
        rest = content[len(TOOL_SUCCESS_PREFIX):]
        name, sep, body = rest.partition("' result:\n")
        if sep:
            return name, True, body
    return None, True, content
