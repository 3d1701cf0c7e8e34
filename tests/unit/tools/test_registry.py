"""
Unit tests for ToolRegistry and the tool-result format.

Tests cover:
- Registration, duplicate rejection and lookup
- Parameter validation against descriptors (every problem reported)
- Execution, not-found and failure wrapping
- Catalogue rendering and provider tool projection
- Success/failure message formatting
"""

from typing import Any

import pytest

from agentloop.errors import DuplicateToolError, ToolExecutionError, ValidationError
from agentloop.tools.base import (
    ParamSpec,
    Tool,
    ToolDescriptor,
    ToolResult,
    check_param_type,
    format_tool_result,
    is_failed_tool_result,
    split_tool_result,
)
from agentloop.tools.registry import ToolRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class EchoTool(Tool):
    async def execute(self, params: dict[str, Any], caller_id: str) -> str:
        return f"{caller_id}:{params.get('text', '')}"


class ExplodingTool(Tool):
    async def execute(self, params: dict[str, Any], caller_id: str) -> str:
        raise RuntimeError("disk on fire")


class PickyTool(Tool):
    def validate_params(self, params: dict[str, Any]) -> None:
        if params.get("count", 0) < 0:
            raise ValidationError("picky", {"count": "must not be negative"})

    async def execute(self, params: dict[str, Any], caller_id: str) -> str:
        return "fine"


ECHO = ToolDescriptor(
    name="echo",
    description="Echo text back",
    parameters={
        "text": ParamSpec(type="string", required=True, description="Text to echo"),
        "times": ParamSpec(type="integer", description="Repeat count"),
    },
)


@pytest.fixture
def registry():
    registry = ToolRegistry()
    registry.register(ECHO, EchoTool())
    return registry


# ---------------------------------------------------------------------------
# Test Classes
# ---------------------------------------------------------------------------

class TestRegistration:
    """Adding and looking up tools."""

    def test_register_and_get(self, registry):
        descriptor, tool = registry.get("echo")
        assert descriptor is ECHO
        assert isinstance(tool, EchoTool)
        assert "echo" in registry
        assert len(registry) == 1

    def test_duplicate_rejected(self, registry):
        with pytest.raises(DuplicateToolError, match="Tool 'echo' is already registered"):
            registry.register(ECHO, EchoTool())

    def test_get_unknown(self, registry):
        assert registry.get("nope") is None
        assert "nope" not in registry

    def test_names_in_registration_order(self, registry):
        registry.register(ToolDescriptor(name="zeta", description="z"), EchoTool())
        registry.register(ToolDescriptor(name="alpha", description="a"), EchoTool())
        assert registry.names == ["echo", "zeta", "alpha"]
        assert [d.name for d in registry.descriptors] == ["echo", "zeta", "alpha"]


class TestValidation:
    """Descriptor-level and tool-level parameter checks."""

    def test_valid_params(self, registry):
        registry.validate_params("echo", {"text": "hi", "times": 2})

    def test_extra_params_tolerated(self, registry):
        registry.validate_params("echo", {"text": "hi", "verbose": True})

    def test_reports_every_problem(self, registry):
        with pytest.raises(ValidationError) as exc_info:
            registry.validate_params("echo", {"times": "twice"})

        error = exc_info.value
        assert error.tool_name == "echo"
        assert error.problems == {
            "text": "missing required parameter",
            "times": "expected integer, got str",
        }
        assert str(error).startswith("Invalid parameters - ")

    def test_none_counts_as_missing(self, registry):
        with pytest.raises(ValidationError, match="text: missing required parameter"):
            registry.validate_params("echo", {"text": None})

    def test_unknown_tool(self, registry):
        with pytest.raises(ToolExecutionError, match="Tool 'nope' not found"):
            registry.validate_params("nope", {})

    def test_tool_specific_rules(self):
        registry = ToolRegistry()
        registry.register(
            ToolDescriptor(name="picky", description="", parameters={"count": ParamSpec(type="integer")}),
            PickyTool(),
        )
        with pytest.raises(ValidationError, match="count: must not be negative"):
            registry.validate_params("picky", {"count": -1})

    @pytest.mark.asyncio
    async def test_crashing_validator_becomes_tool_error(self):
        registry = ToolRegistry()
        registry.register(
            ToolDescriptor(name="picky", description="", parameters={"count": ParamSpec(type="integer")}),
            PickyTool(),
        )
        # None passes the schema check for an optional parameter, then breaks the comparison
        with pytest.raises(ToolExecutionError, match="Tool 'picky' rejected its parameters") as exc_info:
            registry.validate_params("picky", {"count": None})
        assert isinstance(exc_info.value.cause, TypeError)

        with pytest.raises(ToolExecutionError):
            await registry.execute("picky", {"count": None}, caller_id="u1")

    @pytest.mark.parametrize(
        "value,expected,ok",
        [
            ("x", "string", True),
            (1, "string", False),
            (True, "integer", False),
            (3, "integer", True),
            (3, "number", True),
            (2.5, "number", True),
            (False, "boolean", True),
            ({}, "object", True),
            ([], "array", True),
            ("[]", "array", False),
        ],
    )
    def test_check_param_type(self, value, expected, ok):
        assert check_param_type(value, expected) is ok


class TestExecution:
    """Running tools through the registry."""

    @pytest.mark.asyncio
    async def test_execute_returns_output_verbatim(self, registry):
        assert await registry.execute("echo", {"text": "hello"}, caller_id="u1") == "u1:hello"

    @pytest.mark.asyncio
    async def test_execute_validates_first(self, registry):
        with pytest.raises(ValidationError):
            await registry.execute("echo", {}, caller_id="u1")

    @pytest.mark.asyncio
    async def test_execute_unknown(self, registry):
        with pytest.raises(ToolExecutionError, match="Tool 'ghost' not found"):
            await registry.execute("ghost", {}, caller_id="u1")

    @pytest.mark.asyncio
    async def test_tool_exception_wrapped(self):
        registry = ToolRegistry()
        registry.register(ToolDescriptor(name="boom", description=""), ExplodingTool())

        with pytest.raises(ToolExecutionError) as exc_info:
            await registry.execute("boom", {}, caller_id="u1")

        assert str(exc_info.value) == "Tool 'boom' execution failed: disk on fire"
        assert isinstance(exc_info.value.cause, RuntimeError)


class TestCatalogue:
    """describe_all and provider_tools."""

    def test_describe_all(self, registry):
        catalogue = registry.describe_all()
        assert catalogue.startswith("You have access to the following tools:")
        assert "- **echo**: Echo text back" in catalogue
        assert "    - text (string): Text to echo (required)" in catalogue
        assert "    - times (integer): Repeat count" in catalogue

    def test_describe_all_empty(self):
        assert ToolRegistry().describe_all() == ""

    def test_describe_all_is_stable(self, registry):
        assert registry.describe_all() == registry.describe_all()

    def test_provider_tools(self, registry):
        (tool,) = registry.provider_tools()
        assert tool == {
            "type": "function",
            "function": {
                "name": "echo",
                "description": "Echo text back",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "text": {"type": "string", "description": "Text to echo"},
                        "times": {"type": "integer", "description": "Repeat count"},
                    },
                    "required": ["text"],
                },
            },
        }

    def test_provider_tools_filtered(self, registry):
        registry.register(ToolDescriptor(name="other", description=""), EchoTool())
        assert [t["function"]["name"] for t in registry.provider_tools(["other"])] == ["other"]
        assert registry.provider_tools([]) == []


class TestResultFormat:
    """Persisted tool-result message format."""

    def test_success_format(self):
        assert format_tool_result("read_file", "content") == "Tool 'read_file' result:\ncontent"

    def test_failure_format(self):
        message = format_tool_result("read_file", "no such file", success=False)
        assert message == "Error: Tool 'read_file' failed: no such file"
        assert is_failed_tool_result(message)

    def test_split_round_trip(self):
        assert split_tool_result("Tool 'a' result:\nbody") == ("a", True, "body")
        assert split_tool_result("Error: Tool 'a' failed: bad") == ("a", False, "bad")
        assert split_tool_result("plain text") == (None, True, "plain text")

    def test_tool_result_to_message(self):
        result = ToolResult(tool_name="x", success=False, output="nope")
        assert result.to_message() == "Error: Tool 'x' failed: nope"
