"""
Tool call extraction from model responses.

Models request tools in one of two ways:

1. Native structured calls, returned by the backend alongside the text.
2. A textual convention embedded in the reply, for models without native
   tool support:

       <tool_call>{"tool": "read_file", "params": {"path": "README.md"}}</tool_call>

   fenced ```tool_call / ```json blocks, or a bare JSON object with a
   ``tool`` (or ``name``/``function`` plus ``arguments``) key.

The result is a tagged union (NativeCalls | ParsedFromText) so callers can
log where the calls came from, but the controller treats both the same.
Malformed textual calls never raise: the parse yields no calls and the
original text, and the reply is handled as a plain answer.
"""

from __future__ import annotations

import json
import re
from typing import Annotated, Any, Iterable, Literal, Union

from pydantic import BaseModel, Field

from agentloop.config.logging import get_logger
from agentloop.llm.models import ModelResponse
from agentloop.tools.base import ToolCall

logger = get_logger(__name__)

_TAGGED_RE = re.compile(r"<tool_call>(.*?)</tool_call>", re.DOTALL)
_FENCED_RE = re.compile(r"```(tool_call|json)[ \t]*\n(.*?)```", re.DOTALL)
_BLANK_LINES_RE = re.compile(r"\n{3,}")

_NAME_KEYS = ("tool", "name", "function")
_ARGUMENT_KEYS = ("params", "arguments", "parameters")


class NativeCalls(BaseModel):
    """Calls delivered by the backend as structured data."""

    kind: Literal["native"] = "native"
    calls: list[ToolCall] = Field(default_factory=list)
    text: str = ""


class ParsedFromText(BaseModel):
    """Calls found in the reply text; ``text`` has the call blocks removed."""

    kind: Literal["text"] = "text"
    calls: list[ToolCall] = Field(default_factory=list)
    text: str = ""


ParsedResponse = Annotated[Union[NativeCalls, ParsedFromText], Field(discriminator="kind")]


class MalformedToolCall(ValueError):
    """Internal signal: a block looked like a tool call but could not be used."""


class ToolCallParser:
    """
    Extract tool calls from a ModelResponse.

    Args:
        known_tools: Names of registered tools. Textual calls naming any
            other tool make the whole parse fall back to plain text. None
            disables the check.
    """

    def __init__(self, known_tools: Iterable[str] | None = None):
        self._known_tools = set(known_tools) if known_tools is not None else None

    def parse(self, response: ModelResponse) -> NativeCalls | ParsedFromText:
        if response.tool_calls:
            return NativeCalls(calls=list(response.tool_calls), text=response.text.strip())
        return self.parse_text(response.text)

    def parse_text(self, text: str) -> ParsedFromText:
        """
        Find embedded tool calls in ``text``.

        All-or-nothing: if any block that claims to be a tool call is
        malformed, no calls are returned and the text is left untouched.
        """
        if not text:
            return ParsedFromText(text="")

        try:
            found = self._scan(text)
        except MalformedToolCall as e:
            logger.warning(f"Ignoring malformed tool call in model text: {e}")
            return ParsedFromText(text=text)

        if not found:
            return ParsedFromText(text=text.strip())

        found.sort(key=lambda item: item[0])
        cleaned_parts: list[str] = []
        cursor = 0
        for start, end, _ in found:
            cleaned_parts.append(text[cursor:start])
            cursor = end
        cleaned_parts.append(text[cursor:])
        cleaned = _BLANK_LINES_RE.sub("\n\n", "".join(cleaned_parts)).strip()

        calls = [call for _, _, call in found]
        logger.debug(f"Parsed {len(calls)} tool call(s) from text: {[c.name for c in calls]}")
        return ParsedFromText(calls=calls, text=cleaned)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _scan(self, text: str) -> list[tuple[int, int, ToolCall]]:
        found: list[tuple[int, int, ToolCall]] = []
        taken: list[tuple[int, int]] = []

        for match in _TAGGED_RE.finditer(text):
            payload = _decode_json(match.group(1).strip())
            found.append((match.start(), match.end(), self._to_call(payload)))
            taken.append(match.span())

        if "<tool_call>" in _remove_spans(text, taken):
            raise MalformedToolCall("unterminated <tool_call> block")

        for match in _FENCED_RE.finditer(text):
            if _overlaps(match.span(), taken):
                continue
            fence_kind, body = match.group(1), match.group(2).strip()
            if fence_kind == "tool_call":
                payload = _decode_json(body)
            else:
                # A json fence may be ordinary example output, not a call
                try:
                    payload = json.loads(body)
                except json.JSONDecodeError:
                    continue
                if not _looks_like_call(payload):
                    continue
            found.append((match.start(), match.end(), self._to_call(payload)))
            taken.append(match.span())

        decoder = json.JSONDecoder()
        position = text.find("{")
        while position != -1:
            span_end = _span_containing(position, taken)
            if span_end is not None:
                position = text.find("{", span_end)
                continue
            try:
                payload, end = decoder.raw_decode(text, position)
            except json.JSONDecodeError:
                position = text.find("{", position + 1)
                continue
            if _looks_like_call(payload):
                found.append((position, end, self._to_call(payload)))
                taken.append((position, end))
            position = text.find("{", end)

        return found

    def _to_call(self, payload: Any) -> ToolCall:
        if not _looks_like_call(payload):
            raise MalformedToolCall(f"not a tool call object: {str(payload)[:80]}")

        name, arguments = _extract_name_and_arguments(payload)
        if self._known_tools is not None and name not in self._known_tools:
            raise MalformedToolCall(f"unknown tool '{name}'")
        # Textual calls never carry a native id; their results are replayed as text
        return ToolCall(name=name, arguments=arguments)


def _decode_json(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedToolCall(f"invalid JSON: {e}") from e


def _looks_like_call(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    if isinstance(payload.get("tool"), str):
        return True
    if isinstance(payload.get("function"), dict):
        return isinstance(payload["function"].get("name"), str)
    has_name = isinstance(payload.get("name"), str) or isinstance(payload.get("function"), str)
    return has_name and any(key in payload for key in _ARGUMENT_KEYS)


def _extract_name_and_arguments(payload: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    source = payload
    if isinstance(payload.get("function"), dict):
        source = payload["function"]
        name = source["name"]
    else:
        name = next(payload[key] for key in _NAME_KEYS if isinstance(payload.get(key), str))

    raw_arguments: Any = {}
    for key in _ARGUMENT_KEYS:
        if key in source:
            raw_arguments = source[key]
            break

    if raw_arguments is None:
        raw_arguments = {}
    if isinstance(raw_arguments, str):
        raw_arguments = _decode_json(raw_arguments) if raw_arguments.strip() else {}
    if not isinstance(raw_arguments, dict):
        raise MalformedToolCall(f"arguments for '{name}' are not an object")
    return name, raw_arguments


def _overlaps(span: tuple[int, int], taken: list[tuple[int, int]]) -> bool:
    start, end = span
    return any(start < t_end and t_start < end for t_start, t_end in taken)


def _span_containing(position: int, taken: list[tuple[int, int]]) -> int | None:
    for start, end in taken:
        if start <= position < end:
            return end
    return None


def _remove_spans(text: str, spans: list[tuple[int, int]]) -> str:
    parts = []
    cursor = 0
    for start, end in sorted(spans):
        parts.append(text[cursor:start])
        cursor = end
    parts.append(text[cursor:])
    return "".join(parts)
