"""
Context window construction.

Every model call gets a freshly built, bounded message list:

    [system prompt (+ tool catalogue, + project context)]
    [Working Context: {...}]          only when the conversation has one
    [...trimmed transcript...]
    [...messages produced earlier in this turn...]

Trimming rules for the stored transcript:
- only the last ``max_messages`` messages are considered
- thinking messages older than the last ``thinking_keep`` are dropped,
  status messages older than the last ``status_keep`` likewise
- error messages are never shown to the model
- tool results are compressed to a one-line summary once they are
  long enough to matter
- narration roles (thinking/status/plan) become assistant messages

This module also holds the working-context helpers: extracting entities
from tool calls and final answers, and annotating the newest user
message when it refers to one of them ("that repo", "this file").
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import tiktoken

from agentloop.config.logging import get_logger
from agentloop.config.settings import ContextSettings
from agentloop.llm.models import ChatMessage
from agentloop.storage.models import NARRATION_ROLES, Message
from agentloop.tools.base import format_tool_result, split_tool_result
from agentloop.tools.registry import ToolRegistry

logger = get_logger(__name__)

DEFAULT_SYSTEM_TEMPLATE_PATH = Path(__file__).parent.parent / "prompts" / "system.txt"

WORKING_CONTEXT_PREFIX = "Working Context: "

# Exact summaries produced by compress_tool_output; recognising them keeps compression idempotent
_COMPRESSED_RE = re.compile(
    r"Found \d+ repositories(?:: [^\n]*)?"
    r"|Found \d+ files in \d+ directories(?:\. Key files: [^\n]*)?"
    r"|Read \d+ lines\. Shows file structure and implementation details\."
    r"|Command output \(\d+ chars\): (?s:.{0,200})\.\.\."
    r"|Output \(\d+ lines, \d+ chars\) - content available in full context"
)
_NUMBERED_REPO_RE = re.compile(r"^\s*\d+\.\s+(.+?)(?:\s+\([^()]*\))?\s*$")

_KEY_FILES = ("README.md", "main.go", "main.py", "Makefile", "package.json", "pyproject.toml")
_BACKQUOTED_RE = re.compile(r"`([^`\s]+)`")
_FILE_LIKE_RE = re.compile(r"^[\w.\-/]*\w\.[A-Za-z0-9]{1,8}$")


# ---------------------------------------------------------------------------
# Tool output compression
# ---------------------------------------------------------------------------

def compress_tool_output(tool_name: str, output: str, threshold: int = 200) -> str:
    """
    Summarize a tool's raw output for inclusion in later context windows.

    Short outputs are returned unchanged. Applying the function to its own
    result returns that result unchanged.

    Examples:
        list_repos  → "Found 38 repositories: a, b, c (and 35 more)"
        list_files  → "Found 12 files in 3 directories. Key files: README.md"
        read_file   → "Read 240 lines. Shows file structure and implementation details."
    """
    if len(output) < threshold or _COMPRESSED_RE.fullmatch(output):
        return output

    lines = output.split("\n")

    if tool_name == "list_repos":
        # Either "Repository:/Name:" blocks or a "Found N repositories:" header over numbered lines
        repo_count = output.count("Repository:")
        if repo_count > 0:
            names = [line.split("Name:", 1)[1].strip() for line in lines if "Name:" in line]
        else:
            names = [m.group(1) for m in map(_NUMBERED_REPO_RE.match, lines) if m]
            repo_count = len(names)
        if repo_count > 0:
            summary = f"Found {repo_count} repositories"
            names = names[:3]
            if names:
                summary += ": " + ", ".join(names)
                if repo_count > len(names):
                    summary += f" (and {repo_count - len(names)} more)"
            return summary

    elif tool_name == "list_files":
        entries = [line.strip() for line in lines if line.strip()]
        dir_count = sum(1 for entry in entries if entry.endswith("/"))
        summary = f"Found {len(entries) - dir_count} files in {dir_count} directories"
        key_files = [entry for entry in entries if entry.endswith(_KEY_FILES)]
        if key_files:
            summary += ". Key files: " + ", ".join(key_files)
        return summary

    elif tool_name == "read_file":
        if len(lines) > 50:
            return f"Read {len(lines)} lines. Shows file structure and implementation details."

    elif tool_name == "run_command":
        if len(output) > 500:
            return f"Command output ({len(output)} chars): {output[:200]}..."

    return f"Output ({len(lines)} lines, {len(output)} chars) - content available in full context"


def compress_tool_message(content: str, tool_name: str | None = None, threshold: int = 200) -> str:
    """
    Compress a persisted tool message, keeping its success envelope.

    Failed tool messages are returned whole: the error detail is what the
    model needs to correct its next call.

    Idempotent: compress_tool_message(compress_tool_message(x)) == compress_tool_message(x).
    """
    name, success, body = split_tool_result(content)
    if name is None:
        return compress_tool_output(tool_name or "", content, threshold)
    if not success:
        return content

    compressed = compress_tool_output(name, body, threshold)
    if compressed == body:
        return content
    return format_tool_result(name, compressed, success=success)


# ---------------------------------------------------------------------------
# Working context
# ---------------------------------------------------------------------------

def extract_context_from_tool_call(
    tool_name: str, params: dict[str, Any], result: str
) -> dict[str, Any]:
    """Entities a successful tool call tells us the conversation is now about."""
    updates: dict[str, Any] = {}

    if tool_name in ("get_repo", "list_repos"):
        if "repo_id" in params:
            updates["current_repo_id"] = params["repo_id"]
        for line in result.split("\n"):
            if "Name:" in line:
                updates["current_repo_name"] = line.split("Name:", 1)[1].strip()
                break

    elif tool_name in ("read_file", "write_file", "edit_file"):
        file_path = params.get("file_path", params.get("path"))
        if isinstance(file_path, str) and file_path:
            updates["current_file_path"] = file_path
            slash = file_path.rfind("/")
            if slash > 0:
                updates["current_directory"] = file_path[:slash]

    elif tool_name == "list_files":
        if "path" in params:
            updates["current_directory"] = params["path"]

    return updates


def extract_context_from_answer(text: str) -> dict[str, Any]:
    """
    Entities a final answer singles out.

    Only an unambiguous reference counts: exactly one distinct back-quoted
    file path becomes ``current_file_path``.
    """
    paths = {match for match in _BACKQUOTED_RE.findall(text) if _FILE_LIKE_RE.match(match)}
    if len(paths) == 1:
        return {"current_file_path": paths.pop()}
    return {}


def resolve_contextual_references(message: str, working_context: dict[str, Any]) -> str:
    """Append a ``[Context: ...]`` hint when the message points at a known entity."""
    lowered = message.lower()
    hints = []

    if any(phrase in lowered for phrase in ("that repo", "the repo", "this repo")):
        if "current_repo_name" in working_context:
            hints.append(f"Repository context: {working_context['current_repo_name']}")
        if "current_repo_id" in working_context:
            hints.append(f"Repository ID: {working_context['current_repo_id']}")

    if any(phrase in lowered for phrase in ("that file", "the file", "this file")):
        if "current_file_path" in working_context:
            hints.append(f"Current file: {working_context['current_file_path']}")

    if any(
        phrase in lowered
        for phrase in ("that directory", "this directory", "the directory", "current directory")
    ):
        if "current_directory" in working_context:
            hints.append(f"Current directory: {working_context['current_directory']}")

    if hints:
        return message + "\n\n[Context: " + ", ".join(hints) + "]"
    return message


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

def load_project_context(paths: list[Path]) -> str | None:
    """Return the content of the first existing project-context file, if any."""
    for path in paths:
        candidate = Path(path)
        if candidate.is_file():
            try:
                content = candidate.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Could not read project context {candidate}: {e}")
                continue
            logger.info(f"Loaded project context from {candidate}")
            return content
    return None


class ContextWindowBuilder:
    """
    Builds the bounded message list for each model call.

    Args:
        settings: Trimming, compression and token budget knobs
        registry: Source of the tool catalogue rendered into the system prompt
        system_template: Prompt template with ``{tool_block}`` and
            ``{project_block}`` placeholders
        project_context: Static project document appended as "## Project Context"
    """

    def __init__(
        self,
        settings: ContextSettings,
        registry: ToolRegistry,
        system_template: str,
        project_context: str | None = None,
    ):
        self._settings = settings
        self._registry = registry
        self._system_template = system_template
        self._project_context = project_context
        self._encoder: tiktoken.Encoding | None = None

    @classmethod
    def from_template_file(
        cls,
        settings: ContextSettings,
        registry: ToolRegistry,
        template_path: Path = DEFAULT_SYSTEM_TEMPLATE_PATH,
        project_context: str | None = None,
    ) -> ContextWindowBuilder:
        return cls(
            settings,
            registry,
            system_template=template_path.read_text(encoding="utf-8"),
            project_context=project_context,
        )

    def build_system_prompt(self) -> str:
        """
        Render the system prompt.

        Empty sections are omitted entirely rather than left as bare headers.
        """
        catalogue = self._registry.describe_all()
        tool_block = f"## Tools\n{catalogue}\n" if catalogue else ""
        project_block = f"\n## Project Context\n{self._project_context}\n" if self._project_context else ""
        return (
            self._system_template
            .replace("{tool_block}", tool_block)
            .replace("{project_block}", project_block)
            .rstrip()
        )

    def build(
        self,
        history: list[Message],
        working_context: dict[str, Any] | None = None,
        turn_messages: list[ChatMessage] | None = None,
    ) -> list[ChatMessage]:
        """
        Assemble the context for one model call.

        Args:
            history: The stored transcript, oldest first
            working_context: The conversation's working context snapshot
            turn_messages: Messages produced so far in the running turn
                (tool calls, tool results, notes); appended verbatim

        Returns:
            Messages ready for ModelBackend.chat_with_tools()
        """
        working_context = working_context or {}
        head = [ChatMessage(role="system", content=self.build_system_prompt())]
        if working_context:
            head.append(ChatMessage(
                role="system",
                content=WORKING_CONTEXT_PREFIX + json.dumps(working_context, sort_keys=True, default=str),
            ))

        body = self._trim_history(history, working_context)
        body = self._fit_token_budget(head, body, turn_messages or [])
        return head + body + list(turn_messages or [])

    def _trim_history(
        self, history: list[Message], working_context: dict[str, Any]
    ) -> list[ChatMessage]:
        total = len(history)
        start = max(0, total - self._settings.max_messages)

        last_user_index = None
        for index in range(total - 1, start - 1, -1):
            if history[index].role == "user":
                last_user_index = index
                break

        result: list[ChatMessage] = []
        for index in range(start, total):
            message = history[index]
            if message.role == "thinking" and index < total - self._settings.thinking_keep:
                continue
            if message.role == "status" and index < total - self._settings.status_keep:
                continue
            if message.role == "error":
                continue

            if message.role == "tool":
                result.append(ChatMessage(
                    role="tool",
                    name=message.tool_name,
                    content=compress_tool_message(
                        message.content, message.tool_name, self._settings.compress_threshold
                    ),
                ))
            elif message.role in NARRATION_ROLES:
                result.append(ChatMessage(role="assistant", content=message.content))
            elif message.role == "user" and index == last_user_index:
                result.append(ChatMessage(
                    role="user",
                    content=resolve_contextual_references(message.content, working_context),
                ))
            else:
                result.append(ChatMessage(role=message.role, content=message.content))
        return result

    def _fit_token_budget(
        self,
        head: list[ChatMessage],
        body: list[ChatMessage],
        turn_messages: list[ChatMessage],
    ) -> list[ChatMessage]:
        budget = self._settings.max_context_tokens
        if budget is None:
            return body

        fixed = sum(self._count_tokens(m.content) for m in head + turn_messages)
        sizes = [self._count_tokens(m.content) for m in body]
        # Drop oldest history first, always keep the newest message
        while len(body) > 1 and fixed + sum(sizes) > budget:
            body = body[1:]
            sizes = sizes[1:]
        if fixed + sum(sizes) > budget:
            logger.warning(f"Context exceeds token budget ({fixed + sum(sizes)} > {budget})")
        return body

    def _count_tokens(self, text: str) -> int:
        if self._encoder is None:
            self._encoder = tiktoken.get_encoding(self._settings.encoding_name)
        return len(self._encoder.encode(text))
