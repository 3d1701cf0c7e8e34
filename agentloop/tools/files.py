"""
Built-in workspace file tools.

Two read-only tools confined to a single workspace root:

- list_files: one entry per line, directories suffixed with "/"
- read_file: file content as text

Paths are always relative to the root. Absolute paths and anything that
resolves outside the root are rejected at validation time, before the
tool runs.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from agentloop.errors import ValidationError
from agentloop.tools.base import ParamSpec, Tool, ToolDescriptor


class _WorkspaceTool(Tool):
    """Shared path handling for tools rooted in a workspace directory."""

    DESCRIPTOR: ToolDescriptor

    def __init__(self, root: str | Path):
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, relative: str) -> Path:
        candidate = (self._root / relative).resolve()
        if candidate != self._root and self._root not in candidate.parents:
            raise ValidationError(self.DESCRIPTOR.name, {"path": "path escapes the workspace root"})
        return candidate

    def validate_params(self, params: dict[str, Any]) -> None:
        path = params.get("path") or "."
        if Path(path).is_absolute():
            raise ValidationError(
                self.DESCRIPTOR.name,
                {"path": "absolute paths are not allowed; use a path relative to the workspace"},
            )
        self._resolve(path)


class ListFilesTool(_WorkspaceTool):
    DESCRIPTOR = ToolDescriptor(
        name="list_files",
        description="List files and directories in the workspace. Use path='.' for the root.",
        parameters={
            "path": ParamSpec(
                type="string",
                description="Directory path relative to the workspace root (default '.')",
            ),
        },
    )

    def __init__(self, root: str | Path, max_entries: int = 500):
        super().__init__(root)
        self._max_entries = max_entries

    async def execute(self, params: dict[str, Any], caller_id: str) -> str:
        requested = params.get("path") or "."
        directory = self._resolve(requested)
        if not await aiofiles.os.path.isdir(directory):
            raise NotADirectoryError(f"not a directory: {requested}")

        entries = []
        for name in sorted(await aiofiles.os.listdir(directory)):
            if name.startswith("."):
                continue
            relative = (directory / name).relative_to(self._root).as_posix()
            if await aiofiles.os.path.isdir(directory / name):
                relative += "/"
            entries.append(relative)

        if len(entries) > self._max_entries:
            hidden = len(entries) - self._max_entries
            entries = entries[: self._max_entries] + [f"... ({hidden} more entries)"]
        return "\n".join(entries) if entries else "(empty directory)"


class ReadFileTool(_WorkspaceTool):
    DESCRIPTOR = ToolDescriptor(
        name="read_file",
        description="Read the content of a text file in the workspace.",
        parameters={
            "path": ParamSpec(
                type="string",
                required=True,
                description="File path relative to the workspace root, e.g. 'README.md'",
            ),
        },
    )

    def __init__(self, root: str | Path, max_bytes: int = 100_000):
        super().__init__(root)
        self._max_bytes = max_bytes

    async def execute(self, params: dict[str, Any], caller_id: str) -> str:
        path = self._resolve(params["path"])
        if not await aiofiles.os.path.isfile(path):
            raise FileNotFoundError(f"file not found: {params['path']}")

        async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
            content = await f.read(self._max_bytes + 1)

        if len(content) > self._max_bytes:
            content = content[: self._max_bytes] + "\n... (truncated)"
        return content


def workspace_tools(root: str | Path) -> list[_WorkspaceTool]:
    """Instantiate every built-in workspace tool for ``root``."""
    return [ListFilesTool(root), ReadFileTool(root)]
