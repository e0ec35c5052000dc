"""Tool descriptors consulted by the permission engine.

The loop treats the tool registry as opaque; only the permission
engine probes tools, and only through these optional capabilities:

- ``is_read_only(input) -> bool``: self-reported read-only status
- ``path_of(input) -> str | None``: file path a file-touching tool acts on
- ``pattern_of(input) -> str | None``: rule pattern (e.g. a bash command)
- ``bulk_edit``: allow-always flips the global mode instead of adding a rule
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Tool(Protocol):
    name: str

    def is_read_only(self, tool_input: Mapping[str, Any]) -> bool: ...


@dataclass(frozen=True)
class ToolSpec:
    """Declarative tool descriptor.

    ``path_key`` / ``pattern_key`` name the input fields that carry the
    file path or the rule pattern.
    """
    name: str
    read_only: bool = False
    path_key: str | None = None
    pattern_key: str | None = None
    bulk_edit: bool = False

    def is_read_only(self, tool_input: Mapping[str, Any]) -> bool:
        return self.read_only

    def path_of(self, tool_input: Mapping[str, Any]) -> str | None:
        if self.path_key is None:
            return None
        value = tool_input.get(self.path_key)
        return value if isinstance(value, str) and value else None

    def pattern_of(self, tool_input: Mapping[str, Any]) -> str | None:
        if self.pattern_key is None:
            return None
        value = tool_input.get(self.pattern_key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


def bare_tool_name(tool_name: str) -> str:
    """Strip an MCP server prefix (``mcp__server__tool`` → ``tool``)."""
    if tool_name.startswith("mcp__") and tool_name.count("__") >= 2:
        return tool_name.split("__", 2)[2]
    return tool_name


def find_tool(registry: Iterable[Any], tool_name: str) -> Any | None:
    """Look up a tool by exact or bare name."""
    bare = bare_tool_name(tool_name)
    fallback = None
    for tool in registry:
        name = getattr(tool, "name", None)
        if name == tool_name:
            return tool
        if fallback is None and name == bare:
            fallback = tool
    return fallback


DEFAULT_TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec("Read", read_only=True, path_key="file_path"),
    ToolSpec("Glob", read_only=True, path_key="path"),
    ToolSpec("Grep", read_only=True, path_key="path"),
    ToolSpec("LS", read_only=True, path_key="path"),
    ToolSpec("Write", path_key="file_path"),
    ToolSpec("Edit", path_key="file_path"),
    ToolSpec("MultiEdit", path_key="file_path", bulk_edit=True),
    ToolSpec("NotebookEdit", path_key="notebook_path", bulk_edit=True),
    ToolSpec("Bash", pattern_key="command"),
)
