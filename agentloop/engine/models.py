"""Core data models for the sub-agent loop.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal, Union


def _make_id() -> str:
    return str(uuid.uuid4())


class EntryType(str, Enum):
    """Transcript entry kinds the loop keeps. Anything else is dropped."""
    USER = "user"
    ASSISTANT = "assistant"
    PROGRESS = "progress"


class PermissionMode(str, Enum):
    """Maps to claude_agent_sdk permission modes."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"


class ToolType(str, Enum):
    """Read-only vs mutating classification of a tool invocation."""
    READ = "read"
    EDIT = "edit"


# ── Content blocks ──


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: Literal["text"] = "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: Mapping[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = "tool_use"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "name": self.name,
            "input": dict(self.input),
        }


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: Any = ""
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "tool_use_id": self.tool_use_id,
            "content": self.content,
            "is_error": self.is_error,
        }


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


def block_from_dict(data: Mapping[str, Any]) -> ContentBlock:
    """Rebuild a content block from its wire dict."""
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=str(data.get("text", "")))
    if kind == "tool_use":
        return ToolUseBlock(
            id=str(data["id"]),
            name=str(data["name"]),
            input=dict(data.get("input") or {}),
        )
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=str(data["tool_use_id"]),
            content=data.get("content", ""),
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"Unknown content block type: {kind!r}")


# ── Transcript ──


@dataclass(frozen=True)
class Usage:
    """Token accounting reported on an assistant message."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int | None = None
    cache_read_input_tokens: int | None = None

    @property
    def total_tokens(self) -> int:
        return (
            (self.cache_creation_input_tokens or 0)
            + (self.cache_read_input_tokens or 0)
            + self.input_tokens
            + self.output_tokens
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> Usage:
        if not data:
            return cls()
        return cls(
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
            cache_creation_input_tokens=data.get("cache_creation_input_tokens"),
            cache_read_input_tokens=data.get("cache_read_input_tokens"),
        )

    def to_dict(self) -> dict[str, int]:
        d = {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }
        if self.cache_creation_input_tokens is not None:
            d["cache_creation_input_tokens"] = self.cache_creation_input_tokens
        if self.cache_read_input_tokens is not None:
            d["cache_read_input_tokens"] = self.cache_read_input_tokens
        return d


@dataclass
class TranscriptEntry:
    """One message in a session history.

    ``usage`` is only meaningful on assistant entries. ``data`` carries
    the payload of progress envelopes and is ignored otherwise.
    """
    type: str
    content: tuple[ContentBlock, ...] = ()
    usage: Usage | None = None
    message_id: str = field(default_factory=_make_id)
    uuid: str = field(default_factory=_make_id)
    data: Any = None

    @classmethod
    def user(cls, content: str | Sequence[ContentBlock]) -> TranscriptEntry:
        if isinstance(content, str):
            blocks: tuple[ContentBlock, ...] = (TextBlock(text=content),)
        else:
            blocks = tuple(content)
        return cls(type=EntryType.USER.value, content=blocks)

    @classmethod
    def assistant(
        cls,
        content: str | Sequence[ContentBlock],
        usage: Usage | None = None,
        *,
        message_id: str | None = None,
    ) -> TranscriptEntry:
        if isinstance(content, str):
            blocks: tuple[ContentBlock, ...] = (TextBlock(text=content),)
        else:
            blocks = tuple(content)
        return cls(
            type=EntryType.ASSISTANT.value,
            content=blocks,
            usage=usage or Usage(),
            message_id=message_id or _make_id(),
        )

    @classmethod
    def progress(cls, data: Any) -> TranscriptEntry:
        return cls(type=EntryType.PROGRESS.value, data=data)

    def with_content(self, content: tuple[ContentBlock, ...], uuid_: str) -> TranscriptEntry:
        return replace(self, content=content, uuid=uuid_)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": self.type,
            "uuid": self.uuid,
            "message": {
                "id": self.message_id,
                "content": [block.to_dict() for block in self.content],
            },
        }
        if self.usage is not None:
            d["message"]["usage"] = self.usage.to_dict()
        if self.data is not None:
            d["data"] = self.data
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TranscriptEntry:
        message = data.get("message") or {}
        usage = message.get("usage")
        return cls(
            type=str(data["type"]),
            content=tuple(
                block_from_dict(b) for b in message.get("content") or []
            ),
            usage=Usage.from_dict(usage) if usage is not None else None,
            message_id=str(message.get("id") or _make_id()),
            uuid=str(data.get("uuid") or _make_id()),
            data=data.get("data"),
        )


# ── Session and events ──


@dataclass
class AgentOptions:
    """Optional per-run overrides."""
    is_synthesis: bool = False
    system_prompt: str | None = None
    model: str | None = None


@dataclass
class AgentSession:
    """One run of the orchestration loop. Created and owned by run_agent()."""
    agent_index: int
    model: str
    system_prompt: str
    tool_registry: Sequence[Any] = ()
    is_synthesis: bool = False
    agent_id: str = field(default_factory=_make_id)


@dataclass
class ToolUseRecord:
    """Running count of tool_use blocks seen in a session."""
    count: int = 0
    seen_ids: set[str] = field(default_factory=set)

    def observe(self, block: ToolUseBlock) -> None:
        self.count += 1
        self.seen_ids.add(block.id)

    def has_seen(self, tool_use_id: str) -> bool:
        return tool_use_id in self.seen_ids


@dataclass
class AgentProgress:
    message: TranscriptEntry
    normalized_messages: list[TranscriptEntry]
    type: Literal["agent_progress"] = "agent_progress"


@dataclass
class ProgressEvent:
    """Emitted once per tool_use / tool_result block, in transcript order."""
    tool_use_id: str
    data: AgentProgress
    type: Literal["progress"] = "progress"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "toolUseID": self.tool_use_id,
            "data": {
                "message": self.data.message.to_dict(),
                "normalizedMessages": [
                    m.to_dict() for m in self.data.normalized_messages
                ],
                "type": self.data.type,
            },
        }


@dataclass
class AgentResult:
    """Final reduction of a completed session."""
    agent_index: int
    content: list[TextBlock]
    tool_use_count: int
    tokens: int
    usage: Usage

    @property
    def text(self) -> str:
        return "\n".join(block.text for block in self.content)


@dataclass
class ResultEvent:
    """Terminal event; exactly one per successful session."""
    data: AgentResult
    type: Literal["result"] = "result"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "data": {
                "agentIndex": self.data.agent_index,
                "content": [block.to_dict() for block in self.data.content],
                "toolUseCount": self.data.tool_use_count,
                "tokens": self.data.tokens,
                "usage": self.data.usage.to_dict(),
            },
        }


AgentEvent = Union[ProgressEvent, ResultEvent]


# ── Permissions ──


@dataclass(frozen=True)
class PermissionRule:
    """An allow/deny rule scoped by tool type.

    Two shapes:
    - path rule: ``tool_name`` is None and ``pattern`` is a directory;
      covers any file-touching tool of that type under the directory.
    - tool rule: ``tool_name`` names the tool; optional ``pattern``
      narrows it (``npm test`` exact, ``npm:*`` prefix).
    """
    tool_type: ToolType
    tool_name: str | None = None
    pattern: str | None = None

    @property
    def key(self) -> str:
        if self.tool_name is None:
            return f"{self.tool_type.value}:{self.pattern or ''}"
        if self.pattern is None:
            return f"{self.tool_type.value}:{self.tool_name}"
        return f"{self.tool_type.value}:{self.tool_name}({self.pattern})"

    @property
    def is_path_rule(self) -> bool:
        return self.tool_name is None


@dataclass(frozen=True)
class PermissionContext:
    """Policy state shared by every session in the process.

    Immutable: every change produces a new instance that the caller
    installs through its own setter.
    """
    mode: PermissionMode = PermissionMode.DEFAULT
    always_allow_rules: Mapping[str, PermissionRule] = field(default_factory=dict)
    always_deny_rules: Mapping[str, PermissionRule] = field(default_factory=dict)
    additional_working_directories: frozenset[str] = frozenset()
    bypass_accepted: bool = False

    def with_mode(self, mode: PermissionMode) -> PermissionContext:
        return replace(self, mode=mode)

    def with_allow_rule(self, rule: PermissionRule) -> PermissionContext:
        rules = dict(self.always_allow_rules)
        rules[rule.key] = rule
        return replace(self, always_allow_rules=rules)

    def with_deny_rule(self, rule: PermissionRule) -> PermissionContext:
        rules = dict(self.always_deny_rules)
        rules[rule.key] = rule
        return replace(self, always_deny_rules=rules)

    def with_working_directory(self, directory: str) -> PermissionContext:
        return replace(
            self,
            additional_working_directories=(
                self.additional_working_directories | {directory}
            ),
        )

    def accept_bypass(self) -> PermissionContext:
        return replace(self, bypass_accepted=True)
