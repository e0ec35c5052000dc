"""Claude Agent SDK message stream.

Wraps claude_agent_sdk.query() behind the MessageStream protocol:
SDK AssistantMessage / UserMessage objects become TranscriptEntry
values, and tool permission requests are routed through the tool
wrapper resolved by the loop (normally a PermissionGate).

The SDK only reports usage on its closing ResultMessage; that usage is
attached to the last assistant entry already yielded, which the loop
still holds by reference when it builds the result.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

from ..aggregator import API_ERROR_PREFIX
from ..models import (
    ContentBlock,
    EntryType,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    TranscriptEntry,
    Usage,
)
from ..stream import StreamContext
from ..tools import ToolSpec, bare_tool_name, find_tool

logger = logging.getLogger(__name__)


def convert_block(block: Any) -> ContentBlock | None:
    """Map an SDK content block onto the closed block union."""
    if getattr(block, "thinking", None) is not None:
        return None
    if getattr(block, "tool_use_id", None) is not None:
        return ToolResultBlock(
            tool_use_id=str(block.tool_use_id),
            content=getattr(block, "content", "") or "",
            is_error=bool(getattr(block, "is_error", False)),
        )
    if getattr(block, "name", None) is not None and hasattr(block, "input"):
        return ToolUseBlock(
            id=str(getattr(block, "id", "")),
            name=str(block.name),
            input=dict(block.input or {}),
        )
    if getattr(block, "text", None) is not None:
        return TextBlock(text=str(block.text))
    return None


def convert_blocks(blocks: Sequence[Any]) -> list[ContentBlock]:
    converted = (convert_block(block) for block in blocks)
    return [block for block in converted if block is not None]


def _entry_text(entry: TranscriptEntry) -> str:
    return "\n".join(
        block.text for block in entry.content if isinstance(block, TextBlock)
    )


def build_permission_hook(
    tool_wrapper: Any,
    tool_registry: Sequence[Any],
    context: StreamContext,
):
    """Adapt the tool wrapper to the SDK's can_use_tool callback.

    A wrapper exposing ``check()`` (PermissionGate) is adapted; any other
    callable is assumed to already speak the SDK signature.
    """
    if tool_wrapper is None:
        return None
    if not hasattr(tool_wrapper, "check"):
        return tool_wrapper

    from claude_agent_sdk import PermissionResultAllow, PermissionResultDeny

    async def _can_use_tool(tool_name: str, tool_input: dict, _sdk_context: object = None):
        tool = find_tool(tool_registry, tool_name) or ToolSpec(bare_tool_name(tool_name))
        outcome = await tool_wrapper.check(
            tool,
            tool_input,
            agent_id=context.agent_id,
            cancel=context.cancel,
        )
        if outcome.allowed:
            return PermissionResultAllow(updated_input=dict(outcome.updated_input))
        return PermissionResultDeny(message=outcome.message or "User denied tool call")

    return _can_use_tool


class ClaudeSdkMessageStream:
    """MessageStream backed by claude_agent_sdk.query()."""

    def __init__(
        self,
        *,
        cwd: str | None = None,
        permission_mode: str = "default",
        extra_options: dict[str, Any] | None = None,
    ) -> None:
        self._cwd = cwd
        self._permission_mode = permission_mode
        self._extra_options = dict(extra_options or {})

    async def __call__(
        self,
        history: list[TranscriptEntry],
        system_prompt: str,
        tool_wrapper: Any,
        environment: dict[str, Any],
        tool_registry: Sequence[Any],
        context: StreamContext,
    ) -> AsyncIterator[TranscriptEntry]:
        # Import SDK lazily so the core imports without it installed
        from claude_agent_sdk import (
            AssistantMessage,
            ClaudeAgentOptions,
            ResultMessage,
            UserMessage,
            query,
        )

        options_kwargs: dict[str, Any] = dict(
            system_prompt=system_prompt,
            model=context.model,
            allowed_tools=[tool.name for tool in tool_registry],
            permission_mode=self._permission_mode,
            cwd=self._cwd or environment.get("cwd"),
        )
        hook = build_permission_hook(tool_wrapper, tool_registry, context)
        if hook is not None:
            options_kwargs["can_use_tool"] = hook
        options_kwargs.update(self._extra_options)
        options = ClaudeAgentOptions(**options_kwargs)
        logger.info(
            "Agent %s starting query model=%s tools=%d can_use_tool=%s",
            context.agent_id[:8],
            context.model,
            len(tool_registry),
            "yes" if hook is not None else "no",
        )

        # can_use_tool requires streaming input rather than a plain string
        async def _prompt_stream():
            for entry in history:
                if entry.type != EntryType.USER:
                    continue
                yield {
                    "type": "user",
                    "message": {"role": "user", "content": _entry_text(entry)},
                }

        last_assistant: TranscriptEntry | None = None
        async for message in query(prompt=_prompt_stream(), options=options):
            context.cancel.raise_if_cancelled()

            if isinstance(message, ResultMessage):
                usage = getattr(message, "usage", None)
                if last_assistant is not None and usage:
                    last_assistant.usage = Usage.from_dict(usage)
                if getattr(message, "is_error", False):
                    detail = getattr(message, "result", None) or getattr(message, "subtype", "")
                    yield TranscriptEntry.assistant(f"{API_ERROR_PREFIX}: {detail}")
                continue

            if isinstance(message, AssistantMessage):
                blocks = convert_blocks(message.content)
                if not blocks:
                    continue
                last_assistant = TranscriptEntry.assistant(blocks)
                self._track_in_progress(context, blocks)
                yield last_assistant
            elif isinstance(message, UserMessage):
                content = message.content
                if isinstance(content, str):
                    entry = TranscriptEntry.user(content)
                else:
                    blocks = convert_blocks(content)
                    if not blocks:
                        continue
                    entry = TranscriptEntry.user(blocks)
                self._track_in_progress(context, entry.content)
                yield entry
            else:
                logger.debug(
                    "Agent %s skipping SDK message %s",
                    context.agent_id[:8], type(message).__name__,
                )

    @staticmethod
    def _track_in_progress(context: StreamContext, blocks: Sequence[ContentBlock]) -> None:
        setter = context.set_in_progress_tool_use_ids
        if setter is None:
            return
        started = {b.id for b in blocks if isinstance(b, ToolUseBlock)}
        finished = {b.tool_use_id for b in blocks if isinstance(b, ToolResultBlock)}
        if started or finished:
            setter(lambda ids: (set(ids) | started) - finished)
