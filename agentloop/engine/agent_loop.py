"""Sub-agent orchestration loop.

run_agent() owns exactly one sub-agent run: it seeds the transcript with
the caller's prompt, pulls events from the message stream, forwards one
progress event per tool_use / tool_result block, and finally reduces the
transcript into a single result event.

The loop holds no timers and performs no retries. Exceptions from the
message stream (including asyncio.CancelledError raised after the shared
cancellation handle fires) and from the persistence sink propagate
unchanged, so a caller may see the generator raise instead of yielding a
result.

Normalisation of the whole transcript-so-far is recomputed on every
event rather than cached, so each progress event carries a complete,
self-consistent view. This is quadratic in session length, which is
bounded by the provider's context window.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from enum import Enum
from typing import Any

from .aggregator import build_result, terminal_entry
from .errors import OrphanToolResultError
from .models import (
    AgentEvent,
    AgentOptions,
    AgentProgress,
    AgentSession,
    EntryType,
    ProgressEvent,
    ToolResultBlock,
    ToolUseBlock,
    ToolUseRecord,
    TranscriptEntry,
)
from .normalize import normalize_messages
from .runtime import AgentRuntime, maybe_await
from .stream import SessionConfig, StreamContext

logger = logging.getLogger(__name__)

_KEPT_TYPES = frozenset(t.value for t in EntryType)


def parent_message_id(parent_message: Any) -> str:
    """Extract the message id of the caller-side message a run hangs off."""
    if isinstance(parent_message, str):
        return parent_message
    message_id = getattr(parent_message, "message_id", None)
    if message_id:
        return str(message_id)
    if isinstance(parent_message, Mapping):
        message = parent_message.get("message")
        if isinstance(message, Mapping) and message.get("id"):
            return str(message["id"])
    raise TypeError(
        f"Cannot determine a message id from {type(parent_message).__name__}"
    )


def progress_tool_use_id(
    agent_index: int,
    parent_id: str,
    *,
    is_synthesis: bool = False,
) -> str:
    """Namespace for progress events; unique per (index, parent) pair."""
    if is_synthesis:
        return f"synthesis_{parent_id}"
    return f"agent_{agent_index}_{parent_id}"


def _entry_type(event: Any) -> str | None:
    kind = getattr(event, "type", None)
    if isinstance(kind, Enum):
        kind = kind.value
    return kind if isinstance(kind, str) else None


async def run_agent(
    prompt: str,
    agent_index: int,
    session_config: SessionConfig,
    parent_message: Any,
    tool_registry: Sequence[Any],
    options: AgentOptions | None = None,
    *,
    runtime: AgentRuntime,
) -> AsyncIterator[AgentEvent]:
    """Run one sub-agent session, yielding progress events then a result."""
    options = options or AgentOptions()
    progress_id = progress_tool_use_id(
        agent_index,
        parent_message_id(parent_message),
        is_synthesis=options.is_synthesis,
    )
    seed = [TranscriptEntry.user(prompt)]

    async def _model() -> str:
        if options.model is not None:
            return options.model
        return await runtime.resolve_model()

    tool_wrapper, environment, model = await asyncio.gather(
        runtime.resolve_tool_wrapper(),
        runtime.resolve_environment(session_config.is_non_interactive),
        _model(),
    )
    if options.system_prompt is not None:
        system_prompt = options.system_prompt
    else:
        system_prompt = await runtime.resolve_system_prompt(model)

    session = AgentSession(
        agent_index=agent_index,
        model=model,
        system_prompt=system_prompt,
        tool_registry=tool_registry,
        is_synthesis=options.is_synthesis,
    )
    logger.info(
        "Agent %s starting index=%d synthesis=%s model=%s tools=%d",
        session.agent_id[:8],
        agent_index,
        session.is_synthesis,
        model,
        len(tool_registry),
    )
    context = StreamContext.build(
        session_config, agent_id=session.agent_id, model=model,
    )

    transcript: list[TranscriptEntry] = []
    record = ToolUseRecord()

    async for event in runtime.message_stream(
        seed, system_prompt, tool_wrapper, environment, tool_registry, context,
    ):
        kind = _entry_type(event)
        if kind not in _KEPT_TYPES:
            continue
        transcript.append(event)
        if kind == EntryType.PROGRESS:
            continue

        normalized = normalize_messages(transcript)
        for message in normalize_messages([event]):
            for block in message.content:
                if isinstance(block, ToolUseBlock):
                    record.observe(block)
                    logger.debug(
                        "Agent %s tool_use id=%s name=%s",
                        session.agent_id[:8], block.id[:12], block.name,
                    )
                elif isinstance(block, ToolResultBlock):
                    if not record.has_seen(block.tool_use_id):
                        raise OrphanToolResultError(
                            agent_index,
                            block.tool_use_id,
                            is_synthesis=session.is_synthesis,
                        )
                    logger.debug(
                        "Agent %s tool_result id=%s is_error=%s",
                        session.agent_id[:8],
                        block.tool_use_id[:12],
                        block.is_error,
                    )
                else:
                    continue
                yield ProgressEvent(
                    tool_use_id=progress_id,
                    data=AgentProgress(
                        message=message,
                        normalized_messages=normalized,
                    ),
                )

    last = terminal_entry(
        transcript, agent_index, is_synthesis=session.is_synthesis,
    )
    result = build_result(last, agent_index, record.count)

    if runtime.persist is not None:
        await maybe_await(runtime.persist([*seed, *transcript]))

    logger.info(
        "Agent %s finished index=%d tool_uses=%d tokens=%d",
        session.agent_id[:8],
        agent_index,
        result.data.tool_use_count,
        result.data.tokens,
    )
    yield result
