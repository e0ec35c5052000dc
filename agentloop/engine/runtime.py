"""Collaborators injected into run_agent().

Each resolver is an async callable so the loop can await them
concurrently. AgentRuntime.from_config() wires the defaults: the
configured model and system prompt, a permission-gated tool wrapper,
and a process environment snapshot.
"""
from __future__ import annotations

import inspect
import os
import platform
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date
from typing import Any

from .config import EngineConfig, PersistCallback
from .permissions import PermissionGate
from .stream import MessageStream
from .transcript_store import TranscriptStore


async def default_environment(is_non_interactive: bool) -> dict[str, Any]:
    """Snapshot of the execution environment shown to the model."""
    return {
        "cwd": os.getcwd(),
        "platform": platform.system().lower(),
        "date": date.today().isoformat(),
        "is_non_interactive": is_non_interactive,
    }


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class AgentRuntime:
    message_stream: MessageStream
    resolve_tool_wrapper: Callable[[], Awaitable[Any]]
    resolve_model: Callable[[], Awaitable[str]]
    resolve_system_prompt: Callable[[str], Awaitable[str]]
    resolve_environment: Callable[[bool], Awaitable[dict[str, Any]]] = default_environment
    persist: PersistCallback | None = None

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        message_stream: MessageStream,
        *,
        gate: PermissionGate | None = None,
        persist: PersistCallback | None = None,
    ) -> AgentRuntime:
        async def _tool_wrapper() -> Any:
            return gate

        async def _model() -> str:
            return config.default_model

        async def _system_prompt(model: str) -> str:
            return config.system_prompt_for(model)

        if persist is None and config.transcript_dir:
            persist = TranscriptStore(config.transcript_dir)

        return cls(
            message_stream=message_stream,
            resolve_tool_wrapper=_tool_wrapper,
            resolve_model=_model,
            resolve_system_prompt=_system_prompt,
            persist=persist,
        )
