"""Contracts between the loop and the message stream that drives the model."""
from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .cancellation import CancellationHandle
from .models import PermissionContext, TranscriptEntry


@dataclass
class SessionConfig:
    """Caller-owned settings handed to run_agent().

    ``read_file_state`` and ``set_in_progress_tool_use_ids`` are opaque
    pass-throughs for the message stream.
    """
    cancel: CancellationHandle = field(default_factory=CancellationHandle)
    debug: bool = False
    verbose: bool = False
    is_non_interactive: bool = False
    get_permission_context: Callable[[], PermissionContext] | None = None
    read_file_state: Any = None
    set_in_progress_tool_use_ids: Callable[..., Any] | None = None
    tools: Sequence[Any] = ()


@dataclass
class StreamContext:
    """Per-session view of SessionConfig plus what the loop resolved."""
    cancel: CancellationHandle
    agent_id: str
    model: str
    tools: Sequence[Any]
    debug: bool
    verbose: bool
    is_non_interactive: bool
    get_permission_context: Callable[[], PermissionContext] | None
    read_file_state: Any = None
    set_in_progress_tool_use_ids: Callable[..., Any] | None = None

    @classmethod
    def build(
        cls,
        session_config: SessionConfig,
        *,
        agent_id: str,
        model: str,
    ) -> StreamContext:
        return cls(
            cancel=session_config.cancel,
            agent_id=agent_id,
            model=model,
            tools=session_config.tools,
            debug=session_config.debug,
            verbose=session_config.verbose,
            is_non_interactive=session_config.is_non_interactive,
            get_permission_context=session_config.get_permission_context,
            read_file_state=session_config.read_file_state,
            set_in_progress_tool_use_ids=session_config.set_in_progress_tool_use_ids,
        )


class MessageStream(Protocol):
    """Drives one model turn and yields transcript events.

    Must yield entries typed user / assistant / progress (anything else
    is ignored by the loop) and must terminate, normally or by raising.
    Cancellation of ``context.cancel`` should surface as
    asyncio.CancelledError.
    """

    def __call__(
        self,
        history: list[TranscriptEntry],
        system_prompt: str,
        tool_wrapper: Any,
        environment: dict[str, Any],
        tool_registry: Sequence[Any],
        context: StreamContext,
    ) -> AsyncIterator[Any]: ...
