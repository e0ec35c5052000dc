"""Reduction of a finished transcript into the terminal result."""
from __future__ import annotations

from collections.abc import Sequence

from .errors import AgentProtocolError, KnownStreamError
from .models import (
    AgentResult,
    EntryType,
    ResultEvent,
    TextBlock,
    TranscriptEntry,
    Usage,
)

INTERRUPT_MESSAGE = "[Request interrupted by user]"
INTERRUPT_MESSAGE_FOR_TOOL_USE = "[Request interrupted by user for tool use]"
CANCEL_MESSAGE = (
    "The user doesn't want to take this action right now. STOP what you "
    "are doing and wait for the user to tell you how to proceed."
)
API_ERROR_PREFIX = "API Error"

ERROR_SENTINELS: frozenset[str] = frozenset({
    INTERRUPT_MESSAGE,
    INTERRUPT_MESSAGE_FOR_TOOL_USE,
    CANCEL_MESSAGE,
    "Prompt is too long",
    "Credit balance is too low",
    "Invalid API key · Please run /login",
})


def error_sentinel_text(entry: TranscriptEntry) -> str | None:
    """Return the sentinel text if ``entry`` is a known error message."""
    if len(entry.content) != 1:
        return None
    block = entry.content[0]
    if not isinstance(block, TextBlock):
        return None
    text = block.text.strip()
    if text in ERROR_SENTINELS or text.startswith(API_ERROR_PREFIX):
        return text
    return None


def total_tokens(usage: Usage | None) -> int:
    """cache_creation + cache_read + input + output, missing fields as 0."""
    if usage is None:
        return 0
    return usage.total_tokens


def text_content(entry: TranscriptEntry) -> list[TextBlock]:
    return [block for block in entry.content if isinstance(block, TextBlock)]


def terminal_entry(
    transcript: Sequence[TranscriptEntry],
    agent_index: int,
    *,
    is_synthesis: bool = False,
) -> TranscriptEntry:
    """Validate the last entry of a finished stream and return it."""
    last = transcript[-1] if transcript else None
    if last is not None:
        sentinel = error_sentinel_text(last)
        if sentinel is not None:
            raise KnownStreamError(sentinel)
    if last is None or last.type != EntryType.ASSISTANT:
        raise AgentProtocolError.last_message_not_assistant(
            agent_index, is_synthesis=is_synthesis,
        )
    return last


def build_result(
    last: TranscriptEntry,
    agent_index: int,
    tool_use_count: int,
) -> ResultEvent:
    usage = last.usage or Usage()
    return ResultEvent(
        data=AgentResult(
            agent_index=agent_index,
            content=text_content(last),
            tool_use_count=tool_use_count,
            tokens=total_tokens(usage),
            usage=usage,
        )
    )
