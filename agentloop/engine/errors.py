"""Exception hierarchy for the sub-agent loop and permission engine.

Specific exceptions for each failure mode. Anything raised by an
injected collaborator (message stream, confirmation prompt, persistence
sink) is NOT wrapped in one of these; it propagates as-is.
"""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base exception for all agentloop errors."""


class KnownStreamError(OrchestrationError):
    """The transcript ended on a recognised error sentinel.

    Callers can special-case this type instead of matching on message
    text (interrupted turns, API error banners).
    """
    def __init__(self, sentinel: str):
        self.sentinel = sentinel
        super().__init__(f"Agent stream ended with an error: {sentinel}")


class AgentProtocolError(OrchestrationError):
    """The transcript broke a structural rule of the session."""
    def __init__(
        self,
        agent_index: int,
        message: str,
        *,
        is_synthesis: bool = False,
    ):
        self.agent_index = agent_index
        self.is_synthesis = is_synthesis
        super().__init__(message)

    @classmethod
    def last_message_not_assistant(
        cls, agent_index: int, *, is_synthesis: bool = False,
    ) -> AgentProtocolError:
        label = "Synthesis" if is_synthesis else f"Agent {agent_index + 1}"
        return cls(
            agent_index,
            f"{label}: Last message was not an assistant message",
            is_synthesis=is_synthesis,
        )


class OrphanToolResultError(AgentProtocolError):
    """A tool_result referenced a tool_use id never seen in the session."""
    def __init__(
        self,
        agent_index: int,
        tool_use_id: str,
        *,
        is_synthesis: bool = False,
    ):
        self.tool_use_id = tool_use_id
        super().__init__(
            agent_index,
            f"tool_result {tool_use_id} has no matching tool_use",
            is_synthesis=is_synthesis,
        )


class InvalidDecisionError(OrchestrationError):
    """A permission decision was applied to an already-decided invocation."""
    def __init__(self, invocation_id: str, current: str, target: str):
        self.invocation_id = invocation_id
        self.current = current
        self.target = target
        super().__init__(
            f"Invocation {invocation_id} is already {current}; "
            f"cannot move to {target}"
        )


class BypassNotAcceptedError(OrchestrationError):
    """bypassPermissions mode is active but was never explicitly accepted."""
    def __init__(self) -> None:
        super().__init__(
            "bypassPermissions mode requires a one-time acceptance "
            "before tool calls can skip permission checks"
        )


class ConfigError(OrchestrationError):
    """Configuration could not be loaded or is malformed."""
    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid configuration in {source}: {reason}")
