"""agentloop engine - sub-agent orchestration loop and permission gating."""
from .models import (
    AgentEvent,
    AgentOptions,
    AgentProgress,
    AgentResult,
    AgentSession,
    ContentBlock,
    EntryType,
    PermissionContext,
    PermissionMode,
    PermissionRule,
    ProgressEvent,
    ResultEvent,
    TextBlock,
    ToolResultBlock,
    ToolType,
    ToolUseBlock,
    ToolUseRecord,
    TranscriptEntry,
    Usage,
)
from .config import EngineConfig
from .cancellation import CancellationHandle
from .errors import (
    AgentProtocolError,
    BypassNotAcceptedError,
    ConfigError,
    InvalidDecisionError,
    KnownStreamError,
    OrchestrationError,
    OrphanToolResultError,
)

__all__ = [
    # Loop (lazy import)
    "run_agent",
    "run_agents",
    "AgentRuntime",
    "SessionConfig",
    "StreamContext",
    "MessageStream",
    # Models
    "AgentEvent",
    "AgentOptions",
    "AgentProgress",
    "AgentResult",
    "AgentSession",
    "ContentBlock",
    "EntryType",
    "PermissionContext",
    "PermissionMode",
    "PermissionRule",
    "ProgressEvent",
    "ResultEvent",
    "TextBlock",
    "ToolResultBlock",
    "ToolType",
    "ToolUseBlock",
    "ToolUseRecord",
    "TranscriptEntry",
    "Usage",
    # Config
    "EngineConfig",
    "CancellationHandle",
    "load_yaml_config",
    # Permissions (lazy import)
    "PermissionGate",
    "PermissionOption",
    "PermissionPolicyEngine",
    "PermissionContextHolder",
    "ToolSpec",
    # Storage (lazy import)
    "TranscriptStore",
    # Providers (lazy import)
    "ClaudeSdkMessageStream",
    # Errors
    "AgentProtocolError",
    "BypassNotAcceptedError",
    "ConfigError",
    "InvalidDecisionError",
    "KnownStreamError",
    "OrchestrationError",
    "OrphanToolResultError",
]


def __getattr__(name: str):
    if name == "run_agent":
        from .agent_loop import run_agent
        return run_agent
    if name == "run_agents":
        from .fanout import run_agents
        return run_agents
    if name == "AgentRuntime":
        from .runtime import AgentRuntime
        return AgentRuntime
    if name in ("SessionConfig", "StreamContext", "MessageStream"):
        from . import stream
        return getattr(stream, name)
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name in (
        "PermissionGate",
        "PermissionOption",
        "PermissionPolicyEngine",
        "PermissionContextHolder",
    ):
        from . import permissions
        return getattr(permissions, name)
    if name == "ToolSpec":
        from .tools import ToolSpec
        return ToolSpec
    if name == "TranscriptStore":
        from .transcript_store import TranscriptStore
        return TranscriptStore
    if name == "ClaudeSdkMessageStream":
        from .providers.claude import ClaudeSdkMessageStream
        return ClaudeSdkMessageStream
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
