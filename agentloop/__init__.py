"""agentloop - sub-agent tool-use orchestration with permission gating."""

__version__ = "0.1.0"
