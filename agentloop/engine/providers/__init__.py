"""Message stream implementations for concrete model runtimes."""
from .claude import ClaudeSdkMessageStream

__all__ = ["ClaudeSdkMessageStream"]
