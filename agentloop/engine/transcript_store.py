"""Durable log of finished sub-agent transcripts.

The store is callable, so an instance can be passed directly as the
persistence sink of AgentRuntime. Each call records one session keyed
by the uuid of its seed entry. When a directory is configured, the
session is also written as JSONL (one message per line).
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .models import EntryType, ToolResultBlock, ToolUseBlock, TranscriptEntry

logger = logging.getLogger(__name__)


@dataclass
class SessionLog:
    session_id: str
    messages: list[TranscriptEntry]
    timestamp: float = field(default_factory=time.time)


class TranscriptStore:
    """Per-session transcript log.

    Safe for single-event-loop usage. Sessions are kept in insertion
    order.
    """

    def __init__(self, directory: Path | str | None = None) -> None:
        self._directory = Path(directory) if directory else None
        self._sessions: dict[str, SessionLog] = {}

    def __call__(self, transcript: list[TranscriptEntry]) -> None:
        self.append(transcript)

    def append(self, transcript: list[TranscriptEntry]) -> str:
        """Record a finished transcript and return its session id."""
        if not transcript:
            raise ValueError("Cannot persist an empty transcript")
        session_id = transcript[0].uuid
        log = SessionLog(session_id=session_id, messages=list(transcript))
        self._sessions[session_id] = log
        if self._directory is not None:
            self._write(self._directory, log)
        return session_id

    def sessions(self) -> list[str]:
        return list(self._sessions)

    def get_session(self, session_id: str) -> list[TranscriptEntry]:
        log = self._sessions.get(session_id)
        return list(log.messages) if log else []

    def get_history(
        self,
        session_id: str,
        detail_level: str = "full",
    ) -> list[dict[str, Any]]:
        """Get a session's messages as dicts.

        Args:
            session_id: The session whose history to retrieve.
            detail_level: "full" returns every message, "summary" returns
                text plus tool names only (skips inputs and results).
        """
        log = self._sessions.get(session_id)
        if log is None:
            return []
        if detail_level != "summary":
            return [entry.to_dict() for entry in log.messages]

        result: list[dict[str, Any]] = []
        for entry in log.messages:
            if entry.type == EntryType.PROGRESS:
                continue
            for block in entry.content:
                if isinstance(block, ToolUseBlock):
                    result.append({"type": "tool_call", "tool_name": block.name})
                elif isinstance(block, ToolResultBlock):
                    result.append({"type": "tool_result", "is_error": block.is_error})
                else:
                    result.append({"type": entry.type, "content": block.text})
        return result

    def resolve_session_id(self, session_id: str) -> str | None:
        """Resolve a (possibly truncated) session id to the full id.

        Returns the exact match if found, or a unique prefix match,
        or None if no match / ambiguous.
        """
        if session_id in self._sessions:
            return session_id
        matches = [k for k in self._sessions if k.startswith(session_id)]
        if len(matches) == 1:
            return matches[0]
        return None

    @staticmethod
    def _write(directory: Path, log: SessionLog) -> None:
        path = directory / f"{log.session_id}.jsonl"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as fh:
                for entry in log.messages:
                    fh.write(json.dumps(entry.to_dict(), default=str) + "\n")
        except OSError:
            logger.warning("Failed to write transcript %s", path)

    @staticmethod
    def load(path: Path | str) -> list[TranscriptEntry]:
        """Read back a transcript written by this store."""
        entries: list[TranscriptEntry] = []
        with Path(path).open(encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if line:
                    entries.append(TranscriptEntry.from_dict(json.loads(line)))
        return entries
