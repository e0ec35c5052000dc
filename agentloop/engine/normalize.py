"""Transcript normalisation.

Splits every multi-block entry into one entry per content block so
progress consumers can address each block on its own. Split entries get
deterministic uuids derived from the parent, so recomputing over the
same transcript always yields the same view.
"""
from __future__ import annotations

import uuid
from collections.abc import Iterable

from .models import EntryType, TranscriptEntry

_SPLIT_NAMESPACE = uuid.UUID("6f1c2a4e-8a51-4c1b-9d0e-3b7f8f2c9a10")


def _split_uuid(parent_uuid: str, index: int) -> str:
    return str(uuid.uuid5(_SPLIT_NAMESPACE, f"{parent_uuid}:{index}"))


def normalize_messages(entries: Iterable[TranscriptEntry]) -> list[TranscriptEntry]:
    """Return a flat list with at most one content block per entry."""
    normalized: list[TranscriptEntry] = []
    for entry in entries:
        if entry.type == EntryType.PROGRESS or len(entry.content) <= 1:
            normalized.append(entry)
            continue
        for index, block in enumerate(entry.content):
            normalized.append(
                entry.with_content((block,), _split_uuid(entry.uuid, index))
            )
    return normalized
