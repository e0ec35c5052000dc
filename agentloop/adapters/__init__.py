"""Adapters package - bridges between the engine and its callers.

Holds the event bus used to merge concurrent sessions and the
on-disk store for allow-always permission rules.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "PermissionStore",
]

from agentloop.adapters.event_bus import EventBus
from agentloop.adapters.permission_store import PermissionStore
