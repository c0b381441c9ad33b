"""Enums and small value helpers shared by the engine.

Single source of truth for process kinds, message roles and
connection states, to avoid circular imports between the store,
the stream client and the shared data models.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum


class ProcessType(str, Enum):
    """Kinds of process that can emit tool events."""
    CHANNEL = "channel"
    BRANCH = "branch"
    WORKER = "worker"


class MessageRole(str, Enum):
    """Who authored a timeline message.

    USER is the conversing subject (inbound), ASSISTANT the agent
    acting on its behalf (outbound).
    """
    USER = "user"
    ASSISTANT = "assistant"


class ConnectionState(str, Enum):
    """Lifecycle of the push-stream subscription."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


# Worker statuses with special meaning. Anything else is free-form
# progress text reported by the worker itself.
WORKER_STARTING = "starting"
WORKER_RUNNING = "running"
WORKER_DONE = "done"
WORKER_FAILED = "failed"

# Statuses that carry no progress information for the transcript.
LIFECYCLE_STATUSES = frozenset({WORKER_STARTING, WORKER_RUNNING})

DEFAULT_BRANCH_DESCRIPTION = "thinking..."

_BANNERS: dict[ConnectionState, tuple[str, str]] = {
    ConnectionState.CONNECTING: ("Connecting...", "info"),
    ConnectionState.RECONNECTING: (
        "Reconnecting... Dashboard may show stale data.", "warning",
    ),
    ConnectionState.DISCONNECTED: ("Disconnected from server.", "error"),
}


def connection_banner(state: ConnectionState, has_data: bool) -> tuple[str, str] | None:
    """Return ``(label, severity)`` for the stale-data indicator, or None.

    Nothing is shown while connected, nor while the very first
    connection is pending but data has already been loaded.
    """
    if state == ConnectionState.CONNECTED:
        return None
    if state == ConnectionState.CONNECTING and has_data:
        return None
    return _BANNERS[state]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_instant() -> float:
    """Wall-clock start instant for active records, in epoch seconds."""
    return time.time()


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive values are taken to be UTC, which is what the server's
    SQLite-backed history emits.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value.strip())
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a timestamp the way the history endpoint expects for ``before``."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
