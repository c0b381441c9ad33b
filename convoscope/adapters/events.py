"""Event types pushed by the server's event stream.

Each SSE frame carries an event name and a JSON payload. The stream
client decodes it exactly once into one of the dataclasses below;
handlers dispatch on the concrete type and never see raw dicts.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, fields
from typing import Any

from convoscope.engine.errors import EventDecodeError
from convoscope.engine.models import ProcessType


@dataclass(frozen=True)
class StreamEvent:
    """Base event from the push stream."""
    event_type: str = ""


@dataclass(frozen=True)
class InboundMessage(StreamEvent):
    event_type: str = "inbound_message"
    agent_id: str = ""
    channel_id: str = ""
    sender_id: str = ""
    sender_name: str | None = None
    text: str = ""


@dataclass(frozen=True)
class OutboundMessage(StreamEvent):
    event_type: str = "outbound_message"
    agent_id: str = ""
    channel_id: str = ""
    text: str = ""


@dataclass(frozen=True)
class TypingState(StreamEvent):
    event_type: str = "typing_state"
    agent_id: str = ""
    channel_id: str = ""
    is_typing: bool = False


@dataclass(frozen=True)
class WorkerStarted(StreamEvent):
    event_type: str = "worker_started"
    agent_id: str = ""
    channel_id: str | None = None
    worker_id: str = ""
    task: str = ""


@dataclass(frozen=True)
class WorkerStatus(StreamEvent):
    event_type: str = "worker_status"
    agent_id: str = ""
    channel_id: str | None = None
    worker_id: str = ""
    status: str = ""


@dataclass(frozen=True)
class WorkerCompleted(StreamEvent):
    event_type: str = "worker_completed"
    agent_id: str = ""
    channel_id: str | None = None
    worker_id: str = ""
    result: str = ""
    success: bool = True


@dataclass(frozen=True)
class BranchStarted(StreamEvent):
    event_type: str = "branch_started"
    agent_id: str = ""
    channel_id: str | None = None
    branch_id: str = ""
    description: str = ""


@dataclass(frozen=True)
class BranchCompleted(StreamEvent):
    event_type: str = "branch_completed"
    agent_id: str = ""
    channel_id: str | None = None
    branch_id: str = ""
    conclusion: str = ""


@dataclass(frozen=True)
class ToolStarted(StreamEvent):
    event_type: str = "tool_started"
    agent_id: str = ""
    channel_id: str | None = None
    process_type: ProcessType = ProcessType.WORKER
    process_id: str = ""
    tool_name: str = ""
    args: str = ""


@dataclass(frozen=True)
class ToolCompleted(StreamEvent):
    event_type: str = "tool_completed"
    agent_id: str = ""
    channel_id: str | None = None
    process_type: ProcessType = ProcessType.WORKER
    process_id: str = ""
    tool_name: str = ""
    result: str = ""


@dataclass(frozen=True)
class AgentMessageSent(StreamEvent):
    event_type: str = "agent_message_sent"
    from_agent_id: str = ""
    to_agent_id: str = ""
    link_id: str = ""
    channel_id: str | None = None


@dataclass(frozen=True)
class AgentMessageReceived(StreamEvent):
    event_type: str = "agent_message_received"
    from_agent_id: str = ""
    to_agent_id: str = ""
    link_id: str = ""
    channel_id: str | None = None


@dataclass(frozen=True)
class TaskUpdated(StreamEvent):
    event_type: str = "task_updated"
    agent_id: str = ""
    task_number: int = 0
    status: str = ""
    action: str = ""


@dataclass(frozen=True)
class ConfigReloaded(StreamEvent):
    event_type: str = "config_reloaded"


@dataclass(frozen=True)
class Lagged(StreamEvent):
    """The server dropped events because this client fell behind."""
    event_type: str = "lagged"
    skipped: int = 0


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[StreamEvent]] = {
    "inbound_message": InboundMessage,
    "outbound_message": OutboundMessage,
    "typing_state": TypingState,
    "worker_started": WorkerStarted,
    "worker_status": WorkerStatus,
    "worker_completed": WorkerCompleted,
    "branch_started": BranchStarted,
    "branch_completed": BranchCompleted,
    "tool_started": ToolStarted,
    "tool_completed": ToolCompleted,
    "agent_message_sent": AgentMessageSent,
    "agent_message_received": AgentMessageReceived,
    "task_updated": TaskUpdated,
    "config_reloaded": ConfigReloaded,
    "lagged": Lagged,
}

# Identifier fields that must be present and non-empty for an event to
# mean anything.
_REQUIRED: dict[type[StreamEvent], tuple[str, ...]] = {
    InboundMessage: ("channel_id",),
    OutboundMessage: ("channel_id",),
    TypingState: ("channel_id",),
    WorkerStarted: ("worker_id",),
    WorkerStatus: ("worker_id",),
    WorkerCompleted: ("worker_id",),
    BranchStarted: ("branch_id",),
    BranchCompleted: ("branch_id",),
    ToolStarted: ("process_id", "tool_name"),
    ToolCompleted: ("process_id", "tool_name"),
    AgentMessageSent: ("from_agent_id", "to_agent_id"),
    AgentMessageReceived: ("from_agent_id", "to_agent_id"),
}

KNOWN_EVENT_TYPES = frozenset(_EVENT_MAP)


def dict_to_event(event_type: str, data: dict[str, Any]) -> StreamEvent | None:
    """Decode a stream payload into its typed event.

    Returns None for event types this client does not know about, so
    newer servers can add events without breaking older clients.
    Raises :class:`EventDecodeError` when a known event is malformed.
    """
    cls = _EVENT_MAP.get(event_type)
    if cls is None:
        return None
    if not isinstance(data, dict):
        raise EventDecodeError(event_type, f"payload is {type(data).__name__}, not an object")

    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in fields(cls)} - {"event_type"}
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    for name in _REQUIRED.get(cls, ()):
        value = filtered.get(name)
        if value is None or value == "":
            raise EventDecodeError(event_type, f"missing '{name}'")
        filtered[name] = str(value)

    if "process_type" in filtered:
        try:
            filtered["process_type"] = ProcessType(filtered["process_type"])
        except ValueError:
            raise EventDecodeError(
                event_type, f"unknown process_type {filtered['process_type']!r}",
            ) from None
    # Tool payloads may carry structured args/results; keep them as text.
    for name in ("args", "result"):
        value = filtered.get(name)
        if value is not None and not isinstance(value, str):
            filtered[name] = json.dumps(value)
    if filtered.get("channel_id") == "":
        filtered["channel_id"] = None
    return cls(**filtered)


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Convert a typed event back to its wire payload, e.g. for logging."""
    d: dict[str, Any] = {}
    for f in fields(event):
        val = getattr(event, f.name)
        if val is None:
            continue
        d[f.name] = val.value if isinstance(val, ProcessType) else val
    # Wire payloads carry the name in a "type" key
    d["type"] = d.pop("event_type")
    return d
