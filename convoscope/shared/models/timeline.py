"""Timeline item models.

A conversation's timeline mixes three kinds of entry: messages,
branch runs and worker runs. Items are immutable; updates produce a
new instance via ``dataclasses.replace``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Union

from convoscope.engine.errors import PayloadError
from convoscope.engine.models import MessageRole, format_timestamp, parse_timestamp


@dataclass(frozen=True)
class TimelineMessage:
    item_type: ClassVar[str] = "message"

    id: str
    role: MessageRole
    content: str
    created_at: datetime
    sender_name: str | None = None
    sender_id: str | None = None

    @property
    def timestamp(self) -> datetime:
        return self.created_at


@dataclass(frozen=True)
class TimelineBranchRun:
    item_type: ClassVar[str] = "branch_run"

    id: str
    description: str
    started_at: datetime
    conclusion: str | None = None
    completed_at: datetime | None = None

    @property
    def timestamp(self) -> datetime:
        return self.started_at


@dataclass(frozen=True)
class TimelineWorkerRun:
    item_type: ClassVar[str] = "worker_run"

    id: str
    task: str
    status: str
    started_at: datetime
    result: str | None = None
    completed_at: datetime | None = None

    @property
    def timestamp(self) -> datetime:
        return self.started_at


TimelineItem = Union[TimelineMessage, TimelineBranchRun, TimelineWorkerRun]

PROCESS_ITEM_TYPES = (TimelineBranchRun, TimelineWorkerRun)


def item_timestamp(item: TimelineItem) -> datetime:
    """Sortable timestamp for any timeline item."""
    return item.timestamp


def is_finalized(item: TimelineItem) -> bool:
    """True once a process run has completed. Messages are always final."""
    if isinstance(item, PROCESS_ITEM_TYPES):
        return item.completed_at is not None
    return True


def _required(data: dict[str, Any], key: str) -> Any:
    try:
        return data[key]
    except KeyError:
        raise PayloadError(f"timeline item missing '{key}': {data!r}") from None


def _required_ts(data: dict[str, Any], key: str) -> datetime:
    value = parse_timestamp(_required(data, key))
    if value is None:
        raise PayloadError(f"timeline item has empty '{key}': {data!r}")
    return value


def item_from_dict(data: dict[str, Any]) -> TimelineItem:
    """Build a timeline item from its wire representation."""
    kind = data.get("type")
    try:
        if kind == "message":
            return TimelineMessage(
                id=str(_required(data, "id")),
                role=MessageRole(_required(data, "role")),
                content=data.get("content") or "",
                created_at=_required_ts(data, "created_at"),
                sender_name=data.get("sender_name"),
                sender_id=data.get("sender_id"),
            )
        if kind == "branch_run":
            return TimelineBranchRun(
                id=str(_required(data, "id")),
                description=data.get("description") or "",
                started_at=_required_ts(data, "started_at"),
                conclusion=data.get("conclusion"),
                completed_at=parse_timestamp(data.get("completed_at")),
            )
        if kind == "worker_run":
            return TimelineWorkerRun(
                id=str(_required(data, "id")),
                task=data.get("task") or "",
                status=data.get("status") or "",
                started_at=_required_ts(data, "started_at"),
                result=data.get("result"),
                completed_at=parse_timestamp(data.get("completed_at")),
            )
    except (TypeError, ValueError) as exc:
        raise PayloadError(f"invalid {kind} item: {exc}") from exc
    raise PayloadError(f"unknown timeline item type: {kind!r}")


def item_to_dict(item: TimelineItem) -> dict[str, Any]:
    """Inverse of :func:`item_from_dict`, for logging and CLI output."""
    if isinstance(item, TimelineMessage):
        return {
            "type": item.item_type,
            "id": item.id,
            "role": item.role.value,
            "sender_name": item.sender_name,
            "sender_id": item.sender_id,
            "content": item.content,
            "created_at": format_timestamp(item.created_at),
        }
    completed = format_timestamp(item.completed_at) if item.completed_at else None
    if isinstance(item, TimelineBranchRun):
        return {
            "type": item.item_type,
            "id": item.id,
            "description": item.description,
            "conclusion": item.conclusion,
            "started_at": format_timestamp(item.started_at),
            "completed_at": completed,
        }
    return {
        "type": item.item_type,
        "id": item.id,
        "task": item.task,
        "result": item.result,
        "status": item.status,
        "started_at": format_timestamp(item.started_at),
        "completed_at": completed,
    }
