"""Response payloads of the HTTP collaborators.

Parsed once at the API boundary; everything downstream works with
these dataclasses instead of raw JSON.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from convoscope.engine.errors import PayloadError
from convoscope.engine.models import parse_timestamp
from convoscope.shared.models.timeline import TimelineItem, item_from_dict


@dataclass(frozen=True)
class ChannelInfo:
    """A conversation known to the server, with its owning agent."""
    id: str
    agent_id: str
    platform: str = ""
    display_name: str | None = None
    is_active: bool = True
    last_activity_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChannelInfo:
        try:
            return cls(
                id=str(data["id"]),
                agent_id=str(data["agent_id"]),
                platform=data.get("platform") or "",
                display_name=data.get("display_name"),
                is_active=bool(data.get("is_active", True)),
                last_activity_at=parse_timestamp(data.get("last_activity_at")),
                created_at=parse_timestamp(data.get("created_at")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PayloadError(f"invalid channel entry {data!r}: {exc}") from exc


@dataclass(frozen=True)
class HistoryPage:
    """One page of a conversation's timeline, oldest first."""
    items: tuple[TimelineItem, ...]
    has_more: bool

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryPage:
        if not isinstance(data, dict):
            raise PayloadError(f"history page is not an object: {data!r}")
        raw_items = data.get("items") or []
        items = tuple(item_from_dict(raw) for raw in raw_items)
        # The endpoint returns ascending order; tolerate servers that don't.
        items = tuple(sorted(items, key=lambda item: item.timestamp))
        return cls(items=items, has_more=bool(data.get("has_more", False)))


def _instant(value: Any) -> datetime:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError("empty started_at")
    return parsed


@dataclass(frozen=True)
class WorkerStatusInfo:
    id: str
    task: str
    status: str
    started_at: datetime
    tool_calls: int = 0
    notify_on_complete: bool = False


@dataclass(frozen=True)
class BranchStatusInfo:
    id: str
    description: str
    started_at: datetime


@dataclass(frozen=True)
class CompletedItemInfo:
    id: str
    item_type: str
    description: str
    completed_at: datetime | None
    result_summary: str = ""


@dataclass(frozen=True)
class StatusBlockSnapshot:
    """Point-in-time listing of one conversation's active processes."""
    active_workers: tuple[WorkerStatusInfo, ...] = ()
    active_branches: tuple[BranchStatusInfo, ...] = ()
    completed_items: tuple[CompletedItemInfo, ...] = field(default=())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatusBlockSnapshot:
        try:
            workers = tuple(
                WorkerStatusInfo(
                    id=str(w["id"]),
                    task=w.get("task") or "",
                    status=w.get("status") or "",
                    started_at=_instant(w["started_at"]),
                    tool_calls=int(w.get("tool_calls") or 0),
                    notify_on_complete=bool(w.get("notify_on_complete", False)),
                )
                for w in data.get("active_workers") or []
            )
            branches = tuple(
                BranchStatusInfo(
                    id=str(b["id"]),
                    description=b.get("description") or "",
                    started_at=_instant(b["started_at"]),
                )
                for b in data.get("active_branches") or []
            )
            completed = tuple(
                CompletedItemInfo(
                    id=str(c["id"]),
                    item_type=c.get("item_type") or "",
                    description=c.get("description") or "",
                    completed_at=parse_timestamp(c.get("completed_at")),
                    result_summary=c.get("result_summary") or "",
                )
                for c in data.get("completed_items") or []
            )
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise PayloadError(f"invalid status block: {exc}") from exc
        return cls(
            active_workers=workers,
            active_branches=branches,
            completed_items=completed,
        )


def parse_status_map(data: Any) -> dict[str, StatusBlockSnapshot]:
    """Parse the ``channel_id -> status block`` snapshot response."""
    if not isinstance(data, dict):
        raise PayloadError(f"status snapshot is not an object: {type(data).__name__}")
    return {
        str(channel_id): StatusBlockSnapshot.from_dict(block)
        for channel_id, block in data.items()
    }
