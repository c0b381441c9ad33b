"""Per-conversation live state and the records it is built from.

``LiveState`` is an immutable value: the store replaces it wholesale
on every mutation, so a reference held by a consumer is a consistent
snapshot that never changes underneath it.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Mapping

from convoscope.shared.models.timeline import TimelineItem


def _frozen(mapping: Mapping | None = None) -> Mapping:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class ActiveWorker:
    """A worker that has started and not yet completed.

    ``current_tool`` is owned by the event stream; the snapshot never
    carries it.
    """
    id: str
    task: str
    status: str
    started_at: float
    tool_calls: int = 0
    current_tool: str | None = None


@dataclass(frozen=True)
class ActiveBranch:
    """A branch that has started and not yet completed.

    Branch snapshots only carry id, description and start time, so
    ``current_tool``, ``last_tool`` and ``tool_calls`` are all
    stream-owned.
    """
    id: str
    description: str
    started_at: float
    tool_calls: int = 0
    current_tool: str | None = None
    last_tool: str | None = None


@dataclass(frozen=True)
class LiveState:
    """Everything known about one conversation right now."""
    timeline: tuple[TimelineItem, ...] = ()
    workers: Mapping[str, ActiveWorker] = field(default_factory=_frozen)
    branches: Mapping[str, ActiveBranch] = field(default_factory=_frozen)
    is_typing: bool = False
    history_loaded: bool = False
    has_more: bool = True
    loading_more: bool = False

    def evolve(self, **changes) -> LiveState:
        """Return a copy with ``changes`` applied.

        Mappings are re-frozen so callers can pass plain dicts.
        """
        for key in ("workers", "branches"):
            if key in changes:
                changes[key] = _frozen(changes[key])
        if "timeline" in changes:
            changes["timeline"] = tuple(changes["timeline"])
        return replace(self, **changes)

    def find_item(self, item_id: str) -> TimelineItem | None:
        for item in reversed(self.timeline):
            if item.id == item_id:
                return item
        return None

    @property
    def oldest(self) -> TimelineItem | None:
        return self.timeline[0] if self.timeline else None

    @property
    def newest(self) -> TimelineItem | None:
        return self.timeline[-1] if self.timeline else None


EMPTY_LIVE_STATE = LiveState()
