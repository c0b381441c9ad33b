"""Cross-conversation projections derived from the store.

Nothing here is authoritative: the active-process registry is rebuilt
from the store, edge activity and version counters only summarize
events that already went through the store, and the transcript log is
a read-side accumulation of tool activity for running workers.
"""
from __future__ import annotations

import heapq
import itertools
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from convoscope.engine.models import ProcessType
from convoscope.engine.store import LiveStateStore
from convoscope.shared.models.live_state import ActiveBranch, ActiveWorker
from convoscope.shared.models.payloads import ChannelInfo
from convoscope.shared.models.transcript import TranscriptStep

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


# ── active-process registry ──────────────────────────────────────────

@dataclass(frozen=True)
class ActiveProcessEntry:
    """An active worker or branch attributed to its conversation and agent."""
    process: ActiveWorker | ActiveBranch
    process_type: ProcessType
    channel_id: str
    agent_id: str

    @property
    def id(self) -> str:
        return self.process.id


class ActiveProcessRegistry:
    """Flat ``process id -> entry`` view over every conversation.

    Rebuilt from scratch whenever the store or the channel list changed
    since the last read; the active set is small so a full rebuild is
    cheaper to reason about than incremental patching. Conversations
    whose owning agent is unknown are left out.
    """

    def __init__(self, store: LiveStateStore) -> None:
        self._store = store
        self._channel_agents: dict[str, str] = {}
        self._channels_version = 0
        self._built_for: tuple[int, int] | None = None
        self._entries: Mapping[str, ActiveProcessEntry] = MappingProxyType({})

    def set_channels(self, channels: Iterable[ChannelInfo]) -> None:
        agents = {channel.id: channel.agent_id for channel in channels}
        if agents != self._channel_agents:
            self._channel_agents = agents
            self._channels_version += 1

    def agent_for(self, channel_id: str) -> str | None:
        return self._channel_agents.get(channel_id)

    @property
    def entries(self) -> Mapping[str, ActiveProcessEntry]:
        key = (self._store.version, self._channels_version)
        if key != self._built_for:
            self._entries = MappingProxyType(self._rebuild())
            self._built_for = key
        return self._entries

    @property
    def workers(self) -> dict[str, ActiveProcessEntry]:
        return {
            pid: entry for pid, entry in self.entries.items()
            if entry.process_type is ProcessType.WORKER
        }

    def _rebuild(self) -> dict[str, ActiveProcessEntry]:
        entries: dict[str, ActiveProcessEntry] = {}
        for channel_id, state in self._store.states.items():
            agent_id = self._channel_agents.get(channel_id)
            if not agent_id:
                continue
            for worker_id, worker in state.workers.items():
                entries[worker_id] = ActiveProcessEntry(
                    worker, ProcessType.WORKER, channel_id, agent_id,
                )
            for branch_id, branch in state.branches.items():
                entries[branch_id] = ActiveProcessEntry(
                    branch, ProcessType.BRANCH, channel_id, agent_id,
                )
        return entries


# ── activity edges ───────────────────────────────────────────────────

def edge_id(source: str, target: str) -> str:
    return f"{source}->{target}"


class ActivityEdges:
    """Decaying "recently talked" markers between pairs of agents.

    Marking an edge (re)sets its expiry to ``now + duration``; repeated
    marks debounce rather than accumulate. Expiry is driven by
    :meth:`tick`, which pops due entries off a min-heap. Heap entries
    made stale by a later re-mark are recognized by comparing against
    the authoritative expiry map and skipped.
    """

    def __init__(self, duration: float = 3.0, clock: Clock = time.monotonic) -> None:
        self._duration = duration
        self._clock = clock
        self._expiry: dict[str, float] = {}
        self._heap: list[tuple[float, int, str]] = []
        self._seq = itertools.count()
        self.version = 0

    @property
    def active(self) -> frozenset[str]:
        return frozenset(self._expiry)

    def is_active(self, source: str, target: str) -> bool:
        return edge_id(source, target) in self._expiry

    def expiry_of(self, source: str, target: str) -> float | None:
        return self._expiry.get(edge_id(source, target))

    def mark(self, source: str, target: str, now: float | None = None) -> None:
        """Activate both directions; topology edges may be stored either way."""
        now = self._clock() if now is None else now
        expires = now + self._duration
        added = False
        for eid in (edge_id(source, target), edge_id(target, source)):
            added = added or eid not in self._expiry
            self._expiry[eid] = expires
            heapq.heappush(self._heap, (expires, next(self._seq), eid))
        if added:
            self.version += 1

    def next_expiry(self) -> float | None:
        while self._heap:
            expires, _, eid = self._heap[0]
            if self._expiry.get(eid) == expires:
                return expires
            heapq.heappop(self._heap)
        return None

    def tick(self, now: float | None = None) -> set[str]:
        """Expire every edge due at or before ``now``; return the expired ids."""
        now = self._clock() if now is None else now
        expired: set[str] = set()
        while self._heap and self._heap[0][0] <= now:
            expires, _, eid = heapq.heappop(self._heap)
            if self._expiry.get(eid) != expires:
                continue
            del self._expiry[eid]
            expired.add(eid)
        if expired:
            self.version += 1
            logger.debug("Expired %d activity edge(s)", len(expired))
        return expired

    def clear(self) -> None:
        self._expiry.clear()
        self._heap.clear()


# ── version counters ─────────────────────────────────────────────────

class VersionCounters:
    """Monotonic counters consumers poll to know when to re-read.

    Each bump happens after the triggering event's effects are
    committed, so observing a new value guarantees those effects are
    visible.
    """

    def __init__(self) -> None:
        self.worker_event_version = 0
        self.task_event_version = 0

    def bump_worker(self) -> int:
        self.worker_event_version += 1
        return self.worker_event_version

    def bump_task(self) -> int:
        self.task_event_version += 1
        return self.task_event_version


# ── transcript log ───────────────────────────────────────────────────

class TranscriptLog:
    """Per-process step log built from stream events.

    Reset when a process starts; left in place after it completes so a
    consumer can still read the final steps.
    """

    def __init__(self) -> None:
        self._steps: dict[str, list[TranscriptStep]] = {}

    def reset(self, process_id: str) -> None:
        self._steps[process_id] = []

    def append(self, process_id: str, step: TranscriptStep) -> int:
        """Append ``step`` and return its index in the log."""
        steps = self._steps.setdefault(process_id, [])
        steps.append(step)
        return len(steps) - 1

    def steps(self, process_id: str) -> tuple[TranscriptStep, ...]:
        return tuple(self._steps.get(process_id, ()))

    def step_count(self, process_id: str) -> int:
        return len(self._steps.get(process_id, ()))

    def __contains__(self, process_id: object) -> bool:
        return process_id in self._steps

    @property
    def all(self) -> Mapping[str, tuple[TranscriptStep, ...]]:
        return MappingProxyType({pid: tuple(steps) for pid, steps in self._steps.items()})
