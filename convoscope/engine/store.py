"""Per-conversation live state store.

The single mutable resource of the engine. Readers get immutable
``LiveState`` values; writers hand ``update`` a pure function of the
latest committed state, never a previously captured copy. On one
event loop that makes concurrent fetches and stream handlers unable
to clobber each other's effects.

Alongside the states the store owns two pieces of process bookkeeping
that must change atomically with the active sets:

* a process id -> channel id index, used to route events that arrive
  without a channel reference;
* per-process FIFO queues of pending tool-call ids, used to correlate
  tool completions with the call they finish.
"""
from __future__ import annotations

import logging
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from types import MappingProxyType

from convoscope.shared.models.live_state import EMPTY_LIVE_STATE, LiveState

logger = logging.getLogger(__name__)

Reducer = Callable[[LiveState], LiveState]


def _process_ids(state: LiveState) -> set[str]:
    return set(state.workers) | set(state.branches)


class LiveStateStore:
    """Mapping of channel id to ``LiveState`` with atomic updates."""

    def __init__(self) -> None:
        self._states: dict[str, LiveState] = {}
        self._process_channels: dict[str, str] = {}
        self._pending_calls: dict[str, dict[str, deque[str]]] = {}
        self._version = 0

    # ── reads ────────────────────────────────────────────────────────

    @property
    def version(self) -> int:
        """Bumped once per committed change; cheap change detection."""
        return self._version

    @property
    def states(self) -> Mapping[str, LiveState]:
        return MappingProxyType(self._states)

    def get(self, channel_id: str) -> LiveState | None:
        return self._states.get(channel_id)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def channel_of(self, process_id: str) -> str | None:
        """Channel currently holding ``process_id`` in its active set."""
        return self._process_channels.get(process_id)

    def resolve_channel(self, process_id: str, channel_id: str | None = None) -> str | None:
        """Find the conversation an event about ``process_id`` applies to.

        The declared channel wins when it actually holds the process;
        otherwise the process index is consulted. Returns None when no
        conversation holds it.
        """
        if channel_id is not None:
            state = self._states.get(channel_id)
            if state is not None and (
                process_id in state.workers or process_id in state.branches
            ):
                return channel_id
        return self._process_channels.get(process_id)

    # ── writes ───────────────────────────────────────────────────────

    def update(self, channel_id: str, reducer: Reducer, *, create: bool = True) -> LiveState | None:
        """Commit ``reducer(latest)`` for ``channel_id``.

        With ``create=False`` an unknown channel is left alone and None
        is returned. A reducer returning the same object commits nothing.
        """
        previous = self._states.get(channel_id)
        if previous is None:
            if not create:
                return None
            base = EMPTY_LIVE_STATE
        else:
            base = previous

        updated = reducer(base)
        if updated is previous:
            return previous
        self._states[channel_id] = updated
        self._reindex(channel_id, previous or EMPTY_LIVE_STATE, updated)
        self._version += 1
        return updated

    def _reindex(self, channel_id: str, old: LiveState, new: LiveState) -> None:
        old_ids = _process_ids(old)
        new_ids = _process_ids(new)
        for process_id in old_ids - new_ids:
            if self._process_channels.get(process_id) == channel_id:
                del self._process_channels[process_id]
                self._pending_calls.pop(process_id, None)
        for process_id in new_ids - old_ids:
            holder = self._process_channels.get(process_id)
            if holder is not None and holder != channel_id:
                logger.warning(
                    "Process %s moved from channel %s to %s",
                    process_id, holder, channel_id,
                )
            self._process_channels[process_id] = channel_id

    # ── pending tool calls ───────────────────────────────────────────

    def push_pending_call(self, process_id: str, tool_name: str) -> str:
        """Register an outstanding call and return its generated id."""
        call_id = str(uuid.uuid4())
        by_tool = self._pending_calls.setdefault(process_id, {})
        by_tool.setdefault(tool_name, deque()).append(call_id)
        return call_id

    def pop_pending_call(self, process_id: str, tool_name: str) -> str | None:
        """Take the oldest outstanding call of ``tool_name``, if any."""
        by_tool = self._pending_calls.get(process_id)
        if not by_tool:
            return None
        queue = by_tool.get(tool_name)
        if not queue:
            return None
        call_id = queue.popleft()
        if not queue:
            del by_tool[tool_name]
        if not by_tool:
            del self._pending_calls[process_id]
        return call_id

    def pending_calls(self, process_id: str) -> dict[str, list[str]]:
        by_tool = self._pending_calls.get(process_id, {})
        return {tool: list(queue) for tool, queue in by_tool.items()}

    def clear_pending_calls(self, process_id: str) -> None:
        self._pending_calls.pop(process_id, None)
