"""Pure state transitions for a single conversation.

Every function here takes the latest committed ``LiveState`` and
returns the next one (or the same object when nothing changes). They
never touch the store, the network or the clock: callers pass in any
timestamps they need. ``LiveStateStore.update`` is the only place
these results get committed.
"""
from __future__ import annotations

import bisect
from dataclasses import replace
from datetime import datetime
from typing import Iterable

from convoscope.engine.models import WORKER_DONE, WORKER_FAILED, WORKER_RUNNING
from convoscope.shared.models.live_state import ActiveBranch, ActiveWorker, LiveState
from convoscope.shared.models.payloads import HistoryPage, StatusBlockSnapshot
from convoscope.shared.models.timeline import (
    TimelineBranchRun,
    TimelineItem,
    TimelineWorkerRun,
    is_finalized,
    item_timestamp,
)


# ── timeline ─────────────────────────────────────────────────────────

def _is_sorted(items: tuple[TimelineItem, ...]) -> bool:
    return all(
        item_timestamp(a) <= item_timestamp(b) for a, b in zip(items, items[1:])
    )


def _sorted_timeline(items: Iterable[TimelineItem]) -> tuple[TimelineItem, ...]:
    items = tuple(items)
    if _is_sorted(items):
        return items
    # Stable: items with equal timestamps keep their arrival order.
    return tuple(sorted(items, key=item_timestamp))


def append_item(state: LiveState, item: TimelineItem) -> LiveState:
    """Insert ``item`` keeping the timeline in timestamp order.

    Items with an id already present are ignored. Equal timestamps keep
    arrival order, so a live append lands after everything already
    stamped at the same instant.
    """
    if state.find_item(item.id) is not None:
        return state
    timeline = list(state.timeline)
    index = bisect.bisect_right(
        timeline, item_timestamp(item), key=item_timestamp,
    )
    timeline.insert(index, item)
    return state.evolve(timeline=timeline)


def update_item(state: LiveState, item_id: str, updater) -> LiveState:
    """Apply ``updater`` to the item with ``item_id``; no-op if absent.

    ``updater`` returns either a replacement item or the same item.
    Only the first match is updated since ids are unique.
    """
    for index, item in enumerate(state.timeline):
        if item.id != item_id:
            continue
        updated = updater(item)
        if updated is item:
            return state
        timeline = list(state.timeline)
        timeline[index] = updated
        return state.evolve(timeline=timeline)
    return state


def merge_initial_history(state: LiveState, page: HistoryPage) -> LiveState:
    """Combine a freshly fetched newest page with live-pushed items.

    Items the stream delivered while the fetch was in flight survive
    only if they are strictly newer than the newest history item, and
    not already part of the page. History wins at the boundary.
    """
    history = page.items
    if history:
        boundary = item_timestamp(history[-1])
        history_ids = {item.id for item in history}
        survivors = [
            item for item in state.timeline
            if item.id not in history_ids and item_timestamp(item) > boundary
        ]
    else:
        survivors = list(state.timeline)
    return state.evolve(
        timeline=_sorted_timeline((*history, *survivors)),
        has_more=page.has_more,
    )


def prepend_older_page(state: LiveState, page: HistoryPage) -> LiveState:
    """Put an older page in front of the timeline and clear the loading flag."""
    known = {item.id for item in state.timeline}
    older = [item for item in page.items if item.id not in known]
    return state.evolve(
        timeline=_sorted_timeline((*older, *state.timeline)),
        has_more=page.has_more,
        loading_more=False,
    )


# ── workers ──────────────────────────────────────────────────────────

def start_worker(
    state: LiveState,
    worker_id: str,
    task: str,
    started_at: float,
    started_dt: datetime,
) -> LiveState:
    worker = ActiveWorker(
        id=worker_id,
        task=task,
        status="starting",
        started_at=started_at,
    )
    state = state.evolve(workers={**state.workers, worker_id: worker})
    return append_item(state, TimelineWorkerRun(
        id=worker_id,
        task=task,
        status=WORKER_RUNNING,
        started_at=started_dt,
    ))


def set_worker_status(state: LiveState, worker_id: str, status: str) -> LiveState:
    """Update the active record and mirror the status onto its run item."""
    worker = state.workers.get(worker_id)
    if worker is not None and worker.status != status:
        state = state.evolve(
            workers={**state.workers, worker_id: replace(worker, status=status)},
        )

    def mirror(item: TimelineItem) -> TimelineItem:
        if not isinstance(item, TimelineWorkerRun) or is_finalized(item):
            return item
        if item.status == status:
            return item
        return replace(item, status=status)

    return update_item(state, worker_id, mirror)


def complete_worker(
    state: LiveState,
    worker_id: str,
    result: str,
    completed_dt: datetime,
    success: bool = True,
) -> LiveState:
    """Drop the worker from the active set and finalize its run item.

    An already finalized item is left untouched, which makes repeated
    completion events harmless.
    """
    if worker_id in state.workers:
        workers = dict(state.workers)
        del workers[worker_id]
        state = state.evolve(workers=workers)

    def finalize(item: TimelineItem) -> TimelineItem:
        if not isinstance(item, TimelineWorkerRun) or is_finalized(item):
            return item
        return replace(
            item,
            result=result,
            status=WORKER_DONE if success else WORKER_FAILED,
            completed_at=completed_dt,
        )

    return update_item(state, worker_id, finalize)


# ── branches ─────────────────────────────────────────────────────────

def start_branch(
    state: LiveState,
    branch_id: str,
    description: str,
    started_at: float,
    started_dt: datetime,
) -> LiveState:
    branch = ActiveBranch(
        id=branch_id,
        description=description,
        started_at=started_at,
    )
    state = state.evolve(branches={**state.branches, branch_id: branch})
    return append_item(state, TimelineBranchRun(
        id=branch_id,
        description=description,
        started_at=started_dt,
    ))


def complete_branch(
    state: LiveState,
    branch_id: str,
    conclusion: str,
    completed_dt: datetime,
) -> LiveState:
    if branch_id in state.branches:
        branches = dict(state.branches)
        del branches[branch_id]
        state = state.evolve(branches=branches)

    def finalize(item: TimelineItem) -> TimelineItem:
        if not isinstance(item, TimelineBranchRun) or is_finalized(item):
            return item
        return replace(item, conclusion=conclusion, completed_at=completed_dt)

    return update_item(state, branch_id, finalize)


# ── tools ────────────────────────────────────────────────────────────

def tool_started(state: LiveState, process_id: str, tool_name: str) -> LiveState:
    """Record what a worker or branch is doing right now."""
    worker = state.workers.get(process_id)
    if worker is not None:
        return state.evolve(workers={
            **state.workers,
            process_id: replace(worker, current_tool=tool_name),
        })
    branch = state.branches.get(process_id)
    if branch is not None:
        return state.evolve(branches={
            **state.branches,
            process_id: replace(branch, current_tool=tool_name),
        })
    return state


def tool_completed(state: LiveState, process_id: str, tool_name: str) -> LiveState:
    worker = state.workers.get(process_id)
    if worker is not None:
        return state.evolve(workers={
            **state.workers,
            process_id: replace(
                worker, current_tool=None, tool_calls=worker.tool_calls + 1,
            ),
        })
    branch = state.branches.get(process_id)
    if branch is not None:
        return state.evolve(branches={
            **state.branches,
            process_id: replace(
                branch,
                current_tool=None,
                last_tool=tool_name,
                tool_calls=branch.tool_calls + 1,
            ),
        })
    return state


# ── snapshot ─────────────────────────────────────────────────────────

def _finished(state: LiveState, process_id: str) -> bool:
    item = state.find_item(process_id)
    return item is not None and is_finalized(item)


def apply_snapshot(state: LiveState, block: StatusBlockSnapshot) -> LiveState:
    """Reconcile one conversation's snapshot block into its live state.

    Snapshot-owned fields overwrite; stream-owned fields are carried
    over from the record already in memory. Processes missing from the
    snapshot stay put: only completion events remove them.

    Processes whose run item is already finalized are skipped, since the
    snapshot may have been taken before their completion event arrived.
    """
    active_workers = [info for info in block.active_workers if not _finished(state, info.id)]
    active_branches = [info for info in block.active_branches if not _finished(state, info.id)]

    workers = dict(state.workers)
    for info in active_workers:
        existing = workers.get(info.id)
        workers[info.id] = ActiveWorker(
            id=info.id,
            task=info.task,
            status=info.status,
            started_at=info.started_at.timestamp(),
            tool_calls=info.tool_calls,
            current_tool=existing.current_tool if existing else None,
        )

    branches = dict(state.branches)
    for info in active_branches:
        existing = branches.get(info.id)
        branches[info.id] = ActiveBranch(
            id=info.id,
            description=info.description,
            started_at=info.started_at.timestamp(),
            tool_calls=existing.tool_calls if existing else 0,
            current_tool=existing.current_tool if existing else None,
            last_tool=existing.last_tool if existing else None,
        )

    state = state.evolve(workers=workers, branches=branches)

    # Make sure every active process has a run item to finalize later.
    for info in active_workers:
        if state.find_item(info.id) is not None:
            if info.status:
                state = set_worker_status(state, info.id, info.status)
            continue
        state = append_item(state, TimelineWorkerRun(
            id=info.id,
            task=info.task,
            status=info.status or WORKER_RUNNING,
            started_at=info.started_at,
        ))
    for info in active_branches:
        if state.find_item(info.id) is None:
            state = append_item(state, TimelineBranchRun(
                id=info.id,
                description=info.description,
                started_at=info.started_at,
            ))
    return state
