from __future__ import annotations

from datetime import datetime, timedelta, timezone

from convoscope.engine import reducers
from convoscope.engine.models import MessageRole
from convoscope.shared.models.live_state import ActiveBranch, ActiveWorker, LiveState
from convoscope.shared.models.payloads import (
    BranchStatusInfo,
    HistoryPage,
    StatusBlockSnapshot,
    WorkerStatusInfo,
)
from convoscope.shared.models.timeline import (
    TimelineBranchRun,
    TimelineMessage,
    TimelineWorkerRun,
    item_timestamp,
)

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _t(n: int) -> datetime:
    return T0 + timedelta(seconds=n)


def _msg(item_id: str, n: int, content: str = "") -> TimelineMessage:
    return TimelineMessage(
        id=item_id, role=MessageRole.USER, content=content or item_id, created_at=_t(n),
    )


def _ids(state: LiveState) -> list[str]:
    return [item.id for item in state.timeline]


def _assert_sorted(state: LiveState) -> None:
    stamps = [item_timestamp(item) for item in state.timeline]
    assert stamps == sorted(stamps)


def test_append_item_keeps_timestamp_order() -> None:
    state = LiveState()
    state = reducers.append_item(state, _msg("m3", 3))
    state = reducers.append_item(state, _msg("m1", 1))
    state = reducers.append_item(state, _msg("m2", 2))

    assert _ids(state) == ["m1", "m2", "m3"]


def test_append_item_equal_timestamp_lands_after_existing() -> None:
    state = LiveState(timeline=(_msg("a", 5),))
    state = reducers.append_item(state, _msg("b", 5))

    assert _ids(state) == ["a", "b"]


def test_append_item_with_known_id_is_a_no_op() -> None:
    state = LiveState(timeline=(_msg("m1", 1),))

    assert reducers.append_item(state, _msg("m1", 9, "changed")) is state


def test_merge_initial_history_dedups_at_boundary() -> None:
    history = HistoryPage(
        items=tuple(_msg(f"t{n}", n) for n in range(1, 6)),
        has_more=False,
    )
    # The stream pushed t4 (already in history) and t6 while the fetch ran.
    state = LiveState(timeline=(_msg("live-t4", 4), _msg("t6", 6)))

    merged = reducers.merge_initial_history(state, history)

    assert _ids(merged) == ["t1", "t2", "t3", "t4", "t5", "t6"]
    assert merged.has_more is False
    _assert_sorted(merged)


def test_merge_initial_history_drops_live_item_already_in_page() -> None:
    history = HistoryPage(items=(_msg("m1", 1), _msg("w1", 2)), has_more=True)
    live = TimelineWorkerRun(id="w1", task="x", status="running", started_at=_t(3))

    merged = reducers.merge_initial_history(LiveState(timeline=(live,)), history)

    assert _ids(merged) == ["m1", "w1"]
    assert merged.has_more is True


def test_merge_initial_history_with_empty_page_keeps_live_items() -> None:
    state = LiveState(timeline=(_msg("m9", 9),))

    merged = reducers.merge_initial_history(state, HistoryPage(items=(), has_more=False))

    assert _ids(merged) == ["m9"]
    assert merged.has_more is False


def test_prepend_older_page_clears_loading_flag() -> None:
    state = LiveState(timeline=(_msg("m5", 5), _msg("m6", 6)), loading_more=True)
    page = HistoryPage(items=(_msg("m3", 3), _msg("m4", 4)), has_more=False)

    state = reducers.prepend_older_page(state, page)

    assert _ids(state) == ["m3", "m4", "m5", "m6"]
    assert state.loading_more is False
    assert state.has_more is False


def test_worker_lifecycle_and_idempotent_completion() -> None:
    state = reducers.start_worker(LiveState(), "w1", "crawl", 100.0, _t(1))
    assert state.workers["w1"].status == "starting"
    assert state.find_item("w1").status == "running"

    state = reducers.set_worker_status(state, "w1", "reading files")
    assert state.workers["w1"].status == "reading files"
    assert state.find_item("w1").status == "reading files"

    done = reducers.complete_worker(state, "w1", "found 3", _t(10))
    assert "w1" not in done.workers
    item = done.find_item("w1")
    assert (item.result, item.status, item.completed_at) == ("found 3", "done", _t(10))

    again = reducers.complete_worker(done, "w1", "found 4", _t(20))
    assert again is done


def test_failed_worker_is_marked_failed() -> None:
    state = reducers.start_worker(LiveState(), "w1", "crawl", 100.0, _t(1))

    state = reducers.complete_worker(state, "w1", "boom", _t(2), success=False)

    assert state.find_item("w1").status == "failed"


def test_status_is_not_mirrored_onto_finalized_item() -> None:
    item = TimelineWorkerRun(
        id="w1", task="t", status="done", started_at=_t(1), completed_at=_t(2),
    )
    state = LiveState(timeline=(item,))

    assert reducers.set_worker_status(state, "w1", "running") is state


def test_branch_tool_completion_tracks_last_tool() -> None:
    state = reducers.start_branch(LiveState(), "b1", "thinking...", 1.0, _t(1))
    state = reducers.tool_started(state, "b1", "search")
    assert state.branches["b1"].current_tool == "search"

    state = reducers.tool_completed(state, "b1", "search")
    branch = state.branches["b1"]
    assert branch.current_tool is None
    assert branch.last_tool == "search"
    assert branch.tool_calls == 1

    state = reducers.complete_branch(state, "b1", "answer is 4", _t(3))
    assert not state.branches
    assert state.find_item("b1").conclusion == "answer is 4"


def test_tool_event_for_unknown_process_is_a_no_op() -> None:
    state = LiveState()

    assert reducers.tool_started(state, "ghost", "x") is state
    assert reducers.tool_completed(state, "ghost", "x") is state


def test_snapshot_preserves_current_tool_and_overwrites_owned_fields() -> None:
    state = LiveState(
        workers={"w1": ActiveWorker(
            id="w1", task="old task", status="starting", started_at=1.0,
            tool_calls=1, current_tool="search",
        )},
        timeline=(TimelineWorkerRun(id="w1", task="old task", status="running", started_at=_t(1)),),
    )
    block = StatusBlockSnapshot(active_workers=(
        WorkerStatusInfo(id="w1", task="new task", status="busy", started_at=_t(1), tool_calls=4),
    ))

    state = reducers.apply_snapshot(state, block)

    worker = state.workers["w1"]
    assert worker.current_tool == "search"
    assert worker.task == "new task"
    assert worker.status == "busy"
    assert worker.tool_calls == 4
    assert state.find_item("w1").status == "busy"


def test_snapshot_keeps_stream_owned_branch_fields() -> None:
    state = LiveState(branches={"b1": ActiveBranch(
        id="b1", description="old", started_at=1.0,
        tool_calls=2, current_tool="fetch", last_tool="search",
    )})
    block = StatusBlockSnapshot(active_branches=(
        BranchStatusInfo(id="b1", description="new", started_at=_t(1)),
    ))

    branch = reducers.apply_snapshot(state, block).branches["b1"]

    assert branch.description == "new"
    assert (branch.tool_calls, branch.current_tool, branch.last_tool) == (2, "fetch", "search")


def test_snapshot_never_removes_and_materializes_missing_items() -> None:
    state = reducers.start_worker(LiveState(), "w-stream", "live", 1.0, _t(5))
    block = StatusBlockSnapshot(
        active_workers=(WorkerStatusInfo(id="w2", task="t2", status="running", started_at=_t(2)),),
        active_branches=(BranchStatusInfo(id="b2", description="d", started_at=_t(3)),),
    )

    state = reducers.apply_snapshot(state, block)

    assert set(state.workers) == {"w-stream", "w2"}
    assert set(state.branches) == {"b2"}
    assert _ids(state) == ["w2", "b2", "w-stream"]
    assert isinstance(state.find_item("b2"), TimelineBranchRun)
    _assert_sorted(state)
