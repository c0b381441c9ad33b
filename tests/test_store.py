from __future__ import annotations

from datetime import datetime, timezone

from convoscope.engine import reducers
from convoscope.engine.store import LiveStateStore

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _start(store: LiveStateStore, channel_id: str, worker_id: str) -> None:
    store.update(channel_id, lambda s: reducers.start_worker(s, worker_id, "task", 1.0, T0))


def test_update_creates_state_lazily_and_bumps_version() -> None:
    store = LiveStateStore()
    assert "c1" not in store

    store.update("c1", lambda s: s.evolve(is_typing=True))

    assert store.get("c1").is_typing is True
    assert store.version == 1
    assert len(store) == 1


def test_update_without_create_ignores_unknown_channel() -> None:
    store = LiveStateStore()

    assert store.update("c1", lambda s: s.evolve(is_typing=True), create=False) is None
    assert "c1" not in store
    assert store.version == 0


def test_reducer_returning_same_state_commits_nothing() -> None:
    store = LiveStateStore()
    store.update("c1", lambda s: s.evolve(is_typing=True))
    before = store.get("c1")

    assert store.update("c1", lambda s: s) is before
    assert store.version == 1


def test_process_index_follows_active_sets() -> None:
    store = LiveStateStore()
    _start(store, "c7", "w1")

    assert store.channel_of("w1") == "c7"
    assert store.resolve_channel("w1") == "c7"
    # A declared channel that does not hold the process falls back to the index.
    assert store.resolve_channel("w1", "c-wrong") == "c7"

    store.update("c7", lambda s: reducers.complete_worker(s, "w1", "ok", T0))

    assert store.channel_of("w1") is None
    assert store.resolve_channel("w1") is None


def test_removing_process_drops_its_pending_calls() -> None:
    store = LiveStateStore()
    _start(store, "c1", "w1")
    store.push_pending_call("w1", "search")

    store.update("c1", lambda s: reducers.complete_worker(s, "w1", "ok", T0))

    assert store.pending_calls("w1") == {}


def test_pending_calls_are_fifo_per_tool() -> None:
    store = LiveStateStore()
    first = store.push_pending_call("w1", "search")
    other = store.push_pending_call("w1", "fetch")
    second = store.push_pending_call("w1", "search")

    assert store.pop_pending_call("w1", "search") == first
    assert store.pop_pending_call("w1", "search") == second
    assert store.pop_pending_call("w1", "search") is None
    assert store.pending_calls("w1") == {"fetch": [other]}

    store.clear_pending_calls("w1")
    assert store.pop_pending_call("w1", "fetch") is None


def test_states_view_is_read_only() -> None:
    store = LiveStateStore()
    store.update("c1", lambda s: s.evolve(is_typing=True))

    try:
        store.states["c2"] = store.get("c1")  # type: ignore[index]
    except TypeError:
        pass
    else:
        raise AssertionError("states mapping should be read-only")
    assert "c2" not in store
