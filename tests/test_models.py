from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from convoscope.engine.errors import PayloadError
from convoscope.engine.models import (
    ConnectionState,
    MessageRole,
    connection_banner,
    format_timestamp,
    parse_timestamp,
)
from convoscope.shared.models.live_state import LiveState
from convoscope.shared.models.payloads import HistoryPage, parse_status_map
from convoscope.shared.models.timeline import (
    TimelineBranchRun,
    TimelineMessage,
    is_finalized,
    item_from_dict,
    item_to_dict,
)


def test_parse_timestamp_normalizes_to_utc() -> None:
    naive = parse_timestamp("2026-03-01 12:00:00")
    offset = parse_timestamp("2026-03-01T14:00:00+02:00")

    assert naive == offset
    assert naive.tzinfo is timezone.utc
    assert parse_timestamp("") is None
    assert format_timestamp(naive) == "2026-03-01T12:00:00Z"


def test_banner_hidden_when_connected_or_first_connect_with_data() -> None:
    assert connection_banner(ConnectionState.CONNECTED, False) is None
    assert connection_banner(ConnectionState.CONNECTING, True) is None
    assert connection_banner(ConnectionState.CONNECTING, False) == ("Connecting...", "info")
    assert connection_banner(ConnectionState.RECONNECTING, True)[1] == "warning"


def test_item_from_dict_and_back() -> None:
    raw = {
        "type": "branch_run", "id": "b1", "description": "weighing options",
        "started_at": "2026-03-01T12:00:00Z", "completed_at": None, "conclusion": None,
    }

    item = item_from_dict(raw)

    assert isinstance(item, TimelineBranchRun)
    assert not is_finalized(item)
    assert item_to_dict(item) == raw


def test_item_from_dict_rejects_bad_items() -> None:
    with pytest.raises(PayloadError, match="unknown timeline item type"):
        item_from_dict({"type": "poll", "id": "p1"})
    with pytest.raises(PayloadError):
        item_from_dict({"type": "message", "id": "m1", "role": "bot", "created_at": "2026-03-01"})
    with pytest.raises(PayloadError, match="started_at"):
        item_from_dict({"type": "worker_run", "id": "w1"})


def test_history_page_sorts_items() -> None:
    page = HistoryPage.from_dict({
        "items": [
            {"type": "message", "id": "b", "role": "assistant", "created_at": "2026-03-01T12:00:02Z"},
            {"type": "message", "id": "a", "role": "user", "created_at": "2026-03-01T12:00:01Z"},
        ],
    })

    assert [item.id for item in page.items] == ["a", "b"]
    assert page.has_more is False


def test_status_map_requires_object() -> None:
    with pytest.raises(PayloadError):
        parse_status_map([])


def test_live_state_is_immutable() -> None:
    t0 = datetime(2026, 3, 1, tzinfo=timezone.utc)
    msg = TimelineMessage(id="m1", role=MessageRole.USER, content="x", created_at=t0)
    state = LiveState().evolve(timeline=[msg], workers={})

    assert state.timeline == (msg,)
    assert state.newest is msg and state.oldest is msg
    with pytest.raises(TypeError):
        state.workers["w1"] = None  # type: ignore[index]
    later = state.evolve(timeline=[*state.timeline, TimelineMessage(
        id="m2", role=MessageRole.USER, content="y", created_at=t0 + timedelta(seconds=1),
    )])
    assert len(state.timeline) == 1
    assert later.find_item("m2") is not None
