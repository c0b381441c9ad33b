from __future__ import annotations

import pytest

from convoscope.adapters.events import (
    KNOWN_EVENT_TYPES,
    Lagged,
    ToolStarted,
    WorkerCompleted,
    WorkerStarted,
    dict_to_event,
    event_to_dict,
)
from convoscope.engine.errors import EventDecodeError
from convoscope.engine.models import ProcessType


def test_worker_started_decodes_and_ignores_unknown_keys() -> None:
    event = dict_to_event("worker_started", {
        "agent_id": "a1",
        "channel_id": "c1",
        "worker_id": "w1",
        "task": "index repo",
        "extra": "ignored",
    })

    assert event == WorkerStarted(agent_id="a1", channel_id="c1", worker_id="w1", task="index repo")


def test_unknown_event_type_returns_none() -> None:
    assert dict_to_event("something_new", {"worker_id": "w1"}) is None


def test_missing_process_id_is_a_decode_error() -> None:
    with pytest.raises(EventDecodeError, match="worker_id"):
        dict_to_event("worker_completed", {"channel_id": "c1", "result": "ok"})


def test_non_object_payload_is_a_decode_error() -> None:
    with pytest.raises(EventDecodeError):
        dict_to_event("worker_status", ["w1", "running"])


def test_tool_event_parses_process_type_and_stringifies_args() -> None:
    event = dict_to_event("tool_started", {
        "channel_id": "",
        "process_type": "branch",
        "process_id": "b1",
        "tool_name": "search",
        "args": {"query": "dogs"},
    })

    assert isinstance(event, ToolStarted)
    assert event.process_type is ProcessType.BRANCH
    assert event.channel_id is None
    assert event.args == '{"query": "dogs"}'


def test_unknown_process_type_is_a_decode_error() -> None:
    with pytest.raises(EventDecodeError, match="process_type"):
        dict_to_event("tool_completed", {
            "process_type": "daemon", "process_id": "p1", "tool_name": "x",
        })


def test_worker_completed_defaults_to_success() -> None:
    event = dict_to_event("worker_completed", {"worker_id": "w1", "result": "fine"})

    assert isinstance(event, WorkerCompleted)
    assert event.success is True
    assert event.channel_id is None


def test_lagged_is_a_known_event() -> None:
    assert "lagged" in KNOWN_EVENT_TYPES
    assert dict_to_event("lagged", {"skipped": 12}) == Lagged(skipped=12)


def test_event_to_dict_uses_type_key_and_enum_values() -> None:
    payload = event_to_dict(ToolStarted(
        process_type=ProcessType.WORKER, process_id="w1", tool_name="grep",
    ))

    assert payload["type"] == "tool_started"
    assert payload["process_type"] == "worker"
    assert "event_type" not in payload
    assert "channel_id" not in payload
