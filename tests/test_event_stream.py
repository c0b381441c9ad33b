from __future__ import annotations

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from convoscope.adapters.event_stream import EventStreamClient, SSEFrame, SSEParser
from convoscope.engine.models import ConnectionState


def _feed(parser: SSEParser, text: str) -> list[SSEFrame]:
    frames = []
    for line in text.split("\n"):
        frame = parser.feed(line)
        if frame is not None:
            frames.append(frame)
    return frames


def test_parser_dispatches_on_blank_line_and_skips_comments() -> None:
    parser = SSEParser()

    frames = _feed(parser, (
        ": keepalive\n"
        "\n"
        "event: worker_status\n"
        'data: {"worker_id": "w1",\n'
        'data: "status": "busy"}\n'
        "id: 7\n"
        "\n"
        "data: plain\n"
        "\n"
    ))

    assert frames == [
        SSEFrame(event="worker_status", data='{"worker_id": "w1",\n"status": "busy"}', id="7"),
        SSEFrame(event="message", data="plain", id="7"),
    ]


def test_parser_reads_retry_hint() -> None:
    parser = SSEParser()
    parser.feed("retry: 2500")

    assert parser.retry_ms == 2500


def _client(handlers=None, on_reconnect=None) -> EventStreamClient:
    return EventStreamClient("http://127.0.0.1:1/api/events", handlers or {}, on_reconnect)


@pytest.mark.asyncio
async def test_dispatch_routes_typed_and_untyped_frames() -> None:
    seen = []
    client = _client({
        "worker_status": seen.append,
        "typing_state": seen.append,
    })

    await client.dispatch_frame(SSEFrame(
        event="worker_status", data=json.dumps({"worker_id": "w1", "status": "busy"}),
    ))
    await client.dispatch_frame(SSEFrame(
        data=json.dumps({"type": "typing_state", "channel_id": "c1", "is_typing": True}),
    ))

    assert [e.event_type for e in seen] == ["worker_status", "typing_state"]
    assert seen[1].is_typing is True


@pytest.mark.asyncio
async def test_dispatch_drops_bad_frames_and_survives_handler_errors(caplog) -> None:
    def broken(event):
        raise RuntimeError("handler blew up")

    client = _client({"worker_status": broken})

    await client.dispatch_frame(SSEFrame(event="worker_status", data="{not json"))
    await client.dispatch_frame(SSEFrame(event="worker_status", data=json.dumps({"status": "x"})))
    await client.dispatch_frame(SSEFrame(event="brand_new", data="{}"))
    await client.dispatch_frame(SSEFrame(
        event="worker_status", data=json.dumps({"worker_id": "w1", "status": "x"}),
    ))

    assert client.dropped_frames == 2
    assert "Handler for worker_status failed" in caplog.text


@pytest.mark.asyncio
async def test_lagged_frame_triggers_recovery() -> None:
    calls = []

    async def recover() -> None:
        calls.append("recover")

    client = _client({"lagged": calls.append}, recover)

    await client.dispatch_frame(SSEFrame(event="lagged", data=json.dumps({"skipped": 40})))

    assert calls == ["recover"]


@pytest.mark.asyncio
async def test_backoff_doubles_up_to_cap() -> None:
    async def unavailable(request: web.Request) -> web.Response:
        return web.Response(status=503)

    app = web.Application()
    app.router.add_get("/api/events", unavailable)
    server = TestServer(app)
    await server.start_server()

    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)
        if len(delays) == 7:
            raise asyncio.CancelledError
        await asyncio.sleep(0)

    client = EventStreamClient(
        str(server.make_url("/api/events")), {}, sleep=fake_sleep,
    )
    try:
        with pytest.raises(asyncio.CancelledError):
            await client.run()
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    finally:
        await client.stop()
        await server.close()
    assert client.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_reconnect_runs_recovery_before_new_events() -> None:
    connections = {"n": 0}
    release = asyncio.Event()

    async def events(request: web.Request) -> web.StreamResponse:
        connections["n"] += 1
        n = connections["n"]
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        await resp.write(b": keepalive\n\n")
        payload = json.dumps({"channel_id": "c1", "worker_id": f"w{n}", "task": "t"})
        await resp.write(f"event: worker_started\ndata: {payload}\n\n".encode())
        if n > 1:
            await release.wait()
        return resp

    app = web.Application()
    app.router.add_get("/api/events", events)
    server = TestServer(app)
    await server.start_server()

    order: list[str] = []
    states: list[ConnectionState] = []
    second_seen = asyncio.Event()

    def on_worker_started(event) -> None:
        order.append(event.worker_id)
        if event.worker_id == "w2":
            second_seen.set()

    async def on_reconnect() -> None:
        await asyncio.sleep(0)
        order.append("resync")

    async def no_wait(delay: float) -> None:
        await asyncio.sleep(0)

    client = EventStreamClient(
        str(server.make_url("/api/events")),
        {"worker_started": on_worker_started},
        on_reconnect,
        on_state_change=states.append,
        sleep=no_wait,
    )
    try:
        client.start()
        await asyncio.wait_for(second_seen.wait(), timeout=5)
        assert order == ["w1", "resync", "w2"]
        assert client.reconnect_count == 1
        assert client.state is ConnectionState.CONNECTED
        assert states[:3] == [
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTED,
        ]
    finally:
        await client.stop()
        release.set()
        await server.close()
    assert states[-1] is ConnectionState.DISCONNECTED
