"""Server-Sent Events client for the live event feed.

Holds one logical subscription: connects, decodes every frame into a
typed event, dispatches it to the handler registered for its type and
reconnects with exponential backoff when the stream drops. After a
reconnect the ``on_reconnect`` callback runs to completion before the
first event of the new subscription is dispatched, so a full resync is
in place before fresh deltas land on top of it.
"""
from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from convoscope.adapters.events import Lagged, StreamEvent, dict_to_event
from convoscope.engine.errors import ApiError, EventDecodeError
from convoscope.engine.models import ConnectionState

logger = logging.getLogger(__name__)

INITIAL_RETRY_SECONDS = 1.0
MAX_RETRY_SECONDS = 30.0
BACKOFF_MULTIPLIER = 2.0

StreamHandler = Callable[[StreamEvent], Any]
ReconnectCallback = Callable[[], Awaitable[None] | None]
StateCallback = Callable[[ConnectionState], None]


@dataclass
class SSEFrame:
    event: str = "message"
    data: str = ""
    id: str | None = None


@dataclass
class SSEParser:
    """Incremental line parser for the ``text/event-stream`` format."""
    _event: str = ""
    _data: list[str] = field(default_factory=list)
    _id: str | None = None
    retry_ms: int | None = None

    def feed(self, line: str) -> SSEFrame | None:
        """Consume one line (without terminator); return a frame when complete."""
        if line == "":
            if not self._data:
                self._event = ""
                return None
            frame = SSEFrame(
                event=self._event or "message",
                data="\n".join(self._data),
                id=self._id,
            )
            self._event = ""
            self._data = []
            return frame
        if line.startswith(":"):
            return None  # comment / keep-alive
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        elif name == "retry" and value.isdigit():
            self.retry_ms = int(value)
        return None


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class EventStreamClient:
    """One long-lived subscription to the server's event feed."""

    def __init__(
        self,
        url: str,
        handlers: Mapping[str, StreamHandler],
        on_reconnect: ReconnectCallback | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        on_state_change: StateCallback | None = None,
        initial_retry: float = INITIAL_RETRY_SECONDS,
        max_retry: float = MAX_RETRY_SECONDS,
        backoff: float = BACKOFF_MULTIPLIER,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._handlers = dict(handlers)
        self._on_reconnect = on_reconnect
        self._on_state_change = on_state_change
        self._session = session
        self._owns_session = session is None
        self._initial_retry = initial_retry
        self._max_retry = max_retry
        self._backoff = backoff
        self._sleep = sleep

        self._state = ConnectionState.CONNECTING
        self._retry_delay = initial_retry
        self._had_connection = False
        self._stopped = False
        self._task: asyncio.Task | None = None
        self.reconnect_count = 0
        self.dropped_frames = 0

    # ── state ────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def retry_delay(self) -> float:
        return self._retry_delay

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        logger.info("Event stream %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(state)
            except Exception:
                logger.exception("Connection state callback failed")

    # ── lifecycle ────────────────────────────────────────────────────

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopped = False
            self._task = asyncio.create_task(self.run(), name="event-stream")
        return self._task

    async def stop(self) -> None:
        self._stopped = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._set_state(ConnectionState.DISCONNECTED)

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # No total timeout: the stream is meant to stay open.
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=10),
            )
            self._owns_session = True
        return self._session

    async def run(self) -> None:
        """Connect and dispatch until :meth:`stop` is called."""
        try:
            while not self._stopped:
                self._set_state(
                    ConnectionState.RECONNECTING if self._had_connection
                    else ConnectionState.CONNECTING
                )
                try:
                    await self._consume_once()
                    logger.warning("Event stream closed by server")
                except asyncio.CancelledError:
                    raise
                except (aiohttp.ClientError, asyncio.TimeoutError, ApiError) as exc:
                    logger.warning("Event stream error: %s", exc)
                if self._stopped:
                    break
                self._set_state(ConnectionState.RECONNECTING)
                delay = self._retry_delay
                self._retry_delay = min(delay * self._backoff, self._max_retry)
                logger.debug("Reconnecting event stream in %.1fs", delay)
                await self._sleep(delay)
        finally:
            if self._stopped:
                self._set_state(ConnectionState.DISCONNECTED)

    async def _consume_once(self) -> None:
        session = self._ensure_session()
        async with session.get(
            self._url, headers={"Accept": "text/event-stream"},
        ) as resp:
            if resp.status != 200:
                raise ApiError(resp.status, self._url)

            was_reconnect = self._had_connection
            self._had_connection = True
            self._retry_delay = self._initial_retry
            self._set_state(ConnectionState.CONNECTED)
            if was_reconnect:
                self.reconnect_count += 1
                await self._recover("reconnect")

            parser = SSEParser()
            async for raw in resp.content:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                frame = parser.feed(line)
                if frame is not None:
                    await self.dispatch_frame(frame)
                if self._stopped:
                    return
            if parser.retry_ms is not None:
                self._retry_delay = parser.retry_ms / 1000

    async def _recover(self, reason: str) -> None:
        if self._on_reconnect is None:
            return
        logger.info("Event stream recovery (%s)", reason)
        try:
            await _maybe_await(self._on_reconnect())
        except Exception:
            logger.exception("Reconnect callback failed")

    # ── dispatch ─────────────────────────────────────────────────────

    async def dispatch_frame(self, frame: SSEFrame) -> None:
        """Decode one SSE frame and hand it to its handler.

        Frames that fail to decode are dropped; nothing a single frame
        contains can interrupt the stream for everyone else.
        """
        try:
            payload = json.loads(frame.data) if frame.data else {}
        except ValueError:
            self.dropped_frames += 1
            logger.debug("Dropping non-JSON %s frame: %.200s", frame.event, frame.data)
            return

        event_type = frame.event
        if event_type == "message" and isinstance(payload, dict):
            event_type = str(payload.get("type") or event_type)

        try:
            event = dict_to_event(event_type, payload)
        except EventDecodeError as exc:
            self.dropped_frames += 1
            logger.debug("Dropping malformed frame: %s", exc)
            return
        if event is None:
            return

        if isinstance(event, Lagged):
            logger.warning("Event stream lagged, skipped %d events", event.skipped)
            await self._recover("lagged")
            return

        handler = self._handlers.get(event.event_type)
        if handler is None:
            return
        try:
            await _maybe_await(handler(event))
        except Exception:
            logger.exception("Handler for %s failed", event.event_type)
