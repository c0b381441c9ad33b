"""Wires the collaborators into one live view.

``LiveContext`` owns the store and everything that feeds or reads it:
the HTTP client, the event stream, the history loader, the snapshot
synchronizer and the aggregation layer. It also runs the two
background loops a live view needs, channel-list polling and
activity-edge expiry, and performs recovery after a stream gap.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

import aiohttp

from convoscope.adapters.api_client import ApiClient
from convoscope.adapters.event_stream import EventStreamClient
from convoscope.engine.aggregation import (
    ActiveProcessRegistry,
    ActivityEdges,
    TranscriptLog,
    VersionCounters,
)
from convoscope.engine.config import LiveConfig
from convoscope.engine.event_processor import EventProcessor
from convoscope.engine.history import FETCH_ERRORS, HistoryLoader
from convoscope.engine.models import ConnectionState, connection_banner
from convoscope.engine.snapshot_sync import SnapshotSynchronizer
from convoscope.engine.store import LiveStateStore
from convoscope.shared.models.payloads import ChannelInfo

logger = logging.getLogger(__name__)


class LiveContext:
    """Process-wide live state plus the tasks that keep it current."""

    def __init__(
        self,
        config: LiveConfig | None = None,
        *,
        api: ApiClient | None = None,
        stream_session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or LiveConfig()
        cfg = self.config

        self.store = LiveStateStore()
        self.versions = VersionCounters()
        self.transcripts = TranscriptLog()
        self.edges = ActivityEdges(cfg.link_active_seconds, clock=clock)
        self.registry = ActiveProcessRegistry(self.store)
        self.processor = EventProcessor(
            self.store,
            versions=self.versions,
            transcripts=self.transcripts,
            edges=self.edges,
        )

        self.api = api or ApiClient(
            cfg.base_url, cfg.api_prefix,
            timeout_seconds=cfg.request_timeout_seconds,
        )
        self.history = HistoryLoader(self.store, self.api, cfg.page_size)
        self.snapshot = SnapshotSynchronizer(self.store, self.api)
        self.stream = EventStreamClient(
            self.api.events_url,
            {event_type: self.processor.process for event_type in self.processor.handlers},
            self.on_reconnect,
            session=stream_session,
            initial_retry=cfg.initial_retry_seconds,
            max_retry=cfg.max_retry_seconds,
            backoff=cfg.backoff_multiplier,
        )

        self.channels: list[ChannelInfo] = []
        self._tasks: list[asyncio.Task] = []
        self._started = False

    # ── read side ────────────────────────────────────────────────────

    @property
    def connection_state(self) -> ConnectionState:
        return self.stream.state

    @property
    def has_data(self) -> bool:
        return bool(self.channels) or any(
            state.history_loaded for state in self.store.states.values()
        )

    @property
    def banner(self) -> tuple[str, str] | None:
        return connection_banner(self.connection_state, self.has_data)

    # ── lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Connect the stream, then populate the store from HTTP."""
        if self._started:
            return
        self._started = True
        logger.info("Starting live context against %s", self.api.events_url)
        self.stream.start()
        await self.snapshot.sync()
        await self.refresh_channels()
        self._tasks = [
            asyncio.create_task(self._channel_poll_loop(), name="channel-poll"),
            asyncio.create_task(self._edge_tick_loop(), name="edge-tick"),
        ]

    async def load_once(self) -> None:
        """One-shot population without the stream or background loops."""
        await self.snapshot.sync()
        await self.refresh_channels()

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        await self.stream.stop()
        await self.api.close()
        self._started = False
        logger.info("Live context stopped")

    async def __aenter__(self) -> LiveContext:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ── recovery and polling ─────────────────────────────────────────

    async def on_reconnect(self) -> None:
        """Repair whatever the stream missed while it was away."""
        await self.snapshot.sync()
        await self.refresh_channels()
        self.versions.bump_task()

    async def refresh_channels(self) -> bool:
        try:
            channels = await self.api.channels()
        except FETCH_ERRORS as exc:
            logger.warning("Failed to refresh channel list: %s", exc)
            return False
        self.channels = channels
        self.registry.set_channels(channels)
        started = await self.history.ensure_loaded(channels)
        if started:
            logger.debug("Requested history for %d new channel(s)", started)
        return True

    async def load_older(self, channel_id: str) -> bool:
        return await self.history.load_older(channel_id)

    async def _channel_poll_loop(self) -> None:
        interval = self.config.channel_refresh_seconds
        try:
            while True:
                await asyncio.sleep(interval)
                await self.refresh_channels()
        except asyncio.CancelledError:
            pass

    async def _edge_tick_loop(self) -> None:
        interval = self.config.edge_tick_seconds
        try:
            while True:
                await asyncio.sleep(interval)
                self.edges.tick()
        except asyncio.CancelledError:
            pass
