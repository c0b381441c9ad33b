"""Paginated timeline history for conversations.

The loader flips ``history_loaded`` / ``loading_more`` synchronously
before awaiting the network, which is what keeps a second request for
the same conversation from starting while one is in flight. Results
are merged into whatever the stream has added in the meantime, never
into a copy taken before the fetch.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Protocol

import aiohttp

from convoscope.engine import reducers
from convoscope.engine.errors import ConvoscopeError
from convoscope.engine.store import LiveStateStore
from convoscope.shared.models.payloads import ChannelInfo, HistoryPage
from convoscope.shared.models.timeline import item_timestamp

logger = logging.getLogger(__name__)

PAGE_SIZE = 50

# Failures that leave state at its last-known-good value.
FETCH_ERRORS = (ConvoscopeError, aiohttp.ClientError, asyncio.TimeoutError)


class HistorySource(Protocol):
    async def channel_messages(self, channel_id: str, limit: int = ..., before=None) -> HistoryPage: ...


class HistoryLoader:
    """Loads the newest page and older pages of conversation timelines."""

    def __init__(
        self,
        store: LiveStateStore,
        source: HistorySource,
        page_size: int = PAGE_SIZE,
    ) -> None:
        self._store = store
        self._source = source
        self.page_size = page_size

    async def load_initial(self, channel_id: str, page_size: int | None = None) -> bool:
        """Fetch the newest page for ``channel_id`` unless already requested.

        Returns True when a page was merged.
        """
        state = self._store.get(channel_id)
        if state is not None and state.history_loaded:
            return False
        # Committed before the await so concurrent callers back off.
        self._store.update(channel_id, lambda s: s.evolve(history_loaded=True))

        limit = page_size or self.page_size
        try:
            page = await self._source.channel_messages(channel_id, limit)
        except FETCH_ERRORS as exc:
            logger.warning("Failed to load history for %s: %s", channel_id, exc)
            # Let the next ensure_loaded pass request the page again.
            self._store.update(
                channel_id,
                lambda s: s.evolve(history_loaded=False) if s.history_loaded else s,
                create=False,
            )
            return False

        self._store.update(
            channel_id,
            lambda s: reducers.merge_initial_history(s, page),
            create=False,
        )
        logger.debug(
            "Loaded %d history item(s) for %s (has_more=%s)",
            len(page.items), channel_id, page.has_more,
        )
        return True

    async def load_older(self, channel_id: str) -> bool:
        """Prepend the page before the current oldest item.

        No-op while a page is already loading, when the server reported
        nothing older, or when the timeline is still empty.
        """
        state = self._store.get(channel_id)
        if state is None or state.loading_more or not state.has_more:
            return False
        oldest = state.oldest
        if oldest is None:
            return False
        before = item_timestamp(oldest)

        self._store.update(channel_id, lambda s: s.evolve(loading_more=True))
        try:
            page = await self._source.channel_messages(channel_id, self.page_size, before)
        except FETCH_ERRORS as exc:
            logger.warning("Failed to load older messages for %s: %s", channel_id, exc)
            self._store.update(
                channel_id,
                lambda s: s.evolve(loading_more=False) if s.loading_more else s,
                create=False,
            )
            return False

        self._store.update(
            channel_id,
            lambda s: reducers.prepend_older_page(s, page),
            create=False,
        )
        return True

    async def ensure_loaded(self, channels: Iterable[ChannelInfo]) -> int:
        """Start an initial load for every channel not requested yet.

        Loads run concurrently; returns how many were started.
        """
        pending = []
        for channel in channels:
            state = self._store.get(channel.id)
            if state is not None and state.history_loaded:
                continue
            pending.append(self.load_initial(channel.id))
        if pending:
            await asyncio.gather(*pending)
        return len(pending)
