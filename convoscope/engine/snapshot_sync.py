"""Reconciles the server's active-process snapshot into the store.

Run at startup and after every stream reconnect to repair whatever
the stream missed while it was down. The snapshot only ever adds or
refreshes processes: removal stays with completion events, so a
snapshot racing a stream update can't make a running process blink
out of the view.
"""
from __future__ import annotations

import logging
from typing import Protocol

from convoscope.engine import reducers
from convoscope.engine.history import FETCH_ERRORS
from convoscope.engine.store import LiveStateStore
from convoscope.shared.models.payloads import StatusBlockSnapshot

logger = logging.getLogger(__name__)


class SnapshotSource(Protocol):
    async def channel_status(self) -> dict[str, StatusBlockSnapshot]: ...


class SnapshotSynchronizer:
    def __init__(self, store: LiveStateStore, source: SnapshotSource) -> None:
        self._store = store
        self._source = source
        self.sync_count = 0
        self.last_error: Exception | None = None

    async def sync(self) -> bool:
        """Fetch one snapshot and merge it. Returns False on fetch failure."""
        try:
            status_map = await self._source.channel_status()
        except FETCH_ERRORS as exc:
            self.last_error = exc
            logger.warning("Failed to fetch channel status: %s", exc)
            return False

        self.apply(status_map)
        self.sync_count += 1
        self.last_error = None
        return True

    def apply(self, status_map: dict[str, StatusBlockSnapshot]) -> None:
        """Merge an already fetched snapshot into the store."""
        workers = branches = 0
        for channel_id, block in status_map.items():
            self._store.update(
                channel_id,
                lambda s, block=block: reducers.apply_snapshot(s, block),
            )
            workers += len(block.active_workers)
            branches += len(block.active_branches)
        logger.debug(
            "Snapshot applied: %d channel(s), %d worker(s), %d branch(es)",
            len(status_map), workers, branches,
        )
