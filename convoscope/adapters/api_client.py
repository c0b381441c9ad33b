"""HTTP client for the server's read endpoints.

Wraps one ``aiohttp.ClientSession``. Every method returns parsed
payload dataclasses and raises :class:`ApiError` or
:class:`PayloadError` on failure; callers decide how to absorb them.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import aiohttp

from convoscope.engine.errors import ApiError, PayloadError
from convoscope.engine.models import format_timestamp
from convoscope.shared.models.payloads import (
    ChannelInfo,
    HistoryPage,
    StatusBlockSnapshot,
    parse_status_map,
)

logger = logging.getLogger(__name__)

# The history endpoint clamps larger requests to this size.
MAX_PAGE_SIZE = 100


class ApiClient:
    """Async client for channel list, history and status snapshot."""

    def __init__(
        self,
        base_url: str,
        api_prefix: str = "/api",
        *,
        timeout_seconds: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._base = base_url.rstrip("/") + "/" + api_prefix.strip("/")
        self._base = self._base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    @property
    def events_url(self) -> str:
        return f"{self._base}/events"

    def url(self, path: str) -> str:
        return f"{self._base}/{path.lstrip('/')}"

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> ApiClient:
        self._ensure_session()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _get_json(self, path: str, params: dict[str, str] | None = None) -> Any:
        session = self._ensure_session()
        url = self.url(path)
        async with session.get(url, params=params) as resp:
            if resp.status >= 400:
                body = await resp.text()
                raise ApiError(resp.status, path, body[:500])
            try:
                return await resp.json(content_type=None)
            except ValueError as exc:
                raise PayloadError(f"{path} returned invalid JSON: {exc}") from exc

    # ── endpoints ────────────────────────────────────────────────────

    async def channels(self) -> list[ChannelInfo]:
        data = await self._get_json("/channels")
        if not isinstance(data, dict):
            raise PayloadError(f"/channels returned {type(data).__name__}")
        return [ChannelInfo.from_dict(raw) for raw in data.get("channels") or []]

    async def channel_messages(
        self,
        channel_id: str,
        limit: int = 20,
        before: datetime | None = None,
    ) -> HistoryPage:
        """Fetch up to ``limit`` timeline items older than ``before``."""
        params = {"channel_id": channel_id, "limit": str(min(limit, MAX_PAGE_SIZE))}
        if before is not None:
            params["before"] = format_timestamp(before)
        data = await self._get_json("/channels/messages", params)
        return HistoryPage.from_dict(data)

    async def channel_status(self) -> dict[str, StatusBlockSnapshot]:
        data = await self._get_json("/channels/status")
        return parse_status_map(data)
