"""Cancellable streaming connection to the broadcast round API."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional
from urllib.parse import quote

import httpx

from .errors import UpstreamCancelled, UpstreamConnectError, UpstreamStreamError
from .logging_config import get_logger

logger = get_logger(__name__)

ROUND_STREAM_PATH = "/api/stream/broadcast/round/{channel_id}.pgn"


class UpstreamStream:
    """One open upstream response, read as a pull-based chunk sequence.

    ``chunks()`` must be consumed by exactly one task. ``cancel()`` may be
    called from any task, any number of times.
    """

    def __init__(self, channel_id: str, response: httpx.Response):
        self.channel_id = channel_id
        self._response = response
        self._reader: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def status_code(self) -> int:
        return self._response.status_code

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        reader = self._reader
        # The reader notices the flag itself after the current chunk
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield raw byte chunks in arrival order.

        Returns normally on a clean end of stream. Raises
        ``UpstreamCancelled`` once ``cancel()`` was called and
        ``UpstreamStreamError`` for any other transport failure.
        """
        self._reader = asyncio.current_task()
        try:
            if self._cancelled:
                raise UpstreamCancelled(self.channel_id)
            async for chunk in self._response.aiter_bytes():
                if self._cancelled:
                    raise UpstreamCancelled(self.channel_id)
                yield chunk
                if self._cancelled:
                    raise UpstreamCancelled(self.channel_id)
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            raise UpstreamCancelled(self.channel_id) from None
        except (httpx.HTTPError, httpx.StreamError) as exc:
            if self._cancelled:
                raise UpstreamCancelled(self.channel_id) from exc
            raise UpstreamStreamError(self.channel_id, f"Upstream stream error: {exc!r}") from exc
        finally:
            self._reader = None
            await self._response.aclose()


class UpstreamConnector:
    """Opens round streams against the broadcast API."""

    def __init__(self, client: httpx.AsyncClient, base_url: str, accept: str = "application/x-ndjson"):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._accept = accept

    def url_for(self, channel_id: str) -> str:
        return self._base_url + ROUND_STREAM_PATH.format(channel_id=quote(channel_id, safe=""))

    async def open(self, channel_id: str) -> UpstreamStream:
        """Issue the streaming GET and wait for the response head.

        Raises:
            UpstreamConnectError: network failure or a non-2xx status.
        """
        request = self._client.build_request(
            "GET",
            self.url_for(channel_id),
            headers={"Accept": self._accept},
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamConnectError(channel_id, reason=str(exc) or exc.__class__.__name__) from exc

        if not response.is_success:
            await response.aclose()
            raise UpstreamConnectError(
                channel_id,
                reason=response.reason_phrase,
                status_code=response.status_code,
            )

        logger.debug(f"Upstream responded {response.status_code} for round {channel_id}")
        return UpstreamStream(channel_id, response)
