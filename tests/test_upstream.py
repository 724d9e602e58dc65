"""Tests for the upstream connector."""
from __future__ import annotations

import asyncio

import httpx
import pytest

from roundrelay_server.errors import UpstreamCancelled, UpstreamConnectError, UpstreamStreamError
from roundrelay_server.upstream import UpstreamConnector

UPSTREAM = "https://lichess.test"


async def _collect(stream):
    return [chunk async for chunk in stream.chunks()]


@pytest.mark.asyncio
async def test_url_for_round(round_server):
    async with httpx.AsyncClient(transport=httpx.MockTransport(round_server.handler)) as client:
        connector = UpstreamConnector(client, UPSTREAM + "/")
        assert connector.url_for("abc") == "https://lichess.test/api/stream/broadcast/round/abc.pgn"
        # Path separators in an id stay inside one segment
        assert connector.url_for("a/b") == "https://lichess.test/api/stream/broadcast/round/a%2Fb.pgn"


@pytest.mark.asyncio
async def test_open_streams_chunks_in_order(round_server):
    round_server.push("abc", "A", "B")
    round_server.end("abc")
    async with httpx.AsyncClient(transport=httpx.MockTransport(round_server.handler)) as client:
        stream = await UpstreamConnector(client, UPSTREAM).open("abc")
        assert await _collect(stream) == [b"A", b"B"]

    request = round_server.requests[0]
    assert request.method == "GET"
    assert request.headers["accept"] == "application/x-ndjson"
    assert request.url.path == "/api/stream/broadcast/round/abc.pgn"


@pytest.mark.asyncio
async def test_open_non_2xx_is_connect_failure(round_server):
    round_server.statuses["missing"] = 404
    async with httpx.AsyncClient(transport=httpx.MockTransport(round_server.handler)) as client:
        with pytest.raises(UpstreamConnectError) as exc_info:
            await UpstreamConnector(client, UPSTREAM).open("missing")

    assert exc_info.value.status_code == 404
    assert exc_info.value.reason == "Not Found"
    assert "404" in str(exc_info.value)


@pytest.mark.asyncio
async def test_open_network_error_is_connect_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(UpstreamConnectError) as exc_info:
            await UpstreamConnector(client, UPSTREAM).open("abc")

    assert exc_info.value.status_code is None
    assert "connection refused" in exc_info.value.reason


@pytest.mark.asyncio
async def test_cancel_unblocks_pending_read(round_server, eventually):
    async with httpx.AsyncClient(transport=httpx.MockTransport(round_server.handler)) as client:
        stream = await UpstreamConnector(client, UPSTREAM).open("abc")
        received = []

        async def read():
            async for chunk in stream.chunks():
                received.append(chunk)

        reader = asyncio.create_task(read())
        round_server.push("abc", "A")
        await eventually(lambda: received == [b"A"])

        # The reader is now parked waiting for the next chunk
        stream.cancel()
        with pytest.raises(UpstreamCancelled):
            await reader

    assert stream.cancelled
    assert round_server.closed == ["abc"]


@pytest.mark.asyncio
async def test_cancel_twice_is_noop(round_server):
    async with httpx.AsyncClient(transport=httpx.MockTransport(round_server.handler)) as client:
        stream = await UpstreamConnector(client, UPSTREAM).open("abc")
        stream.cancel()
        stream.cancel()
        with pytest.raises(UpstreamCancelled):
            await _collect(stream)
        # Still harmless once the stream is finished
        stream.cancel()

    assert stream.cancelled


@pytest.mark.asyncio
async def test_transport_error_is_stream_error(round_server):
    round_server.push("abc", "A")
    round_server.fail("abc", httpx.ReadError("connection reset"))
    received = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(round_server.handler)) as client:
        stream = await UpstreamConnector(client, UPSTREAM).open("abc")
        with pytest.raises(UpstreamStreamError):
            async for chunk in stream.chunks():
                received.append(chunk)

    assert received == [b"A"]
    assert not stream.cancelled
