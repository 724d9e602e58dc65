"""Shared fixtures: a fake broadcast API behind httpx.MockTransport."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import httpx
import pytest

from roundrelay_server.channels import ChannelRegistry
from roundrelay_server.errors import SinkClosedError
from roundrelay_server.sinks import ClientSink
from roundrelay_server.upstream import UpstreamConnector

UPSTREAM = "https://lichess.test"
END = object()


class FakeRoundServer:
    """Serves /api/stream/broadcast/round/<id>.pgn from per-round queues."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.statuses: Dict[str, int] = {}
        self.closed: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self._feeds: Dict[str, asyncio.Queue] = {}

    def feed(self, channel_id: str) -> asyncio.Queue:
        return self._feeds.setdefault(channel_id, asyncio.Queue())

    def push(self, channel_id: str, *chunks) -> None:
        for chunk in chunks:
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            self.feed(channel_id).put_nowait(chunk)

    def end(self, channel_id: str) -> None:
        self.feed(channel_id).put_nowait(END)

    def fail(self, channel_id: str, exc: Exception) -> None:
        self.feed(channel_id).put_nowait(exc)

    def attempts(self, channel_id: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(f"/{channel_id}.pgn"))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        channel_id = request.url.path.rsplit("/", 1)[-1][: -len(".pgn")]
        if self.gate is not None:
            await self.gate.wait()
        status = self.statuses.get(channel_id, 200)
        if status != 200:
            return httpx.Response(status)
        queue = self.feed(channel_id)

        async def body():
            try:
                while True:
                    item = await queue.get()
                    if item is END:
                        return
                    if isinstance(item, Exception):
                        raise item
                    yield item
            finally:
                self.closed.append(channel_id)

        return httpx.Response(200, content=body())


class RecordingSink(ClientSink):
    """Sink that keeps frames in a list and can be told to fail writes."""

    transport = "test"

    def __init__(self, channel_id: str, **kwargs):
        kwargs.setdefault("heartbeat_interval", 3600)
        super().__init__(channel_id, **kwargs)
        self.received: List[str] = []
        self.fail_writes = False

    def frame(self, payload: str) -> str:
        return payload

    def heartbeat_frame(self) -> str:
        return "<heartbeat>"

    def _put(self, frame: str) -> None:
        if not self.is_open() or self.fail_writes:
            raise SinkClosedError("recording sink refuses writes")
        self.received.append(frame)


@pytest.fixture
def round_server():
    return FakeRoundServer()


@pytest.fixture
def open_registry(round_server):
    @asynccontextmanager
    async def _open():
        async with httpx.AsyncClient(transport=httpx.MockTransport(round_server.handler)) as client:
            registry = ChannelRegistry(UpstreamConnector(client, UPSTREAM))
            try:
                yield registry
            finally:
                await registry.close()

    return _open


@pytest.fixture
def make_sink():
    def _make(channel_id: str = "abc", **kwargs) -> RecordingSink:
        return RecordingSink(channel_id, **kwargs)

    return _make


@pytest.fixture
def eventually():
    async def _wait(predicate, timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(0.001)

    return _wait
