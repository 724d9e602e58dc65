"""Per-subscriber outbound transports (SSE and WebSocket)."""
from __future__ import annotations

import abc
import asyncio
import contextlib
from typing import AsyncIterator, Optional, Union

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .errors import SinkClosedError
from .logging_config import get_logger

logger = get_logger(__name__)

# WebSocket close codes; SSE sinks keep them for logging only
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011

# Close reasons must fit a single control frame
MAX_CLOSE_REASON_BYTES = 123

DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_BUFFER_SIZE = 1000

_CLOSE = object()


def truncate_reason(reason: str) -> str:
    encoded = reason.encode("utf-8")
    if len(encoded) <= MAX_CLOSE_REASON_BYTES:
        return reason
    return encoded[:MAX_CLOSE_REASON_BYTES].decode("utf-8", errors="ignore")


class ClientSink(abc.ABC):
    """One subscriber's delivery endpoint.

    Frames are buffered in a bounded queue drained by the transport
    adapter, so ``send`` never blocks the fan-out loop. A full buffer is a
    write failure: the caller drops the sink.
    """

    transport = "abstract"

    def __init__(
        self,
        channel_id: str,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ):
        self.channel_id = channel_id
        self.heartbeat_interval = heartbeat_interval
        self.close_code: Optional[int] = None
        self.close_reason = ""
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._heartbeat: Optional[asyncio.Task] = None
        self._closed = False
        self._disconnected = False

    @abc.abstractmethod
    def frame(self, payload: str) -> str:
        """Wire representation of one relayed chunk."""

    @abc.abstractmethod
    def heartbeat_frame(self) -> str:
        """Wire representation of a keep-alive no-op."""

    def is_open(self) -> bool:
        return not (self._closed or self._disconnected)

    def send(self, chunk: Union[str, bytes]) -> None:
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")
        self._put(self.frame(chunk))

    def _put(self, frame: str) -> None:
        if not self.is_open():
            raise SinkClosedError(f"{self.transport} client for round {self.channel_id} is closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            raise SinkClosedError(
                f"{self.transport} client for round {self.channel_id} exceeded its buffer"
            ) from None

    def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Stop the heartbeat and end the transport after pending frames."""
        self.stop_heartbeat()
        if self._closed:
            return
        self._closed = True
        self.close_code = code
        self.close_reason = reason
        while True:
            try:
                self._queue.put_nowait(_CLOSE)
                return
            except asyncio.QueueFull:
                # The client is being dropped anyway, make room for the sentinel
                self._queue.get_nowait()

    def mark_disconnected(self) -> None:
        """The peer went away; nothing more can be written."""
        self._disconnected = True
        self.stop_heartbeat()

    def start_heartbeat(self) -> None:
        if self._heartbeat is None and self.is_open():
            self._heartbeat = asyncio.create_task(
                self._run_heartbeat(), name=f"heartbeat:{self.transport}:{self.channel_id}"
            )

    def stop_heartbeat(self) -> None:
        task, self._heartbeat = self._heartbeat, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat is not None and not self._heartbeat.done()

    async def _run_heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.is_open():
                return
            try:
                self._put(self.heartbeat_frame())
            except SinkClosedError:
                # Buffer full: data frames are still pending, the link is not idle
                logger.debug(f"Skipped heartbeat for {self.transport} client on round {self.channel_id}")

    async def frames(self) -> AsyncIterator[str]:
        """Drain buffered frames until the sink is closed."""
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            yield item


class SSESink(ClientSink):
    transport = "sse"

    def frame(self, payload: str) -> str:
        return f"data: {payload}\n\n"

    def heartbeat_frame(self) -> str:
        return ": heartbeat\n\n"

    def comment(self, text: str) -> None:
        self._put(f": {text}\n\n")

    async def stream(self) -> AsyncIterator[str]:
        """Body iterator for a text/event-stream response."""
        try:
            async for frame in self.frames():
                yield frame
        finally:
            self.mark_disconnected()


class WebSocketSink(ClientSink):
    transport = "websocket"

    def __init__(self, websocket: WebSocket, channel_id: str, **kwargs):
        super().__init__(channel_id, **kwargs)
        self.websocket = websocket

    def frame(self, payload: str) -> str:
        return payload

    def heartbeat_frame(self) -> str:
        # ndjson consumers ignore blank messages
        return ""

    def is_open(self) -> bool:
        return (
            super().is_open()
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    def comment(self, text: str) -> None:
        """Log only: WebSocket clients never receive comments, including the
        connect acknowledgement, because every text frame is a relayed chunk."""
        logger.debug(f"websocket round {self.channel_id}: {text}")

    async def serve(self) -> None:
        """Write buffered frames until the sink closes or the peer leaves.

        When the server side closed the sink, the close frame carries the
        stored code and reason.
        """
        receiver = asyncio.create_task(self._watch_peer(), name=f"ws-recv:{self.channel_id}")
        try:
            async for frame in self.frames():
                if self._disconnected or self.websocket.application_state != WebSocketState.CONNECTED:
                    break
                await self.websocket.send_text(frame)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.debug(f"websocket send failed for round {self.channel_id}: {exc!r}")
            self.mark_disconnected()
        finally:
            receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await receiver

        if not self._disconnected and self.websocket.application_state == WebSocketState.CONNECTED:
            await self.websocket.close(
                code=self.close_code or CLOSE_NORMAL,
                reason=truncate_reason(self.close_reason),
            )

    async def _watch_peer(self) -> None:
        try:
            while True:
                message = await self.websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except (WebSocketDisconnect, RuntimeError):
            pass
        self.mark_disconnected()
        # Wake the writer so it stops draining
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(_CLOSE)
