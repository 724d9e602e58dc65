"""Shared upstream sessions and the registry that owns them.

One ``ChannelSession`` per round id holds the single upstream stream and the
set of attached client sinks. All mutation happens synchronously between
awaits on the event loop, which is what makes check-then-insert in the
registry and the last-subscriber check in the session atomic.
"""
from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Set

from .errors import (
    ChannelClosedError,
    RelayError,
    UpstreamCancelled,
    UpstreamConnectError,
    UpstreamStreamError,
)
from .logging_config import get_logger, log_channel_event
from .sinks import CLOSE_GOING_AWAY, CLOSE_INTERNAL_ERROR, CLOSE_NORMAL, ClientSink
from .upstream import UpstreamConnector, UpstreamStream

logger = get_logger(__name__)


class SessionState(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


class ChannelSession:
    def __init__(
        self,
        channel_id: str,
        connector: UpstreamConnector,
        on_closed: Optional[Callable[["ChannelSession"], None]] = None,
    ):
        self.channel_id = channel_id
        self.state = SessionState.STARTING
        self.created_at = time.time()
        self.chunks_relayed = 0
        self.ready: Optional[asyncio.Task] = None
        self._connector = connector
        self._on_closed = on_closed
        self._upstream: Optional[UpstreamStream] = None
        self._relay_task: Optional[asyncio.Task] = None
        self._sinks: Set[ClientSink] = set()
        # Subscribers waiting on ``ready`` keep the session alive until attached
        self._reservations = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def __repr__(self) -> str:
        return f"<ChannelSession {self.channel_id!r} {self.state.value} sinks={len(self._sinks)}>"

    @property
    def subscriber_count(self) -> int:
        return len(self._sinks)

    @property
    def sinks(self) -> Set[ClientSink]:
        return set(self._sinks)

    @property
    def upstream(self) -> Optional[UpstreamStream]:
        return self._upstream

    @property
    def is_closed(self) -> bool:
        return self.state in (SessionState.CLOSING, SessionState.CLOSED, SessionState.FAILED)

    def begin(self) -> asyncio.Task:
        """Schedule the upstream connect; the task is the pending creation."""
        if self.ready is None:
            self.ready = asyncio.create_task(self._start(), name=f"connect:{self.channel_id}")
        return self.ready

    async def _start(self) -> "ChannelSession":
        log_channel_event(logger, "upstream_starting", self.channel_id)
        try:
            upstream = await self._connector.open(self.channel_id)
        except UpstreamConnectError as exc:
            log_channel_event(
                logger,
                "upstream_connect_failed",
                self.channel_id,
                level=logging.WARNING,
                status_code=exc.status_code,
                reason=exc.reason,
            )
            self._fail()
            raise
        except asyncio.CancelledError:
            self._fail()
            raise

        self._upstream = upstream
        if self.state is not SessionState.STARTING:
            # Torn down while connecting (registry shutdown)
            self._discard_upstream()
            return self
        self.state = SessionState.ACTIVE
        log_channel_event(logger, "upstream_started", self.channel_id, status_code=upstream.status_code)
        if not self._sinks and not self._reservations:
            self.close(CLOSE_NORMAL, "no subscribers")
        return self

    def _fail(self) -> None:
        if self.state is SessionState.STARTING:
            self.state = SessionState.FAILED
            self._notify_closed()

    def _discard_upstream(self) -> None:
        upstream = self._upstream
        if upstream is None:
            return
        upstream.cancel()
        if self._relay_task is None:
            # Nobody is reading, run the stream once so its response gets closed
            self._relay_task = asyncio.create_task(
                self._drain_cancelled(upstream), name=f"discard:{self.channel_id}"
            )

    async def _drain_cancelled(self, upstream: UpstreamStream) -> None:
        with contextlib.suppress(UpstreamCancelled):
            async for _ in upstream.chunks():
                pass

    def reserve(self) -> None:
        self._reservations += 1

    def release(self) -> None:
        """Drop a reservation whose subscriber will never attach."""
        self._reservations = max(0, self._reservations - 1)
        if self.state is SessionState.ACTIVE and not self._sinks and not self._reservations:
            self.close(CLOSE_NORMAL, "no subscribers")

    def attach(self, sink: ClientSink) -> None:
        """Turn a reservation into a member of the client set."""
        self._reservations = max(0, self._reservations - 1)
        if self.state is not SessionState.ACTIVE:
            raise ChannelClosedError(self.channel_id)
        self._sinks.add(sink)
        sink.start_heartbeat()
        if self._relay_task is None:
            self._relay_task = asyncio.create_task(self._relay(), name=f"relay:{self.channel_id}")
        log_channel_event(
            logger, "client_connected", self.channel_id, transport=sink.transport, subscribers=len(self._sinks)
        )

    def detach(self, sink: ClientSink, code: int = CLOSE_NORMAL, reason: str = "") -> bool:
        """Remove one sink; closing the session if it was the last one.

        Returns False when the sink was not attached.
        """
        if sink not in self._sinks:
            return False
        self._sinks.discard(sink)
        sink.close(code, reason)
        log_channel_event(
            logger, "client_disconnected", self.channel_id, transport=sink.transport, subscribers=len(self._sinks)
        )
        if self.state is SessionState.ACTIVE and not self._sinks and not self._reservations:
            log_channel_event(logger, "no_clients_left", self.channel_id)
            self.close(CLOSE_NORMAL, "no subscribers")
        return True

    def broadcast(self, chunk: bytes) -> int:
        """Fan one upstream chunk out to every attached sink.

        Sinks that are gone or whose buffer overflowed are dropped; the
        rest still get the chunk. Returns the number of sinks written.
        """
        if self.state is not SessionState.ACTIVE:
            return 0
        text = self._decoder.decode(chunk)
        if not text:
            return 0
        self.chunks_relayed += 1
        return self._fan_out(text)

    def _fan_out(self, text: str) -> int:
        delivered = 0
        dead: List[ClientSink] = []
        for sink in list(self._sinks):
            if not sink.is_open():
                dead.append(sink)
                continue
            try:
                sink.send(text)
            except RelayError as exc:
                logger.warning(f"Dropping {sink.transport} client on round {self.channel_id}: {exc}")
                dead.append(sink)
            else:
                delivered += 1
        for sink in dead:
            self.detach(sink, CLOSE_INTERNAL_ERROR, "write failed")
        return delivered

    async def _relay(self) -> None:
        upstream = self._upstream
        if upstream is None:
            raise RuntimeError(f"relay for round {self.channel_id} started before upstream connected")
        try:
            async for chunk in upstream.chunks():
                self.broadcast(chunk)
        except UpstreamCancelled:
            log_channel_event(logger, "upstream_aborted", self.channel_id)
            self.close(CLOSE_NORMAL, "upstream aborted")
        except UpstreamStreamError as exc:
            logger.error(f"Upstream stream error for round {self.channel_id}: {exc}", exc_info=exc)
            self.close(CLOSE_INTERNAL_ERROR, "upstream error")
        else:
            log_channel_event(logger, "upstream_closed", self.channel_id, chunks=self.chunks_relayed)
            tail = self._decoder.decode(b"", final=True)
            if tail and self.state is SessionState.ACTIVE:
                self._fan_out(tail)
            self.close(CLOSE_NORMAL, "upstream ended")

    def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Tear the session down. Idempotent.

        Cancels the upstream, closes every remaining sink (which also
        cancels its heartbeat) and removes the registry entry.
        """
        if self.is_closed:
            return
        self.state = SessionState.CLOSING
        # A connect still in flight cancels the stream once it lands
        self._discard_upstream()
        sinks, self._sinks = self._sinks, set()
        for sink in sinks:
            sink.close(code, reason)
        self.state = SessionState.CLOSED
        log_channel_event(logger, "session_closed", self.channel_id, code=code, reason=reason)
        self._notify_closed()

    def _notify_closed(self) -> None:
        if self._on_closed is not None:
            self._on_closed(self)

    async def wait_finished(self) -> None:
        """Wait for the connect and relay tasks to settle."""
        if self.ready is not None:
            await asyncio.gather(self.ready, return_exceptions=True)
        if self._relay_task is not None:
            await asyncio.gather(self._relay_task, return_exceptions=True)


@dataclass(eq=False)
class Subscription:
    channel_id: str
    session: ChannelSession
    sink: ClientSink
    active: bool = field(default=True)


class ChannelRegistry:
    """Round id -> live session, created on first subscription."""

    def __init__(self, connector: UpstreamConnector):
        self._connector = connector
        self._sessions: Dict[str, ChannelSession] = {}
        self.connect_attempts = 0

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[ChannelSession]:
        return iter(list(self._sessions.values()))

    def get(self, channel_id: str) -> Optional[ChannelSession]:
        return self._sessions.get(channel_id)

    @property
    def subscriber_count(self) -> int:
        return sum(s.subscriber_count for s in self._sessions.values())

    def snapshot(self) -> List[Dict[str, object]]:
        return [
            {
                "channel_id": s.channel_id,
                "state": s.state.value,
                "subscribers": s.subscriber_count,
                "chunks_relayed": s.chunks_relayed,
                "created_at": s.created_at,
            }
            for s in self._sessions.values()
        ]

    async def subscribe(self, channel_id: str, sink: ClientSink) -> Subscription:
        """Attach ``sink`` to the round's session, connecting upstream if needed.

        Raises:
            ValueError: empty channel id.
            UpstreamConnectError: the upstream could not be opened.
            ChannelClosedError: the session ended before the sink attached.
        """
        if not channel_id:
            raise ValueError("channel id must not be empty")

        # No await between lookup and insert
        session = self._sessions.get(channel_id)
        if session is None:
            session = ChannelSession(channel_id, self._connector, on_closed=self._evict)
            self._sessions[channel_id] = session
            self.connect_attempts += 1
            session.begin()

        session.reserve()
        try:
            await asyncio.shield(session.ready)
        except asyncio.CancelledError:
            session.release()
            if session.ready.cancelled() and session.is_closed:
                # Connect aborted by shutdown, not by our caller
                raise ChannelClosedError(channel_id) from None
            raise
        except BaseException:
            session.release()
            raise

        session.attach(sink)
        return Subscription(channel_id=channel_id, session=session, sink=sink)

    def unsubscribe(self, handle: Subscription, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        if not handle.active:
            return
        handle.active = False
        handle.session.detach(handle.sink, code, reason)

    def _evict(self, session: ChannelSession) -> None:
        if self._sessions.get(session.channel_id) is session:
            del self._sessions[session.channel_id]

    async def close(self) -> None:
        """Tear down every session; used on application shutdown.

        Connects still in flight are cancelled so shutdown never waits on
        an upstream that does not answer.
        """
        sessions = list(self._sessions.values())
        for session in sessions:
            session.close(CLOSE_GOING_AWAY, "server shutting down")
            if session.ready is not None and not session.ready.done():
                session.ready.cancel()
        for session in sessions:
            await session.wait_finished()
