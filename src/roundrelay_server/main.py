from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse, StreamingResponse

from .channels import ChannelRegistry, Subscription
from .errors import ChannelClosedError, UpstreamConnectError
from .logging_config import get_logger
from .models import ChannelList, ChannelOut, HealthOut, UpstreamFailure
from .settings import Settings
from .sinks import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    SSESink,
    WebSocketSink,
    truncate_reason,
)
from .upstream import UpstreamConnector

logger = get_logger(__name__)

VERSION = "0.1.0"

SSE_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or Settings()  # reads env
    start_time = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting round relay, upstream {settings.upstream_root()}")
        timeout = httpx.Timeout(None, connect=settings.connect_timeout)
        async with httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True) as client:
            connector = UpstreamConnector(client, settings.upstream_root(), accept=settings.upstream_accept)
            app.state.settings = settings
            app.state.registry = ChannelRegistry(connector)
            app.state.start_time = start_time
            yield
            logger.info("Shutting down round relay")
            await app.state.registry.close()

    app = FastAPI(
        title="Round Relay",
        description="Shares one upstream broadcast round stream between many SSE and WebSocket clients",
        version=VERSION,
        lifespan=lifespan,
    )

    @app.get("/healthz", tags=["Health"], response_model=HealthOut)
    async def healthz(request: Request):
        """Health check endpoint with relay status."""
        registry: ChannelRegistry = request.app.state.registry
        uptime = time.time() - request.app.state.start_time
        return HealthOut(
            service=settings.service_name,
            version=VERSION,
            uptime_seconds=int(uptime),
            channels=len(registry),
            subscribers=registry.subscriber_count,
        )

    @app.get("/channels", tags=["Health"], response_model=ChannelList)
    async def list_channels(request: Request):
        """Rounds currently relayed."""
        registry: ChannelRegistry = request.app.state.registry
        channels = [ChannelOut(**row) for row in registry.snapshot()]
        return ChannelList(channels=channels, count=len(channels))

    @app.get("/{channel_id}", tags=["Relay"])
    async def sse_subscribe(request: Request, channel_id: str):
        """Relay a broadcast round as Server-Sent Events."""
        registry: ChannelRegistry = request.app.state.registry
        sink = SSESink(
            channel_id,
            heartbeat_interval=settings.heartbeat_interval,
            buffer_size=settings.client_buffer_size,
        )
        try:
            handle = await registry.subscribe(channel_id, sink)
        except UpstreamConnectError as exc:
            failure = UpstreamFailure(detail=str(exc), status_code=exc.status_code)
            return JSONResponse(failure.model_dump(), status_code=502, headers={"Access-Control-Allow-Origin": "*"})
        except ChannelClosedError as exc:
            return JSONResponse({"detail": str(exc)}, status_code=410, headers={"Access-Control-Allow-Origin": "*"})

        sink.comment(f"connected to round {channel_id}")

        async def gen():
            try:
                async for frame in sink.stream():
                    yield frame
            finally:
                registry.unsubscribe(handle)

        return StreamingResponse(gen(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.websocket("/")
    async def ws_missing_id(websocket: WebSocket):
        await websocket.accept()
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="missing id")

    @app.websocket("/{channel_id}")
    async def ws_subscribe(websocket: WebSocket, channel_id: str):
        """Relay a broadcast round as WebSocket text frames."""
        registry: ChannelRegistry = websocket.app.state.registry
        await websocket.accept()
        sink = WebSocketSink(
            websocket,
            channel_id,
            heartbeat_interval=settings.heartbeat_interval,
            buffer_size=settings.client_buffer_size,
        )
        handle: Optional[Subscription] = None
        try:
            handle = await registry.subscribe(channel_id, sink)
        except UpstreamConnectError as exc:
            logger.info(f"Closing websocket for round {channel_id}: {exc}")
            await websocket.close(code=CLOSE_INTERNAL_ERROR, reason=truncate_reason(str(exc)))
            return
        except ChannelClosedError as exc:
            await websocket.close(code=CLOSE_NORMAL, reason=truncate_reason(str(exc)))
            return

        try:
            await sink.serve()
        finally:
            registry.unsubscribe(handle)

    return app


app = create_app()
