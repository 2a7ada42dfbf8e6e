"""HTTP surface of the bridge: the push-channel and submit endpoints."""

import asyncio
import contextlib
import json
import logging
from typing import Any, AsyncIterator, Callable

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from mcp_bridge.config import BridgeSettings, OpenConfig
from mcp_bridge.errors import (
    ConfigurationError,
    NotFoundError,
    UnavailableError,
    WriteFailure,
)
from mcp_bridge.gateway import ProxyGateway
from mcp_bridge.protocol.envelope import normalize_submission
from mcp_bridge.protocol.events import RelayEvent
from mcp_bridge.sink import EventSink

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class EventStreamResponse(StreamingResponse):
    """Streams a sink as text/event-stream and reports when the stream ends.

    on_close runs however the response finishes: the sink closing normally,
    the client disconnecting, or the response being cancelled before the
    first frame was sent.
    """

    def __init__(self, sink: EventSink, on_close: Callable[[], Any]) -> None:
        super().__init__(
            sink.event_generator(),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
        self._on_close = on_close

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            self._on_close()


class BridgeServer:
    """Serves the gateway over HTTP.

    GET on the SSE path opens a session and streams its events. POST on the
    message path submits one JSON-RPC message to the session named by the
    clientId query parameter.
    """

    def __init__(
        self,
        settings: BridgeSettings | None = None,
        gateway: ProxyGateway | None = None,
    ) -> None:
        self.settings = settings or BridgeSettings()
        self.gateway = gateway or ProxyGateway(self.settings)

        middleware = []
        if self.settings.cors_origins:
            middleware.append(
                Middleware(
                    CORSMiddleware,
                    allow_origins=self.settings.cors_origins,
                    allow_methods=["GET", "POST"],
                    allow_headers=["Content-Type"],
                )
            )

        self.app = Starlette(
            routes=[
                Route(self.settings.sse_path, self._handle_open, methods=["GET"]),
                Route(
                    self.settings.message_path, self._handle_submit, methods=["POST"]
                ),
            ],
            middleware=middleware,
            lifespan=self._lifespan,
        )
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        yield
        await self.gateway.shutdown()

    # ================================
    # Lifecycle
    # ================================

    async def start(self) -> None:
        """Start the HTTP server in a background task."""
        config = uvicorn.Config(
            app=self.app,
            host=self.settings.host,
            port=self.settings.port,
            log_level=self.settings.log_level,
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(self._server.serve())
        logger.info(
            f"HTTP server started on {self.settings.host}:{self.settings.port}"
        )

    async def stop(self) -> None:
        """Stop the HTTP server and close every session."""
        if self._server is not None:
            self._server.should_exit = True
        if self._serve_task is not None:
            await self._serve_task
            self._serve_task = None
        await self.gateway.shutdown()

    def run(self) -> None:
        """Serve in the foreground until interrupted."""
        uvicorn.run(
            self.app,
            host=self.settings.host,
            port=self.settings.port,
            log_level=self.settings.log_level,
        )

    # ================================
    # Open
    # ================================

    async def _handle_open(self, request: Request) -> Response:
        """Handle GET on the push-channel endpoint."""
        try:
            config = OpenConfig.from_query(request.query_params)
        except ConfigurationError as e:
            logger.warning(f"Rejected push-channel request: {e}")
            return EventStreamResponse(
                await self._rejected_sink(str(e)), on_close=lambda: None
            )

        session = await self.gateway.open(config)
        return EventStreamResponse(
            session.sink, on_close=lambda: self.gateway.close(session.id)
        )

    async def _rejected_sink(self, error: str) -> EventSink:
        sink = EventSink(name="rejected")
        await sink.send(RelayEvent.connection_status("error", error=error))
        sink.close()
        return sink

    # ================================
    # Submit
    # ================================

    async def _handle_submit(self, request: Request) -> Response:
        """Handle POST on the message endpoint."""
        client_id = request.query_params.get("clientId")
        if not client_id:
            return self._error_response(400, "Missing clientId query parameter")

        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return self._error_response(400, f"Invalid JSON body: {e}")

        try:
            envelope = normalize_submission(body)
        except ValueError as e:
            return self._error_response(400, f"Invalid request body: {e}")

        try:
            delivered = await self.gateway.submit(client_id, envelope)
        except NotFoundError as e:
            logger.warning(f"Submit to unknown session {client_id}")
            return self._error_response(404, str(e))
        except UnavailableError as e:
            logger.warning(f"Submit to unavailable session {client_id}: {e}")
            return self._error_response(409, str(e))
        except WriteFailure as e:
            return self._error_response(
                500, f"Failed to send message to MCP process: {e}"
            )

        return JSONResponse(
            {
                "status": "success",
                "message": "Message sent to MCP process.",
                "id": delivered.get("id"),
            }
        )

    def _error_response(self, status_code: int, message: str) -> JSONResponse:
        return JSONResponse(
            {"status": "error", "message": message}, status_code=status_code
        )
