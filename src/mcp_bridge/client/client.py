"""Client side of the bridge protocol.

Opens the push channel, follows the session state machine, buffers requests
until the session is ready and correlates responses with requests.
"""

import asyncio
import json
import logging
from enum import Enum
from types import TracebackType
from typing import Any, AsyncIterator, Self

import httpx
from httpx_sse import aconnect_sse
from pydantic import ValidationError

from mcp_bridge.client.request_queue import PendingRequest, RequestQueue
from mcp_bridge.client.request_tracker import RequestTracker
from mcp_bridge.config import OpenConfig, ReadyPolicy
from mcp_bridge.protocol.envelope import (
    JSONRPC_VERSION,
    RequestId,
    generate_request_id,
    is_response,
)
from mcp_bridge.protocol.events import RelayEvent, RelayEventType

logger = logging.getLogger(__name__)


class ClientState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    READY = "ready"
    CLOSED = "closed"


class BridgeClient:
    """Drives one bridge session over HTTP.

    Requests issued before the session is ready are queued and flushed in
    order once it is. With ReadyPolicy.INITIALIZE the session becomes ready
    after a successful response to an ``initialize`` request, which is the
    only request sent ahead of the queue.

    No timeouts are applied to requests; wrap request() in asyncio.wait_for
    where a deadline is needed.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:3000",
        *,
        ready_policy: ReadyPolicy = ReadyPolicy.IMMEDIATE,
        sse_path: str = "/mcp-proxy/sse",
        message_path: str = "/mcp-proxy/message",
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            base_url=base_url, timeout=httpx.Timeout(30.0, read=None)
        )
        self._ready_policy = ready_policy
        self._sse_path = sse_path
        self._message_path = message_path

        self.client_id: str | None = None
        self.state = ClientState.IDLE
        self.close_reason: str | None = None

        self._queue = RequestQueue()
        self._tracker = RequestTracker()
        self._events: asyncio.Queue[RelayEvent | None] = asyncio.Queue()
        self._listener_task: asyncio.Task | None = None
        self._assigned: asyncio.Future[str] | None = None
        self._queued_initialize: PendingRequest | None = None
        self._initialize_request_id: RequestId | None = None

    # ================================
    # Connection
    # ================================

    async def connect(self, config: OpenConfig) -> str:
        """Open the push channel and wait for the assigned client id.

        Returns:
            The client id the bridge assigned to this session

        Raises:
            ConnectionError: If the bridge rejects the configuration or the
                push channel fails before an id is assigned
        """
        if self.state != ClientState.IDLE:
            raise RuntimeError(f"Client cannot connect from state {self.state.value}")

        self.state = ClientState.CONNECTING
        self._assigned = asyncio.get_running_loop().create_future()
        params = {
            "transport": config.transport,
            "command": config.command,
            "args": json.dumps(config.args),
            "env": json.dumps(config.env),
        }
        self._listener_task = asyncio.create_task(
            self._listen(params), name="bridge-client-listener"
        )
        return await self._assigned

    async def close(self) -> None:
        """Close the push channel, which terminates the remote process."""
        if self._listener_task is not None and not self._listener_task.done():
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
        self._mark_closed("Client closed")

        if self._owns_http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def _listen(self, params: dict[str, str]) -> None:
        reason = "Push channel closed"
        try:
            async with aconnect_sse(
                self._http_client, "GET", self._sse_path, params=params
            ) as event_source:
                event_source.response.raise_for_status()
                async for sse_event in event_source.aiter_sse():
                    if not sse_event.data:
                        continue
                    try:
                        event = RelayEvent.model_validate_json(sse_event.data)
                    except ValidationError as e:
                        logger.warning(f"Ignoring malformed relay event: {e}")
                        continue

                    await self._handle_event(event)
                    if self.state == ClientState.CLOSED:
                        break
        except asyncio.CancelledError:
            raise
        except httpx.HTTPError as e:
            logger.error(f"Push channel failed: {e}")
            reason = f"Push channel failed: {e}"
        finally:
            self._mark_closed(reason)

    # ================================
    # Events
    # ================================

    async def events(self) -> AsyncIterator[RelayEvent]:
        """Every relay event received, ending when the session closes."""
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def _handle_event(self, event: RelayEvent) -> None:
        await self._events.put(event)
        payload = event.payload

        if event.type == RelayEventType.CLIENT_ID_ASSIGNED:
            self.client_id = payload["clientId"]
            if self._assigned is not None and not self._assigned.done():
                self._assigned.set_result(self.client_id)

        elif event.type == RelayEventType.CONNECTION_STATUS:
            await self._handle_connection_status(payload)

        elif event.type == RelayEventType.MCP_MESSAGE:
            if isinstance(payload, dict) and is_response(payload):
                await self._handle_response(payload)

        elif event.type == RelayEventType.COMMAND_ERROR:
            logger.warning(
                f"Bridge failed to deliver '{payload.get('type')}': "
                f"{payload.get('error')}"
            )

        elif event.type == RelayEventType.LOG_MESSAGE:
            logger.debug(f"[{payload.get('source')}] {payload.get('content')}")

    async def _handle_connection_status(self, payload: dict[str, Any]) -> None:
        status = payload.get("status")
        if status == "connected":
            self.state = ClientState.OPEN
            if self._queued_initialize is not None:
                pending, self._queued_initialize = self._queued_initialize, None
                self._initialize_request_id = pending.id
                await self._deliver(pending)
            if self._ready_policy == ReadyPolicy.IMMEDIATE:
                await self._become_ready()
        elif status == "error":
            self._mark_closed(payload.get("error") or "Unknown error")
        elif status == "disconnected":
            self._mark_closed(f"MCP process exited with code {payload.get('code')}")
        else:
            logger.warning(f"Unknown connection status: {status}")

    async def _handle_response(self, message: dict[str, Any]) -> None:
        request_id = message["id"]
        self._tracker.resolve_outbound_request(request_id, message)

        if (
            self._ready_policy == ReadyPolicy.INITIALIZE
            and self.state == ClientState.OPEN
            and request_id == self._initialize_request_id
            and "result" in message
        ):
            await self._post(
                {"jsonrpc": JSONRPC_VERSION, "method": "notifications/initialized"}
            )
            await self._become_ready()

    # ================================
    # Sending
    # ================================

    async def request(
        self,
        method: str,
        params: Any = None,
        request_id: RequestId | None = None,
    ) -> dict[str, Any]:
        """Send a request and wait for the response envelope.

        Returns:
            The response message, carrying either ``result`` or ``error``

        Raises:
            ConnectionError: If not connected, delivery fails, or the session
                closes before the response arrives
        """
        if request_id is None:
            request_id = generate_request_id()
        future = self._tracker.track_outbound_request(request_id)
        try:
            await self._dispatch(PendingRequest(method, params, request_id))
            return await future
        finally:
            self._tracker.untrack_outbound_request(request_id)

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a notification (no response expected)."""
        await self._dispatch(PendingRequest(method, params))

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    async def _dispatch(self, pending: PendingRequest) -> None:
        if self.state in (ClientState.IDLE, ClientState.CLOSED):
            raise ConnectionError(f"Cannot send '{pending.method}': not connected")

        if self.state == ClientState.READY:
            await self._post(pending.to_envelope())
            return

        if pending.method == "initialize" and pending.id is not None:
            if self.state == ClientState.OPEN:
                self._initialize_request_id = pending.id
                await self._post(pending.to_envelope())
            else:
                self._queued_initialize = pending
            return

        self._queue.enqueue(pending)
        logger.debug(f"Queued '{pending.method}' until the session is ready")

    async def _become_ready(self) -> None:
        # Requests issued while flushing join the tail of the queue.
        while self.state == ClientState.OPEN:
            pending = self._queue.pop()
            if pending is None:
                break
            await self._deliver(pending)

        if self.state == ClientState.OPEN:
            self.state = ClientState.READY
            logger.debug(f"Session {self.client_id} is ready")

    async def _deliver(self, pending: PendingRequest) -> None:
        try:
            await self._post(pending.to_envelope())
        except ConnectionError as e:
            logger.error(f"Failed to send queued '{pending.method}': {e}")
            if pending.id is not None:
                self._tracker.fail_outbound_request(pending.id, e)

    async def _post(self, envelope: dict[str, Any]) -> None:
        if self.client_id is None:
            raise ConnectionError("No client id has been assigned")

        try:
            response = await self._http_client.post(
                self._message_path,
                params={"clientId": self.client_id},
                json=envelope,
            )
        except httpx.RequestError as e:
            raise ConnectionError(f"Submit failed: {e}") from e

        if response.status_code != 200:
            raise ConnectionError(
                f"Submit of '{envelope.get('method', 'response')}' failed "
                f"({response.status_code}): {response.text}"
            )
        logger.debug(f"Submitted '{envelope.get('method')}' (id={envelope.get('id')})")

    def _mark_closed(self, reason: str) -> None:
        if self.state == ClientState.CLOSED:
            return
        self.state = ClientState.CLOSED
        self.close_reason = reason

        error = ConnectionError(reason)
        self._tracker.fail_all_requests(error)
        dropped = self._queue.clear()
        if dropped:
            logger.warning(f"Dropped {len(dropped)} queued requests: {reason}")
        self._queued_initialize = None

        if self._assigned is not None and not self._assigned.done():
            self._assigned.set_exception(error)
        self._events.put_nowait(None)
