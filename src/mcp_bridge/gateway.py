"""Gateway: opening sessions and submitting messages into them."""

import asyncio
import logging
import uuid
from typing import Any

from mcp_bridge.config import BridgeSettings, OpenConfig, ReadyPolicy
from mcp_bridge.errors import (
    ClientGoneError,
    NotFoundError,
    SpawnError,
    UnavailableError,
    WriteFailure,
)
from mcp_bridge.protocol.envelope import is_request
from mcp_bridge.protocol.events import RelayEvent
from mcp_bridge.registry import Session, SessionRegistry, SessionState
from mcp_bridge.relay import MessageRelay
from mcp_bridge.sink import EventSink
from mcp_bridge.transport.process import ProcessTransport

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT = 5.0


class ProxyGateway:
    """Entry points for browser clients.

    open() starts a session whose events stream out through its sink;
    submit() forwards one message into an open session. Results of submitted
    requests arrive later on the session's stream, never as submit's return.
    """

    def __init__(
        self,
        settings: BridgeSettings | None = None,
        registry: SessionRegistry | None = None,
    ) -> None:
        self.settings = settings or BridgeSettings()
        self.registry = registry or SessionRegistry()
        self._relay = MessageRelay(self.registry, self.settings.ready_policy)

    # ================================
    # Open
    # ================================

    async def open(self, config: OpenConfig) -> Session:
        """Open a session and spawn its process.

        The returned session's sink already holds clientIdAssigned followed by
        either connectionStatus connected or, if the process failed to start,
        connectionStatus error (in which case the session is already closed).
        """
        session_id = str(uuid.uuid4())
        sink = EventSink(name=session_id, ping_interval=self.settings.ping_interval)
        session = self.registry.create(session_id, sink)
        await sink.send(RelayEvent.client_id_assigned(session_id))

        logger.info(
            f"Session {session_id}: transport={config.transport}, "
            f"command={config.command}, args={config.args}"
        )

        try:
            transport = await ProcessTransport.spawn(
                config.command,
                config.args,
                config.env,
                default_env=self.settings.default_env,
                read_chunk_size=self.settings.read_chunk_size,
            )
        except SpawnError as e:
            await sink.send(RelayEvent.connection_status("error", error=str(e)))
            self.registry.remove(session_id)
            return session

        if not self.registry.bind_transport(session_id, transport):
            logger.info(f"Session {session_id} closed while its process was starting")
            transport.terminate()
            return session

        session.state = SessionState.OPEN
        await sink.send(RelayEvent.connection_status("connected"))
        if self.settings.ready_policy == ReadyPolicy.IMMEDIATE:
            session.state = SessionState.READY

        self._relay.attach(session_id, transport, sink)
        logger.info(f"Session {session_id} connected (PID: {transport.pid})")
        return session

    def close(self, session_id: str) -> bool:
        """Close a session from the client side, e.g. on disconnect."""
        return self.registry.remove(session_id)

    # ================================
    # Submit
    # ================================

    async def submit(self, session_id: str, envelope: dict[str, Any]) -> dict[str, Any]:
        """Forward one envelope to the session's process.

        Args:
            session_id: Target session
            envelope: Normalized JSON-RPC envelope

        Returns:
            The envelope as written, acknowledging delivery only

        Raises:
            NotFoundError: If the session doesn't exist
            UnavailableError: If the session's process can't accept input
            WriteFailure: If writing to the process failed
        """
        session = self.registry.get(session_id)
        if session is None:
            raise NotFoundError(f"Session '{session_id}' not found")
        if not session.is_writable:
            raise UnavailableError(
                f"MCP process for session '{session_id}' is not running"
            )

        method = envelope.get("method", "response")
        if method == "initialize" and is_request(envelope):
            session.initialize_request_id = envelope["id"]

        try:
            await session.transport.send(envelope)
        except WriteFailure as e:
            logger.error(f"Failed to deliver '{method}' to session {session_id}: {e}")
            await self._report_command_error(session, method, str(e))
            raise

        logger.debug(f"Session {session_id} < {method} (id={envelope.get('id')})")
        return envelope

    async def _report_command_error(
        self, session: Session, method: str, error: str
    ) -> None:
        try:
            await session.sink.send(RelayEvent.command_error(method, error))
        except ClientGoneError:
            logger.warning(f"Client of session {session.id} is gone")
            self.registry.remove(session.id)

    # ================================
    # Shutdown
    # ================================

    async def shutdown(self) -> None:
        """Close every session and wait for its process to be reaped."""
        logger.info(f"Shutting down {len(self.registry)} sessions")
        transports = []
        for session_id in self.registry.session_ids():
            session = self.registry.get(session_id)
            if session is not None and session.transport is not None:
                transports.append(session.transport)

        self.registry.remove_all()
        await self._relay.wait_closed(timeout=SHUTDOWN_TIMEOUT)

        if transports:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(t.wait_closed() for t in transports)),
                    timeout=SHUTDOWN_TIMEOUT,
                )
            except asyncio.TimeoutError:
                logger.warning("Timed out waiting for processes to exit")
