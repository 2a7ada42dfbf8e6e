import asyncio
import logging
import signal

from mcp_bridge.config import ReadyPolicy
from mcp_bridge.errors import ClientGoneError
from mcp_bridge.protocol.envelope import is_response
from mcp_bridge.protocol.events import RelayEvent
from mcp_bridge.registry import SessionRegistry, SessionState
from mcp_bridge.sink import EventSink
from mcp_bridge.transport.events import (
    LogLine,
    MessageReceived,
    ProcessClosed,
    TransportEvent,
    TransportFailed,
)
from mcp_bridge.transport.process import ProcessTransport

logger = logging.getLogger(__name__)


def translate_event(event: TransportEvent) -> RelayEvent:
    """Wrap a transport event in its push-channel frame."""
    if isinstance(event, MessageReceived):
        return RelayEvent.mcp_message(event.payload)
    if isinstance(event, LogLine):
        return RelayEvent.log_message(event.source, event.text)
    if isinstance(event, TransportFailed):
        return RelayEvent.connection_status(
            "error", error=f"MCP transport error: {event.error}"
        )
    if isinstance(event, ProcessClosed):
        return RelayEvent.connection_status(
            "disconnected",
            code=event.returncode,
            signal=_signal_name(event.signal_number),
        )
    raise TypeError(f"Unknown transport event: {event!r}")


def _signal_name(number: int | None) -> str | None:
    if number is None:
        return None
    try:
        return signal.Signals(number).name
    except ValueError:
        return str(number)


class MessageRelay:
    """Pumps transport events of each session onto its push channel.

    A relay task ends on the first terminal connection status or when the
    client has gone. Either way it removes the session from the registry,
    which is the only teardown path driven by the process side.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        ready_policy: ReadyPolicy = ReadyPolicy.IMMEDIATE,
    ) -> None:
        self._registry = registry
        self._ready_policy = ready_policy
        self._tasks: dict[str, asyncio.Task] = {}

    def attach(
        self, session_id: str, transport: ProcessTransport, sink: EventSink
    ) -> asyncio.Task:
        """Start relaying one transport's events to one sink."""
        if session_id in self._tasks:
            raise ValueError(f"Session '{session_id}' is already attached")

        task = asyncio.create_task(
            self._pump(session_id, transport, sink), name=f"relay-{session_id}"
        )
        self._tasks[session_id] = task
        task.add_done_callback(lambda t: self._on_pump_done(session_id, t))
        logger.debug(f"Relay attached to session {session_id}")
        return task

    @property
    def active_count(self) -> int:
        return len([task for task in self._tasks.values() if not task.done()])

    async def _pump(
        self, session_id: str, transport: ProcessTransport, sink: EventSink
    ) -> None:
        try:
            async for event in transport.events():
                if isinstance(event, MessageReceived):
                    self._observe_readiness(session_id, event)

                relay_event = translate_event(event)
                try:
                    await sink.send(relay_event)
                except ClientGoneError:
                    logger.warning(
                        f"Client of session {session_id} is gone, "
                        f"dropping {relay_event.type.value}"
                    )
                    break

                if relay_event.is_terminal:
                    logger.info(
                        f"Session {session_id} ended: {relay_event.payload}"
                    )
                    break
        finally:
            self._registry.remove(session_id)

    def _observe_readiness(self, session_id: str, event: MessageReceived) -> None:
        if self._ready_policy != ReadyPolicy.INITIALIZE:
            return
        session = self._registry.get(session_id)
        if session is None or session.state != SessionState.OPEN:
            return
        if session.initialize_request_id is None:
            return
        message = event.payload
        if is_response(message) and message["id"] == session.initialize_request_id:
            session.state = SessionState.READY
            logger.debug(f"Session {session_id} is ready")

    def _on_pump_done(self, session_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(session_id, None)
        if task.cancelled():
            logger.debug(f"Relay for session {session_id} was cancelled")
        elif task.exception():
            logger.error(f"Relay for session {session_id} failed: {task.exception()}")

    async def wait_closed(self, timeout: float | None = None) -> None:
        """Wait for running relays to finish, cancelling any that outlast timeout."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
