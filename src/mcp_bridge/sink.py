import asyncio
import logging
from typing import AsyncIterator

from mcp_bridge.errors import ClientGoneError
from mcp_bridge.protocol.events import RelayEvent

logger = logging.getLogger(__name__)

PING_FRAME = ": ping\n\n"


class EventSink:
    """Push-channel sink for one session.

    Relay events are queued and rendered as Server-Sent Events frames by
    event_generator(). Closing the sink lets already queued events drain and
    then ends the stream. Once the client has gone, send() raises
    ClientGoneError.
    """

    def __init__(self, name: str = "", ping_interval: float = 0.0) -> None:
        self.name = name
        self._ping_interval = ping_interval
        self._queue: asyncio.Queue[RelayEvent | None] = asyncio.Queue()
        self._closed = False
        self._client_gone = False

    @property
    def closed(self) -> bool:
        return self._closed or self._client_gone

    async def send(self, event: RelayEvent) -> None:
        """Queue an event for the client.

        Raises:
            ClientGoneError: If the sink is closed or the client disconnected
        """
        if self.closed:
            raise ClientGoneError(f"Push channel {self.name} is closed")
        await self._queue.put(event)

    def close(self) -> None:
        """End the stream after the queued events. Idempotent."""
        if self._closed:
            return
        self._closed = True
        # Sentinel stops the generator
        self._queue.put_nowait(None)
        logger.debug(f"Closed push channel {self.name}")

    async def event_generator(self) -> AsyncIterator[str]:
        """Generate SSE frames until the sink is closed.

        Yields:
            str: SSE frame, or a comment frame as keepalive when idle
        """
        try:
            while True:
                try:
                    if self._ping_interval > 0:
                        event = await asyncio.wait_for(
                            self._queue.get(), timeout=self._ping_interval
                        )
                    else:
                        event = await self._queue.get()
                except asyncio.TimeoutError:
                    yield PING_FRAME
                    continue

                if event is None:
                    logger.debug(f"Push channel {self.name} closed via sentinel")
                    break

                logger.debug(f"Push channel {self.name} > {event.type.value}")
                yield event.to_sse()
        finally:
            self._client_gone = True
            logger.debug(f"Push channel {self.name} generator finished")
