"""Session registry: the single authority on which sessions are live."""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from mcp_bridge.protocol.envelope import RequestId
from mcp_bridge.sink import EventSink
from mcp_bridge.transport.process import ProcessTransport

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class Session:
    """One push channel paired with at most one child process."""

    id: str
    sink: EventSink
    created_at: float = field(default_factory=time.time)
    transport: ProcessTransport | None = None
    state: SessionState = SessionState.CONNECTING
    initialize_request_id: RequestId | None = None

    @property
    def is_writable(self) -> bool:
        return (
            self.state != SessionState.CLOSED
            and self.transport is not None
            and self.transport.is_writable
        )


class SessionRegistry:
    """Maps session ids to live sessions and owns their teardown.

    No method awaits, so every mutation runs to completion on the event loop
    before any other coroutine can observe the registry. A session is either
    fully present or fully gone.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    # ================================
    # Creation
    # ================================

    def create(self, session_id: str, sink: EventSink) -> Session:
        """Register a new session in the connecting state.

        Raises:
            ValueError: If the id is already in use
        """
        if session_id in self._sessions:
            raise ValueError(f"Session '{session_id}' already exists")

        session = Session(id=session_id, sink=sink)
        self._sessions[session_id] = session
        logger.debug(f"Created session {session_id}")
        return session

    def bind_transport(self, session_id: str, transport: ProcessTransport) -> bool:
        """Attach a spawned process to its session.

        Returns False if the session was removed while the process was
        starting; the caller then owns the process and must terminate it.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if session.transport is not None:
            raise ValueError(f"Session '{session_id}' already has a process")
        session.transport = transport
        return True

    # ================================
    # Access
    # ================================

    def get(self, session_id: str) -> Session | None:
        """Get a live session. Returns None if it doesn't exist."""
        return self._sessions.get(session_id)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    # ================================
    # Termination
    # ================================

    def remove(self, session_id: str) -> bool:
        """Tear a session down: kill its process and close its sink.

        Safe to call any number of times; only the first call has an effect.

        Returns True if the session existed and was removed, False otherwise.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        session.state = SessionState.CLOSED
        if session.transport is not None:
            session.transport.terminate()
        session.sink.close()

        lifetime = time.time() - session.created_at
        logger.info(f"Session {session_id} closed after {lifetime:.1f}s")
        return True

    def remove_all(self) -> None:
        """Tear down every session."""
        for session_id in list(self._sessions):
            self.remove(session_id)
        logger.debug("Removed all sessions")
