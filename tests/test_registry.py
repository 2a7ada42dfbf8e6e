from unittest.mock import Mock

import pytest

from mcp_bridge.registry import SessionRegistry, SessionState
from mcp_bridge.sink import EventSink
from mcp_bridge.transport.process import ProcessTransport


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def transport() -> Mock:
    transport = Mock(spec=ProcessTransport)
    transport.is_writable = True
    return transport


class TestSessionRegistry:
    def test_create_registers_connecting_session(self, registry):
        session = registry.create("s1", EventSink("s1"))

        assert session.state == SessionState.CONNECTING
        assert registry.get("s1") is session
        assert "s1" in registry
        assert len(registry) == 1
        assert not session.is_writable

    def test_create_duplicate_raises(self, registry):
        registry.create("s1", EventSink("s1"))

        with pytest.raises(ValueError, match="already exists"):
            registry.create("s1", EventSink("s1"))

    def test_bind_transport(self, registry, transport):
        # Arrange
        session = registry.create("s1", EventSink("s1"))

        # Act
        bound = registry.bind_transport("s1", transport)
        session.state = SessionState.OPEN

        # Assert
        assert bound
        assert session.transport is transport
        assert session.is_writable

    def test_bind_transport_twice_raises(self, registry, transport):
        registry.create("s1", EventSink("s1"))
        registry.bind_transport("s1", transport)

        with pytest.raises(ValueError):
            registry.bind_transport("s1", Mock(spec=ProcessTransport))

    def test_bind_transport_after_remove_returns_false(self, registry, transport):
        registry.create("s1", EventSink("s1"))
        registry.remove("s1")

        assert not registry.bind_transport("s1", transport)
        transport.terminate.assert_not_called()

    def test_remove_tears_down_once(self, registry, transport):
        # Arrange
        sink = EventSink("s1")
        session = registry.create("s1", sink)
        registry.bind_transport("s1", transport)

        # Act
        first = registry.remove("s1")
        second = registry.remove("s1")

        # Assert
        assert first is True
        assert second is False
        transport.terminate.assert_called_once()
        assert sink.closed
        assert session.state == SessionState.CLOSED
        assert not session.is_writable
        assert registry.get("s1") is None

    def test_remove_without_transport(self, registry):
        sink = EventSink("s1")
        registry.create("s1", sink)

        assert registry.remove("s1")
        assert sink.closed

    def test_remove_all(self, registry):
        transports = []
        for session_id in ("a", "b", "c"):
            registry.create(session_id, EventSink(session_id))
            transport = Mock(spec=ProcessTransport)
            registry.bind_transport(session_id, transport)
            transports.append(transport)

        registry.remove_all()

        assert len(registry) == 0
        assert registry.session_ids() == []
        for transport in transports:
            transport.terminate.assert_called_once()
