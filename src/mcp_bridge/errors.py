"""Exception hierarchy for the bridge.

Each failure mode of a session maps to one exception type so the gateway can
decide whether it is fatal (terminal connection status, session closed) or
recoverable (reported on the stream or as an HTTP status, session continues).
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base exception for all bridge errors."""

    pass


class ConfigurationError(BridgeError):
    """Raised when open parameters (transport, command, args, env) are invalid.

    Fatal: the session never reaches the open state.
    """

    pass


class SpawnError(BridgeError):
    """Raised when the OS fails to launch the child process."""

    pass


class TransportError(BridgeError):
    """Raised on an I/O failure of an already running child's streams."""

    pass


class MalformedLine(BridgeError):
    """A stdout line that is not a JSON object.

    Recoverable: the line is demoted to a log event and the session continues.
    """

    def __init__(self, line: str) -> None:
        super().__init__(f"Line is not a JSON object: {line!r}")
        self.line = line


class WriteFailure(BridgeError):
    """Raised when a message could not be written to the child's stdin."""

    pass


class NotFoundError(BridgeError):
    """Raised when a submit addresses an unknown session id."""

    pass


class UnavailableError(BridgeError):
    """Raised when a session exists but its process can no longer accept input."""

    pass


class ClientGoneError(BridgeError):
    """Raised when writing to a push channel whose client has disconnected."""

    pass
