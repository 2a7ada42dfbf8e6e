"""Events produced by a process transport."""

from dataclasses import dataclass
from typing import Any, Literal

LogSource = Literal["stdout", "stderr"]


@dataclass
class MessageReceived:
    """A stdout line that parsed as a JSON object."""

    payload: dict[str, Any]
    timestamp: float


@dataclass
class LogLine:
    """A non-JSON stdout line or any stderr line."""

    source: LogSource
    text: str
    timestamp: float


@dataclass
class TransportFailed:
    """A stream-level I/O failure on a running process."""

    error: Exception
    timestamp: float


@dataclass
class ProcessClosed:
    """The process exited. Always the last event of a transport."""

    returncode: int | None
    timestamp: float

    @property
    def signal_number(self) -> int | None:
        """Signal that killed the process, if it died from one (POSIX)."""
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None


TransportEvent = MessageReceived | LogLine | TransportFailed | ProcessClosed
