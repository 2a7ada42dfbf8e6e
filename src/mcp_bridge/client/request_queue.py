import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from mcp_bridge.protocol.envelope import JSONRPC_VERSION, RequestId


@dataclass
class PendingRequest:
    """A message issued before the session was ready."""

    method: str
    params: Any = None
    id: RequestId | None = None  # None for notifications
    enqueued_at: float = field(default_factory=time.time)

    def to_envelope(self) -> dict[str, Any]:
        envelope: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.id is not None:
            envelope["id"] = self.id
        if self.params is not None:
            envelope["params"] = self.params
        return envelope


class RequestQueue:
    """FIFO buffer of pending requests, flushed once the session is ready."""

    def __init__(self) -> None:
        self._pending: deque[PendingRequest] = deque()

    def enqueue(self, request: PendingRequest) -> None:
        self._pending.append(request)

    def pop(self) -> PendingRequest | None:
        """Take the oldest pending request, or None when empty."""
        if not self._pending:
            return None
        return self._pending.popleft()

    def clear(self) -> list[PendingRequest]:
        """Drop and return everything still pending."""
        dropped = list(self._pending)
        self._pending.clear()
        return dropped

    def __len__(self) -> int:
        return len(self._pending)
