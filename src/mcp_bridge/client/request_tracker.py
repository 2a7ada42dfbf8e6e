import asyncio
from typing import Any

from mcp_bridge.protocol.envelope import RequestId


class RequestTracker:
    """Correlates outbound requests with the responses that answer them."""

    def __init__(self) -> None:
        self._outbound_requests: dict[RequestId, asyncio.Future[dict[str, Any]]] = {}

    def track_outbound_request(
        self, request_id: RequestId
    ) -> asyncio.Future[dict[str, Any]]:
        """Create the future a response with this id will resolve.

        Raises:
            ValueError: If the id is already awaiting a response
        """
        if request_id in self._outbound_requests:
            raise ValueError(f"Request id {request_id!r} is already in flight")
        future = asyncio.get_running_loop().create_future()
        self._outbound_requests[request_id] = future
        return future

    def resolve_outbound_request(
        self, request_id: RequestId, response: dict[str, Any]
    ) -> bool:
        """Resolve a tracked request. Returns False if nothing was waiting."""
        future = self._outbound_requests.pop(request_id, None)
        if future is None or future.done():
            return False
        future.set_result(response)
        return True

    def fail_outbound_request(self, request_id: RequestId, error: Exception) -> bool:
        future = self._outbound_requests.pop(request_id, None)
        if future is None or future.done():
            return False
        future.set_exception(error)
        return True

    def untrack_outbound_request(self, request_id: RequestId) -> None:
        self._outbound_requests.pop(request_id, None)

    def fail_all_requests(self, error: Exception) -> None:
        """Fail every in-flight request, e.g. when the session closes."""
        for future in self._outbound_requests.values():
            if not future.done():
                future.set_exception(error)
        self._outbound_requests.clear()

    def __len__(self) -> int:
        return len(self._outbound_requests)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._outbound_requests
