"""JSON-RPC envelope classification and normalization.

Envelopes are kept as plain dicts end to end so that whatever the caller
sent, ids included, reaches the child process unchanged.
"""

import uuid
from typing import Any

from mcp_bridge.transport.framing import encode_frame

JSONRPC_VERSION = "2.0"
NOTIFICATION_PREFIX = "notifications/"

RequestId = str | int


def is_valid_id(value: Any) -> bool:
    """Check if value can be a JSON-RPC id (string or integer, not bool)."""
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def is_request(message: dict[str, Any]) -> bool:
    """Check if message is a JSON-RPC request (method and id, no result/error)."""
    return (
        isinstance(message.get("method"), str)
        and "result" not in message
        and "error" not in message
        and is_valid_id(message.get("id"))
    )


def is_notification(message: dict[str, Any]) -> bool:
    """Check if message is a JSON-RPC notification (method, no id)."""
    return (
        isinstance(message.get("method"), str)
        and "id" not in message
        and "result" not in message
        and "error" not in message
    )


def is_response(message: dict[str, Any]) -> bool:
    """Check if message is a JSON-RPC response (id with exactly one of result/error)."""
    has_result = "result" in message
    has_error = "error" in message
    return is_valid_id(message.get("id")) and (has_result ^ has_error)


def is_legacy_command(body: dict[str, Any]) -> bool:
    """Check for the older {type, payload, id} submit shape."""
    return (
        isinstance(body.get("type"), str)
        and "jsonrpc" not in body
        and "method" not in body
    )


def generate_request_id() -> str:
    return f"req-{uuid.uuid4().hex}"


def normalize_submission(body: Any) -> dict[str, Any]:
    """Turn a submitted body into the envelope forwarded to the child.

    Legacy ``{type, payload, id}`` commands become requests. Requests without
    an id get a generated one, except methods in the ``notifications/``
    namespace, which are forwarded as notifications. Anything that already
    carries an id is returned untouched.

    Args:
        body: Decoded JSON request body

    Returns:
        JSON-RPC envelope to forward

    Raises:
        ValueError: If the body is not a well-formed message or cannot be
            encoded for the child, e.g. a string holding a lone surrogate
    """
    envelope = _normalize(body)
    try:
        encode_frame(envelope)
    except ValueError as e:
        raise ValueError(f"Message cannot be encoded as UTF-8 JSON: {e}") from e
    return envelope


def _normalize(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise ValueError("Message body must be a JSON object")

    if is_legacy_command(body):
        if not body["type"]:
            raise ValueError('Legacy command "type" must be a non-empty string')
        request_id = body.get("id")
        if request_id is None:
            request_id = generate_request_id()
        elif not is_valid_id(request_id):
            raise ValueError('"id" must be a string or integer')

        envelope: dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "id": request_id,
            "method": body["type"],
        }
        if body.get("payload") is not None:
            envelope["params"] = body["payload"]
        return envelope

    if body.get("jsonrpc") != JSONRPC_VERSION:
        raise ValueError(f'Message must declare "jsonrpc": "{JSONRPC_VERSION}"')

    if "method" in body:
        method = body["method"]
        if not isinstance(method, str) or not method:
            raise ValueError('"method" must be a non-empty string')
        if "result" in body or "error" in body:
            raise ValueError('A message cannot carry "method" and "result"/"error"')
        if "id" in body:
            if not is_valid_id(body["id"]):
                raise ValueError('"id" must be a string or integer')
            return body
        if method.startswith(NOTIFICATION_PREFIX):
            return body
        return {**body, "id": generate_request_id()}

    if is_response(body):
        return body

    raise ValueError("Message is not a JSON-RPC request, notification or response")
