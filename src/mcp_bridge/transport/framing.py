"""Newline-delimited JSON framing for the stdio transport."""

import json
from typing import Any

from mcp_bridge.errors import MalformedLine


def parse_json_line(line: str) -> dict[str, Any]:
    """Parse one stdout line as a JSON-RPC message.

    Args:
        line: Decoded line without its terminator

    Returns:
        Parsed message dict

    Raises:
        MalformedLine: If the line is not valid JSON or not a JSON object
    """
    try:
        message = json.loads(line)
    except json.JSONDecodeError as e:
        raise MalformedLine(line) from e

    if not isinstance(message, dict):
        raise MalformedLine(line)
    return message


def serialize_message(message: dict[str, Any]) -> str:
    """Serialize message to a compact single-line JSON string.

    Args:
        message: JSON-RPC message to serialize

    Returns:
        JSON string representation

    Raises:
        ValueError: If the message cannot be serialized
    """
    try:
        return json.dumps(message, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Failed to serialize message to JSON: {e}") from e


def encode_frame(message: dict[str, Any]) -> bytes:
    """Encode one message as a newline-terminated UTF-8 frame."""
    return (serialize_message(message) + "\n").encode("utf-8")


class LineDecoder:
    """Splits an unbounded byte stream into complete text lines.

    Bytes are buffered until a newline arrives. A trailing carriage return is
    stripped so CRLF output is handled. Whitespace-only lines are dropped.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[str]:
        """Buffer a chunk and return every line it completes."""
        self._buffer.extend(data)
        lines: list[str] = []
        while True:
            index = self._buffer.find(b"\n")
            if index < 0:
                break
            raw = bytes(self._buffer[:index])
            del self._buffer[: index + 1]
            line = self._decode(raw)
            if line is not None:
                lines.append(line)
        return lines

    def flush(self) -> list[str]:
        """Return the unterminated remainder at end of stream, if any."""
        raw = bytes(self._buffer)
        self._buffer.clear()
        line = self._decode(raw)
        return [line] if line is not None else []

    def _decode(self, raw: bytes) -> str | None:
        line = raw.decode(self._encoding, errors="replace")
        if line.endswith("\r"):
            line = line[:-1]
        if not line.strip():
            return None
        return line
