"""Relay events delivered to the browser over the push channel."""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class EventModel(BaseModel):
    """Base for event payload models."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RelayEventType(str, Enum):
    CLIENT_ID_ASSIGNED = "clientIdAssigned"
    CONNECTION_STATUS = "connectionStatus"
    LOG_MESSAGE = "logMessage"
    MCP_MESSAGE = "mcpMessage"
    COMMAND_ERROR = "commandError"


class ClientIdAssigned(EventModel):
    client_id: str = Field(alias="clientId")


class ConnectionStatus(EventModel):
    status: Literal["connected", "disconnected", "error"]
    code: int | None = None
    """
    Exit code of the process, for disconnected.
    """

    signal: str | None = None
    """
    Name of the signal that killed the process, if any.
    """

    error: str | None = None
    """
    Human readable failure description, for error.
    """


class LogMessage(EventModel):
    source: Literal["stdout", "stderr"]
    content: str


class CommandError(EventModel):
    type: str
    """
    Method of the message that could not be delivered.
    """

    error: str


class RelayEvent(BaseModel):
    """One push-channel frame: an event type tag and its payload."""

    model_config = ConfigDict(frozen=True)

    type: RelayEventType
    payload: Any = None

    @classmethod
    def client_id_assigned(cls, client_id: str) -> "RelayEvent":
        return cls(
            type=RelayEventType.CLIENT_ID_ASSIGNED,
            payload=ClientIdAssigned(client_id=client_id).to_payload(),
        )

    @classmethod
    def connection_status(
        cls,
        status: Literal["connected", "disconnected", "error"],
        *,
        code: int | None = None,
        signal: str | None = None,
        error: str | None = None,
    ) -> "RelayEvent":
        payload = ConnectionStatus(status=status, code=code, signal=signal, error=error)
        return cls(type=RelayEventType.CONNECTION_STATUS, payload=payload.to_payload())

    @classmethod
    def log_message(
        cls, source: Literal["stdout", "stderr"], content: str
    ) -> "RelayEvent":
        payload = LogMessage(source=source, content=content)
        return cls(type=RelayEventType.LOG_MESSAGE, payload=payload.to_payload())

    @classmethod
    def mcp_message(cls, envelope: dict[str, Any]) -> "RelayEvent":
        return cls(type=RelayEventType.MCP_MESSAGE, payload=envelope)

    @classmethod
    def command_error(cls, method: str, error: str) -> "RelayEvent":
        payload = CommandError(type=method, error=error)
        return cls(type=RelayEventType.COMMAND_ERROR, payload=payload.to_payload())

    @property
    def is_terminal(self) -> bool:
        """True for the connection statuses that end a session."""
        return self.type == RelayEventType.CONNECTION_STATUS and self.payload.get(
            "status"
        ) in ("disconnected", "error")

    def to_sse(self) -> str:
        """Format as a Server-Sent Events data frame."""
        return f"data: {self.model_dump_json()}\n\n"
