"""Server settings and validation of open-request parameters."""

import json
from enum import Enum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_bridge.errors import ConfigurationError


class ReadyPolicy(str, Enum):
    """When a session counts as ready for queued requests."""

    IMMEDIATE = "immediate"
    """
    Ready as soon as the process is confirmed running.
    """

    INITIALIZE = "initialize"
    """
    Ready once the response to an initialize request has been observed.
    """


class BridgeSettings(BaseSettings):
    """Runtime settings, read from MCP_BRIDGE_* variables or a .env file."""

    model_config = SettingsConfigDict(
        env_prefix="MCP_BRIDGE_", env_file=".env", extra="ignore"
    )

    host: str = "127.0.0.1"
    port: int = 3000
    sse_path: str = "/mcp-proxy/sse"
    message_path: str = "/mcp-proxy/message"
    ping_interval: float = Field(default=15.0, ge=0)  # 0 disables keepalive
    read_chunk_size: int = Field(default=65536, gt=0)
    default_env: dict[str, str] = Field(default_factory=dict)
    ready_policy: ReadyPolicy = ReadyPolicy.IMMEDIATE
    cors_origins: list[str] = Field(default_factory=list)
    log_level: str = "info"


class OpenConfig(BaseModel):
    """Validated parameters of an open request."""

    model_config = ConfigDict(frozen=True)

    transport: Literal["stdio"]
    command: str = Field(min_length=1)
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("transport", mode="before")
    @classmethod
    def _lowercase_transport(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("command")
    @classmethod
    def _strip_command(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("command must not be blank")
        return value

    @classmethod
    def from_query(cls, params: Mapping[str, str]) -> "OpenConfig":
        """Build a config from push-channel query parameters.

        ``args`` must be a JSON-encoded array of strings and ``env`` a
        JSON-encoded object of strings. Both are optional.

        Raises:
            ConfigurationError: If any parameter is missing or invalid
        """
        transport = params.get("transport")
        if not transport:
            raise ConfigurationError('Missing "transport" query parameter.')
        if transport.lower() != "stdio":
            raise ConfigurationError(
                f"Unsupported transport type: {transport}. "
                "Only 'stdio' is currently supported."
            )

        command = params.get("command")
        if not command or not command.strip():
            raise ConfigurationError('Missing or invalid "command" query parameter.')

        args = _decode_json_param(params, "args", list, "array of strings")
        env = _decode_json_param(params, "env", dict, "object of strings")

        try:
            return cls(transport=transport, command=command, args=args, env=env)
        except ValidationError as e:
            raise ConfigurationError(_describe_validation_error(e)) from e


def _decode_json_param(
    params: Mapping[str, str], name: str, expected: type, description: str
) -> Any:
    raw = params.get(name)
    if raw is None or raw == "":
        return expected()
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f'Invalid "{name}" query parameter (must be a JSON {description}): {e}'
        ) from e
    if not isinstance(value, expected):
        raise ConfigurationError(
            f'Invalid "{name}" query parameter (must be a JSON {description}).'
        )
    return value


def _describe_validation_error(error: ValidationError) -> str:
    problems = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        problems.append(f'"{location}": {detail["msg"]}')
    return "Invalid open parameters: " + "; ".join(problems)
