"""Command line entry point."""

import logging

import typer

from mcp_bridge.config import BridgeSettings, ReadyPolicy
from mcp_bridge.server.app import BridgeServer

app = typer.Typer(help="Relay JSON-RPC between browsers and stdio MCP servers.")


@app.callback()
def main() -> None:
    """mcp-bridge command line."""


@app.command()
def serve(
    host: str | None = typer.Option(None, help="Interface to bind"),
    port: int | None = typer.Option(None, help="Port to listen on"),
    log_level: str | None = typer.Option(None, help="Logging level"),
    ready_policy: ReadyPolicy | None = typer.Option(
        None, help="When sessions become ready for queued requests"
    ),
) -> None:
    """Run the bridge HTTP server."""
    overrides = {
        "host": host,
        "port": port,
        "log_level": log_level,
        "ready_policy": ready_policy,
    }
    settings = BridgeSettings(**{k: v for k, v in overrides.items() if v is not None})

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    typer.echo(
        f"Listening on http://{settings.host}:{settings.port}{settings.sse_path}"
    )
    BridgeServer(settings).run()


if __name__ == "__main__":
    app()
