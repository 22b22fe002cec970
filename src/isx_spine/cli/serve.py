"""
CLI: ``isx-spine serve``, start the API and WebSocket server.
"""

from __future__ import annotations

import typer
import uvicorn

from isx_spine.cli.utils import console
from isx_spine.core.logging import configure_logging
from isx_spine.core.settings import get_settings


def serve(
    host: str | None = typer.Option(None, "--host", "-h", help="Bind address (default from settings)"),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port (default from settings)"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on changes"),
    log_level: str | None = typer.Option(None, "--log-level", help="Log level (default from settings)"),
) -> None:
    """Start the isx-spine REST API and operation stream."""
    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    level = (log_level or settings.log_level).upper()

    configure_logging(level=level, json_format=settings.log_format == "json")

    console.print(f"[bold green]Starting isx-spine[/bold green] on {host}:{port}")
    console.print(f"  REST:      http://{host}:{port}{settings.api_prefix}/operations")
    console.print(f"  WebSocket: ws://{host}:{port}/ws")
    uvicorn.run(
        "isx_spine.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=level.lower(),
    )
