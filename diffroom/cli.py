from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from diffroom.config.settings import load_settings
from diffroom.logging_config import init_logging

app = typer.Typer(add_completion=False, help="Distributed differential stress-testing.")
logger = logging.getLogger(__name__)


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Interface to bind."),
    port: Optional[int] = typer.Option(None, help="Port to listen on."),
    member_timeout: Optional[float] = typer.Option(
        None,
        help="Seconds a member may stay silent during a round before the room errors (0 disables).",
    ),
    log_level: Optional[str] = typer.Option(None, help="Root log level."),
    log_dir: Optional[Path] = typer.Option(None, help="Directory for server.log."),
) -> None:
    """Run the session coordinator."""
    import uvicorn

    from diffroom.server.app import create_app

    settings = load_settings(
        host=host,
        port=port,
        member_timeout=member_timeout,
        log_level=log_level,
        log_dir=log_dir,
    )
    init_logging(settings.resolved_log_dir(), level=settings.log_level)
    logger.info("Starting coordinator at http://%s:%s", settings.host, settings.port)
    uvicorn.run(
        create_app(settings=settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


@app.command()
def run(
    program: str = typer.Option(..., help="Path to the executable program to test."),
    room: str = typer.Option(..., help="The room ID to join."),
    server: Optional[str] = typer.Option(None, help="The server URL."),
    script: Optional[str] = typer.Option(
        None, help="Test case generator command (makes you the host)."
    ),
    count: int = typer.Option(10, min=1, help="Number of matching rounds to run."),
) -> None:
    """Join a room and stress-test PROGRAM against the other members."""
    from diffroom.runtime.client import SessionClient

    settings = load_settings(server_url=server)
    init_logging(
        settings.resolved_log_dir(),
        level=settings.log_level,
        filename="client.log",
        console=False,
    )
    logger.info("Joining room %s at %s", room, settings.server_url)
    client = SessionClient(room=room, program=program, script=script, count=count)
    code = asyncio.run(client.run(settings.server_url))
    raise typer.Exit(code)


if __name__ == "__main__":
    app()
