"""
diffroom FastAPI entrypoint.

Provides a ``create_app`` factory that wires one ``SessionCoordinator`` into
the application state, the session routes and the error handlers.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI

from diffroom import __version__
from diffroom.config.settings import Settings, load_settings
from diffroom.server.errors import register_exception_handlers
from diffroom.server.session_api import router as session_router
from diffroom.session.coordinator import SessionCoordinator

LOGGER = logging.getLogger(__name__)


def create_app(
    *,
    settings: Optional[Settings] = None,
    coordinator: Optional[SessionCoordinator] = None,
) -> FastAPI:
    """Application factory used by both the CLI and ASGI servers."""
    settings = settings or load_settings()
    if coordinator is None:
        coordinator = SessionCoordinator(member_timeout=settings.member_timeout)

    app = FastAPI(title="diffroom", version=__version__)
    app.state.version = __version__
    app.state.settings = settings
    app.state.coordinator = coordinator

    register_exception_handlers(app)
    app.include_router(session_router)

    @app.get("/health")
    async def core_health() -> dict:
        return {"status": "ok"}

    LOGGER.info(
        "diffroom app ready (member_timeout=%s)", coordinator.member_timeout
    )
    return app


__all__ = ["create_app"]
