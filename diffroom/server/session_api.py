from __future__ import annotations

"""
WebSocket and HTTP surface of the session coordinator.

Clients hold one WebSocket each at ``/api/session/ws``; every text frame is a
protocol message routed through the app's ``SessionCoordinator``. The HTTP
routes are read-only views for health checks and debugging.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect

from diffroom.logging_config import reset_connection_id, set_connection_id
from diffroom.session.coordinator import SessionCoordinator
from diffroom.session.errors import ProtocolError
from diffroom.session.protocol import Message, decode_inbound

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/api/session", tags=["Session"])


@router.websocket("/ws")
async def session_ws(websocket: WebSocket) -> None:
    await websocket.accept()
    coordinator: SessionCoordinator = websocket.app.state.coordinator

    async def _send(msg: Message) -> None:
        await websocket.send_text(msg.dumps())

    connection_id = coordinator.connect(_send)
    token = set_connection_id(connection_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = decode_inbound(raw)
            except ProtocolError as exc:
                LOGGER.warning("dropping frame from %s: %s", connection_id, exc)
                continue
            await coordinator.dispatch(connection_id, msg)
    except WebSocketDisconnect:
        LOGGER.info("session websocket disconnected (%s)", connection_id)
    except Exception as exc:  # pragma: no cover - network path
        LOGGER.warning(
            "session websocket error (%s): %s", connection_id, exc, exc_info=True
        )
    finally:
        await coordinator.disconnect(connection_id)
        reset_connection_id(token)


@router.get("/stats")
async def session_stats(request: Request) -> Dict[str, Any]:
    coordinator: SessionCoordinator = request.app.state.coordinator
    return {"ok": True, "stats": coordinator.stats()}


@router.get("/rooms/{room_id}")
async def session_room(room_id: str, request: Request) -> Dict[str, Any]:
    coordinator: SessionCoordinator = request.app.state.coordinator
    room = coordinator.room(room_id)
    return {"ok": True, "room": room.summary()}


__all__ = ["router"]
