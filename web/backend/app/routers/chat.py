"""Chat router -- WebSocket upgrade endpoint for the room.

``GET /chat`` without an upgrade answers 426; ``WS /chat`` attaches the
socket to the room coordinator and pipes every inbound frame to it.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, status
from fastapi.responses import PlainTextResponse
from starlette.websockets import WebSocketState

from web.backend.app.middleware.room import get_room

logger = logging.getLogger(__name__)

CHAT_PATH = "/chat"

router = APIRouter(tags=["chat"])


class WebSocketConnection:
    """Hashable transport handle wrapping a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    @property
    def client(self) -> str:
        return f"{self._ws.client.host}:{self._ws.client.port}" if self._ws.client else "unknown"

    async def send_text(self, data: str) -> None:
        await self._ws.send_text(data)

    async def close(self, code: int = status.WS_1000_NORMAL_CLOSURE) -> None:
        if self._ws.application_state != WebSocketState.DISCONNECTED:
            await self._ws.close(code=code)


@router.get(CHAT_PATH, summary="Upgrade required")
async def chat_requires_upgrade():
    """Plain HTTP requests to the room path must upgrade to WebSocket."""
    return PlainTextResponse("Expected WebSocket", status_code=status.HTTP_426_UPGRADE_REQUIRED)


@router.websocket(CHAT_PATH)
async def chat_socket(websocket: WebSocket):
    room = get_room()
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    logger.debug("WebSocket accepted from %s", connection.client)
    await room.connect(connection)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await room.receive(connection, raw)
    finally:
        if room.running:
            await room.disconnect(connection)
        logger.debug("WebSocket from %s finished", connection.client)
