"""FastAPI application for the roomrelay gateway.

Provides:
- ``WS /chat`` -- the room's WebSocket endpoint (426 for plain HTTP)
- ``POST /api/verify`` -- bot-check token proxy
- ``GET /api/room`` -- live room status
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from roomrelay import __version__
from web.backend.app.middleware.room import get_room
from web.backend.app.models.api import ServiceInfoResponse
from web.backend.app.routers import chat, verify

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    room = get_room()
    await room.start()
    try:
        yield
    finally:
        await room.stop()


app = FastAPI(
    title="roomrelay",
    description="Single-room ephemeral chat relay over WebSocket.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# CORS middleware (the chat widget is embedded from other origins)
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Include routers
# ---------------------------------------------------------------------------
app.include_router(chat.router)
app.include_router(verify.router)


# ---------------------------------------------------------------------------
# Root and health-check endpoints
# ---------------------------------------------------------------------------


@app.get("/", tags=["meta"], response_model=ServiceInfoResponse)
async def root():
    """Return basic API information."""
    return ServiceInfoResponse(
        name="roomrelay",
        version=__version__,
        description="Single-room ephemeral chat relay",
    )


@app.get("/health", tags=["meta"])
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "room_running": get_room().running}
