"""Verification router -- proxies the one-time bot check.

Prefix: ``/api``
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request

from web.backend.app.middleware.room import get_room, get_verifier
from web.backend.app.models.api import RoomStatusResponse, VerifyRequest, VerifyResponse

router = APIRouter(prefix="/api", tags=["verify"])


def _client_ip(request: Request) -> Optional[str]:
    """Prefer proxy-supplied client addresses over the socket peer."""
    ip = request.headers.get("cf-connecting-ip")
    if ip:
        return ip
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@router.post("/verify", response_model=VerifyResponse, summary="Verify a bot-check token")
async def verify_token(body: VerifyRequest, request: Request):
    """Forward ``token`` to the verification service.

    Upstream failures are reported as ``success: false`` with an error code,
    never as an HTTP error.
    """
    result = await get_verifier().verify(body.token, _client_ip(request))
    return VerifyResponse(success=result.success, error=result.errors)


@router.get("/room", response_model=RoomStatusResponse, summary="Room status")
async def room_status():
    """Return the live roster and room-wide flags."""
    return RoomStatusResponse(**get_room().status())
