"""Pydantic models for HTTP request/response serialization."""

from __future__ import annotations

from pydantic import BaseModel, Field


class VerifyRequest(BaseModel):
    token: str = ""


class VerifyResponse(BaseModel):
    success: bool = False
    error: list[str] = Field(default_factory=list)


class RoomStatusResponse(BaseModel):
    """Mirrors roomrelay.room.Room.status()."""

    room: str
    connections: int = 0
    users: list[str] = Field(default_factory=list)
    messages: int = 0
    bans: int = 0
    chat_frozen: bool = False
    admin_only: bool = False


class ServiceInfoResponse(BaseModel):
    name: str
    version: str
    description: str = ""
    docs: str = "/docs"
    openapi: str = "/openapi.json"
