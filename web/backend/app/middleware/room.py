"""Room dependencies -- locate the single coordinator and its collaborators.

The gateway serves exactly one room, so the coordinator, settings and token
verifier are process-wide singletons created on first use.
"""

from __future__ import annotations

from typing import Optional

from roomrelay.config import Settings
from roomrelay.room import Room, RoomStorage
from roomrelay.verification import TokenVerifier

# Shared instances
_settings: Optional[Settings] = None
_room: Optional[Room] = None
_verifier: Optional[TokenVerifier] = None


def configure(
    settings: Optional[Settings] = None,
    room: Optional[Room] = None,
    verifier: Optional[TokenVerifier] = None,
) -> None:
    """Replace the shared instances (used at startup and by tests)."""
    global _settings, _room, _verifier
    _settings = settings
    _room = room
    _verifier = verifier


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def get_room() -> Room:
    """Return the room coordinator, creating it on first use."""
    global _room
    if _room is None:
        settings = get_settings()
        _room = Room(settings, storage=RoomStorage(settings.data_dir))
    return _room


def get_verifier() -> TokenVerifier:
    global _verifier
    if _verifier is None:
        settings = get_settings()
        _verifier = TokenVerifier(settings.verification_secret, url=settings.verification_url)
    return _verifier
