"""Error types raised while processing room commands.

Each error carries the ``code`` sent to the client in an ``error`` frame.
"""

from __future__ import annotations

from typing import Any, Optional


class RoomError(Exception):
    code = "invalidData"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message or self.code)
        if code is not None:
            self.code = code

    def to_wire(self) -> dict[str, Any]:
        return {"type": "error", "message": self.code}


class MalformedFrame(RoomError):
    code = "invalidData"


class NotIdentified(RoomError):
    code = "notIdentified"


class Blocked(RoomError):
    """Sender is banned (``until`` is None) or timed out until ``until``."""

    def __init__(self, until: Optional[int] = None):
        self.until = until
        super().__init__(code="banned" if until is None else "timeout")

    def to_wire(self) -> dict[str, Any]:
        data = super().to_wire()
        if self.until is not None:
            data["until"] = self.until
        return data


class Frozen(RoomError):
    code = "frozen"


class AdminOnly(RoomError):
    code = "adminOnly"


class Unauthorized(RoomError):
    code = "unauthorized"


class InvalidCredential(RoomError):
    code = "invalidApiKey"


class InvalidNickname(RoomError):
    code = "invalidNickname"


class MessageTooLong(RoomError):
    code = "messageTooLong"


class VerificationUpstreamFailure(Exception):
    """The bot-check service could not be reached or returned garbage."""
