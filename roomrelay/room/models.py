"""Domain models for the room: messages, connections, bans, and flags."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union


class Connection(Protocol):
    """Transport handle the coordinator sends frames through."""

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass
class ChatMessage:
    """A single chat entry.

    ``timestamp`` is epoch milliseconds. ``author_id`` is ``None`` only for
    system messages.
    """

    id: str
    content: str
    author_display_name: str
    role: str
    timestamp: int
    author_id: Optional[str] = None
    is_system: bool = False

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "user": self.author_display_name,
            "role": self.role,
            "timestamp": self.timestamp,
            "isSystem": self.is_system,
        }
        if self.author_id is not None:
            data["userId"] = self.author_id
        return data

    @classmethod
    def from_wire(cls, d: dict[str, Any]) -> ChatMessage:
        return cls(
            id=str(d["id"]),
            content=str(d.get("content", "")),
            author_display_name=str(d.get("user", "")),
            role=str(d.get("role", "")),
            timestamp=int(d.get("timestamp", 0)),
            author_id=d.get("userId"),
            is_system=bool(d.get("isSystem", False)),
        )


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class ConnectionRecord:
    """Binding of one live transport to a participant identity."""

    connection: Connection
    author_id: str = ""
    display_name: str = ""
    identity_verified: bool = False
    connected_at: int = 0


# ---------------------------------------------------------------------------
# Bans
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Permanent:
    """Ban with no expiry."""


@dataclass(frozen=True)
class ExpiresAt:
    """Timeout that lapses at ``timestamp`` (epoch ms)."""

    timestamp: int


BanExpiry = Union[Permanent, ExpiresAt]


@dataclass
class BanEntry:
    author_id: str
    display_name: str
    expiry: BanExpiry = field(default_factory=Permanent)

    @property
    def until(self) -> Optional[int]:
        return self.expiry.timestamp if isinstance(self.expiry, ExpiresAt) else None

    def is_active(self, now: int) -> bool:
        if isinstance(self.expiry, ExpiresAt):
            return self.expiry.timestamp > now
        return True

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {"userId": self.author_id, "nickname": self.display_name}
        if isinstance(self.expiry, ExpiresAt):
            data["until"] = self.expiry.timestamp
        return data

    @classmethod
    def from_wire(cls, d: dict[str, Any]) -> BanEntry:
        until = d.get("until")
        expiry: BanExpiry = Permanent() if until is None else ExpiresAt(int(until))
        return cls(author_id=str(d["userId"]), display_name=str(d.get("nickname", "")), expiry=expiry)


@dataclass(frozen=True)
class NotBlocked:
    pass


@dataclass(frozen=True)
class TimedOut:
    until: int


@dataclass(frozen=True)
class Banned:
    pass


BlockStatus = Union[NotBlocked, TimedOut, Banned]


# ---------------------------------------------------------------------------
# Room-wide flags
# ---------------------------------------------------------------------------


@dataclass
class ModerationFlags:
    """Process-wide moderation switches and the admin identity set."""

    chat_frozen: bool = False
    admin_only: bool = False
    admins: set[str] = field(default_factory=set)
