"""Roster and moderation state for the room.

Tracks which connection is bound to which identity, the ban/timeout table,
room-wide flags, the admin set, and per-identity send rates. None of these
classes are thread-safe; the coordinator is their only caller.
"""

from __future__ import annotations

import hmac
import logging
from collections import deque
from typing import Iterable, Optional

from roomrelay.room.errors import InvalidCredential, Unauthorized
from roomrelay.room.models import (
    BanEntry,
    Banned,
    BlockStatus,
    Connection,
    ConnectionRecord,
    ExpiresAt,
    ModerationFlags,
    NotBlocked,
    Permanent,
    TimedOut,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------


class Roster:
    """Connection-to-identity bindings.

    Several connections may share an ``author_id`` (multiple tabs); the
    online view collapses them to distinct display names.
    """

    def __init__(self) -> None:
        self._records: dict[Connection, ConnectionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, connection: object) -> bool:
        return connection in self._records

    def add_connection(self, connection: Connection, now: int = 0) -> ConnectionRecord:
        record = self._records.get(connection)
        if record is None:
            record = ConnectionRecord(connection=connection, connected_at=now)
            self._records[connection] = record
        return record

    def remove_connection(self, connection: Connection) -> Optional[ConnectionRecord]:
        return self._records.pop(connection, None)

    def record(self, connection: Connection) -> Optional[ConnectionRecord]:
        return self._records.get(connection)

    def set_identity(self, connection: Connection, author_id: str, display_name: str) -> ConnectionRecord:
        record = self.add_connection(connection)
        record.author_id = author_id
        record.display_name = display_name
        record.identity_verified = True
        return record

    def rename(self, connection: Connection, display_name: str) -> ConnectionRecord:
        record = self._records[connection]
        record.display_name = display_name
        return record

    def connections(self) -> list[Connection]:
        return list(self._records)

    def connections_for(self, author_id: str) -> list[Connection]:
        return [
            c for c, r in self._records.items()
            if r.identity_verified and r.author_id == author_id
        ]

    def display_names(self) -> list[str]:
        """Distinct display names of identified connections, first seen first."""
        seen: dict[str, None] = {}
        for r in self._records.values():
            if r.identity_verified and r.display_name:
                seen.setdefault(r.display_name, None)
        return list(seen)


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------


class ModerationState:
    """Bans, timeouts, room-wide flags, and the admin identity set.

    Admin-only operations raise :class:`Unauthorized` when the actor is not
    an admin.
    """

    def __init__(self, admin_secret: str = "") -> None:
        self._admin_secret = admin_secret
        self.flags = ModerationFlags()
        self._bans: dict[str, BanEntry] = {}

    def load(self, flags: ModerationFlags, bans: Iterable[BanEntry]) -> None:
        self.flags = flags
        self._bans = {b.author_id: b for b in bans}

    # -- admins --------------------------------------------------------------

    def is_admin(self, author_id: Optional[str]) -> bool:
        return bool(author_id) and author_id in self.flags.admins

    def _require_admin(self, actor_id: Optional[str]) -> None:
        if not self.is_admin(actor_id):
            raise Unauthorized(f"{actor_id or 'anonymous'} is not an admin")

    def authenticate(self, author_id: str, secret: str) -> None:
        """Elevate ``author_id`` if ``secret`` matches the configured one."""
        if not self._admin_secret or not hmac.compare_digest(
            secret.encode("utf-8"), self._admin_secret.encode("utf-8")
        ):
            raise InvalidCredential("Invalid credential")
        self.flags.admins.add(author_id)
        logger.info("Elevated %s to admin", author_id)

    def logout(self, actor_id: str) -> None:
        self._require_admin(actor_id)
        self.flags.admins.discard(actor_id)
        logger.info("Admin %s logged out", actor_id)

    # -- flags ---------------------------------------------------------------

    def set_frozen(self, actor_id: str, frozen: bool) -> None:
        self._require_admin(actor_id)
        self.flags.chat_frozen = frozen

    def set_admin_only(self, actor_id: str, admin_only: bool) -> None:
        self._require_admin(actor_id)
        self.flags.admin_only = admin_only

    # -- bans ----------------------------------------------------------------

    def ban(
        self,
        actor_id: str,
        target_id: str,
        display_name: str,
        duration_ms: Optional[int],
        now: int,
    ) -> BanEntry:
        """Ban ``target_id`` permanently (``duration_ms`` None) or for a while.

        Non-admins may only put themselves in a timeout.
        """
        if duration_ms is not None and duration_ms <= 0:
            raise ValueError("duration_ms must be positive")
        if not self.is_admin(actor_id):
            if actor_id != target_id or duration_ms is None:
                raise Unauthorized(f"{actor_id} cannot ban {target_id}")
        return self.impose(target_id, display_name, duration_ms, now)

    def impose(self, target_id: str, display_name: str, duration_ms: Optional[int], now: int) -> BanEntry:
        """Write a ban entry without an actor check."""
        expiry = Permanent() if duration_ms is None else ExpiresAt(now + duration_ms)
        entry = BanEntry(author_id=target_id, display_name=display_name, expiry=expiry)
        self._bans[target_id] = entry
        return entry

    def unban(self, actor_id: str, target_id: str) -> bool:
        self._require_admin(actor_id)
        return self._bans.pop(target_id, None) is not None

    def is_blocked(self, author_id: str, now: int) -> BlockStatus:
        entry = self._bans.get(author_id)
        if entry is None or not entry.is_active(now):
            return NotBlocked()
        if isinstance(entry.expiry, ExpiresAt):
            return TimedOut(entry.expiry.timestamp)
        return Banned()

    def prune_expired(self, now: int) -> int:
        expired = [k for k, b in self._bans.items() if not b.is_active(now)]
        for k in expired:
            del self._bans[k]
        return len(expired)

    def active_bans(self, now: int, prune: bool = True) -> list[BanEntry]:
        """Unexpired bans. With ``prune=False`` the table is only read."""
        if prune:
            self.prune_expired(now)
        return [b for b in self._bans.values() if b.is_active(now)]


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class RateLimiter:
    """Sliding-window send counter per author id."""

    def __init__(self, limit: int = 5, window_ms: int = 10_000) -> None:
        self._limit = limit
        self._window_ms = window_ms
        self._sent: dict[str, deque[int]] = {}

    def __len__(self) -> int:
        return len(self._sent)

    def _trim(self, stamps: deque[int], now: int) -> None:
        while stamps and now - stamps[0] >= self._window_ms:
            stamps.popleft()

    def exceeded(self, author_id: str, now: int) -> bool:
        """True when ``author_id`` already sent ``limit`` messages in the window."""
        stamps = self._sent.get(author_id)
        if stamps is None:
            return False
        self._trim(stamps, now)
        if not stamps:
            del self._sent[author_id]
        return len(stamps) >= self._limit

    def record(self, author_id: str, now: int) -> None:
        stamps = self._sent.setdefault(author_id, deque())
        self._trim(stamps, now)
        stamps.append(now)

    def prune(self, now: int) -> int:
        """Drop authors with no sends left in the window. Returns the count."""
        stale = []
        for author_id, stamps in self._sent.items():
            self._trim(stamps, now)
            if not stamps:
                stale.append(author_id)
        for author_id in stale:
            del self._sent[author_id]
        return len(stale)

    def forget(self, author_id: str) -> None:
        self._sent.pop(author_id, None)
