"""Client-side session: one tab's mirror of the room.

``ClientSession`` is transport-agnostic. Feed it inbound frames with
:meth:`ClientSession.handle_frame` and send whatever frames its methods
return. It never shows a message before the coordinator broadcasts it back,
so the sender and everyone else see the same ordering and ids.
"""

from __future__ import annotations

import json
import logging
import random
from typing import Any, Callable, Optional

from roomrelay.client import local_store as keys
from roomrelay.client.local_store import LocalStore
from roomrelay.config import Settings
from roomrelay.room.identity import generate_user_id, now_ms, random_id, validate_nickname
from roomrelay.room.models import ChatMessage

logger = logging.getLogger(__name__)

Frame = dict[str, Any]

# Inline status codes raised locally, alongside the server's error codes.
DISCONNECTED = "serverDisconnected"
CONNECTION_CLOSED = "connectionClosed"
BANNED_OR_TIMED_OUT = "bannedOrTimedOut"
PROCESS_FAILED = "processMessageFailed"


def _guest_name() -> str:
    return f"Guest {random.randint(1000, 9999)}"


class ClientSession:
    """Local state for one participant connection."""

    def __init__(
        self,
        store: Optional[LocalStore] = None,
        settings: Optional[Settings] = None,
        nickname: Optional[str] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store or LocalStore()
        self.settings = settings or Settings()
        self._clock = clock

        self.user_id: str = self.store.get(keys.USER_ID) or generate_user_id()
        self.store.set(keys.USER_ID, self.user_id)

        self.is_admin: bool = bool(self.store.get(keys.IS_ADMIN, False))
        stored = self.store.get(keys.NICKNAME)
        if not stored or stored == self.settings.admin_display_name:
            stored = nickname or _guest_name()
            self.store.set(keys.NICKNAME, stored)
        self.original_nickname: str = stored
        self.nickname: str = self.settings.admin_display_name if self.is_admin else stored

        self.messages: list[ChatMessage] = []
        self._system_messages: list[ChatMessage] = []
        self._set_messages(
            [ChatMessage.from_wire(d) for d in self.store.get(keys.MESSAGES, []) if not d.get("isSystem")]
        )

        self.users: list[str] = []
        self.banned_users: list[Frame] = []
        self.chat_frozen = False
        self.admin_only = False
        self.is_banned: bool = bool(self.store.get(keys.IS_BANNED, False))
        self.timeout_until: Optional[int] = self.store.get(keys.TIMEOUT_UNTIL)
        self.connected = False
        self.synced = False
        self.last_error: Optional[str] = None
        self._pending_api_key: Optional[str] = None
        self._sent: list[int] = []

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def on_open(self) -> list[Frame]:
        self.connected = True
        self.last_error = None
        frames: list[Frame] = [{"type": "requestSync", "userId": self.user_id, "nickname": self.nickname}]
        api_key = self.store.get(keys.API_KEY)
        if api_key and self.is_admin:
            self._pending_api_key = api_key
            frames.append({"type": "authenticate", "apiKey": api_key, "userId": self.user_id})
        return frames

    def on_close(self) -> None:
        self.connected = False
        self.synced = False
        self.last_error = CONNECTION_CLOSED

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_frame(self, frame: Frame | str) -> list[Frame]:
        """Apply one server frame. Returns frames to send back, if any."""
        try:
            if isinstance(frame, str):
                frame = json.loads(frame)
            handler = getattr(self, f"_on_{frame['type']}", None)
            if handler is None:
                logger.debug("Ignoring unknown frame type %r", frame.get("type"))
                return []
            return handler(frame) or []
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Could not apply frame: %s", exc)
            self.last_error = PROCESS_FAILED
            return []

    def _on_sync(self, frame: Frame) -> None:
        server = [ChatMessage.from_wire(d) for d in frame.get("messages", []) if not d.get("isSystem")]
        self._set_messages(server)
        self.users = list(dict.fromkeys(frame.get("users", [])))
        self._apply_bans(frame.get("bannedUsers", []))
        self.chat_frozen = bool(frame.get("isChatFrozen", False))
        self.admin_only = bool(frame.get("isAdminOnly", False))
        self.synced = True

    def _on_add(self, frame: Frame) -> None:
        if any(m.id == frame["id"] for m in self.messages):
            return
        self._set_messages(self.messages + [ChatMessage.from_wire(frame)])

    def _on_update(self, frame: Frame) -> None:
        updated = ChatMessage.from_wire(frame)
        if not any(m.id == updated.id for m in self.messages):
            # The server inserts on an unknown id, so do the same.
            self._on_add(frame)
            return
        self._set_messages([updated if m.id == updated.id else m for m in self.messages])

    def _on_users(self, frame: Frame) -> None:
        self.users = list(dict.fromkeys(frame.get("users", [])))

    def _on_bannedUsers(self, frame: Frame) -> None:
        self._apply_bans(frame.get("bannedUsers", []))

    def _on_chatFrozen(self, frame: Frame) -> None:
        self.chat_frozen = bool(frame.get("isFrozen", False))

    def _on_adminOnly(self, frame: Frame) -> None:
        self.admin_only = bool(frame.get("isAdminOnly", False))

    def _on_clearChat(self, frame: Frame) -> None:
        self._system_messages = []
        self._set_messages([])

    def _on_deleteUserMessages(self, frame: Frame) -> None:
        target = frame.get("userId")
        self._set_messages([m for m in self.messages if m.is_system or m.author_id != target])

    def _on_SET_ADMIN(self, frame: Frame) -> list[Frame]:
        if frame.get("payload"):
            self.is_admin = True
            if self._pending_api_key:
                self.store.set(keys.API_KEY, self._pending_api_key)
            self.store.set(keys.IS_ADMIN, True)
            self.nickname = self.settings.admin_display_name
            return [{"type": "updateUser", "userId": self.user_id, "nickname": self.nickname}]

        was_admin = self.is_admin
        self._drop_admin()
        if was_admin:
            return [{"type": "updateUser", "userId": self.user_id, "nickname": self.nickname}]
        return []

    def _on_error(self, frame: Frame) -> list[Frame]:
        code = frame.get("message")
        self.last_error = code
        if code == "invalidNickname" and not self.synced:
            # The join was refused; retry once under a plain name.
            fallback = self.original_nickname if self.nickname != self.original_nickname else _guest_name()
            self.nickname = fallback
            return [{"type": "requestSync", "userId": self.user_id, "nickname": fallback}]
        if code == "invalidApiKey":
            self._pending_api_key = None
            if self.is_admin:
                self._drop_admin()
        elif code == "timeout":
            self._set_block(banned=False, until=frame.get("until"))
        elif code == "banned":
            self._set_block(banned=True, until=None)
        return []

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def compose_message(self, text: str) -> Optional[Frame]:
        """Build the frame for sending ``text``.

        Returns ``None`` (with ``last_error`` set) when a local gate refuses.
        When the send rate is exceeded the returned frame is the
        self-timeout ``banUser`` instead of the message.
        """
        content = text.strip()[: self.settings.max_message_length]
        if not content:
            return None
        if not self.connected:
            self.last_error = DISCONNECTED
            return None

        now = self._clock()
        if self.chat_frozen:
            self.last_error = "frozen"
            return None
        if self.admin_only and not self.is_admin:
            self.last_error = "adminOnly"
            return None
        if not self.is_admin and (self.is_banned or (self.timeout_until or 0) > now):
            self.last_error = BANNED_OR_TIMED_OUT
            return None

        recent = [ts for ts in self._sent if now - ts < self.settings.rate_limit_window_ms]
        if not self.is_admin and len(recent) >= self.settings.rate_limit_count:
            duration = self.settings.rate_limit_timeout_ms
            self._set_block(banned=False, until=now + duration)
            self.last_error = "timeout"
            return {
                "type": "banUser",
                "userId": self.user_id,
                "targetUserId": self.user_id,
                "nickname": self.nickname,
                "duration": duration,
            }
        self._sent = recent + [now]
        self.last_error = None
        return {
            "type": "add",
            "id": random_id(),
            "content": content,
            "user": self.nickname,
            "userId": self.user_id,
            "role": self.settings.admin_role if self.is_admin else self.nickname,
            "timestamp": now,
            "isSystem": False,
        }

    def rename(self, nickname: str) -> Optional[Frame]:
        nickname = nickname.strip()
        if not validate_nickname(
            nickname, self.settings.min_nickname_length, self.settings.max_nickname_length
        ):
            self.last_error = "invalidNickname"
            return None
        self.nickname = nickname
        if not self.is_admin:
            self.original_nickname = nickname
            self.store.set(keys.NICKNAME, nickname)
        return {"type": "updateUser", "userId": self.user_id, "nickname": nickname}

    def authenticate(self, api_key: str) -> Frame:
        self._pending_api_key = api_key
        return {"type": "authenticate", "apiKey": api_key, "userId": self.user_id}

    def logout(self) -> Frame:
        self._drop_admin()
        return {"type": "logoutAdmin", "userId": self.user_id, "nickname": self.nickname}

    def freeze_chat(self, frozen: Optional[bool] = None) -> Frame:
        value = not self.chat_frozen if frozen is None else frozen
        return {"type": "freezeChat", "isFrozen": value, "userId": self.user_id}

    def set_admin_only(self, admin_only: Optional[bool] = None) -> Frame:
        value = not self.admin_only if admin_only is None else admin_only
        return {"type": "adminOnly", "isAdminOnly": value, "userId": self.user_id}

    def clear_chat(self) -> Frame:
        return {"type": "clearChat", "userId": self.user_id}

    def ban(self, target_user_id: str, nickname: str, duration_ms: Optional[int] = None) -> Frame:
        frame: Frame = {"type": "banUser", "userId": self.user_id, "targetUserId": target_user_id, "nickname": nickname}
        if duration_ms is not None:
            frame["duration"] = duration_ms
        return frame

    def unban(self, target_user_id: str) -> Frame:
        return {"type": "unbanUser", "userId": self.user_id, "targetUserId": target_user_id}

    def delete_user_messages(self, target_user_id: str) -> Frame:
        return {"type": "deleteUserMessages", "userId": self.user_id, "targetUserId": target_user_id}

    def export_transcript(self) -> str:
        return "".join(f"{m.author_display_name}: {m.content}\n" for m in self.messages)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _drop_admin(self) -> None:
        self.is_admin = False
        self.store.set(keys.IS_ADMIN, False)
        self.store.remove(keys.API_KEY)
        self.nickname = self.original_nickname
        self.store.set(keys.NICKNAME, self.nickname)

    def _set_block(self, banned: bool, until: Optional[int]) -> None:
        self.is_banned = banned
        self.timeout_until = until
        self.store.set(keys.IS_BANNED, banned)
        if until is None:
            self.store.remove(keys.TIMEOUT_UNTIL)
        else:
            self.store.set(keys.TIMEOUT_UNTIL, until)

    def _apply_bans(self, bans: list[Frame]) -> None:
        self.banned_users = list(bans)
        own = next((b for b in bans if b.get("userId") == self.user_id), None)
        if own is not None:
            until = own.get("until")
            self._set_block(banned=until is None, until=until)
        elif self.is_banned or self.timeout_until is not None:
            self._set_block(banned=False, until=None)

    def _set_messages(self, messages: list[ChatMessage]) -> None:
        """Dedupe, window, order newest first, cap, and persist."""
        cutoff = self._clock() - self.settings.window_ms
        seen: set[str] = set()
        regular: list[ChatMessage] = []
        for m in messages:
            if m.id in seen:
                continue
            seen.add(m.id)
            if m.is_system:
                self._system_messages = [s for s in self._system_messages if s.id != m.id] + [m]
            elif m.timestamp >= cutoff:
                regular.append(m)
        regular.sort(key=lambda m: m.timestamp, reverse=True)
        regular = regular[: self.settings.max_messages]
        self.store.set(keys.MESSAGES, [m.to_wire() for m in regular])
        self.messages = sorted(regular + self._system_messages, key=lambda m: m.timestamp, reverse=True)
