"""Wire protocol: JSON frames exchanged over the room WebSocket.

Inbound frames are validated into pydantic command models keyed by their
``type`` field. Outbound frames are plain dicts built by the helpers below.
"""

from __future__ import annotations

import json
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from roomrelay.room.errors import MalformedFrame
from roomrelay.room.models import BanEntry, ChatMessage, ModerationFlags

# Server -> client frame types
SYNC = "sync"
USERS = "users"
BANNED_USERS = "bannedUsers"
CHAT_FROZEN = "chatFrozen"
ADMIN_ONLY = "adminOnly"
CLEAR_CHAT = "clearChat"
DELETE_USER_MESSAGES = "deleteUserMessages"
ELEVATION = "SET_ADMIN"
ERROR = "error"


# ---------------------------------------------------------------------------
# Inbound commands
# ---------------------------------------------------------------------------


class _Command(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RequestSync(_Command):
    type: Literal["requestSync"]
    user_id: Optional[str] = Field(None, alias="userId")
    nickname: Optional[str] = None


class _ChatPayload(_Command):
    id: str = Field(..., min_length=1, max_length=128)
    content: str
    user: str = ""
    user_id: Optional[str] = Field(None, alias="userId")
    role: str = ""
    timestamp: Optional[int] = None
    is_system: bool = Field(False, alias="isSystem")


class AddMessage(_ChatPayload):
    type: Literal["add"]


class UpdateMessage(_ChatPayload):
    type: Literal["update"]


class Authenticate(_Command):
    type: Literal["authenticate"]
    api_key: str = Field(..., alias="apiKey")
    user_id: Optional[str] = Field(None, alias="userId")


class LogoutAdmin(_Command):
    type: Literal["logoutAdmin"]
    user_id: Optional[str] = Field(None, alias="userId")
    nickname: Optional[str] = None


class FreezeChat(_Command):
    type: Literal["freezeChat"]
    is_frozen: bool = Field(..., alias="isFrozen")


class SetAdminOnly(_Command):
    type: Literal["adminOnly"]
    is_admin_only: bool = Field(..., alias="isAdminOnly")


class ClearChat(_Command):
    type: Literal["clearChat"]


class DeleteUserMessages(_Command):
    type: Literal["deleteUserMessages"]
    target_user_id: str = Field(..., alias="targetUserId", min_length=1)


class BanUser(_Command):
    type: Literal["banUser"]
    target_user_id: str = Field(..., alias="targetUserId", min_length=1)
    nickname: str = ""
    duration: Optional[int] = None


class UnbanUser(_Command):
    type: Literal["unbanUser"]
    target_user_id: str = Field(..., alias="targetUserId", min_length=1)


class UpdateUser(_Command):
    type: Literal["updateUser"]
    user_id: Optional[str] = Field(None, alias="userId")
    nickname: str


class Announce(_Command):
    type: Literal["announce"]
    content: str


Command = Union[
    RequestSync,
    AddMessage,
    UpdateMessage,
    Authenticate,
    LogoutAdmin,
    FreezeChat,
    SetAdminOnly,
    ClearChat,
    DeleteUserMessages,
    BanUser,
    UnbanUser,
    UpdateUser,
    Announce,
]

_COMMANDS: dict[str, type[_Command]] = {
    "requestSync": RequestSync,
    "add": AddMessage,
    "update": UpdateMessage,
    "authenticate": Authenticate,
    "logoutAdmin": LogoutAdmin,
    "freezeChat": FreezeChat,
    "adminOnly": SetAdminOnly,
    "clearChat": ClearChat,
    "deleteUserMessages": DeleteUserMessages,
    "banUser": BanUser,
    "unbanUser": UnbanUser,
    "updateUser": UpdateUser,
    "announce": Announce,
}


def parse_frame(raw: str | bytes) -> Command:
    """Decode one inbound frame. Raises :class:`MalformedFrame`."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedFrame(f"Frame is not valid JSON: {exc}") from None
    if not isinstance(data, dict):
        raise MalformedFrame("Frame must be a JSON object")

    kind = data.get("type")
    model = _COMMANDS.get(kind) if isinstance(kind, str) else None
    if model is None:
        raise MalformedFrame(f"Unknown frame type: {kind!r}")
    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError as exc:
        raise MalformedFrame(str(exc)) from None


# ---------------------------------------------------------------------------
# Outbound frames
# ---------------------------------------------------------------------------


def encode(frame: dict[str, Any]) -> str:
    return json.dumps(frame, ensure_ascii=False)


def message_frame(kind: str, msg: ChatMessage) -> dict[str, Any]:
    return {"type": kind, **msg.to_wire()}


def sync_frame(
    messages: list[ChatMessage],
    users: list[str],
    bans: list[BanEntry],
    flags: ModerationFlags,
) -> dict[str, Any]:
    return {
        "type": SYNC,
        "messages": [m.to_wire() for m in messages],
        "users": users,
        "bannedUsers": [b.to_wire() for b in bans],
        "isChatFrozen": flags.chat_frozen,
        "isAdminOnly": flags.admin_only,
    }


def users_frame(users: list[str]) -> dict[str, Any]:
    return {"type": USERS, "users": users}


def banned_users_frame(bans: list[BanEntry]) -> dict[str, Any]:
    return {"type": BANNED_USERS, "bannedUsers": [b.to_wire() for b in bans]}


def chat_frozen_frame(frozen: bool) -> dict[str, Any]:
    return {"type": CHAT_FROZEN, "isFrozen": frozen}


def admin_only_frame(admin_only: bool) -> dict[str, Any]:
    return {"type": ADMIN_ONLY, "isAdminOnly": admin_only}


def clear_chat_frame() -> dict[str, Any]:
    return {"type": CLEAR_CHAT}


def delete_user_messages_frame(author_id: str) -> dict[str, Any]:
    return {"type": DELETE_USER_MESSAGES, "userId": author_id}


def elevation_frame(elevated: bool) -> dict[str, Any]:
    return {"type": ELEVATION, "payload": elevated}
