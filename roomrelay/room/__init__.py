"""Room core -- the coordinator and the state it owns.

- Message store: bounded, windowed, deduplicated chat history
- Roster and moderation: identities, bans/timeouts, flags, admins
- Coordinator: the single actor that applies and fans out every command
"""

from roomrelay.room.coordinator import Room
from roomrelay.room.message_store import MessageStore
from roomrelay.room.moderation import ModerationState, RateLimiter, Roster
from roomrelay.room.storage import RoomStorage

__all__ = [
    "Room",
    "MessageStore",
    "ModerationState",
    "RateLimiter",
    "Roster",
    "RoomStorage",
]
