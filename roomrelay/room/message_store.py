"""Bounded, time-windowed, deduplicated chat log."""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Optional

from roomrelay.room.models import ChatMessage

HOUR_MS = 3600 * 1000


def _cutoff(now: int, window_hours: int) -> int:
    return now - window_hours * HOUR_MS


class MessageStore:
    """Authoritative chat history keyed by message id.

    Non-system messages are bounded by ``capacity`` and the rolling window.
    System messages are never time-evicted but are capped separately.
    """

    def __init__(self, capacity: int = 100) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._messages: dict[str, ChatMessage] = {}

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def get(self, message_id: str) -> Optional[ChatMessage]:
        return self._messages.get(message_id)

    def load(self, messages: Iterable[ChatMessage]) -> None:
        """Replace the store contents with previously persisted messages."""
        self._messages = {}
        for msg in messages:
            self._messages[msg.id] = msg
        self._enforce_capacity()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append_or_replace(self, msg: ChatMessage) -> ChatMessage:
        """Insert ``msg`` or overwrite the entry with the same id.

        A replacement keeps the entry's position and is never a system
        message.
        """
        if msg.id in self._messages:
            msg = replace(msg, is_system=False)
        self._messages[msg.id] = msg
        self._enforce_capacity()
        return msg

    def evict_expired(self, now: int, window_hours: int) -> int:
        """Drop non-system messages older than the window. Returns the count."""
        cutoff = _cutoff(now, window_hours)
        expired = [
            mid for mid, m in self._messages.items()
            if not m.is_system and m.timestamp < cutoff
        ]
        for mid in expired:
            del self._messages[mid]
        return len(expired)

    def clear(self) -> None:
        self._messages.clear()

    def delete_by_author(self, author_id: str) -> int:
        doomed = [
            mid for mid, m in self._messages.items()
            if not m.is_system and m.author_id == author_id
        ]
        for mid in doomed:
            del self._messages[mid]
        return len(doomed)

    def _enforce_capacity(self) -> None:
        for system in (False, True):
            group = [m for m in self._messages.values() if m.is_system == system]
            excess = len(group) - self._capacity
            if excess > 0:
                group.sort(key=lambda m: m.timestamp)
                for m in group[:excess]:
                    del self._messages[m.id]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self, now: int, window_hours: int, max_count: int) -> list[ChatMessage]:
        """Messages inside the window, newest first, at most ``max_count``."""
        cutoff = _cutoff(now, window_hours)
        visible = [m for m in self._messages.values() if m.is_system or m.timestamp >= cutoff]
        visible.sort(key=lambda m: m.timestamp, reverse=True)
        return visible[:max_count]

    def persistable(self, now: int, window_hours: int) -> list[ChatMessage]:
        """Windowed non-system messages in insertion order."""
        cutoff = _cutoff(now, window_hours)
        return [m for m in self._messages.values() if not m.is_system and m.timestamp >= cutoff]
