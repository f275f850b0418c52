"""File-based JSON storage for room state.

Four independently loadable keys live under the room's data directory:

- ``messages.json`` -- list of message dicts (wire form)
- ``bans.json`` -- list of ban dicts (``until`` omitted for permanent bans)
- ``flags.json`` -- ``{"chatFrozen": bool, "adminOnly": bool}``
- ``admins.json`` -- list of admin author ids
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from roomrelay.room.models import BanEntry, ChatMessage, ModerationFlags

logger = logging.getLogger(__name__)

MESSAGES = "messages"
BANS = "bans"
FLAGS = "flags"
ADMINS = "admins"

KEYS = (MESSAGES, BANS, FLAGS, ADMINS)


class RoomStorage:
    """Durable store for one room."""

    def __init__(self, base_dir: str | Path) -> None:
        self._base = Path(base_dir)
        self._base.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base

    def _path(self, key: str) -> Path:
        if key not in KEYS:
            raise KeyError(key)
        return self._base / f"{key}.json"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _read_json(self, key: str, default: Any) -> Any:
        path = self._path(key)
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable %s: %s", path, exc)
            return default

    def write_raw(self, key: str, data: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    # ------------------------------------------------------------------
    # Loads
    # ------------------------------------------------------------------

    def load_messages(self) -> list[ChatMessage]:
        data = self._read_json(MESSAGES, [])
        if not isinstance(data, list):
            return []
        messages = []
        for d in data:
            try:
                messages.append(ChatMessage.from_wire(d))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed stored message: %r", d)
        return messages

    def load_bans(self) -> list[BanEntry]:
        data = self._read_json(BANS, [])
        if not isinstance(data, list):
            return []
        bans = []
        for d in data:
            try:
                bans.append(BanEntry.from_wire(d))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed stored ban: %r", d)
        return bans

    def load_flags(self) -> ModerationFlags:
        data = self._read_json(FLAGS, {})
        admins = self._read_json(ADMINS, [])
        if not isinstance(data, dict):
            data = {}
        if not isinstance(admins, list):
            admins = []
        return ModerationFlags(
            chat_frozen=bool(data.get("chatFrozen", False)),
            admin_only=bool(data.get("adminOnly", False)),
            admins={str(a) for a in admins},
        )

    # ------------------------------------------------------------------
    # Saves
    # ------------------------------------------------------------------

    @staticmethod
    def encode_messages(messages: list[ChatMessage]) -> list[dict]:
        return [m.to_wire() for m in messages if not m.is_system]

    @staticmethod
    def encode_bans(bans: list[BanEntry]) -> list[dict]:
        return [b.to_wire() for b in bans]

    @staticmethod
    def encode_flags(flags: ModerationFlags) -> dict:
        return {"chatFrozen": flags.chat_frozen, "adminOnly": flags.admin_only}

    @staticmethod
    def encode_admins(flags: ModerationFlags) -> list[str]:
        return sorted(flags.admins)

    def save_messages(self, messages: list[ChatMessage]) -> None:
        self.write_raw(MESSAGES, self.encode_messages(messages))

    def save_bans(self, bans: list[BanEntry]) -> None:
        self.write_raw(BANS, self.encode_bans(bans))

    def save_flags(self, flags: ModerationFlags) -> None:
        self.write_raw(FLAGS, self.encode_flags(flags))
        self.write_raw(ADMINS, self.encode_admins(flags))


# ---------------------------------------------------------------------------
# Background writer
# ---------------------------------------------------------------------------


class PersistenceWriter:
    """Writes encoded snapshots to storage off the coordinator's path.

    ``submit`` never blocks. Keys are written in the order they were first
    queued; a newer snapshot for a key still waiting in the queue replaces
    the older one. Failed writes are retried ``retries`` times, then logged
    and dropped.
    """

    def __init__(
        self,
        storage: RoomStorage,
        retries: int = 2,
        retry_delay: float = 0.05,
        write: Optional[Callable[[str, Any], None]] = None,
    ) -> None:
        self._storage = storage
        self._retries = retries
        self._retry_delay = retry_delay
        self._write = write or storage.write_raw
        self._pending: dict[str, Any] = {}
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="roomrelay-persistence")

    def submit(self, key: str, data: Any) -> None:
        if key not in self._pending:
            self._queue.put_nowait(key)
        self._pending[key] = data

    async def flush(self) -> None:
        """Wait until every submitted snapshot has been written or dropped."""
        if self._task is None:
            for key in list(self._pending):
                await self._write_with_retry(key, self._pending.pop(key))
            return
        await self._queue.join()

    async def stop(self) -> None:
        if self._task is None:
            await self.flush()
            return
        await self._queue.put(None)
        await self._task
        self._task = None

    async def _run(self) -> None:
        while True:
            key = await self._queue.get()
            try:
                if key is None:
                    return
                if key in self._pending:
                    await self._write_with_retry(key, self._pending.pop(key))
            finally:
                self._queue.task_done()

    async def _write_with_retry(self, key: str, data: Any) -> None:
        for attempt in range(self._retries + 1):
            try:
                await asyncio.to_thread(self._write, key, data)
                return
            except OSError as exc:
                if attempt < self._retries:
                    logger.warning("Write of %s failed (attempt %d): %s", key, attempt + 1, exc)
                    await asyncio.sleep(self._retry_delay)
                else:
                    logger.error("Giving up writing %s after %d attempts: %s", key, attempt + 1, exc)
            except Exception:
                logger.exception("Dropping unwritable %s snapshot", key)
                return
