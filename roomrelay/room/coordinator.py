"""Session coordinator: the single owner of a room's state.

All events for the room (new connection, inbound frame, disconnect, server
announcements) go through one ``asyncio.Queue`` and are processed strictly
one at a time by a single task. In-memory state is mutated synchronously
inside that task and is the source of truth for every broadcast; durable
writes are handed to a :class:`PersistenceWriter` afterwards, and outbound
frames to each connection's :class:`Outbox`, so the actor never waits on a
peer.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from roomrelay.config import ROOM_NAME, Settings
from roomrelay.room import protocol
from roomrelay.room.errors import (
    AdminOnly,
    Blocked,
    Frozen,
    InvalidNickname,
    MalformedFrame,
    MessageTooLong,
    NotIdentified,
    RoomError,
    Unauthorized,
)
from roomrelay.room.identity import now_ms, validate_nickname
from roomrelay.room.message_store import MessageStore
from roomrelay.room.models import (
    Banned,
    ChatMessage,
    Connection,
    ConnectionRecord,
    TimedOut,
)
from roomrelay.room.moderation import ModerationState, RateLimiter, Roster
from roomrelay.room.outbox import Outbox
from roomrelay.room.storage import ADMINS, BANS, FLAGS, MESSAGES, PersistenceWriter, RoomStorage

logger = logging.getLogger(__name__)

SYSTEM_DISPLAY_NAME = "System"
SYSTEM_ROLE = "system"

# WebSocket close codes: room shutting down, peer not keeping up.
GOING_AWAY = 1001
SLOW_CONSUMER = 1008


@dataclass
class _Event:
    kind: str  # "connect" | "frame" | "disconnect" | "drop" | "system" | "barrier"
    connection: Optional[Connection] = None
    payload: Any = None
    done: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())


class Room:
    """The room coordinator.

    Use as an async context manager, or call :meth:`start` and :meth:`stop`.
    Transports call :meth:`connect`, :meth:`receive` and :meth:`disconnect`;
    each returns once the coordinator has processed the event. Outbound
    frames are delivered by per-connection writers; :meth:`drain` waits for
    them.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Optional[RoomStorage] = None,
        clock: Callable[[], int] = now_ms,
        name: str = ROOM_NAME,
    ) -> None:
        self.settings = settings or Settings()
        self.name = name
        self._clock = clock
        self._storage = storage
        self.messages = MessageStore(capacity=self.settings.max_messages)
        self.roster = Roster()
        self.moderation = ModerationState(admin_secret=self.settings.admin_secret)
        self.limiter = RateLimiter(
            limit=self.settings.rate_limit_count,
            window_ms=self.settings.rate_limit_window_ms,
        )
        self._writer: Optional[PersistenceWriter] = None
        self._outboxes: dict[Connection, Outbox] = {}
        self._closing: set[asyncio.Task] = set()
        self._queue: Optional[asyncio.Queue[Optional[_Event]]] = None
        self._task: Optional[asyncio.Task] = None
        self._loaded = False
        self._handlers: dict[str, Callable[[ConnectionRecord, Any], Awaitable[None]]] = {
            "requestSync": self._on_request_sync,
            "add": self._on_chat,
            "update": self._on_chat,
            "authenticate": self._on_authenticate,
            "logoutAdmin": self._on_logout_admin,
            "freezeChat": self._on_freeze_chat,
            "adminOnly": self._on_admin_only,
            "clearChat": self._on_clear_chat,
            "deleteUserMessages": self._on_delete_user_messages,
            "banUser": self._on_ban_user,
            "unbanUser": self._on_unban_user,
            "updateUser": self._on_update_user,
            "announce": self._on_announce,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        if self._storage is not None:
            self._writer = PersistenceWriter(self._storage)
            self._writer.start()
        self._task = asyncio.create_task(self._run(), name=f"room-{self.name}")
        logger.info("Room %s started", self.name)

    async def stop(self) -> None:
        """Drain queued events, close live connections, then flush pending writes."""
        if self._task is None or self._queue is None:
            return
        await self._queue.put(None)
        await self._task
        self._task = None
        for connection in self.roster.connections():
            self.roster.remove_connection(connection)
        outboxes = list(self._outboxes.values())
        self._outboxes.clear()
        await asyncio.gather(*(outbox.close(GOING_AWAY) for outbox in outboxes))
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
        if self._writer is not None:
            await self._writer.stop()
            self._writer = None
        logger.info("Room %s stopped", self.name)

    async def flush(self) -> None:
        if self._writer is not None:
            await self._writer.flush()

    async def drain(self) -> None:
        """Wait until queued events are processed and queued frames delivered."""
        while True:
            await self._submit(_Event("barrier"))
            busy = [outbox for outbox in self._outboxes.values() if not outbox.idle]
            if not busy and not self._closing:
                return
            await asyncio.gather(
                *(outbox.wait_idle() for outbox in busy),
                *list(self._closing),
                return_exceptions=True,
            )

    async def __aenter__(self) -> Room:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Transport-facing API
    # ------------------------------------------------------------------

    async def connect(self, connection: Connection) -> None:
        await self._submit(_Event("connect", connection))

    async def receive(self, connection: Connection, raw: str | bytes) -> None:
        await self._submit(_Event("frame", connection, raw))

    async def disconnect(self, connection: Connection) -> None:
        await self._submit(_Event("disconnect", connection))

    async def announce(self, content: str) -> None:
        """Post a server-originated system message to everyone."""
        await self._submit(_Event("system", payload=content))

    async def _submit(self, event: _Event) -> None:
        if not self.running or self._queue is None:
            raise RuntimeError(f"Room {self.name} is not running")
        await self._queue.put(event)
        await event.done

    def status(self) -> dict[str, Any]:
        now = self._clock()
        flags = self.moderation.flags
        return {
            "room": self.name,
            "connections": len(self.roster),
            "users": self.roster.display_names(),
            "messages": len(self.messages.snapshot(now, self.settings.window_hours, self.settings.max_messages)),
            "bans": len(self.moderation.active_bans(now, prune=False)),
            "chat_frozen": flags.chat_frozen,
            "admin_only": flags.admin_only,
        }

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            if event is None:
                return
            try:
                await self._ensure_loaded()
                if event.kind == "connect":
                    self._on_connect(event.connection)
                elif event.kind == "frame":
                    await self._on_frame(event.connection, event.payload)
                elif event.kind == "disconnect":
                    await self._on_disconnect(event.connection)
                elif event.kind == "drop":
                    await self._on_disconnect(event.connection, SLOW_CONSUMER)
                elif event.kind == "system":
                    await self._post_system_message(event.payload)
            except Exception:
                logger.exception("Unhandled error processing %s event", event.kind)
            finally:
                if not event.done.done():
                    event.done.set_result(None)

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self._storage is None:
            return
        storage = self._storage
        messages, bans, flags = await asyncio.gather(
            asyncio.to_thread(storage.load_messages),
            asyncio.to_thread(storage.load_bans),
            asyncio.to_thread(storage.load_flags),
        )
        now = self._clock()
        self.messages.load(messages)
        self.messages.evict_expired(now, self.settings.window_hours)
        self.moderation.load(flags, bans)
        self.moderation.prune_expired(now)
        logger.info(
            "Room %s loaded %d messages, %d bans, %d admins",
            self.name, len(self.messages), len(self.moderation.active_bans(now)), len(flags.admins),
        )

    def _on_connect(self, connection: Connection) -> None:
        self.roster.add_connection(connection, self._clock())
        if connection not in self._outboxes:
            self._outboxes[connection] = Outbox(
                connection,
                on_failure=self._on_send_failure,
                limit=self.settings.outbox_size,
                timeout=self.settings.send_timeout_ms / 1000,
            )
        logger.info("Connection opened (%d live)", len(self.roster))

    async def _on_disconnect(self, connection: Connection, close_code: Optional[int] = None) -> None:
        outbox = self._outboxes.pop(connection, None)
        if outbox is not None:
            outbox.cancel()
            if close_code is not None:
                task = asyncio.create_task(outbox.close_connection(close_code))
                self._closing.add(task)
                task.add_done_callback(self._closing.discard)
        record = self.roster.remove_connection(connection)
        if record is None:
            return
        self.limiter.prune(self._clock())
        logger.info("Connection closed for %s (%d live)", record.author_id or "unidentified", len(self.roster))
        await self._broadcast_users()

    async def _on_frame(self, connection: Connection, raw: str | bytes) -> None:
        record = self.roster.record(connection)
        if record is None:
            return
        try:
            command = protocol.parse_frame(raw)
            await self._handlers[command.type](record, command)
        except RoomError as err:
            logger.debug("Rejected frame from %s: %s", record.author_id or "unidentified", err)
            await self._send(connection, err.to_wire())
        except Exception:
            logger.exception("Error handling frame from %s", record.author_id or "unidentified")
            await self._send(connection, MalformedFrame().to_wire())

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    @staticmethod
    def _require_identity(record: ConnectionRecord) -> str:
        if not record.identity_verified:
            raise NotIdentified("requestSync first")
        return record.author_id

    def _require_admin(self, record: ConnectionRecord) -> str:
        author_id = self._require_identity(record)
        if not self.moderation.is_admin(author_id):
            raise Unauthorized(f"{author_id} is not an admin")
        return author_id

    def _check_nickname(self, nickname: Optional[str], author_id: str, as_admin: bool) -> str:
        nickname = (nickname or "").strip()
        if nickname == self.settings.admin_display_name:
            if as_admin:
                return nickname
            raise InvalidNickname(f"{nickname!r} is reserved")
        if not validate_nickname(
            nickname, self.settings.min_nickname_length, self.settings.max_nickname_length
        ):
            raise InvalidNickname(f"Invalid nickname {nickname!r} for {author_id}")
        return nickname

    def _check_content(self, content: str) -> str:
        content = content.strip()
        if not content:
            raise MalformedFrame("Empty message")
        if len(content) > self.settings.max_message_length:
            raise MessageTooLong(f"{len(content)} > {self.settings.max_message_length}")
        return content

    async def _check_can_post(self, record: ConnectionRecord, now: int) -> bool:
        """Run the send gates in order. Returns whether the sender is an admin."""
        author_id = self._require_identity(record)
        is_admin = self.moderation.is_admin(author_id)

        if not is_admin:
            status = self.moderation.is_blocked(author_id, now)
            if isinstance(status, Banned):
                raise Blocked()
            if isinstance(status, TimedOut):
                raise Blocked(status.until)
            if self.limiter.exceeded(author_id, now):
                entry = self.moderation.impose(
                    author_id, record.display_name, self.settings.rate_limit_timeout_ms, now
                )
                logger.info("Rate limit hit by %s, timed out until %s", author_id, entry.until)
                self._persist_bans(now)
                await self._broadcast(protocol.banned_users_frame(self.moderation.active_bans(now)))
                raise Blocked(entry.until)

        flags = self.moderation.flags
        if flags.chat_frozen:
            raise Frozen()
        if flags.admin_only and not is_admin:
            raise AdminOnly()
        return is_admin

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------

    async def _on_request_sync(self, record: ConnectionRecord, cmd: protocol.RequestSync) -> None:
        author_id = (cmd.user_id or "").strip()
        if not author_id:
            raise MalformedFrame("requestSync requires userId")
        nickname = self._check_nickname(cmd.nickname, author_id, self.moderation.is_admin(author_id))
        self.roster.set_identity(record.connection, author_id, nickname)
        logger.info("%s joined as %r", author_id, nickname)

        now = self._clock()
        self.messages.evict_expired(now, self.settings.window_hours)
        snapshot = self.messages.snapshot(now, self.settings.window_hours, self.settings.max_messages)
        await self._send(
            record.connection,
            protocol.sync_frame(
                snapshot,
                self.roster.display_names(),
                self.moderation.active_bans(now),
                self.moderation.flags,
            ),
        )
        await self._broadcast_users()

    async def _on_chat(self, record: ConnectionRecord, cmd: protocol.AddMessage | protocol.UpdateMessage) -> None:
        now = self._clock()
        is_admin = await self._check_can_post(record, now)
        content = self._check_content(cmd.content)

        if cmd.type == "add":
            existing = self.messages.get(cmd.id)
            if existing is not None:
                await self._send(record.connection, protocol.message_frame("add", existing))
                return

        if not is_admin:
            self.limiter.record(record.author_id, now)
        msg = ChatMessage(
            id=cmd.id,
            content=content,
            author_display_name=record.display_name,
            role=self.settings.admin_role if is_admin else record.display_name,
            timestamp=now,
            author_id=record.author_id,
        )
        canonical = self.messages.append_or_replace(msg)
        self._persist_messages(now)
        await self._broadcast(protocol.message_frame(cmd.type, canonical))

    async def _on_authenticate(self, record: ConnectionRecord, cmd: protocol.Authenticate) -> None:
        author_id = record.author_id if record.identity_verified else (cmd.user_id or "")
        if not author_id:
            raise NotIdentified("authenticate requires an identity")
        self.moderation.authenticate(author_id, cmd.api_key)
        self._persist_flags()
        await self._send(record.connection, protocol.elevation_frame(True))

    async def _on_logout_admin(self, record: ConnectionRecord, cmd: protocol.LogoutAdmin) -> None:
        author_id = self._require_admin(record)
        nickname = None
        if cmd.nickname:
            nickname = self._check_nickname(cmd.nickname, author_id, as_admin=False)
        self.moderation.logout(author_id)
        self._persist_flags()
        await self._send(record.connection, protocol.elevation_frame(False))
        if nickname is not None:
            self.roster.rename(record.connection, nickname)
        await self._broadcast_users()

    async def _on_freeze_chat(self, record: ConnectionRecord, cmd: protocol.FreezeChat) -> None:
        author_id = self._require_identity(record)
        self.moderation.set_frozen(author_id, cmd.is_frozen)
        logger.info("%s set chat frozen=%s", author_id, cmd.is_frozen)
        self._persist_flags()
        await self._broadcast(protocol.chat_frozen_frame(cmd.is_frozen))

    async def _on_admin_only(self, record: ConnectionRecord, cmd: protocol.SetAdminOnly) -> None:
        author_id = self._require_identity(record)
        self.moderation.set_admin_only(author_id, cmd.is_admin_only)
        logger.info("%s set admin-only=%s", author_id, cmd.is_admin_only)
        self._persist_flags()
        await self._broadcast(protocol.admin_only_frame(cmd.is_admin_only))

    async def _on_clear_chat(self, record: ConnectionRecord, cmd: protocol.ClearChat) -> None:
        author_id = self._require_admin(record)
        self.messages.clear()
        logger.info("%s cleared the chat", author_id)
        self._persist_messages(self._clock())
        await self._broadcast(protocol.clear_chat_frame())

    async def _on_delete_user_messages(self, record: ConnectionRecord, cmd: protocol.DeleteUserMessages) -> None:
        author_id = self._require_admin(record)
        removed = self.messages.delete_by_author(cmd.target_user_id)
        logger.info("%s deleted %d messages by %s", author_id, removed, cmd.target_user_id)
        self._persist_messages(self._clock())
        await self._broadcast(protocol.delete_user_messages_frame(cmd.target_user_id))

    async def _on_ban_user(self, record: ConnectionRecord, cmd: protocol.BanUser) -> None:
        author_id = self._require_identity(record)
        now = self._clock()
        display_name = cmd.nickname or self._display_name_of(cmd.target_user_id) or cmd.target_user_id
        try:
            entry = self.moderation.ban(author_id, cmd.target_user_id, display_name, cmd.duration, now)
        except ValueError as exc:
            raise MalformedFrame(str(exc)) from None
        logger.info("%s banned %s until %s", author_id, cmd.target_user_id, entry.until or "forever")
        self._persist_bans(now)
        await self._broadcast(protocol.banned_users_frame(self.moderation.active_bans(now)))
        notice = Blocked(entry.until).to_wire()
        for connection in self.roster.connections_for(cmd.target_user_id):
            await self._send(connection, notice)

    async def _on_unban_user(self, record: ConnectionRecord, cmd: protocol.UnbanUser) -> None:
        author_id = self._require_identity(record)
        now = self._clock()
        if self.moderation.unban(author_id, cmd.target_user_id):
            logger.info("%s unbanned %s", author_id, cmd.target_user_id)
            self.limiter.forget(cmd.target_user_id)
            self._persist_bans(now)
        await self._broadcast(protocol.banned_users_frame(self.moderation.active_bans(now)))

    async def _on_update_user(self, record: ConnectionRecord, cmd: protocol.UpdateUser) -> None:
        author_id = self._require_identity(record)
        nickname = self._check_nickname(cmd.nickname, author_id, self.moderation.is_admin(author_id))
        if nickname != record.display_name:
            logger.info("%s renamed %r -> %r", author_id, record.display_name, nickname)
            self.roster.rename(record.connection, nickname)
        await self._broadcast_users()

    async def _on_announce(self, record: ConnectionRecord, cmd: protocol.Announce) -> None:
        self._require_admin(record)
        await self._post_system_message(self._check_content(cmd.content))

    async def _post_system_message(self, content: str) -> None:
        msg = ChatMessage(
            id=f"system_{uuid.uuid4().hex[:12]}",
            content=content,
            author_display_name=SYSTEM_DISPLAY_NAME,
            role=SYSTEM_ROLE,
            timestamp=self._clock(),
            is_system=True,
        )
        self.messages.append_or_replace(msg)
        await self._broadcast(protocol.message_frame("add", msg))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_messages(self, now: int) -> None:
        self.messages.evict_expired(now, self.settings.window_hours)
        if self._writer is not None:
            persistable = self.messages.persistable(now, self.settings.window_hours)
            self._writer.submit(MESSAGES, RoomStorage.encode_messages(persistable))

    def _persist_bans(self, now: int) -> None:
        if self._writer is not None:
            self._writer.submit(BANS, RoomStorage.encode_bans(self.moderation.active_bans(now)))

    def _persist_flags(self) -> None:
        if self._writer is not None:
            flags = self.moderation.flags
            self._writer.submit(FLAGS, RoomStorage.encode_flags(flags))
            self._writer.submit(ADMINS, RoomStorage.encode_admins(flags))

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _display_name_of(self, author_id: str) -> Optional[str]:
        for connection in self.roster.connections_for(author_id):
            record = self.roster.record(connection)
            if record is not None:
                return record.display_name
        return None

    async def _broadcast_users(self) -> None:
        await self._broadcast(protocol.users_frame(self.roster.display_names()))

    def _on_send_failure(self, connection: Connection) -> None:
        # Called from an outbox writer task; the drop is applied by the actor.
        if self.running and self._queue is not None:
            self._queue.put_nowait(_Event("drop", connection))

    def _offer(self, connection: Connection, text: str) -> bool:
        outbox = self._outboxes.get(connection)
        return outbox is None or outbox.offer(text)

    async def _send(self, connection: Connection, frame: dict[str, Any]) -> None:
        if not self._offer(connection, protocol.encode(frame)):
            await self._on_disconnect(connection, SLOW_CONSUMER)

    async def _broadcast(self, frame: dict[str, Any]) -> None:
        text = protocol.encode(frame)
        dead = [c for c in self.roster.connections() if not self._offer(c, text)]
        for connection in dead:
            await self._on_disconnect(connection, SLOW_CONSUMER)
