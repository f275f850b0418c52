"""Tests for JSON-file room storage and the background writer."""

import asyncio
import json
import tempfile
from pathlib import Path

from roomrelay.room.models import BanEntry, ChatMessage, ExpiresAt, ModerationFlags, Permanent
from roomrelay.room.storage import BANS, MESSAGES, PersistenceWriter, RoomStorage


def _msg(mid: str, system: bool = False) -> ChatMessage:
    return ChatMessage(
        id=mid, content="hi", author_display_name="Alice", role="Alice",
        timestamp=1000, author_id=None if system else "user_a", is_system=system,
    )


# --- RoomStorage ---


def test_empty_storage_loads_defaults():
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = RoomStorage(Path(tmpdir) / "room")
        assert storage.load_messages() == []
        assert storage.load_bans() == []
        flags = storage.load_flags()
        assert flags == ModerationFlags()


def test_round_trip_all_keys():
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = RoomStorage(tmpdir)
        storage.save_messages([_msg("m1"), _msg("s1", system=True)])
        storage.save_bans([
            BanEntry("user_a", "Alice", Permanent()),
            BanEntry("user_b", "Bob", ExpiresAt(5000)),
        ])
        storage.save_flags(ModerationFlags(chat_frozen=True, admin_only=False, admins={"admin"}))

        assert [m.id for m in storage.load_messages()] == ["m1"]
        bans = {b.author_id: b for b in storage.load_bans()}
        assert bans["user_a"].expiry == Permanent()
        assert bans["user_b"].until == 5000
        flags = storage.load_flags()
        assert flags.chat_frozen and not flags.admin_only
        assert flags.admins == {"admin"}


def test_corrupt_file_is_ignored():
    with tempfile.TemporaryDirectory() as tmpdir:
        storage = RoomStorage(tmpdir)
        (Path(tmpdir) / "messages.json").write_text("{not json")
        (Path(tmpdir) / "bans.json").write_text(json.dumps([{"nickname": "no id"}]))
        assert storage.load_messages() == []
        assert storage.load_bans() == []


# --- PersistenceWriter ---


def test_writer_coalesces_and_flushes():
    written = []

    async def scenario(storage):
        writer = PersistenceWriter(storage, write=lambda key, data: written.append((key, data)))
        writer.start()
        writer.submit(MESSAGES, ["first"])
        writer.submit(MESSAGES, ["second"])
        writer.submit(BANS, [])
        await writer.flush()
        await writer.stop()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(RoomStorage(tmpdir)))

    assert written == [(MESSAGES, ["second"]), (BANS, [])]


def test_writer_retries_then_gives_up():
    attempts = []

    def flaky(key, data):
        attempts.append(key)
        raise OSError("disk full")

    async def scenario(storage):
        writer = PersistenceWriter(storage, retries=2, retry_delay=0, write=flaky)
        writer.start()
        writer.submit(MESSAGES, [])
        await writer.flush()
        await writer.stop()

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(RoomStorage(tmpdir)))

    assert attempts == [MESSAGES] * 3


def test_writer_writes_to_disk():
    async def scenario(storage):
        writer = PersistenceWriter(storage)
        writer.start()
        writer.submit(MESSAGES, [_msg("m1").to_wire()])
        await writer.stop()

    with tempfile.TemporaryDirectory() as tmpdir:
        storage = RoomStorage(tmpdir)
        asyncio.run(scenario(storage))
        assert [m.id for m in storage.load_messages()] == ["m1"]


def test_writer_survives_unexpected_errors():
    written = []

    def picky(key, data):
        if key == MESSAGES:
            raise TypeError("not serializable")
        written.append(key)

    async def scenario(storage):
        writer = PersistenceWriter(storage, write=picky)
        writer.start()
        writer.submit(MESSAGES, [object()])
        writer.submit(BANS, [])
        await asyncio.wait_for(writer.flush(), 1)
        writer.submit(BANS, [])
        await asyncio.wait_for(writer.stop(), 1)

    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(scenario(RoomStorage(tmpdir)))

    assert written == [BANS, BANS]
