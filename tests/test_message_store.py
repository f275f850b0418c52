"""Tests for the windowed, deduplicated message store."""

from roomrelay.room.message_store import HOUR_MS, MessageStore
from roomrelay.room.models import ChatMessage

NOW = 1_700_000_000_000


def _msg(mid: str, ts: int = NOW, author: str = "user_a", content: str = "hi", system: bool = False) -> ChatMessage:
    return ChatMessage(
        id=mid,
        content=content,
        author_display_name="Alice",
        role="Alice",
        timestamp=ts,
        author_id=None if system else author,
        is_system=system,
    )


# --- Dedup and replace ---


def test_repeated_id_keeps_one_entry():
    store = MessageStore()
    store.append_or_replace(_msg("m1", content="one"))
    store.append_or_replace(_msg("m1", content="two"))
    store.append_or_replace(_msg("m2"))
    assert len(store) == 2
    assert store.get("m1").content == "two"


def test_replace_keeps_id_and_takes_new_timestamp():
    store = MessageStore()
    store.append_or_replace(_msg("m1", ts=NOW, content="hi"))
    result = store.append_or_replace(_msg("m1", ts=NOW + 5, content="hi!", author="user_b"))
    assert result.id == "m1"
    assert result.timestamp == NOW + 5
    assert result.author_id == "user_b"
    assert store.get("m1").content == "hi!"


def test_replace_is_never_system():
    store = MessageStore()
    store.append_or_replace(_msg("m1"))
    result = store.append_or_replace(_msg("m1", system=True))
    assert result.is_system is False


# --- Window eviction ---


def test_window_eviction():
    store = MessageStore()
    store.append_or_replace(_msg("old", ts=NOW - 25 * HOUR_MS))
    store.append_or_replace(_msg("new", ts=NOW - 1 * HOUR_MS))

    ids = [m.id for m in store.snapshot(NOW, 24, 100)]
    assert ids == ["new"]

    assert store.evict_expired(NOW, 24) == 1
    assert "old" not in store
    assert "new" in store


def test_system_messages_are_not_time_evicted():
    store = MessageStore()
    store.append_or_replace(_msg("sys", ts=NOW - 48 * HOUR_MS, system=True))
    assert store.evict_expired(NOW, 24) == 0
    assert [m.id for m in store.snapshot(NOW, 24, 100)] == ["sys"]


def test_seven_day_window():
    store = MessageStore()
    store.append_or_replace(_msg("m", ts=NOW - 72 * HOUR_MS))
    assert store.snapshot(NOW, 24, 100) == []
    assert len(store.snapshot(NOW, 7 * 24, 100)) == 1


# --- Snapshot ordering and truncation ---


def test_snapshot_truncates_to_newest_first():
    store = MessageStore(capacity=500)
    for i in range(150):
        store.append_or_replace(_msg(f"m{i}", ts=NOW - 150 + i))

    snap = store.snapshot(NOW, 24, 100)
    assert len(snap) == 100
    stamps = [m.timestamp for m in snap]
    assert stamps == sorted(stamps, reverse=True)
    assert snap[0].id == "m149"
    assert snap[-1].id == "m50"


def test_capacity_drops_oldest():
    store = MessageStore(capacity=3)
    for i in range(5):
        store.append_or_replace(_msg(f"m{i}", ts=NOW + i))
    assert len(store) == 3
    assert "m0" not in store and "m1" not in store


# --- Moderation cleanup ---


def test_clear():
    store = MessageStore()
    store.append_or_replace(_msg("m1"))
    store.append_or_replace(_msg("s1", system=True))
    store.clear()
    assert len(store) == 0


def test_delete_by_author_spares_others_and_system():
    store = MessageStore()
    store.append_or_replace(_msg("a1", author="user_a"))
    store.append_or_replace(_msg("a2", author="user_a"))
    store.append_or_replace(_msg("b1", author="user_b"))
    store.append_or_replace(_msg("s1", system=True))

    assert store.delete_by_author("user_a") == 2
    assert sorted(m.id for m in store.snapshot(NOW, 24, 100)) == ["b1", "s1"]


def test_persistable_excludes_system_and_expired():
    store = MessageStore()
    store.append_or_replace(_msg("keep"))
    store.append_or_replace(_msg("old", ts=NOW - 30 * HOUR_MS))
    store.append_or_replace(_msg("sys", system=True))
    assert [m.id for m in store.persistable(NOW, 24)] == ["keep"]
