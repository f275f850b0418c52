"""Tests for the roster, ban table, flags and rate limiter."""

import pytest

from roomrelay.room.errors import InvalidCredential, Unauthorized
from roomrelay.room.models import Banned, ExpiresAt, NotBlocked, Permanent, TimedOut
from roomrelay.room.moderation import ModerationState, RateLimiter, Roster

NOW = 1_700_000_000_000


class _Conn:
    async def send_text(self, data: str) -> None:
        pass

    async def close(self, code: int = 1000) -> None:
        pass


def _admin_state() -> ModerationState:
    state = ModerationState(admin_secret="hunter2")
    state.authenticate("admin", "hunter2")
    return state


# --- Roster ---


def test_roster_collapses_duplicate_names():
    roster = Roster()
    tab1, tab2, other = _Conn(), _Conn(), _Conn()
    roster.set_identity(tab1, "user_a", "Alice")
    roster.set_identity(tab2, "user_a", "Alice")
    roster.set_identity(other, "user_b", "Bob")
    assert roster.display_names() == ["Alice", "Bob"]
    assert len(roster.connections_for("user_a")) == 2


def test_roster_hides_unidentified_and_removal_is_idempotent():
    roster = Roster()
    conn = _Conn()
    roster.add_connection(conn)
    assert roster.display_names() == []
    assert roster.remove_connection(conn) is not None
    assert roster.remove_connection(conn) is None


def test_roster_rename():
    roster = Roster()
    conn = _Conn()
    roster.set_identity(conn, "user_a", "Alice")
    roster.rename(conn, "Alicia")
    assert roster.display_names() == ["Alicia"]


# --- Authentication ---


def test_authenticate_adds_admin():
    state = _admin_state()
    assert state.is_admin("admin")
    assert not state.is_admin("someone")


def test_authenticate_wrong_secret():
    state = ModerationState(admin_secret="hunter2")
    with pytest.raises(InvalidCredential):
        state.authenticate("user_a", "guess")
    assert not state.is_admin("user_a")


def test_authenticate_without_configured_secret():
    state = ModerationState(admin_secret="")
    with pytest.raises(InvalidCredential):
        state.authenticate("user_a", "")


def test_logout_removes_admin():
    state = _admin_state()
    state.logout("admin")
    assert not state.is_admin("admin")
    with pytest.raises(Unauthorized):
        state.logout("admin")


# --- Bans ---


def test_permanent_ban():
    state = _admin_state()
    entry = state.ban("admin", "user_a", "Alice", None, NOW)
    assert entry.expiry == Permanent()
    assert entry.until is None
    assert state.is_blocked("user_a", NOW + 10**9) == Banned()


def test_timeout_expires():
    state = _admin_state()
    entry = state.ban("admin", "user_a", "Alice", 60_000, NOW)
    assert entry.expiry == ExpiresAt(NOW + 60_000)
    assert state.is_blocked("user_a", NOW) == TimedOut(NOW + 60_000)
    assert state.is_blocked("user_a", NOW + 60_000) == NotBlocked()
    assert state.active_bans(NOW + 60_000) == []


def test_ban_overwrites_previous_entry():
    state = _admin_state()
    state.ban("admin", "user_a", "Alice", 60_000, NOW)
    state.ban("admin", "user_a", "Alice", None, NOW)
    assert len(state.active_bans(NOW)) == 1
    assert state.is_blocked("user_a", NOW + 120_000) == Banned()


def test_non_admin_cannot_ban_others():
    state = _admin_state()
    with pytest.raises(Unauthorized):
        state.ban("user_b", "user_a", "Alice", 60_000, NOW)
    assert state.active_bans(NOW) == []


def test_self_timeout_allowed_but_not_permanent():
    state = _admin_state()
    state.ban("user_a", "user_a", "Alice", 60_000, NOW)
    assert state.is_blocked("user_a", NOW) == TimedOut(NOW + 60_000)
    with pytest.raises(Unauthorized):
        state.ban("user_b", "user_b", "Bob", None, NOW)


def test_ban_rejects_non_positive_duration():
    state = _admin_state()
    with pytest.raises(ValueError):
        state.ban("admin", "user_a", "Alice", 0, NOW)


def test_unban_is_idempotent():
    state = _admin_state()
    assert state.unban("admin", "nobody") is False
    assert state.active_bans(NOW) == []

    state.ban("admin", "user_a", "Alice", None, NOW)
    assert state.unban("admin", "user_a") is True
    assert state.unban("admin", "user_a") is False


def test_unban_requires_admin():
    state = _admin_state()
    with pytest.raises(Unauthorized):
        state.unban("user_b", "user_a")


# --- Flags ---


def test_flags_require_admin():
    state = _admin_state()
    with pytest.raises(Unauthorized):
        state.set_frozen("user_a", True)
    state.set_frozen("admin", True)
    state.set_admin_only("admin", True)
    assert state.flags.chat_frozen and state.flags.admin_only


# --- Rate limiting ---


def test_rate_limiter_window():
    limiter = RateLimiter(limit=5, window_ms=10_000)
    for i in range(5):
        assert not limiter.exceeded("user_a", NOW + i)
        limiter.record("user_a", NOW + i)
    assert limiter.exceeded("user_a", NOW + 5)
    assert not limiter.exceeded("user_b", NOW + 5)
    assert not limiter.exceeded("user_a", NOW + 10_004)


def test_rate_limiter_forget():
    limiter = RateLimiter(limit=1, window_ms=10_000)
    limiter.record("user_a", NOW)
    assert limiter.exceeded("user_a", NOW)
    limiter.forget("user_a")
    assert not limiter.exceeded("user_a", NOW)


def test_rate_limiter_drops_idle_authors():
    limiter = RateLimiter(limit=5, window_ms=10_000)
    for i in range(100):
        limiter.record(f"user_{i}", NOW)
    limiter.record("user_late", NOW + 5_000)
    assert len(limiter) == 101

    assert limiter.prune(NOW + 10_000) == 100
    assert len(limiter) == 1
    assert not limiter.exceeded("user_late", NOW + 15_000)
    assert len(limiter) == 0


def test_active_bans_without_pruning():
    state = _admin_state()
    state.ban("admin", "user_a", "Alice", 1000, NOW)
    assert state.active_bans(NOW + 1000, prune=False) == []
    assert state.prune_expired(NOW + 1000) == 1
