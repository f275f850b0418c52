"""Participant identity helpers shared by the server and the client shim."""

from __future__ import annotations

import re
import secrets
import time

_ID_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz_-"

# Letters, digits, ``_-.`` and Hangul syllables/jamo.
NICKNAME_RE = re.compile(r"^[a-zA-Z0-9_\-.가-힣ㄱ-ㅎㅏ-ㅣ]+$")


def now_ms() -> int:
    return int(time.time() * 1000)


def random_id(size: int = 21) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(size))


def generate_user_id() -> str:
    return f"user_{random_id(12)}"


def validate_nickname(nickname: str, min_length: int = 2, max_length: int = 10) -> bool:
    """Check the part before the first space.

    Generated names carry a ``" 1234"`` suffix, so the whole name may be up
    to five characters longer than ``max_length``.
    """
    if not nickname or nickname != nickname.strip() or len(nickname) > max_length + 5:
        return False
    base = nickname.split(" ")[0]
    return min_length <= len(base) <= max_length and bool(NICKNAME_RE.match(base))
