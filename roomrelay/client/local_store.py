"""Durable key-value storage for one client, backed by a JSON file.

Plays the role a browser's local storage plays for the web client: the
participant id, nickname, admin key and message window survive restarts.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

USER_ID = "chatUserId"
NICKNAME = "chatNickname"
MESSAGES = "chatMessages"
IS_ADMIN = "isAdmin"
API_KEY = "apiKey"
IS_BANNED = "isBanned"
TIMEOUT_UNTIL = "timeoutUntil"


class LocalStore:
    """JSON-file key-value store. With no ``path`` it lives in memory only."""

    def __init__(self, path: Optional[str | Path] = None) -> None:
        self._path = Path(path) if path is not None else None
        self._data: dict[str, Any] = self._read()

    def _read(self) -> dict[str, Any]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            return data if isinstance(data, dict) else {}
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable client store %s: %s", self._path, exc)
            return {}

    def _write(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._data, indent=2, ensure_ascii=False), encoding="utf-8")

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._write()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._write()
