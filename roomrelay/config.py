"""Runtime configuration for the relay.

Values are resolved in three layers: built-in defaults, an optional YAML
file, then ``ROOMRELAY_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

ROOM_NAME = "main"

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"

_ENV_PREFIX = "ROOMRELAY_"


def _default_data_dir() -> str:
    return str(Path.home() / ".roomrelay" / "rooms" / ROOM_NAME)


@dataclass
class Settings:
    """Externally supplied constants for the room."""

    admin_secret: str = ""
    verification_secret: str = ""
    verification_url: str = TURNSTILE_VERIFY_URL
    window_hours: int = 24
    max_messages: int = 100
    max_message_length: int = 500
    min_nickname_length: int = 2
    max_nickname_length: int = 10
    admin_display_name: str = "Admin"
    admin_role: str = "admin"
    rate_limit_count: int = 5
    rate_limit_window_ms: int = 10_000
    rate_limit_timeout_ms: int = 60_000
    outbox_size: int = 256
    send_timeout_ms: int = 10_000
    data_dir: str = field(default_factory=_default_data_dir)
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        for name in (
            "window_hours",
            "max_messages",
            "max_message_length",
            "min_nickname_length",
            "max_nickname_length",
            "rate_limit_count",
            "rate_limit_window_ms",
            "rate_limit_timeout_ms",
            "outbox_size",
            "send_timeout_ms",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")
        if self.min_nickname_length > self.max_nickname_length:
            raise ValueError("min_nickname_length cannot exceed max_nickname_length")
        self.log_level = self.log_level.upper()

    @property
    def window_ms(self) -> int:
        return self.window_hours * 3600 * 1000

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        path: Optional[str | Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> Settings:
        """Build settings from an optional YAML file and the environment.

        ``path`` defaults to ``$ROOMRELAY_CONFIG`` when set.
        """
        env = os.environ if environ is None else environ
        if path is None:
            path = env.get(f"{_ENV_PREFIX}CONFIG") or None

        values: dict[str, Any] = {}
        if path is not None:
            values.update(_read_yaml(path))
        values.update(_read_env(env))
        return cls(**values)


def _coerce(name: str, raw: Any) -> Any:
    kind = {f.name: f.type for f in fields(Settings)}[name]
    if kind == "int":
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    return "" if raw is None else str(raw)


def _read_yaml(path: str | Path) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown config keys in {path}: {', '.join(unknown)}")
    return {k: _coerce(k, v) for k, v in data.items()}


def _read_env(env: Mapping[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for f in fields(Settings):
        raw = env.get(_ENV_PREFIX + f.name.upper())
        if raw is not None and raw != "":
            values[f.name] = _coerce(f.name, raw)
    return values
