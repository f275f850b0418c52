"""roomrelay CLI -- run the relay and inspect persisted room state."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from roomrelay import __version__
from roomrelay.config import ROOM_NAME, Settings

console = Console()

_SECRET_FIELDS = {"admin_secret", "verification_secret"}


def _load_settings(config: Optional[str], data_dir: Optional[str] = None) -> Settings:
    try:
        settings = Settings.load(config)
    except (OSError, ValueError) as e:
        raise click.ClickException(f"Invalid configuration: {e}") from None
    if data_dir:
        settings.data_dir = data_dir
    return settings


def _fmt_ms(ts: Optional[int]) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


@click.group()
@click.version_option(version=__version__)
def main():
    """roomrelay -- single-room ephemeral chat relay.

    Serves one shared chat room over WebSocket with a rolling message
    window, live roster, and admin moderation.
    """


# ── Serve ────────────────────────────────────────────────────────────


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=3600, show_default=True, type=int)
@click.option("--config", "-c", default=None, help="YAML config file")
@click.option("--data-dir", default=None, help="Override the room's data directory")
@click.option("--log-level", default=None, type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def serve(host: str, port: int, config: Optional[str], data_dir: Optional[str], log_level: Optional[str]):
    """Run the gateway and the room coordinator."""
    import uvicorn

    from web.backend.app.main import app
    from web.backend.app.middleware.room import configure

    settings = _load_settings(config, data_dir)
    level = (log_level or settings.log_level).upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    configure(settings)

    if not settings.admin_secret:
        console.print("[yellow]ROOMRELAY_ADMIN_SECRET is not set; admin elevation is disabled.[/]")
    console.print(f"\n[bold blue]roomrelay[/] -- room [cyan]{ROOM_NAME}[/] on ws://{host}:{port}/chat\n")
    uvicorn.run(app, host=host, port=port, log_level=level.lower())


# ── Show ─────────────────────────────────────────────────────────────


@main.command()
@click.option("--config", "-c", default=None, help="YAML config file")
@click.option("--data-dir", default=None, help="Override the room's data directory")
@click.option("--limit", "-n", default=20, show_default=True, help="Messages to list")
def show(config: Optional[str], data_dir: Optional[str], limit: int):
    """Print the persisted messages, bans and flags of the room."""
    from roomrelay.room import MessageStore, RoomStorage
    from roomrelay.room.identity import now_ms

    settings = _load_settings(config, data_dir)
    storage = RoomStorage(settings.data_dir)
    now = now_ms()

    store = MessageStore(capacity=settings.max_messages)
    store.load(storage.load_messages())
    snapshot = store.snapshot(now, settings.window_hours, limit)

    table = Table(title=f"Messages ({len(snapshot)} of {len(store)})")
    table.add_column("Time", style="dim")
    table.add_column("User", style="cyan")
    table.add_column("Author id", style="dim")
    table.add_column("Content")
    for m in snapshot:
        table.add_row(_fmt_ms(m.timestamp), m.author_display_name, m.author_id or "", m.content[:60])
    console.print(table)

    bans = [b for b in storage.load_bans() if b.is_active(now)]
    ban_table = Table(title=f"Bans ({len(bans)})")
    ban_table.add_column("Author id", style="cyan")
    ban_table.add_column("Nickname")
    ban_table.add_column("Until", style="yellow")
    for b in bans:
        ban_table.add_row(b.author_id, b.display_name, _fmt_ms(b.until) if b.until else "permanent")
    console.print(ban_table)

    flags = storage.load_flags()
    console.print(
        f"\nFrozen: [bold]{flags.chat_frozen}[/]  Admin-only: [bold]{flags.admin_only}[/]  "
        f"Admins: {', '.join(sorted(flags.admins)) or '-'}"
    )


# ── Config ───────────────────────────────────────────────────────────


@main.command(name="config")
@click.option("--config", "-c", default=None, help="YAML config file")
def show_config(config: Optional[str]):
    """Print the resolved settings (secrets masked)."""
    settings = _load_settings(config)
    table = Table(title="Settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key, value in asdict(settings).items():
        if key in _SECRET_FIELDS:
            value = "****" if value else "(unset)"
        table.add_row(key, str(value))
    console.print(table)


if __name__ == "__main__":
    main()
