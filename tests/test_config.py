"""Tests for layered settings: defaults, YAML file, environment."""

import tempfile
from pathlib import Path

import pytest
import yaml

from roomrelay.config import Settings


def test_defaults():
    settings = Settings.load(environ={})
    assert settings.window_hours == 24
    assert settings.max_messages == 100
    assert settings.max_message_length == 500
    assert settings.admin_secret == ""
    assert settings.window_ms == 24 * 3600 * 1000


def test_yaml_then_env_override():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "roomrelay.yaml"
        path.write_text(yaml.safe_dump({"window_hours": 168, "admin_secret": "from-file", "log_level": "debug"}))

        settings = Settings.load(path, environ={"ROOMRELAY_ADMIN_SECRET": "from-env"})
        assert settings.window_hours == 168
        assert settings.admin_secret == "from-env"
        assert settings.log_level == "DEBUG"


def test_config_path_from_environment():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "roomrelay.yaml"
        path.write_text("max_messages: 50\n")
        settings = Settings.load(environ={"ROOMRELAY_CONFIG": str(path)})
        assert settings.max_messages == 50


def test_env_integers_are_coerced():
    settings = Settings.load(environ={"ROOMRELAY_RATE_LIMIT_COUNT": "3", "ROOMRELAY_DATA_DIR": "/tmp/room"})
    assert settings.rate_limit_count == 3
    assert settings.data_dir == "/tmp/room"


@pytest.mark.parametrize("environ", [
    {"ROOMRELAY_WINDOW_HOURS": "a day"},
    {"ROOMRELAY_MAX_MESSAGES": "0"},
    {"ROOMRELAY_MIN_NICKNAME_LENGTH": "12"},
])
def test_invalid_values(environ):
    with pytest.raises(ValueError):
        Settings.load(environ=environ)


def test_unknown_yaml_key():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "roomrelay.yaml"
        path.write_text("room_count: 3\n")
        with pytest.raises(ValueError, match="room_count"):
            Settings.load(path, environ={})
