"""Tests for settings and the players file."""

import pytest

from courtwatch.config import Settings, load_settings
from courtwatch.errors import ConfigError


def test_settings_defaults_and_derived_values(settings):
    assert settings.sport_id == 15
    assert settings.queue_interval_seconds == 300
    assert settings.monitor_interval_seconds == 900
    assert settings.change_detection_mode == "transition"
    assert settings.telegram_chat_ids == ["1001", "1002"]
    assert settings.login_url == "https://squash.test/auth/login"
    assert settings.tz.key == "Europe/Amsterdam"


def test_invalid_values_are_rejected():
    with pytest.raises(ValueError):
        Settings(
            _env_file=None,
            SQUASH_CITY_USERNAME="u",
            SQUASH_CITY_PASSWORD="p",
            CHANGE_DETECTION_MODE="sometimes",
        )


def test_missing_credentials_raise_config_error(monkeypatch, tmp_path):
    monkeypatch.delenv("SQUASH_CITY_USERNAME", raising=False)
    monkeypatch.delenv("SQUASH_CITY_PASSWORD", raising=False)
    monkeypatch.chdir(tmp_path)

    with pytest.raises(ConfigError, match="SQUASH_CITY_USERNAME"):
        load_settings()


def test_players_file_is_optional(settings):
    assert settings.load_players_config() == []


def test_players_file_is_loaded(settings, tmp_path):
    (tmp_path / "players.yaml").write_text(
        "players:\n"
        "  - name: Anna\n"
        "    user_id: '777'\n"
        "    email: anna@example.com\n"
        "  - name: Bas\n"
        "    user_id: '888'\n"
    )

    players = settings.load_players_config()

    assert [(p.name, p.user_id, p.email) for p in players] == [
        ("Anna", "777", "anna@example.com"),
        ("Bas", "888", None),
    ]


def test_players_file_without_key_is_invalid(settings, tmp_path):
    (tmp_path / "players.yaml").write_text("partners: []\n")

    with pytest.raises(ConfigError):
        settings.load_players_config()
