"""Tests for the one-shot queue tick."""

from courtwatch import cron
from courtwatch.errors import ConfigError


async def test_empty_queue_tick_exits_zero(monkeypatch, settings):
    monkeypatch.setattr(cron, "get_settings", lambda: settings)
    monkeypatch.setattr(cron, "initialize_logfire", lambda: None)

    assert await cron.run_once() == 0


async def test_bad_configuration_exits_one(monkeypatch):
    def broken():
        raise ConfigError("Missing required environment variables: SQUASH_CITY_USERNAME")

    monkeypatch.setattr(cron, "get_settings", broken)

    assert await cron.run_once() == 1
