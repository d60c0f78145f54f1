"""Shared fixtures: a fake booking site behind httpx.MockTransport and a temp database."""

import asyncio
from datetime import datetime, timezone

import httpx
import logfire
import pytest

from courtwatch.config import Settings
from courtwatch.database import Database
from courtwatch.services.booking import BookingEngine
from courtwatch.services.fetcher import PageFetcher
from courtwatch.services.notification import NotificationService
from courtwatch.services.session import SessionManager
from courtwatch.services.slots import SlotRepository

from helpers import BASE_URL, BOT_TOKEN, FakeSite, FixedClock

logfire.configure(send_to_logfire=False, console=False)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    async def _no_sleep(_duration):
        return None

    monkeypatch.setattr(asyncio, "sleep", _no_sleep)


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def transport(site) -> httpx.MockTransport:
    return httpx.MockTransport(site.handler)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        SQUASH_CITY_USERNAME="player@example.com",
        SQUASH_CITY_PASSWORD="secret",
        BASE_URL=BASE_URL,
        TELEGRAM_BOT_TOKEN=BOT_TOKEN,
        TELEGRAM_CHAT_ID="1001,1002",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/courtwatch.db",
        PLAYERS_CONFIG_PATH=str(tmp_path / "players.yaml"),
        RETRY_DELAY=0,
    )


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await database.init_models()
    yield database
    await database.close()


@pytest.fixture
async def fetcher(transport):
    page_fetcher = PageFetcher(max_retries=2, retry_delay=0, transport=transport)
    yield page_fetcher
    await page_fetcher.close()


@pytest.fixture
def session_manager(fetcher) -> SessionManager:
    return SessionManager(
        fetcher,
        login_url=f"{BASE_URL}/auth/login",
        username="player@example.com",
        password="secret",
        retry_delay=0,
    )


@pytest.fixture
def slot_repository(fetcher) -> SlotRepository:
    return SlotRepository(fetcher, BASE_URL, 15)


@pytest.fixture
def booking_engine(fetcher, session_manager) -> BookingEngine:
    return BookingEngine(fetcher, session_manager, BASE_URL)


@pytest.fixture
async def notifier(transport):
    service = NotificationService(
        bot_token=BOT_TOKEN,
        default_chat_ids=["1001"],
        retry_delay=0,
        transport=transport,
    )
    yield service
    await service.close()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 1, 9, 12, 0, tzinfo=timezone.utc))
