"""Tests for monitor storage, date targeting and the monitor tick."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from courtwatch.errors import AuthError
from courtwatch.models.schemas import Monitor
from courtwatch.services.monitors import (
    MonitorService,
    get_target_dates,
    prune_expired_dates,
    summarize_monitor,
    upcoming_dates_for_weekdays,
)
from courtwatch.services.scheduler import MonitorScheduler

from helpers import render_matrix

TODAY = date(2025, 1, 9)  # Thursday
NOW = datetime(2025, 1, 9, 12, 0, tzinfo=timezone.utc)


def make_monitor(**kwargs) -> Monitor:
    values = dict(id="m1", chat_id="1001", from_time="18:00", to_time="20:00")
    values.update(kwargs)
    return Monitor(**values)


@pytest.fixture
def monitors(db, clock) -> MonitorService:
    return MonitorService(db, clock=clock)


@pytest.fixture
def scheduler(monitors, session_manager, slot_repository, notifier, clock):
    return MonitorScheduler(
        monitors,
        session_manager,
        slot_repository,
        notifier,
        lookahead_days=7,
        timezone=ZoneInfo("Europe/Amsterdam"),
        clock=clock,
    )


def test_upcoming_dates_for_weekdays():
    assert upcoming_dates_for_weekdays(["thu", "sat"], 7, TODAY) == [
        date(2025, 1, 9),
        date(2025, 1, 11),
    ]


def test_target_dates_merge_explicit_and_recurring():
    monitor = make_monitor(
        dates=[date(2025, 1, 1), date(2025, 1, 11), date(2025, 2, 1)],
        days_of_week=["fri"],
    )

    assert get_target_dates(monitor, 7, TODAY) == [
        date(2025, 1, 10),
        date(2025, 1, 11),
        date(2025, 2, 1),
    ]


def test_prune_expired_dates():
    monitor = make_monitor(
        dates=[date(2025, 1, 1), date(2025, 1, 10)],
        last_notified={"2025-01-01": ["1:2025-01-01:18:00"], "2025-01-10": []},
    )

    pruned = prune_expired_dates(monitor, TODAY)

    assert pruned.dates == [date(2025, 1, 10)]
    assert list(pruned.last_notified) == ["2025-01-10"]
    assert prune_expired_dates(pruned, TODAY) is pruned


def test_summarize_monitor():
    monitor = make_monitor(days_of_week=["tue", "thu"], description="league night")

    assert summarize_monitor(monitor) == "[m1] 18:00-20:00 (weekdays: tue, thu) - league night"


async def test_create_monitor_validates_input(monitors):
    with pytest.raises(ValueError, match="HH:MM"):
        await monitors.create_monitor("1001", "6pm", "20:00", days_of_week=["mon"])
    with pytest.raises(ValueError, match="Unknown weekday"):
        await monitors.create_monitor("1001", "18:00", "20:00", days_of_week=["someday"])
    with pytest.raises(ValueError, match="At least one date or weekday"):
        await monitors.create_monitor("1001", "18:00", "20:00")


async def test_create_and_list_monitors(monitors):
    created = await monitors.create_monitor(
        "1001", "18:00", "20:00", days_of_week=["Monday", "wed", "mon"], description="weekday"
    )
    await monitors.create_monitor("2002", "09:00", "10:00", dates=[date(2025, 1, 12)])

    assert created.days_of_week == ["mon", "wed"]
    assert [m.id for m in await monitors.list_monitors(chat_id="1001")] == [created.id]
    assert await monitors.get_monitor(created.id) == created

    await monitors.deactivate_monitor(created.id)
    assert [m.chat_id for m in await monitors.list_monitors()] == ["2002"]
    assert len(await monitors.list_monitors(include_inactive=True)) == 2


async def test_monitor_tick_notifies_only_new_slots(scheduler, monitors, site):
    friday = date(2025, 1, 10)
    site.set_page(
        friday,
        render_matrix({51: "Court 1", 52: "Court 2"}, [("18:00", "1", {51: "free", 52: "taken"})]),
    )
    monitor = await monitors.create_monitor(
        "777", "18:00", "20:00", dates=[friday], description="friday game"
    )

    assert await scheduler.run_tick() == 1
    [first] = site.telegram_messages
    assert first["chat_id"] == "777"
    assert "New squash courts for friday game" in first["text"]
    assert "Court 1" in first["text"]

    # Same page again: nothing new
    assert await scheduler.run_tick() == 0

    site.set_page(
        friday,
        render_matrix({51: "Court 1", 52: "Court 2"}, [("18:00", "1", {51: "free", 52: "free"})]),
    )
    assert await scheduler.run_tick() == 1
    second = site.telegram_messages[-1]["text"]
    assert "Court 2" in second
    assert "Court 1" not in second

    stored = await monitors.get_monitor(monitor.id)
    assert sorted(stored.last_notified["2025-01-10"]) == [
        "51:2025-01-10:18:00",
        "52:2025-01-10:18:00",
    ]


async def test_monitor_with_only_past_dates_is_deactivated(scheduler, monitors, clock, site):
    monitor = await monitors.create_monitor("777", "18:00", "20:00", dates=[date(2025, 1, 9)])
    clock.advance(days=1)

    await scheduler.run_tick()

    assert (await monitors.get_monitor(monitor.id)).active is False
    assert site.telegram_messages == []


async def test_failing_monitor_does_not_block_others(scheduler, monitors, site):
    site.failing_dates.add("2025-01-10")
    site.set_page(date(2025, 1, 11), render_matrix({51: "Court 1"}, [("18:00", "1", {51: "free"})]))
    await monitors.create_monitor("1", "18:00", "20:00", dates=[date(2025, 1, 10)])
    await monitors.create_monitor("2", "18:00", "20:00", dates=[date(2025, 1, 11)])

    assert await scheduler.run_tick() == 1
    assert [m["chat_id"] for m in site.telegram_messages] == ["2"]


async def test_rejected_session_is_dropped_during_tick(scheduler, monitors, session_manager, site):
    await monitors.create_monitor("1", "18:00", "20:00", dates=[date(2025, 1, 10)])
    await session_manager.get_session()
    site.session_expired = True

    with pytest.raises(AuthError):
        await scheduler.run_tick()

    assert session_manager._session is None
    assert site.telegram_messages == []
