"""End-to-end tests for the snapshot scan and the CourtWatch entry points."""

from datetime import date, datetime, timezone

import pytest

from courtwatch.errors import AuthError, BookingError
from courtwatch.models.schemas import CourtAvailability, QueueStatus, Snapshot
from courtwatch.runner import CourtWatch
from courtwatch.services.scheduler import AvailabilityWatcher
from courtwatch.services.state import SnapshotStore, update_snapshot

from helpers import render_matrix

DAY = date(2025, 1, 10)
EARLIER = datetime(2025, 1, 9, 8, 0, tzinfo=timezone.utc)
COURTS = {3: "Court 3 (glass)", 4: "Court 4"}


def court_three(available: bool) -> CourtAvailability:
    return CourtAvailability(
        court_id=3,
        court_name=COURTS[3],
        date=DAY,
        start_time="18:00",
        is_available=available,
    )


@pytest.fixture
def store(db) -> SnapshotStore:
    return SnapshotStore(db)


@pytest.fixture
def watcher(store, session_manager, slot_repository, booking_engine, notifier, clock):
    return AvailabilityWatcher(
        store, session_manager, slot_repository, booking_engine, notifier, clock=clock
    )


@pytest.fixture
async def courtwatch(settings, transport):
    app = CourtWatch(settings, transport=transport)
    await app.initialize()
    yield app
    await app.cleanup()


async def test_slot_becoming_available_is_reported(watcher, store, site):
    await store.save(update_snapshot(Snapshot(), [court_three(False)], EARLIER))
    site.set_page(
        DAY,
        render_matrix(COURTS, [("18:00", "1736528400", {3: "free", 4: "taken"})]),
    )

    result = await watcher.scan([DAY], "17:00", "19:00")

    assert [s.key for s in result.newly_available] == ["3:2025-01-10:18:00"]
    assert result.notified is True
    [message] = site.telegram_messages
    assert "2025-01-10" in message["text"]
    assert "18:00" in message["text"]
    assert "Court 3 (glass)" in message["text"]
    assert message["parse_mode"] == "HTML"

    saved = await store.load()
    assert saved.entries["3:2025-01-10:18:00"].is_available is True
    assert saved.entries["4:2025-01-10:18:00"].is_available is False


async def test_second_scan_is_quiet(watcher, site):
    site.set_page(DAY, render_matrix(COURTS, [("18:00", "1", {3: "free", 4: "taken"})]))

    first = await watcher.scan([DAY], "17:00", "19:00")
    second = await watcher.scan([DAY], "17:00", "19:00")

    assert len(first.newly_available) == 1
    assert second.newly_available == []
    assert len(site.telegram_messages) == 1


async def test_changed_mode_also_reports_slots_that_were_taken(watcher, store, site):
    watcher.mode = "changed"
    await store.save(update_snapshot(Snapshot(), [court_three(True)], EARLIER))
    site.set_page(DAY, render_matrix(COURTS, [("18:00", "1", {3: "taken", 4: "free"})]))

    result = await watcher.scan([DAY], "17:00", "19:00", auto_book=True)

    assert sorted(s.court_id for s in result.changes) == [3, 4]
    assert [s.court_id for s in result.newly_available] == [4]
    assert [s.court_id for s in result.no_longer_available] == [3]
    assert result.booking.slot.court_id == 4
    [message] = site.telegram_messages
    assert "No longer available" in message["text"]
    assert "Court 3 (glass)" in message["text"]


async def test_transition_mode_ignores_slots_that_were_taken(watcher, store, site):
    await store.save(update_snapshot(Snapshot(), [court_three(True)], EARLIER))
    site.set_page(DAY, render_matrix(COURTS, [("18:00", "1", {3: "taken", 4: "free"})]))

    result = await watcher.scan([DAY], "17:00", "19:00")

    assert [s.court_id for s in result.changes] == [4]
    assert result.no_longer_available == []
    assert "No longer available" not in site.telegram_messages[0]["text"]


async def test_rejected_session_is_dropped_during_scan(watcher, session_manager, site):
    await session_manager.get_session()
    site.session_expired = True

    with pytest.raises(AuthError):
        await watcher.scan([DAY], "17:00", "19:00")

    assert session_manager._session is None


async def test_scan_can_auto_book(watcher, site):
    site.set_page(DAY, render_matrix(COURTS, [("18:00", "1", {3: "free", 4: "free"})]))

    result = await watcher.scan([DAY], "17:00", "19:00", auto_book=True, recipient="42")

    assert result.booking.success is True
    assert result.booking.slot.court_id == 3
    [message] = site.telegram_messages
    assert message["chat_id"] == "42"
    assert "Booked" in message["text"]


async def test_check_availability_entry_point(courtwatch, site):
    site.set_page(DAY, render_matrix(COURTS, [
        ("16:00", "1", {3: "free", 4: "free"}),
        ("18:00", "2", {3: "free", 4: "taken"}),
    ]))

    [daily] = await courtwatch.check_availability("17:00", "19:00", dates=[DAY])

    assert daily.date == DAY
    assert [(s.court_name, s.start_time) for s in daily.available] == [("Court 3 (glass)", "18:00")]
    assert len(daily.slots) == 4


async def test_queue_entry_points(courtwatch):
    entry = await courtwatch.add_to_queue(DAY, "18:00", "20:00", chat_id="9")

    assert [e.id for e in await courtwatch.list_queue("9")] == [entry.id]
    assert await courtwatch.remove_from_queue(entry.id) is True
    assert (await courtwatch.queue.get_entry(entry.id)).status == QueueStatus.CANCELLED


async def test_book_court_entry_point(courtwatch, site):
    site.set_page(DAY, render_matrix(COURTS, [("18:00", "55", {3: "free", 4: "taken"})]))

    result = await courtwatch.book_court(DAY, "18:00", 3)

    assert result.success is True
    with pytest.raises(BookingError, match="not available"):
        await courtwatch.book_court(DAY, "18:00", 4)
    with pytest.raises(BookingError, match="No slot"):
        await courtwatch.book_court(DAY, "21:00", 3)


async def test_list_my_reservations(courtwatch, site, monkeypatch):
    monkeypatch.setattr(courtwatch, "today", lambda: DAY)
    site.set_page(DAY, render_matrix(COURTS, [("18:00", "1", {3: "taken mine", 4: "free"})]))

    reservations = await courtwatch.list_my_reservations(days=2)

    assert [(r.court_id, r.date) for r in reservations] == [(3, DAY)]


async def test_startup_warns_without_booking_partner(settings, transport, caplog):
    app = CourtWatch(settings, transport=transport)

    await app.initialize()
    await app.cleanup()

    assert "No booking partner configured" in caplog.text


async def test_startup_is_quiet_with_booking_partner(settings, transport, tmp_path, caplog):
    (tmp_path / "players.yaml").write_text("players:\n  - name: Anna\n    user_id: '777'\n")
    app = CourtWatch(settings, transport=transport)

    await app.initialize()
    await app.cleanup()

    assert app.booking.partners[0].user_id == "777"
    assert "No booking partner configured" not in caplog.text
