"""
Scheduled work: the booking queue tick, the monitor tick and the snapshot scan.

Each tick runs to completion on its own; nothing is kept in memory between
ticks except the session cache. Failures are isolated per queue entry and
per monitor.
"""

import logging
from datetime import date, datetime
from typing import Callable, Iterable, Optional
from zoneinfo import ZoneInfo

import logfire

from courtwatch.errors import AuthError
from courtwatch.models.schemas import (
    CourtAvailability,
    Monitor,
    QueueEntry,
    QueueRunSummary,
    QueueStatus,
    ScanResult,
    Session,
    utcnow,
)
from courtwatch.services.booking import BookingEngine, select_candidates
from courtwatch.services.calendar import CalendarClient
from courtwatch.services.monitors import (
    MonitorService,
    get_target_dates,
    prune_expired_dates,
    update_last_notified,
)
from courtwatch.services.notification import (
    NotificationService,
    build_booking_failure_message,
    build_booking_message,
    build_digest,
)
from courtwatch.services.queue import QueueService
from courtwatch.services.session import SessionManager
from courtwatch.services.slots import (
    SlotRepository,
    filter_by_time_range,
    group_by_date_then_time,
    merge_grouped,
    only_available,
)
from courtwatch.services.state import (
    DEFAULT_RETENTION_DAYS,
    SnapshotStore,
    find_changed_slots,
    find_newly_available,
    prune_snapshot,
    update_snapshot,
)

logger = logging.getLogger(__name__)

NO_LONGER_AVAILABLE_HEADING = "No longer available"


class QueueProcessor:
    """Retries queued booking requests until booked, expired or cancelled."""

    def __init__(
        self,
        queue: QueueService,
        session_manager: SessionManager,
        slots: SlotRepository,
        booking: BookingEngine,
        notifier: NotificationService,
        calendar: Optional[CalendarClient] = None,
        timezone: ZoneInfo = ZoneInfo("Europe/Amsterdam"),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.queue = queue
        self.session_manager = session_manager
        self.slots = slots
        self.booking = booking
        self.notifier = notifier
        self.calendar = calendar
        self.timezone = timezone
        self.clock = clock

    def today(self) -> date:
        return self.clock().astimezone(self.timezone).date()

    async def process_queue(self) -> QueueRunSummary:
        """
        Run one queue tick.

        Raises:
            AuthError: If no session can be obtained or the site rejects the
                cached one; the session is dropped and entries stay pending
        """
        with logfire.span("process_queue"):
            summary = QueueRunSummary()
            await self.queue.reset_stale_processing()
            summary.expired = await self.queue.expire_past_entries(self.today())

            entries = await self.queue.get_pending()
            if not entries:
                return summary

            logger.info(f"Processing {len(entries)} queue entries")
            await self.session_manager.get_session()

            for entry in entries:
                if not await self.queue.set_status(entry.id, QueueStatus.PROCESSING):
                    continue
                summary.processed += 1

                try:
                    if await self._process_entry(entry):
                        summary.booked.append(entry.id)
                except AuthError as e:
                    logger.error(f"Session rejected while processing queue entry {entry.id}: {e}")
                    self.session_manager.invalidate_session()
                    await self.queue.set_status(entry.id, QueueStatus.PENDING)
                    raise
                except Exception as e:
                    logger.error(f"Error processing queue entry {entry.id}: {e}", exc_info=True)
                    await self.queue.set_status(entry.id, QueueStatus.PENDING)

            logger.info(
                f"Queue tick done: {summary.processed} processed, "
                f"{len(summary.booked)} booked, {len(summary.expired)} expired"
            )
            return summary

    async def _process_entry(self, entry: QueueEntry) -> bool:
        session = await self.session_manager.get_session()
        slots = await self.slots.get_all_slots_on_date(session, entry.date)
        own = [s for s in slots if s.is_own_booking]
        candidates = select_candidates(slots, own, entry.time_from, entry.time_to)

        if not candidates:
            logger.info(f"No candidates for queue entry {entry.id}, retrying next tick")
            await self.queue.set_status(entry.id, QueueStatus.PENDING)
            return False

        result = await self.booking.book_first_available(candidates, session)
        if result is None or not result.success:
            logger.warning(
                f"Booking failed for queue entry {entry.id}: "
                f"{result.error if result else 'no result'}"
            )
            await self.queue.set_status(entry.id, QueueStatus.PENDING)
            return False

        await self.queue.set_status(entry.id, QueueStatus.BOOKED)
        logger.info(f"Booked queue entry {entry.id}")
        await self.notifier.notify(build_booking_message(result), entry.chat_id)

        if self.calendar is not None:
            slot = result.slot
            if entry.calendar_event_id:
                await self.calendar.confirm_event(
                    entry.calendar_event_id, slot.court_name, slot.date, slot.start_time
                )
            else:
                await self.calendar.create_confirmed_event(
                    slot.court_name, slot.date, slot.start_time
                )
        return True


class MonitorScheduler:
    """Pings monitor owners about slots they have not been told about yet."""

    def __init__(
        self,
        monitors: MonitorService,
        session_manager: SessionManager,
        slots: SlotRepository,
        notifier: NotificationService,
        lookahead_days: int = 7,
        timezone: ZoneInfo = ZoneInfo("Europe/Amsterdam"),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.monitors = monitors
        self.session_manager = session_manager
        self.slots = slots
        self.notifier = notifier
        self.lookahead_days = lookahead_days
        self.timezone = timezone
        self.clock = clock

    async def run_tick(self) -> int:
        """
        Process every active monitor; returns how many sent a notification.

        Raises:
            AuthError: When the site rejects the session; it is dropped first
        """
        with logfire.span("monitor_tick"):
            monitors = await self.monitors.list_monitors()
            if not monitors:
                return 0

            logger.debug(f"Running monitor tick for {len(monitors)} monitors")
            session = await self.session_manager.get_session()

            notified = 0
            for monitor in monitors:
                try:
                    if await self.process_monitor(monitor, session):
                        notified += 1
                except AuthError as e:
                    logger.error(f"Session rejected while running monitor {monitor.id}: {e}")
                    self.session_manager.invalidate_session()
                    raise
                except Exception as e:
                    logger.error(f"Monitor {monitor.id} run failed: {e}", exc_info=True)
            return notified

    async def process_monitor(self, monitor: Monitor, session: Session) -> bool:
        today = self.clock().astimezone(self.timezone).date()
        working = prune_expired_dates(monitor, today)
        changed = working is not monitor

        target_dates = get_target_dates(working, self.lookahead_days, today)
        if not target_dates:
            if not working.days_of_week:
                await self.monitors.deactivate_monitor(working.id)
                logger.info(f"Deactivated monitor {working.id} with no remaining dates")
            elif changed:
                await self.monitors.save_monitor(working.model_copy(update={"updated_at": self.clock()}))
            return False

        availability = await self.slots.fetch_availability_for_dates(
            session, target_dates, working.from_time, working.to_time
        )

        aggregated = {}
        for daily in availability:
            known = working.last_notified.get(daily.date.isoformat(), [])
            new_slots = [s for s in daily.available if s.key not in known]
            if not new_slots:
                continue

            aggregated = merge_grouped(aggregated, group_by_date_then_time(new_slots))
            merged_keys = list(dict.fromkeys(known + [s.key for s in new_slots]))
            working = update_last_notified(working, daily.date, merged_keys, self.clock())
            changed = True

        if aggregated:
            heading = (
                f"New squash courts for {working.description}"
                if working.description
                else "New squash courts for one of your monitors"
            )
            await self.notifier.notify(build_digest(aggregated, heading), working.chat_id)
            logger.info(f"Sent scheduled availability update for monitor {working.id}")

        if changed:
            await self.monitors.save_monitor(working.model_copy(update={"updated_at": self.clock()}))
        return bool(aggregated)


class AvailabilityWatcher:
    """Snapshot-based scan: diff, optionally auto-book, notify, save."""

    def __init__(
        self,
        store: SnapshotStore,
        session_manager: SessionManager,
        slots: SlotRepository,
        booking: BookingEngine,
        notifier: NotificationService,
        mode: str = "transition",
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.session_manager = session_manager
        self.slots = slots
        self.booking = booking
        self.notifier = notifier
        self.mode = mode
        self.retention_days = retention_days
        self.clock = clock

    def diff(self, previous, current: list[CourtAvailability]) -> list[CourtAvailability]:
        if self.mode == "changed":
            return find_changed_slots(previous, current)
        return find_newly_available(previous, current)

    def build_message(self, result: ScanResult) -> str:
        parts = []
        if result.newly_available:
            parts.append(build_digest(group_by_date_then_time(result.newly_available)))
        if result.no_longer_available:
            parts.append(
                build_digest(
                    group_by_date_then_time(result.no_longer_available),
                    NO_LONGER_AVAILABLE_HEADING,
                )
            )
        if result.booking is not None:
            parts.append(
                build_booking_message(result.booking)
                if result.booking.success
                else build_booking_failure_message(result.booking)
            )
        return "\n\n".join(parts)

    async def scan(
        self,
        dates: Iterable[date],
        time_from: str,
        time_to: str,
        auto_book: bool = False,
        recipient: Optional[str] = None,
    ) -> ScanResult:
        """
        Diff the current availability against the saved snapshot.

        Raises:
            AuthError: When the site rejects the session; it is dropped first
        """
        with logfire.span("availability_scan", time_from=time_from, time_to=time_to):
            previous = await self.store.load()
            session = await self.session_manager.get_session()
            try:
                daily = await self.slots.fetch_availability_for_dates(
                    session, dates, time_from, time_to
                )
            except AuthError as e:
                logger.error(f"Session rejected during scan: {e}")
                self.session_manager.invalidate_session()
                raise
            observed = [s for d in daily for s in d.slots]

            changes = self.diff(previous, filter_by_time_range(observed, time_from, time_to))
            result = ScanResult(
                changes=changes,
                newly_available=only_available(changes),
                no_longer_available=[
                    s for s in changes if not s.is_available and s.key in previous.entries
                ],
            )
            logger.info(
                f"Scan found {len(result.changes)} changed slots, "
                f"{len(result.newly_available)} newly available"
            )

            if result.newly_available and auto_book:
                own = [s for s in observed if s.is_own_booking]
                candidates = select_candidates(result.newly_available, own, time_from, time_to)
                result.booking = await self.booking.book_first_available(candidates, session)

            if result.newly_available or result.no_longer_available:
                deliveries = await self.notifier.notify(self.build_message(result), recipient)
                result.notified = any(d.success for d in deliveries)

            now = self.clock()
            snapshot = prune_snapshot(
                update_snapshot(previous, observed, now), self.retention_days, now
            )
            await self.store.save(snapshot)
            return result
