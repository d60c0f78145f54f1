"""
Main runner for CourtWatch.
Builds the services, exposes the collaborator entry points and runs the
queue and monitor loops.
"""

import asyncio
import logging
import signal
import sys
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

import structlog

from courtwatch.config import Settings, get_settings
from courtwatch.database import Database
from courtwatch.errors import AuthError, BookingError, ConfigError
from courtwatch.models.schemas import (
    BookingResult,
    CourtAvailability,
    DailyAvailability,
    Monitor,
    QueueEntry,
    QueueRunSummary,
    ScanResult,
    utcnow,
)
from courtwatch.observability.logfire_config import initialize_logfire
from courtwatch.services.booking import BookingEngine
from courtwatch.services.calendar import CalendarClient
from courtwatch.services.fetcher import PageFetcher
from courtwatch.services.monitors import MonitorService, upcoming_dates_for_weekdays
from courtwatch.services.notification import NotificationService
from courtwatch.services.queue import QueueService
from courtwatch.services.scheduler import (
    AvailabilityWatcher,
    MonitorScheduler,
    QueueProcessor,
)
from courtwatch.services.session import SessionManager
from courtwatch.services.slots import SlotRepository
from courtwatch.services.state import SnapshotStore

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if sys.stdout.isatty() is False
        else structlog.dev.ConsoleRenderer(colors=True),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

ERROR_BACKOFF_SECONDS = 60


class CourtWatch:
    """Court availability monitor and auto-booker."""

    def __init__(self, settings: Optional[Settings] = None, transport=None):
        """
        Args:
            settings: Application settings; read from the environment if omitted
            transport: Optional httpx transport shared by every HTTP client
        """
        self.settings = settings or get_settings()
        self.transport = transport
        self.db: Optional[Database] = None
        self.fetcher: Optional[PageFetcher] = None
        self.session_manager: Optional[SessionManager] = None
        self.slots: Optional[SlotRepository] = None
        self.booking: Optional[BookingEngine] = None
        self.notification: Optional[NotificationService] = None
        self.calendar: Optional[CalendarClient] = None
        self.queue: Optional[QueueService] = None
        self.monitors: Optional[MonitorService] = None
        self.queue_processor: Optional[QueueProcessor] = None
        self.monitor_scheduler: Optional[MonitorScheduler] = None
        self.watcher: Optional[AvailabilityWatcher] = None
        self.running = False
        self.tasks: dict[str, asyncio.Task] = {}
        self.last_run_times: dict[str, datetime] = {}
        self._tick_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize all services."""
        logger.info("Initializing CourtWatch...")
        settings = self.settings

        try:
            self.db = Database(settings.database_url)
            await self.db.init_models()

            self.fetcher = PageFetcher(
                timeout=settings.http_timeout,
                max_retries=settings.max_retries,
                retry_delay=settings.retry_delay,
                transport=self.transport,
            )
            self.session_manager = SessionManager(
                self.fetcher,
                login_url=settings.login_url,
                username=settings.squash_city_username,
                password=settings.squash_city_password.get_secret_value(),
                ttl=timedelta(seconds=settings.session_ttl_seconds),
                max_retries=settings.max_retries,
                retry_delay=settings.retry_delay,
            )
            self.slots = SlotRepository(self.fetcher, settings.base_url, settings.sport_id)

            players = settings.load_players_config()
            logger.info("Loaded booking partners", count=len(players))
            if not players:
                logger.warning(
                    "No booking partner configured, players[2] keeps the form default",
                    path=settings.players_config_path,
                )
            self.booking = BookingEngine(
                self.fetcher,
                self.session_manager,
                settings.base_url,
                partners=players,
                min_lead_hours=settings.booking_min_lead_hours,
                timezone=settings.tz,
            )

            self.notification = NotificationService(
                bot_token=settings.telegram_bot_token,
                default_chat_ids=settings.telegram_chat_ids,
                retry_delay=settings.retry_delay,
                transport=self.transport,
            )
            self.calendar = CalendarClient(
                settings.calendar_webhook_url, players, transport=self.transport
            )

            self.queue = QueueService(self.db)
            self.monitors = MonitorService(self.db)

            self.queue_processor = QueueProcessor(
                self.queue,
                self.session_manager,
                self.slots,
                self.booking,
                self.notification,
                calendar=self.calendar if self.calendar.enabled else None,
                timezone=settings.tz,
            )
            self.monitor_scheduler = MonitorScheduler(
                self.monitors,
                self.session_manager,
                self.slots,
                self.notification,
                lookahead_days=settings.monitor_lookahead_days,
                timezone=settings.tz,
            )
            self.watcher = AvailabilityWatcher(
                SnapshotStore(self.db),
                self.session_manager,
                self.slots,
                self.booking,
                self.notification,
                mode=settings.change_detection_mode,
                retention_days=settings.state_retention_days,
            )

            logger.info("All services initialized successfully")

        except Exception as e:
            logger.error("Failed to initialize services", error=str(e), exc_info=True)
            raise

    async def cleanup(self) -> None:
        """Cleanup resources on shutdown."""
        logger.info("Cleaning up resources...")

        for name, task in self.tasks.items():
            if not task.done():
                logger.info(f"Cancelling loop: {name}")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        for client in (self.fetcher, self.notification, self.calendar):
            if client:
                await client.close()
        if self.db:
            await self.db.close()

        logger.info("Cleanup complete")

    def today(self) -> date:
        return utcnow().astimezone(self.settings.tz).date()

    def resolve_dates(
        self,
        dates: Optional[Iterable[date]] = None,
        days_of_week: Optional[Iterable[str]] = None,
    ) -> list[date]:
        """Explicit dates plus weekday matches in the lookahead window; today if neither."""
        resolved = set(dates or [])
        if days_of_week:
            resolved.update(
                upcoming_dates_for_weekdays(
                    [d.strip().lower()[:3] for d in days_of_week],
                    self.settings.monitor_lookahead_days,
                    self.today(),
                )
            )
        if not dates and not days_of_week:
            resolved.add(self.today())
        return sorted(resolved)

    # Collaborator entry points

    async def check_availability(
        self,
        from_time: str,
        to_time: str,
        dates: Optional[Iterable[date]] = None,
        days_of_week: Optional[Iterable[str]] = None,
    ) -> list[DailyAvailability]:
        """Available slots in [from_time, to_time] for each requested date."""
        session = await self.session_manager.get_session()
        return await self.slots.fetch_availability_for_dates(
            session, self.resolve_dates(dates, days_of_week), from_time, to_time
        )

    async def scan(
        self,
        from_time: str,
        to_time: str,
        dates: Optional[Iterable[date]] = None,
        days_of_week: Optional[Iterable[str]] = None,
        auto_book: bool = False,
        recipient: Optional[str] = None,
    ) -> ScanResult:
        """Snapshot scan: report slots that became available since the last scan."""
        async with self._tick_lock:
            return await self.watcher.scan(
                self.resolve_dates(dates, days_of_week),
                from_time,
                to_time,
                auto_book=auto_book,
                recipient=recipient,
            )

    async def create_monitor(
        self,
        chat_id: str,
        from_time: str,
        to_time: str,
        dates: Optional[Iterable[date]] = None,
        days_of_week: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
    ) -> Monitor:
        return await self.monitors.create_monitor(
            chat_id, from_time, to_time, dates, days_of_week, description
        )

    async def add_to_queue(
        self,
        for_date: date,
        time_from: str,
        time_to: str,
        chat_id: Optional[str] = None,
    ) -> QueueEntry:
        """Queue a booking request; a tentative calendar event is created when enabled."""
        event_id = None
        if self.calendar and self.calendar.enabled:
            event_id = await self.calendar.create_tentative_event(for_date, time_from, time_to)
        return await self.queue.add_to_queue(
            for_date, time_from, time_to, chat_id=chat_id, calendar_event_id=event_id
        )

    async def list_queue(self, chat_id: Optional[str] = None) -> list[QueueEntry]:
        return await self.queue.list_queue(chat_id)

    async def remove_from_queue(self, entry_id: int) -> bool:
        return await self.queue.remove_from_queue(entry_id)

    async def book_slot(self, slot: CourtAvailability) -> BookingResult:
        async with self._tick_lock:
            return await self.booking.book_slot(slot)

    async def book_court(self, for_date: date, time: str, court_id: int) -> BookingResult:
        """
        Book a court by date, start time and court id.

        Raises:
            BookingError: If the slot is not on the page or not available
        """
        async with self._tick_lock:
            session = await self.session_manager.get_session()
            slots = await self.slots.get_all_slots_on_date(session, for_date)
            slot = next(
                (s for s in slots if s.court_id == court_id and s.start_time == time),
                None,
            )
            if slot is None:
                raise BookingError(
                    f"No slot for court {court_id} on {for_date.isoformat()} at {time}"
                )
            if not slot.is_available:
                raise BookingError(
                    f"{slot.court_name} on {for_date.isoformat()} at {time} is not available"
                )
            return await self.booking.book_slot(slot, session)

    async def list_my_reservations(self, days: int = 8) -> list[CourtAvailability]:
        """The account's own reservations from today over the next `days` days."""
        today = self.today()
        session = await self.session_manager.get_session()
        return await self.slots.list_own_bookings(
            session, [today + timedelta(days=i) for i in range(days)]
        )

    # Scheduled work

    async def process_queue(self) -> QueueRunSummary:
        async with self._tick_lock:
            summary = await self.queue_processor.process_queue()
        self.last_run_times["queue"] = utcnow()
        return summary

    async def run_monitors(self) -> int:
        async with self._tick_lock:
            notified = await self.monitor_scheduler.run_tick()
        self.last_run_times["monitors"] = utcnow()
        return notified

    async def _loop(self, name: str, tick, interval_seconds: int) -> None:
        logger.info("Starting loop", loop=name, interval_seconds=interval_seconds)

        while self.running:
            try:
                await tick()
                logger.debug("Waiting for next tick", loop=name, wait_seconds=interval_seconds)
                await asyncio.sleep(interval_seconds)

            except asyncio.CancelledError:
                logger.info("Loop cancelled", loop=name)
                break
            except AuthError as e:
                logger.error("Authentication failed during tick", loop=name, error=str(e))
                self.session_manager.invalidate_session()
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
            except Exception as e:
                logger.error("Error in loop", loop=name, error=str(e), exc_info=True)
                # Wait a bit before retrying on error
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    async def run(self) -> None:
        """Run the queue and monitor loops until stopped."""
        logger.info("Starting CourtWatch")

        # Fail fast on bad credentials
        await self.session_manager.get_session()

        self.running = True
        self.tasks["queue"] = asyncio.create_task(
            self._loop("queue", self.process_queue, self.settings.queue_interval_seconds)
        )
        self.tasks["monitors"] = asyncio.create_task(
            self._loop("monitors", self.run_monitors, self.settings.monitor_interval_seconds)
        )

        try:
            await asyncio.gather(*self.tasks.values())
        except asyncio.CancelledError:
            logger.info("Loops cancelled")
        finally:
            self.running = False

    async def start(self) -> None:
        """Start the application."""
        try:
            await self.initialize()
            await self.run()
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt, shutting down...")
        except Exception as e:
            logger.error("Fatal error", error=str(e), exc_info=True)
            raise
        finally:
            await self.cleanup()


def setup_signal_handlers(app: CourtWatch) -> None:
    """Setup signal handlers for graceful shutdown."""

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating shutdown...")
        app.running = False
        for task in app.tasks.values():
            task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def main() -> None:
    """Main entry point."""
    try:
        settings = get_settings()
    except ConfigError as e:
        logger.error("Invalid configuration", error=str(e))
        sys.exit(1)

    logging.basicConfig(level=settings.log_level)
    initialize_logfire()

    app = CourtWatch(settings)
    setup_signal_handlers(app)

    try:
        await app.start()
    except (ConfigError, AuthError) as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
