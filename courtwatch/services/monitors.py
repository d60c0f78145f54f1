"""
Monitor store and helpers: recurring watch rules owned by a chat.
"""

import logging
import re
import secrets
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import select

from courtwatch.database import Database, MonitorRecord, as_utc
from courtwatch.models.schemas import Monitor, utcnow

logger = logging.getLogger(__name__)

TIME_REGEX = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def _validate_time(label: str, value: str) -> None:
    if not TIME_REGEX.match(value):
        raise ValueError(f"{label} must be in HH:MM format")


def _normalize_weekdays(days: Optional[Iterable[str]]) -> list[str]:
    normalized = []
    for day in days or []:
        day = day.strip().lower()[:3]
        if day not in WEEKDAYS:
            raise ValueError(f"Unknown weekday: {day!r}")
        if day not in normalized:
            normalized.append(day)
    return normalized


def upcoming_dates_for_weekdays(
    days: Iterable[str], lookahead_days: int, today: date
) -> list[date]:
    """Dates within the lookahead window (today included) that fall on the given weekdays."""
    wanted = {WEEKDAYS.index(d) for d in days}
    upcoming = (today + timedelta(days=i) for i in range(lookahead_days))
    return [d for d in upcoming if d.weekday() in wanted]


def get_target_dates(monitor: Monitor, lookahead_days: int, today: date) -> list[date]:
    """Explicit future dates plus weekday matches in the lookahead window."""
    explicit = [d for d in monitor.dates if d >= today]
    recurring = upcoming_dates_for_weekdays(monitor.days_of_week, lookahead_days, today)
    return sorted(set(explicit) | set(recurring))


def prune_expired_dates(monitor: Monitor, today: date) -> Monitor:
    """
    Drop explicit dates and notification records in the past.

    Returns the same object when nothing changed.
    """
    remaining = [d for d in monitor.dates if d >= today]
    notified = {
        k: v for k, v in monitor.last_notified.items() if k >= today.isoformat()
    }
    if len(remaining) == len(monitor.dates) and len(notified) == len(monitor.last_notified):
        return monitor
    return monitor.model_copy(update={"dates": remaining, "last_notified": notified})


def update_last_notified(
    monitor: Monitor, for_date: date, keys: list[str], now: datetime
) -> Monitor:
    last_notified = dict(monitor.last_notified)
    last_notified[for_date.isoformat()] = keys
    return monitor.model_copy(update={"last_notified": last_notified, "updated_at": now})


def summarize_monitor(monitor: Monitor) -> str:
    chunks = []
    if monitor.days_of_week:
        chunks.append(f"weekdays: {', '.join(monitor.days_of_week)}")
    if monitor.dates:
        chunks.append(f"dates: {', '.join(d.isoformat() for d in monitor.dates)}")

    scope = " | ".join(chunks) or "custom dates"
    label = f" - {monitor.description}" if monitor.description else ""
    return f"[{monitor.id}] {monitor.from_time}-{monitor.to_time} ({scope}){label}"


def _to_monitor(record: MonitorRecord) -> Monitor:
    return Monitor(
        id=record.id,
        chat_id=record.chat_id,
        from_time=record.from_time,
        to_time=record.to_time,
        dates=record.dates or [],
        days_of_week=record.days_of_week or [],
        description=record.description,
        active=record.active,
        last_notified=record.last_notified or {},
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


def _apply(record: MonitorRecord, monitor: Monitor) -> None:
    record.chat_id = monitor.chat_id
    record.from_time = monitor.from_time
    record.to_time = monitor.to_time
    record.dates = [d.isoformat() for d in monitor.dates]
    record.days_of_week = list(monitor.days_of_week)
    record.description = monitor.description
    record.active = monitor.active
    record.last_notified = {k: list(v) for k, v in monitor.last_notified.items()}
    record.created_at = monitor.created_at
    record.updated_at = monitor.updated_at


class MonitorService:
    """Persists monitors in the monitors table."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def create_monitor(
        self,
        chat_id: str,
        from_time: str,
        to_time: str,
        dates: Optional[Iterable[date]] = None,
        days_of_week: Optional[Iterable[str]] = None,
        description: Optional[str] = None,
    ) -> Monitor:
        """
        Create an active monitor.

        Raises:
            ValueError: On malformed times or weekdays, or when neither dates
                nor weekdays are given
        """
        _validate_time("from_time", from_time)
        _validate_time("to_time", to_time)
        unique_dates = sorted(set(dates or []))
        weekdays = _normalize_weekdays(days_of_week)

        if not unique_dates and not weekdays:
            raise ValueError("At least one date or weekday is required to create a monitor")

        now = self.clock()
        monitor = Monitor(
            id=secrets.token_urlsafe(8)[:10],
            chat_id=chat_id,
            from_time=from_time,
            to_time=to_time,
            dates=unique_dates,
            days_of_week=weekdays,
            description=description,
            created_at=now,
            updated_at=now,
        )

        record = MonitorRecord(id=monitor.id)
        _apply(record, monitor)
        async with self.db.session() as session:
            async with session.begin():
                session.add(record)

        logger.info(f"Monitor created: {summarize_monitor(monitor)}")
        return monitor

    async def get_monitor(self, monitor_id: str) -> Optional[Monitor]:
        async with self.db.session() as session:
            record = await session.get(MonitorRecord, monitor_id)
        return _to_monitor(record) if record else None

    async def list_monitors(
        self, chat_id: Optional[str] = None, include_inactive: bool = False
    ) -> list[Monitor]:
        query = select(MonitorRecord).order_by(MonitorRecord.created_at)
        if chat_id is not None:
            query = query.where(MonitorRecord.chat_id == chat_id)
        if not include_inactive:
            query = query.where(MonitorRecord.active.is_(True))

        async with self.db.session() as session:
            records = (await session.execute(query)).scalars().all()
        return [_to_monitor(r) for r in records]

    async def save_monitor(self, monitor: Monitor) -> None:
        async with self.db.session() as session:
            async with session.begin():
                record = await session.get(MonitorRecord, monitor.id)
                if record is None:
                    raise KeyError(f"Monitor {monitor.id} not found")
                _apply(record, monitor)

    async def deactivate_monitor(self, monitor_id: str) -> bool:
        async with self.db.session() as session:
            async with session.begin():
                record = await session.get(MonitorRecord, monitor_id)
                if record is None:
                    return False
                record.active = False
                record.updated_at = self.clock()

        logger.info(f"Monitor {monitor_id} deactivated")
        return True
