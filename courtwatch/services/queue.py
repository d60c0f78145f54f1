"""
Persisted auto-booking queue.

Entries move pending -> processing -> booked, or back to pending for the next
tick. Past dates expire and users may cancel. Booked, cancelled and expired
are terminal.
"""

import logging
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy import select, update

from courtwatch.database import Database, QueueEntryRecord, as_utc
from courtwatch.models.schemas import QueueEntry, QueueStatus, time_to_minutes, utcnow

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = [s.value for s in QueueStatus if s.is_terminal]


def _to_entry(record: QueueEntryRecord) -> QueueEntry:
    return QueueEntry(
        id=record.id,
        chat_id=record.chat_id,
        date=record.date,
        time_from=record.time_from,
        time_to=record.time_to,
        status=QueueStatus(record.status),
        calendar_event_id=record.calendar_event_id,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


class QueueService:
    """CRUD and status transitions for booking_queue."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    async def add_to_queue(
        self,
        for_date: date,
        time_from: str,
        time_to: str,
        chat_id: Optional[str] = None,
        calendar_event_id: Optional[str] = None,
    ) -> QueueEntry:
        """Enqueue a booking request for one date and time window."""
        if time_to_minutes(time_from) > time_to_minutes(time_to):
            raise ValueError(f"time_from {time_from} is after time_to {time_to}")

        now = self.clock()
        record = QueueEntryRecord(
            chat_id=chat_id,
            date=for_date.isoformat(),
            time_from=time_from,
            time_to=time_to,
            status=QueueStatus.PENDING.value,
            calendar_event_id=calendar_event_id,
            created_at=now,
            updated_at=now,
        )
        async with self.db.session() as session:
            async with session.begin():
                session.add(record)

        entry = _to_entry(record)
        logger.info(
            f"Queued booking request {entry.id} for {entry.date} "
            f"{entry.time_from}-{entry.time_to}"
        )
        return entry

    async def get_entry(self, entry_id: int) -> Optional[QueueEntry]:
        async with self.db.session() as session:
            record = await session.get(QueueEntryRecord, entry_id)
        return _to_entry(record) if record else None

    async def list_queue(self, chat_id: Optional[str] = None) -> list[QueueEntry]:
        """Return open (pending or processing) entries, oldest date first."""
        query = select(QueueEntryRecord).where(
            QueueEntryRecord.status.in_(
                [QueueStatus.PENDING.value, QueueStatus.PROCESSING.value]
            )
        )
        if chat_id is not None:
            query = query.where(QueueEntryRecord.chat_id == chat_id)
        query = query.order_by(QueueEntryRecord.date, QueueEntryRecord.id)

        async with self.db.session() as session:
            records = (await session.execute(query)).scalars().all()
        return [_to_entry(r) for r in records]

    async def get_pending(self) -> list[QueueEntry]:
        query = (
            select(QueueEntryRecord)
            .where(QueueEntryRecord.status == QueueStatus.PENDING.value)
            .order_by(QueueEntryRecord.date, QueueEntryRecord.id)
        )
        async with self.db.session() as session:
            records = (await session.execute(query)).scalars().all()
        return [_to_entry(r) for r in records]

    async def set_status(self, entry_id: int, status: QueueStatus) -> bool:
        """
        Move an entry to a new status.

        Returns False when the entry is missing or already terminal.
        """
        async with self.db.session() as session:
            async with session.begin():
                result = await session.execute(
                    update(QueueEntryRecord)
                    .where(
                        QueueEntryRecord.id == entry_id,
                        QueueEntryRecord.status.not_in(TERMINAL_STATUSES),
                    )
                    .values(status=status.value, updated_at=self.clock())
                )
        changed = result.rowcount > 0
        if not changed:
            logger.warning(f"Queue entry {entry_id} not moved to {status.value} (missing or final)")
        return changed

    async def remove_from_queue(self, entry_id: int) -> bool:
        """Cancel an entry. Returns False if it was missing or already final."""
        cancelled = await self.set_status(entry_id, QueueStatus.CANCELLED)
        if cancelled:
            logger.info(f"Cancelled queue entry {entry_id}")
        return cancelled

    async def expire_past_entries(self, today: date) -> list[int]:
        """Expire open entries whose date is before today; return their ids."""
        async with self.db.session() as session:
            async with session.begin():
                ids = (
                    await session.execute(
                        select(QueueEntryRecord.id).where(
                            QueueEntryRecord.status.in_(
                                [QueueStatus.PENDING.value, QueueStatus.PROCESSING.value]
                            ),
                            QueueEntryRecord.date < today.isoformat(),
                        )
                    )
                ).scalars().all()
                if ids:
                    await session.execute(
                        update(QueueEntryRecord)
                        .where(QueueEntryRecord.id.in_(ids))
                        .values(status=QueueStatus.EXPIRED.value, updated_at=self.clock())
                    )

        if ids:
            logger.info(f"Expired {len(ids)} past queue entries: {list(ids)}")
        return list(ids)

    async def reset_stale_processing(self) -> list[int]:
        """
        Return entries left in processing by an interrupted tick to pending.

        Only one instance runs against the queue, so anything still processing
        when a tick starts belongs to a run that died mid-entry.
        """
        async with self.db.session() as session:
            async with session.begin():
                ids = (
                    await session.execute(
                        select(QueueEntryRecord.id).where(
                            QueueEntryRecord.status == QueueStatus.PROCESSING.value
                        )
                    )
                ).scalars().all()
                if ids:
                    await session.execute(
                        update(QueueEntryRecord)
                        .where(QueueEntryRecord.id.in_(ids))
                        .values(status=QueueStatus.PENDING.value, updated_at=self.clock())
                    )

        if ids:
            logger.warning(f"Reset {len(ids)} stale processing entries: {list(ids)}")
        return list(ids)
