"""
Change detection over the last-seen availability snapshot.

A slot is newly available when it is free now and was either never seen
before or was last seen taken. The coarser "changed" comparison flags any
slot whose key is new or whose availability flipped in either direction.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy import delete, select

from courtwatch.database import Database, SlotStateRecord, as_utc
from courtwatch.models.schemas import CourtAvailability, SlotState, Snapshot

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 7


def find_newly_available(
    previous: Snapshot, current: Iterable[CourtAvailability]
) -> list[CourtAvailability]:
    """Return slots that are free now and were absent or taken before."""
    newly_available = []
    for slot in current:
        if not slot.is_available:
            continue
        seen = previous.entries.get(slot.key)
        if seen is None or not seen.is_available:
            newly_available.append(slot)
    return newly_available


def find_changed_slots(
    previous: Snapshot, current: Iterable[CourtAvailability]
) -> list[CourtAvailability]:
    """Return slots whose key is new or whose availability differs from the snapshot."""
    changed = []
    for slot in current:
        seen = previous.entries.get(slot.key)
        if seen is None or seen.is_available != slot.is_available:
            changed.append(slot)
    return changed


def update_snapshot(
    previous: Snapshot, current: Iterable[CourtAvailability], now: datetime
) -> Snapshot:
    """Record every observed slot with `now` as its last-seen time."""
    entries = dict(previous.entries)
    for slot in current:
        entries[slot.key] = SlotState(
            key=slot.key,
            court_id=slot.court_id,
            date=slot.date,
            start_time=slot.start_time,
            is_available=slot.is_available,
            last_seen=now,
        )
    return Snapshot(entries=entries, last_update=now)


def prune_snapshot(
    snapshot: Snapshot, max_age_days: int, now: datetime
) -> Snapshot:
    """Drop entries last seen before the cutoff, whatever their slot date."""
    cutoff = now - timedelta(days=max_age_days)
    entries = {k: v for k, v in snapshot.entries.items() if v.last_seen >= cutoff}
    return Snapshot(entries=entries, last_update=snapshot.last_update)


class SnapshotStore:
    """Loads and saves the snapshot in the slot_states table."""

    def __init__(self, db: Database):
        self.db = db

    async def load(self) -> Snapshot:
        async with self.db.session() as session:
            rows = (await session.execute(select(SlotStateRecord))).scalars().all()

        entries = {
            row.key: SlotState(
                key=row.key,
                court_id=row.court_id,
                date=row.date,
                start_time=row.start_time,
                is_available=row.is_available,
                last_seen=as_utc(row.last_seen),
            )
            for row in rows
        }
        last_update = max((e.last_seen for e in entries.values()), default=None)
        logger.info(f"Loaded snapshot with {len(entries)} slot states")
        return Snapshot(entries=entries, last_update=last_update)

    async def save(self, snapshot: Snapshot) -> None:
        """Replace the stored snapshot in a single transaction."""
        async with self.db.session() as session:
            async with session.begin():
                await session.execute(delete(SlotStateRecord))
                session.add_all(
                    SlotStateRecord(
                        key=entry.key,
                        court_id=entry.court_id,
                        date=entry.date.isoformat(),
                        start_time=entry.start_time,
                        is_available=entry.is_available,
                        last_seen=entry.last_seen,
                    )
                    for entry in snapshot.entries.values()
                )
        logger.info(f"Saved snapshot with {len(snapshot.entries)} slot states")
