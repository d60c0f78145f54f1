"""Database setup and models."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; reattach UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class QueueEntryRecord(Base):
    """Auto-booking request retried by the queue processor."""
    __tablename__ = "booking_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String, nullable=True, index=True)
    date = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD
    time_from = Column(String(5), nullable=False)
    time_to = Column(String(5), nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)
    calendar_event_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class SlotStateRecord(Base):
    """Last-seen availability of one slot, keyed by court:date:time."""
    __tablename__ = "slot_states"

    key = Column(String, primary_key=True)
    court_id = Column(Integer, nullable=False)
    date = Column(String(10), nullable=False)
    start_time = Column(String(5), nullable=False)
    is_available = Column(Boolean, nullable=False)
    last_seen = Column(DateTime(timezone=True), nullable=False)


class MonitorRecord(Base):
    """Recurring watch rule owned by a chat."""
    __tablename__ = "monitors"

    id = Column(String(16), primary_key=True)
    chat_id = Column(String, nullable=False, index=True)
    from_time = Column(String(5), nullable=False)
    to_time = Column(String(5), nullable=False)
    dates = Column(JSON, nullable=False, default=list)
    days_of_week = Column(JSON, nullable=False, default=list)
    description = Column(String, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    last_notified = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Database:
    """Async engine plus session factory for one database URL."""

    def __init__(self, url: str):
        self.url = url
        self.engine = create_async_engine(url, echo=False, future=True)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def init_models(self) -> None:
        """Create the data directory and all tables if missing."""
        db_path = make_url(self.url).database
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database ready at {self.url}")

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def close(self) -> None:
        await self.engine.dispose()
