"""
Pydantic models for data structures and schemas.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def time_to_minutes(value: str) -> int:
    """Convert an 'HH:MM' string to minutes since midnight."""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


class Session(BaseModel):
    """Authenticated cookie bundle for the booking site."""

    cookies: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def cookie_header(self) -> str:
        return "; ".join(f"{name}={value}" for name, value in self.cookies.items())


class CourtAvailability(BaseModel):
    """One court at one start time on one date."""

    model_config = ConfigDict(frozen=True)

    court_id: int = Field(..., description="Site resource id, from the 'r-{id}' class")
    court_name: str = Field(..., description="Display name from the matrix header")
    date: date
    start_time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    is_available: bool
    is_own_booking: bool = False
    off_peak: bool = False
    utc: str = Field(default="", description="Opaque booking token for the slot")

    @computed_field
    @property
    def start_time_in_minutes(self) -> int:
        return time_to_minutes(self.start_time)

    @property
    def key(self) -> str:
        return f"{self.court_id}:{self.date.isoformat()}:{self.start_time}"


class SlotState(BaseModel):
    """Last known state of a slot, as stored for change detection."""

    key: str
    court_id: int
    date: date
    start_time: str
    is_available: bool
    last_seen: datetime


class Snapshot(BaseModel):
    """Persisted set of last-known slot states."""

    entries: dict[str, SlotState] = Field(default_factory=dict)
    last_update: Optional[datetime] = None


class DailyAvailability(BaseModel):
    """Everything fetched for one date plus the available in-window slots."""

    date: date
    slots: list[CourtAvailability] = Field(default_factory=list)
    available: list[CourtAvailability] = Field(
        default_factory=list,
        description="Available slots inside the requested window, chronological",
    )


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    BOOKED = "booked"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.BOOKED, QueueStatus.CANCELLED, QueueStatus.EXPIRED)


class QueueEntry(BaseModel):
    """A pending auto-booking request retried on every queue tick."""

    id: int
    chat_id: Optional[str] = None
    date: date
    time_from: str
    time_to: str
    status: QueueStatus = QueueStatus.PENDING
    calendar_event_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Monitor(BaseModel):
    """A recurring watch rule that pings a chat about new slots."""

    id: str
    chat_id: str
    from_time: str
    to_time: str
    dates: list[date] = Field(default_factory=list)
    days_of_week: list[str] = Field(default_factory=list)
    description: Optional[str] = None
    active: bool = True
    last_notified: dict[str, list[str]] = Field(
        default_factory=dict,
        description="ISO date -> slot keys already notified for that date",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class BookingResult(BaseModel):
    """Outcome of one reservation attempt."""

    success: bool
    slot: CourtAvailability
    reservation_id: Optional[str] = None
    error: Optional[str] = None


class Player(BaseModel):
    """A booking partner added to reservations next to the account owner."""

    name: str
    user_id: str = Field(..., description="Site user id used in the players[n] field")
    email: Optional[str] = None


class NotificationResult(BaseModel):
    """Result of Telegram notification delivery."""

    success: bool = Field(
        description="Whether the notification was sent successfully"
    )
    message_id: Optional[int] = Field(
        default=None,
        description="Telegram message id if successful",
    )
    recipient: str = Field(description="Recipient chat id")
    error: Optional[str] = Field(
        default=None,
        description="Error message if delivery failed",
    )
    sent_at: datetime = Field(
        default_factory=utcnow,
        description="When the notification was sent",
    )


class QueueRunSummary(BaseModel):
    """What one queue tick did."""

    expired: list[int] = Field(default_factory=list)
    processed: int = 0
    booked: list[int] = Field(default_factory=list)


class ScanResult(BaseModel):
    """What one snapshot scan found and did."""

    changes: list[CourtAvailability] = Field(default_factory=list)
    newly_available: list[CourtAvailability] = Field(default_factory=list)
    no_longer_available: list[CourtAvailability] = Field(default_factory=list)
    booking: Optional[BookingResult] = None
    notified: bool = False
