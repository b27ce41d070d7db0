from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


class EntryKind(str, Enum):
    BOOKED = "BOOKED"
    WALK_IN = "WALK_IN"


class EntryStatus(str, Enum):
    WAITING = "WAITING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


ACTIVE_STATUSES = (EntryStatus.WAITING, EntryStatus.IN_PROGRESS)
DEFAULT_CATEGORY = "General"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC and hands back aware UTC on every backend."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Entry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=255, nullable=False)
    phone: str = Field(max_length=32, nullable=False)
    email: Optional[str] = Field(default=None, max_length=255)
    sequence_number: int = Field(index=True, nullable=False)
    kind: EntryKind = Field(default=EntryKind.WALK_IN, nullable=False)
    status: EntryStatus = Field(default=EntryStatus.WAITING, index=True, nullable=False)
    category: str = Field(default=DEFAULT_CATEGORY, max_length=64, nullable=False)
    arrival_time: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime, index=True, nullable=False)
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    __table_args__ = (
        UniqueConstraint("sequence_number", name="uq_entry_sequence_number"),
    )


class SequenceCounter(SQLModel, table=True):
    """Highest sequence number ever issued, kept apart from the entry rows."""

    name: str = Field(primary_key=True, max_length=32)
    last_value: int = Field(default=0, nullable=False)
