from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from .models import DEFAULT_CATEGORY, EntryKind, EntryStatus


def strip_optional(value: object) -> object:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class EntryCreate(BaseModel):
    name: str
    phone: str
    email: Optional[str] = None
    kind: EntryKind = EntryKind.WALK_IN
    category: str = DEFAULT_CATEGORY

    @field_validator("kind", mode="before")
    @classmethod
    def default_kind(cls, value: object) -> object:
        if value in (None, ""):
            return EntryKind.WALK_IN
        return value

    @field_validator("email", mode="before")
    @classmethod
    def parse_email(cls, value: object) -> object:
        return strip_optional(value)


class EntryUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    category: Optional[str] = None

    model_config = ConfigDict(extra="forbid")


class StatusUpdate(BaseModel):
    status: EntryStatus


class EntryRead(BaseModel):
    id: int
    name: str
    phone: str
    email: Optional[str] = None
    sequence_number: int
    kind: EntryKind
    status: EntryStatus
    category: str
    arrival_time: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class EntryView(EntryRead):
    """An entry as it appears in the published queue."""

    position: int
    estimated_wait_minutes: int


class TrackedEntryRead(EntryRead):
    tracking_link: str


class RegistrationRead(TrackedEntryRead):
    notification_sent: bool


class ServingRead(BaseModel):
    current: Optional[EntryRead] = None
    completed: Optional[EntryRead] = None
    queue: list[EntryView]
    detail: str


class QueueSummary(BaseModel):
    current: Optional[EntryView] = None
    next: Optional[EntryView] = None
    waiting_count: int
    active_count: int


class DisplayRead(QueueSummary):
    done_today: int
    queue: list[EntryView]


class CountRead(BaseModel):
    count: int


class MessageRead(BaseModel):
    message: str
