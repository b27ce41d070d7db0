"""Queue mutations and the serving state machine.

Every operation that changes the queue goes through :class:`QueueService`.
Mutations are serialized on one lock, run as a single unit of work against
the entry store in a worker thread, and publish exactly one annotated
snapshot once the unit of work has committed. A mutation that fails
publishes nothing.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, ContextManager, Optional, Union

from sqlalchemy.engine import Engine

from .broadcast import QueueBroadcaster
from .config import Settings, get_settings
from .errors import ConflictError, NotFound, ValidationError
from .models import DEFAULT_CATEGORY, Entry, EntryKind, EntryStatus, utc_now
from .notifications import NotificationSender
from .ordering import annotate_wait_times, compose_queue, tracking_reference
from .schemas import EntryView
from .store import EntryStore, open_entry_store


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Marks an optional argument the caller did not pass, as opposed to None
UNSET: Any = object()


@dataclass
class Registration:
    entry: Entry
    tracking_link: str
    notification_sent: bool


@dataclass
class ServingResult:
    current: Optional[Entry]
    completed: Optional[Entry]
    queue: list[EntryView]


def normalize_phone(phone: str) -> str:
    cleaned = re.sub(r"[\s\-().]+", "", phone or "")
    if not cleaned:
        raise ValidationError("Phone number is required")

    if cleaned.startswith("00"):
        cleaned = "+" + cleaned[2:]

    digits = cleaned[1:] if cleaned.startswith("+") else cleaned
    if not digits.isdigit() or not 6 <= len(digits) <= 15:
        raise ValidationError("Invalid phone number format")

    return cleaned


def coerce_kind(value: Union[EntryKind, str, None]) -> EntryKind:
    if value in (None, ""):
        return EntryKind.WALK_IN
    try:
        return EntryKind(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown entry kind: {value}") from exc


def coerce_status(value: Union[EntryStatus, str]) -> EntryStatus:
    try:
        return EntryStatus(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown entry status: {value}") from exc


class QueueService:
    def __init__(
        self,
        bind: Engine,
        broadcaster: QueueBroadcaster,
        notifier: NotificationSender,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.bind = bind
        self.broadcaster = broadcaster
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.clock = clock or utc_now
        self._lock = asyncio.Lock()

    def open_store(self) -> ContextManager[EntryStore]:
        return open_entry_store(self.bind)

    def tracking_link(self, sequence_number: int) -> str:
        return tracking_reference(sequence_number, self.settings.hospital_base_url)

    def annotated_queue(self, store: EntryStore) -> list[EntryView]:
        ordered = compose_queue(store.list_active(), self.settings.booked_per_walk_in)
        return annotate_wait_times(ordered, self.settings.minutes_per_entry)

    async def _mutate(self, unit_of_work: Callable[..., Any], *args: Any) -> Any:
        """Run one store transaction off the event loop, then publish its queue.

        ``unit_of_work`` returns ``(result, views)``; ``views`` is published
        before the lock is released so snapshots go out in mutation order.
        """
        async with self._lock:
            result, views = await asyncio.to_thread(unit_of_work, *args)
            await self.broadcaster.publish(views)
        return result

    # -------- reads --------

    def current_queue(self) -> list[EntryView]:
        with self.open_store() as store:
            return self.annotated_queue(store)

    def get_entry(self, entry_id: int) -> Entry:
        with self.open_store() as store:
            return store.get(entry_id)

    def today_window(self) -> tuple[datetime, datetime]:
        """Start and end of the clinic's current calendar day, in UTC."""
        zone = self.settings.zone
        today = self.clock().astimezone(zone).date()
        start = datetime.combine(today, time.min, tzinfo=zone)
        end = datetime.combine(today + timedelta(days=1), time.min, tzinfo=zone)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def done_today(self) -> int:
        start, end = self.today_window()
        with self.open_store() as store:
            return store.count_completed_between(start, end)

    # -------- mutations --------

    async def register(
        self,
        name: str,
        phone: str,
        kind: Union[EntryKind, str, None] = EntryKind.WALK_IN,
        email: Optional[str] = None,
        category: Optional[str] = DEFAULT_CATEGORY,
    ) -> Registration:
        name = (name or "").strip()
        phone = (phone or "").strip()
        if not name or not phone:
            raise ValidationError("Name and phone are required")
        phone = normalize_phone(phone)
        kind = coerce_kind(kind)

        def insert_entry() -> tuple[Entry, list[EntryView]]:
            with self.open_store() as store:
                entry = Entry(
                    name=name,
                    phone=phone,
                    email=(email or "").strip() or None,
                    sequence_number=store.max_sequence_number() + 1,
                    kind=kind,
                    status=EntryStatus.WAITING,
                    category=(category or "").strip() or DEFAULT_CATEGORY,
                    arrival_time=self.clock(),
                )
                store.insert(entry)
                views = self.annotated_queue(store)
            logger.info("Registered %s entry with token %s", entry.kind.value, entry.sequence_number)
            return entry, views

        entry = await self._mutate(insert_entry)
        notification_sent = await self.notify(entry)
        return Registration(
            entry=entry,
            tracking_link=self.tracking_link(entry.sequence_number),
            notification_sent=notification_sent,
        )

    async def notify(self, entry: Entry) -> bool:
        try:
            return bool(
                await asyncio.to_thread(
                    self.notifier.send, entry.phone, entry.sequence_number, entry.name
                )
            )
        except Exception as exc:
            logger.error("Notification for token %s failed: %s", entry.sequence_number, exc)
            return False

    async def update_status(self, entry_id: int, status: Union[EntryStatus, str]) -> Entry:
        """Set an entry's status directly.

        Any transition order is accepted, but a second in-progress entry is
        refused. Serving timestamps are left untouched.
        """
        status = coerce_status(status)

        def set_status() -> tuple[Entry, list[EntryView]]:
            with self.open_store() as store:
                entry = store.get(entry_id)
                if status == EntryStatus.IN_PROGRESS:
                    others = [e for e in store.list_in_progress() if e.id != entry.id]
                    if others:
                        raise ConflictError(
                            f"Entry with token {others[0].sequence_number} is already in progress"
                        )
                entry = store.update(entry_id, {"status": status})
                views = self.annotated_queue(store)
            logger.info("Entry %s status set to %s", entry.sequence_number, status.value)
            return entry, views

        return await self._mutate(set_status)

    async def update_details(
        self,
        entry_id: int,
        name: Optional[str] = UNSET,
        email: Optional[str] = UNSET,
        category: Optional[str] = UNSET,
    ) -> Entry:
        """Edit display fields. Passing ``email=None`` clears the address."""
        patch: dict[str, object] = {}
        if name is not UNSET:
            name = (name or "").strip()
            if not name:
                raise ValidationError("Name cannot be empty")
            patch["name"] = name
        if email is not UNSET:
            patch["email"] = (email or "").strip() or None
        if category is not UNSET:
            category = (category or "").strip()
            if not category:
                raise ValidationError("Category cannot be empty")
            patch["category"] = category
        if not patch:
            raise ValidationError("No fields to update")

        def apply_patch() -> tuple[Entry, list[EntryView]]:
            with self.open_store() as store:
                entry = store.update(entry_id, patch)
                views = self.annotated_queue(store)
            return entry, views

        return await self._mutate(apply_patch)

    async def delete_entry(self, entry_id: int) -> None:
        def remove() -> tuple[None, list[EntryView]]:
            with self.open_store() as store:
                if not store.delete(entry_id):
                    raise NotFound(f"Entry {entry_id} not found")
                views = self.annotated_queue(store)
            logger.info("Entry %s removed from the queue", entry_id)
            return None, views

        await self._mutate(remove)

    async def reset(self) -> int:
        def remove_all() -> tuple[int, list[EntryView]]:
            with self.open_store() as store:
                removed = store.delete_all()
                views = self.annotated_queue(store)
            logger.info("Queue reset, %d entries removed", removed)
            return removed, views

        return await self._mutate(remove_all)

    async def advance(self) -> ServingResult:
        """Finish the current consultation and start the next one.

        The next entry is the head of the queue composed after the previous
        one has been marked done, inside the same unit of work.
        """

        def serve_next() -> tuple[ServingResult, list[EntryView]]:
            now = self.clock()
            with self.open_store() as store:
                completed: Optional[Entry] = None
                for entry in store.list_in_progress():
                    completed = store.update(
                        entry.id, {"status": EntryStatus.DONE, "completed_at": now}
                    )
                    logger.info("Entry %s consultation completed", completed.sequence_number)

                ordered = compose_queue(store.list_active(), self.settings.booked_per_walk_in)
                current: Optional[Entry] = None
                if ordered:
                    current = store.update(
                        ordered[0].id, {"status": EntryStatus.IN_PROGRESS, "started_at": now}
                    )
                    logger.info("Entry %s consultation started", current.sequence_number)
                else:
                    logger.info("No entries waiting")

                views = self.annotated_queue(store)
            return ServingResult(current=current, completed=completed, queue=views), views

        return await self._mutate(serve_next)
