import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator

from sqlalchemy import delete, func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from .errors import NotFound, StoreUnavailable
from .models import ACTIVE_STATUSES, Entry, EntryStatus, SequenceCounter


logger = logging.getLogger(__name__)

SEQUENCE_COUNTER_NAME = "entry"


class EntryStore:
    """Entry reads and writes bound to one session.

    Nothing is committed here; the caller owns the transaction through
    :func:`open_entry_store`.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def insert(self, entry: Entry) -> int:
        self.session.add(entry)
        counter = self.session.get(SequenceCounter, SEQUENCE_COUNTER_NAME)
        if counter is None:
            counter = SequenceCounter(name=SEQUENCE_COUNTER_NAME)
        counter.last_value = max(counter.last_value, entry.sequence_number)
        self.session.add(counter)
        self.session.flush()
        return entry.id

    def get(self, entry_id: int) -> Entry:
        entry = self.session.get(Entry, entry_id)
        if entry is None:
            raise NotFound(f"Entry {entry_id} not found")
        return entry

    def update(self, entry_id: int, patch: dict[str, Any]) -> Entry:
        entry = self.get(entry_id)
        for field, value in patch.items():
            setattr(entry, field, value)
        self.session.add(entry)
        self.session.flush()
        return entry

    def delete(self, entry_id: int) -> bool:
        entry = self.session.get(Entry, entry_id)
        if entry is None:
            return False
        self.session.delete(entry)
        self.session.flush()
        return True

    def delete_all(self) -> int:
        result = self.session.execute(delete(Entry))
        self.session.flush()
        return result.rowcount or 0

    def list_active(self) -> list[Entry]:
        return list(
            self.session.exec(
                select(Entry)
                .where(col(Entry.status).in_(ACTIVE_STATUSES))
                .order_by(col(Entry.arrival_time).asc(), col(Entry.sequence_number).asc())
            ).all()
        )

    def list_in_progress(self) -> list[Entry]:
        return list(
            self.session.exec(
                select(Entry)
                .where(Entry.status == EntryStatus.IN_PROGRESS)
                .order_by(col(Entry.sequence_number).asc())
            ).all()
        )

    def max_sequence_number(self) -> int:
        column_max = self.session.exec(select(func.max(Entry.sequence_number))).one()
        counter = self.session.get(SequenceCounter, SEQUENCE_COUNTER_NAME)
        issued = counter.last_value if counter is not None else 0
        return max(column_max or 0, issued)

    def count_completed_between(self, start: datetime, end: datetime) -> int:
        return self.session.exec(
            select(func.count())
            .select_from(Entry)
            .where(
                Entry.status == EntryStatus.DONE,
                col(Entry.completed_at) >= start,
                col(Entry.completed_at) < end,
            )
        ).one()


@contextmanager
def open_entry_store(bind: Engine) -> Iterator[EntryStore]:
    """Run one unit of work against the entry table.

    Commits when the block exits cleanly and rolls back otherwise. Database
    failures are re-raised as :class:`StoreUnavailable`.
    """
    session = Session(bind, expire_on_commit=False)
    try:
        yield EntryStore(session)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("Entry store operation failed: %s", exc)
        raise StoreUnavailable("Entry store is unavailable") from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
