"""Queue composition and wait-time annotation.

Everything in this module is pure: functions read the entries they are given
and never touch the store, so they can run against any consistent snapshot.
"""

from typing import Iterable, Optional, Sequence

from .models import Entry, EntryKind, EntryStatus
from .schemas import EntryRead, EntryView, QueueSummary


BOOKED_PER_WALK_IN = 3
MINUTES_PER_ENTRY = 15


def arrival_key(entry: Entry) -> tuple:
    return (entry.arrival_time, entry.sequence_number)


def compose_queue(entries: Iterable[Entry], booked_per_walk_in: int = BOOKED_PER_WALK_IN) -> list[Entry]:
    """Merge booked and walk-in entries into one serving order.

    Up to ``booked_per_walk_in`` booked entries are taken, then one walk-in,
    until both lists run out. Whichever list outlasts the other is drained in
    its own order.
    """
    if booked_per_walk_in < 1:
        raise ValueError("booked_per_walk_in must be at least 1")

    booked: list[Entry] = []
    walk_in: list[Entry] = []
    for entry in entries:
        if entry.kind == EntryKind.BOOKED:
            booked.append(entry)
        else:
            walk_in.append(entry)
    booked.sort(key=arrival_key)
    walk_in.sort(key=arrival_key)

    ordered: list[Entry] = []
    booked_index = 0
    walk_in_index = 0
    while booked_index < len(booked) or walk_in_index < len(walk_in):
        run_end = min(booked_index + booked_per_walk_in, len(booked))
        ordered.extend(booked[booked_index:run_end])
        booked_index = run_end
        if walk_in_index < len(walk_in):
            ordered.append(walk_in[walk_in_index])
            walk_in_index += 1
    return ordered


def annotate_wait_times(ordered: Sequence[Entry], minutes_per_entry: int = MINUTES_PER_ENTRY) -> list[EntryView]:
    """Attach position and estimated wait to each entry, keeping the order.

    The in-progress entry is pinned to position 0. Every other entry keeps its
    index in the full sequence.
    """
    if minutes_per_entry < 0:
        raise ValueError("minutes_per_entry must not be negative")

    views: list[EntryView] = []
    for index, entry in enumerate(ordered):
        position = 0 if entry.status == EntryStatus.IN_PROGRESS else index
        views.append(
            EntryView(
                **EntryRead.model_validate(entry).model_dump(),
                position=position,
                estimated_wait_minutes=position * minutes_per_entry,
            )
        )
    return views


def summarize_queue(views: Sequence[EntryView]) -> QueueSummary:
    current: Optional[EntryView] = None
    next_entry: Optional[EntryView] = None
    waiting_count = 0

    for view in views:
        if view.status == EntryStatus.IN_PROGRESS and current is None:
            current = view
        if view.status == EntryStatus.WAITING:
            waiting_count += 1
            if next_entry is None:
                next_entry = view

    return QueueSummary(
        current=current,
        next=next_entry,
        waiting_count=waiting_count,
        active_count=len(views),
    )


def tracking_reference(sequence_number: int, base_url: str) -> str:
    return f"{base_url.rstrip('/')}/track?token={sequence_number}"
