"""Queue composition and wait-time annotation tests."""

from datetime import datetime, timedelta, timezone

import pytest

from clinic_queue.models import EntryKind, EntryStatus
from clinic_queue.ordering import (
    annotate_wait_times,
    compose_queue,
    summarize_queue,
    tracking_reference,
)

from .conftest import make_entry


BOOKED = EntryKind.BOOKED
WALK_IN = EntryKind.WALK_IN


def ids(entries):
    return [entry.id for entry in entries]


class TestComposeQueue:
    def test_three_booked_then_one_walk_in(self):
        # B1..B4 are ids 1-4, W1 and W2 are ids 5-6, all arriving together
        entries = [make_entry(i, BOOKED) for i in range(1, 5)]
        entries += [make_entry(i, WALK_IN) for i in (5, 6)]

        assert ids(compose_queue(entries)) == [1, 2, 3, 5, 4, 6]

    def test_empty_input(self):
        assert compose_queue([]) == []

    def test_only_walk_ins_keep_arrival_order(self):
        start = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
        entries = [
            make_entry(1, WALK_IN, arrival_time=start + timedelta(minutes=5)),
            make_entry(2, WALK_IN, arrival_time=start),
            make_entry(3, WALK_IN, arrival_time=start + timedelta(minutes=2)),
        ]
        assert ids(compose_queue(entries)) == [2, 3, 1]

    def test_walk_ins_drain_after_booked_run_out(self):
        entries = [make_entry(1, BOOKED)]
        entries += [make_entry(i, WALK_IN) for i in (2, 3, 4)]
        assert ids(compose_queue(entries)) == [1, 2, 3, 4]

    def test_booked_drain_after_walk_ins_run_out(self):
        entries = [make_entry(i, BOOKED) for i in range(1, 9)]
        entries.append(make_entry(9, WALK_IN))
        assert ids(compose_queue(entries)) == [1, 2, 3, 9, 4, 5, 6, 7, 8]

    def test_ties_on_arrival_break_by_sequence_number(self):
        entries = [
            make_entry(1, BOOKED, sequence_number=12),
            make_entry(2, BOOKED, sequence_number=10),
            make_entry(3, BOOKED, sequence_number=11),
        ]
        assert ids(compose_queue(entries)) == [2, 3, 1]

    def test_output_is_a_stable_permutation(self):
        start = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)
        kinds = [BOOKED, WALK_IN, WALK_IN, BOOKED, BOOKED, WALK_IN, BOOKED, BOOKED, WALK_IN, BOOKED]
        entries = [
            make_entry(i, kind, arrival_time=start + timedelta(minutes=i))
            for i, kind in enumerate(kinds, start=1)
        ]

        ordered = compose_queue(list(reversed(entries)))

        assert sorted(ids(ordered)) == sorted(ids(entries))
        booked = [e.id for e in ordered if e.kind == BOOKED]
        walk_in = [e.id for e in ordered if e.kind == WALK_IN]
        assert booked == sorted(booked)
        assert walk_in == sorted(walk_in)

    def test_runs_between_walk_ins_hold_three_booked(self):
        entries = [make_entry(i, BOOKED) for i in range(1, 11)]
        entries += [make_entry(i, WALK_IN) for i in range(11, 14)]

        ordered = compose_queue(entries)

        runs = []
        run = 0
        for entry in ordered:
            if entry.kind == WALK_IN:
                runs.append(run)
                run = 0
            else:
                run += 1
        assert runs == [3, 3, 3]
        assert run == 1

    def test_in_progress_entry_is_ordered_like_any_other(self):
        entries = [
            make_entry(1, BOOKED),
            make_entry(2, WALK_IN, status=EntryStatus.IN_PROGRESS),
            make_entry(3, BOOKED),
        ]
        assert ids(compose_queue(entries)) == [1, 3, 2]

    def test_is_deterministic(self):
        entries = [make_entry(i, BOOKED if i % 3 else WALK_IN) for i in range(1, 12)]
        assert ids(compose_queue(entries)) == ids(compose_queue(list(reversed(entries))))

    def test_custom_ratio(self):
        entries = [make_entry(i, BOOKED) for i in range(1, 4)]
        entries += [make_entry(i, WALK_IN) for i in (4, 5)]
        assert ids(compose_queue(entries, booked_per_walk_in=1)) == [1, 4, 2, 5, 3]

    def test_rejects_zero_ratio(self):
        with pytest.raises(ValueError):
            compose_queue([], booked_per_walk_in=0)


class TestAnnotateWaitTimes:
    def test_positions_follow_sequence_index(self):
        entries = [make_entry(i, BOOKED) for i in range(1, 4)]

        views = annotate_wait_times(entries)

        assert [v.position for v in views] == [0, 1, 2]
        assert [v.estimated_wait_minutes for v in views] == [0, 15, 30]

    def test_in_progress_entry_is_pinned_to_zero(self):
        entries = [
            make_entry(1, BOOKED),
            make_entry(2, BOOKED),
            make_entry(3, WALK_IN, status=EntryStatus.IN_PROGRESS),
            make_entry(4, BOOKED),
        ]

        views = annotate_wait_times(entries)

        assert [v.id for v in views] == [1, 2, 3, 4]
        assert [v.position for v in views] == [0, 1, 0, 3]
        assert all(v.estimated_wait_minutes == 15 * v.position for v in views)

    def test_custom_minutes_per_entry(self):
        views = annotate_wait_times([make_entry(1, BOOKED), make_entry(2, BOOKED)], minutes_per_entry=20)
        assert [v.estimated_wait_minutes for v in views] == [0, 20]

    def test_rejects_negative_minutes(self):
        with pytest.raises(ValueError):
            annotate_wait_times([], minutes_per_entry=-1)

    def test_views_carry_entry_fields(self):
        view = annotate_wait_times([make_entry(7, WALK_IN)])[0]
        assert view.name == "Patient 7"
        assert view.kind == WALK_IN
        assert view.status == EntryStatus.WAITING


def test_summarize_queue():
    views = annotate_wait_times([
        make_entry(1, BOOKED, status=EntryStatus.IN_PROGRESS),
        make_entry(2, BOOKED),
        make_entry(3, WALK_IN),
    ])

    summary = summarize_queue(views)

    assert summary.current.id == 1
    assert summary.next.id == 2
    assert summary.waiting_count == 2
    assert summary.active_count == 3


def test_summarize_empty_queue():
    summary = summarize_queue([])
    assert summary.current is None
    assert summary.next is None
    assert summary.waiting_count == 0


def test_tracking_reference_is_built_from_sequence_number():
    assert tracking_reference(42, "http://clinic.test/") == "http://clinic.test/track?token=42"
    assert tracking_reference(42, "http://clinic.test") == "http://clinic.test/track?token=42"
