"""Recurrence update propagation: preview, single / this-and-future / entire-series edits."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, time, timedelta

import pytest

from booking_primitives.capacity import CapacityManager
from booking_primitives.propagation import RecurrenceUpdatePropagator
from booking_primitives.recurrence import RecurrenceManager
from booking_primitives.store import InMemoryStore
from booking_primitives.types import (
    ActivityDetails,
    ActivityStatus,
    CorruptPatternError,
    Outcome,
    RecurrencePattern,
    RecurrenceType,
    Registration,
    RegistrationStatus,
    UpdateScope,
)

from conftest import dt, make_activity, snapshot

TEN_WEEKS = RecurrencePattern(type=RecurrenceType.WEEKLY, max_occurrences=10)


@pytest.fixture
def series(store, clock):
    """Ten weekly Monday 09:00-10:00 sessions starting in the reference week."""
    master = make_activity(
        "series-1", capacity=2, start=dt("mon", "09:00"), end=dt("mon", "10:00"),
        title="Morning Drills",
    )
    result = RecurrenceManager(store, clock=clock).create_series(master, TEN_WEEKS)
    assert result.ok
    return result.occurrences


@pytest.fixture
def three_done(series, store, clock):
    """Occurrences 1-3 completed and the clock past the third one."""
    for occurrence in series[:3]:
        store.add(replace(occurrence, status=ActivityStatus.COMPLETED))
    clock.set(datetime(2025, 1, 21, 12, 0))
    return series


def _afternoon(occurrence) -> ActivityDetails:
    day = occurrence.start.date()
    return ActivityDetails(
        start=datetime.combine(day, time(14, 0)),
        end=datetime.combine(day, time(15, 0)),
    )


def _by_number(store, series_id="series-1"):
    return {o.occurrence_number: o for o in store.list_series_occurrences(series_id)}


class TestThisAndFuture:

    def test_tail_regenerated_at_new_time(self, propagator, store, three_done):
        fourth = three_done[3]
        result = propagator.apply_update(
            "series-1", _afternoon(fourth),
            scope=UpdateScope.THIS_AND_FUTURE, occurrence_id=fourth.id,
        )

        assert result.outcome is Outcome.OK
        assert (result.removed, result.added, result.retained) == (7, 7, 3)

        after = _by_number(store)
        assert sorted(after) == list(range(1, 11))
        for number in (1, 2, 3):
            assert after[number] == replace(
                three_done[number - 1], status=ActivityStatus.COMPLETED
            )
        for number in range(4, 11):
            occurrence = after[number]
            assert occurrence.start.time() == time(14, 0)
            assert occurrence.end.time() == time(15, 0)
            assert occurrence.start.date() == three_done[number - 1].start.date()
            assert occurrence.id != three_done[number - 1].id

    def test_registrations_on_removed_occurrences(self, propagator, store, clock, three_done):
        capacity = CapacityManager(store, clock=clock)
        capacity.register(three_done[4].id, "A")
        capacity.register(three_done[4].id, "B")
        capacity.register(three_done[6].id, "A")
        store.add(Registration(
            id="past-reg", activity_id=three_done[1].id, member_id="C",
            status=RegistrationStatus.CONFIRMED, registered_at=dt("mon", "08:00"),
        ))

        result = propagator.apply_update(
            "series-1", ActivityDetails(title="Evening Drills"),
            scope=UpdateScope.THIS_AND_FUTURE, occurrence_id=three_done[3].id,
        )
        assert result.registrations_affected == 3
        assert result.affected_members == ["A", "B"]
        assert result.warnings == [
            "2 events with registrations were cancelled",
            "2 members will need to re-register",
        ]
        assert store.list_registrations(three_done[4].id) == []
        assert len(store.list_registrations(three_done[1].id)) == 1

    def test_new_pattern_replaces_root_pattern(self, propagator, store, series):
        pattern = RecurrencePattern(
            type=RecurrenceType.WEEKLY, weekdays=frozenset({0, 3}), max_occurrences=10
        )
        result = propagator.apply_update(
            "series-1", None, new_pattern=pattern,
            scope=UpdateScope.THIS_AND_FUTURE, occurrence_id=series[7].id,
        )
        assert result.ok
        assert store.get_activity("series-1").pattern == pattern
        after = _by_number(store)
        assert sorted(after) == list(range(1, 11))
        assert after[8].start == series[7].start
        assert after[9].start == series[7].start + timedelta(days=3)
        assert after[10].start == series[8].start

    def test_started_occurrence_kept(self, propagator, store, clock, series):
        clock.set(series[3].start + timedelta(minutes=10))
        store.add(replace(series[3], status=ActivityStatus.IN_PROGRESS))
        result = propagator.apply_update(
            "series-1", ActivityDetails(capacity=4),
            scope=UpdateScope.THIS_AND_FUTURE, occurrence_id=series[3].id,
        )
        assert (result.removed, result.added, result.retained) == (6, 6, 4)
        after = _by_number(store)
        assert after[4].id == series[3].id
        assert after[4].capacity == 2
        assert all(after[n].capacity == 4 for n in range(5, 11))

    def test_cancelled_occurrence_not_regenerated(self, propagator, store, series):
        store.add(replace(series[5], status=ActivityStatus.CANCELLED))
        result = propagator.apply_update(
            "series-1", ActivityDetails(price=5.0),
            scope=UpdateScope.THIS_AND_FUTURE, occurrence_id=series[3].id,
        )
        assert (result.removed, result.added) == (6, 6)
        after = _by_number(store)
        assert after[6].id == series[5].id
        assert after[6].status is ActivityStatus.CANCELLED
        assert len(store.list_series_occurrences("series-1")) == 10


class TestEntireSeries:

    def test_root_and_all_future_updated(self, propagator, store, three_done):
        result = propagator.apply_update(
            "series-1", ActivityDetails(title="Advanced Drills", capacity=6),
            scope=UpdateScope.ENTIRE_SERIES,
        )
        assert (result.removed, result.added, result.retained) == (7, 7, 3)
        root = store.get_activity("series-1")
        assert root.title == "Advanced Drills"
        assert root.is_series_root
        after = _by_number(store)
        assert after[1].title == "Morning Drills"
        assert all(after[n].title == "Advanced Drills" for n in range(4, 11))
        assert all(after[n].capacity == 6 for n in range(4, 11))
        assert [after[n].start for n in range(4, 11)] == [
            o.start for o in three_done[3:]
        ]

    def test_shorter_pattern_drops_tail(self, propagator, store, series):
        result = propagator.apply_update(
            "series-1", None, new_pattern=replace(TEN_WEEKS, max_occurrences=6),
            scope=UpdateScope.ENTIRE_SERIES,
        )
        assert (result.removed, result.added) == (10, 6)
        assert sorted(_by_number(store)) == [1, 2, 3, 4, 5, 6]

    def test_new_pattern_keeps_every_future_slot(self, propagator, store, three_done):
        monthly = RecurrencePattern(type=RecurrenceType.MONTHLY, max_occurrences=4)
        result = propagator.apply_update(
            "series-1", None, new_pattern=monthly, scope=UpdateScope.ENTIRE_SERIES,
        )
        assert (result.removed, result.added, result.retained) == (7, 3, 3)

        after = _by_number(store)
        assert sorted(after) == [1, 2, 3, 4, 5, 6]
        assert all(after[n].status is ActivityStatus.COMPLETED for n in (1, 2, 3))
        assert [after[n].start for n in (4, 5, 6)] == [
            datetime(2025, 2, 6, 9, 0),
            datetime(2025, 3, 6, 9, 0),
            datetime(2025, 4, 6, 9, 0),
        ]


class TestSingleOccurrence:

    def test_detached_and_edited(self, propagator, store, clock, series):
        target = series[4]
        CapacityManager(store, clock=clock).register(target.id, "A")

        result = propagator.apply_update(
            "series-1", ActivityDetails(title="Guest Coach", instructor_id="coach-9"),
            scope=UpdateScope.SINGLE_OCCURRENCE, occurrence_id=target.id,
        )
        assert result.ok
        assert (result.added, result.removed, result.retained) == (0, 0, 9)

        detached = store.get_activity(target.id)
        assert detached.series_id is None
        assert detached.detached_from == "series-1"
        assert detached.title == "Guest Coach"
        assert detached.start == target.start
        assert len(store.list_registrations(target.id)) == 1
        assert target.id not in {o.id for o in store.list_series_occurrences("series-1")}

    def test_moving_start_keeps_duration(self, propagator, store, series):
        target = series[2]
        propagator.apply_update(
            "series-1", ActivityDetails(start=target.start + timedelta(hours=2)),
            scope=UpdateScope.SINGLE_OCCURRENCE, occurrence_id=target.id,
        )
        moved = store.get_activity(target.id)
        assert moved.end - moved.start == timedelta(hours=1)

    def test_capacity_below_confirmed_warns(self, propagator, store, clock, series):
        target = series[1]
        capacity = CapacityManager(store, clock=clock)
        capacity.register(target.id, "A")
        capacity.register(target.id, "B")

        result = propagator.apply_update(
            "series-1", ActivityDetails(capacity=1), new_pattern=TEN_WEEKS,
            scope=UpdateScope.SINGLE_OCCURRENCE, occurrence_id=target.id,
        )
        assert result.warnings == [
            "Pattern changes do not apply to a single occurrence",
            "Capacity 1 is below the 2 confirmed registrations",
        ]

    def test_details_required(self, propagator, series):
        result = propagator.apply_update(
            "series-1", None,
            scope=UpdateScope.SINGLE_OCCURRENCE, occurrence_id=series[0].id,
        )
        assert result.outcome is Outcome.VALIDATION_ERROR

    def test_occurrence_required(self, propagator, store, series):
        before = snapshot(store)
        result = propagator.apply_update(
            "series-1", ActivityDetails(title="x"), scope=UpdateScope.SINGLE_OCCURRENCE,
        )
        assert result.outcome is Outcome.VALIDATION_ERROR
        assert result.reasons == ["occurrence_id is required for this scope"]
        assert snapshot(store) == before


class _LateRegistrationStore(InMemoryStore):
    """Runs ``late`` on another thread just before the first nested activity lock."""

    def __init__(self) -> None:
        super().__init__(default_timeout=1.0)
        self.late = None

    @contextmanager
    def transaction(self, *keys, timeout=None):
        nested = self.in_transaction and any(k.startswith("activity:") for k in keys)
        if nested and self.late is not None:
            late, self.late = self.late, None
            worker = threading.Thread(target=late)
            worker.start()
            worker.join()
        with super().transaction(*keys, timeout=timeout):
            yield


class TestRegistrationDuringUpdate:

    def test_late_registration_is_reported(self, clock):
        store = _LateRegistrationStore()
        master = make_activity(
            "series-1", capacity=2, start=dt("mon", "09:00"), end=dt("mon", "10:00"),
        )
        occurrences = RecurrenceManager(store, clock=clock).create_series(
            master, TEN_WEEKS
        ).occurrences
        capacity = CapacityManager(store, clock=clock)
        late_results = []
        store.late = lambda: late_results.append(
            capacity.register(occurrences[6].id, "Z")
        )

        result = RecurrenceUpdatePropagator(store, clock=clock).apply_update(
            "series-1", ActivityDetails(title="Evening Drills"),
            scope=UpdateScope.THIS_AND_FUTURE, occurrence_id=occurrences[3].id,
        )

        assert [r.ok for r in late_results] == [True]
        assert result.registrations_affected == 1
        assert result.affected_members == ["Z"]
        assert store.list_registrations(occurrences[6].id) == []


class TestPreview:

    def test_retime_preview_matches_apply(self, propagator, store, three_done):
        fourth = three_done[3]
        before = snapshot(store)
        preview = propagator.preview_update(
            "series-1", None, occurrence_id=fourth.id, details=_afternoon(fourth)
        )
        assert snapshot(store) == before

        assert (preview.removed, preview.added, preview.retained) == (7, 7, 3)
        assert [c.occurrence_number for c in preview.retimed_occurrences] == list(range(4, 11))
        change = preview.retimed_occurrences[0]
        assert (change.old_start, change.new_start) == (
            fourth.start, datetime.combine(fourth.start.date(), time(14, 0))
        )
        assert preview.added_occurrences == []
        assert preview.removed_occurrences == []

        applied = propagator.apply_update(
            "series-1", _afternoon(fourth), occurrence_id=fourth.id
        )
        assert (applied.removed, applied.added, applied.retained) == (7, 7, 3)

    def test_pattern_preview_lists_dropped_occurrences(self, propagator, store, clock, series):
        CapacityManager(store, clock=clock).register(series[9].id, "A")
        preview = propagator.preview_update(
            "series-1", replace(TEN_WEEKS, max_occurrences=8)
        )
        assert [c.occurrence_number for c in preview.removed_occurrences] == [9, 10]
        assert preview.removed_occurrences[1].registrations == 1
        assert preview.retimed_occurrences == []
        assert preview.registrations_affected == 1
        assert preview.warnings == [
            "1 registrations will be affected",
            "1 events with registrations need handling",
        ]

    def test_pattern_preview_lists_new_occurrences(self, propagator, series):
        preview = propagator.preview_update(
            "series-1", replace(TEN_WEEKS, max_occurrences=12)
        )
        assert [c.occurrence_number for c in preview.added_occurrences] == [11, 12]
        assert all(c.old_start is None for c in preview.added_occurrences)


class TestRejections:

    def test_unknown_series(self, propagator, store, series):
        before = snapshot(store)
        result = propagator.apply_update(
            "nope", ActivityDetails(title="x"), scope=UpdateScope.ENTIRE_SERIES
        )
        assert result.outcome is Outcome.NOT_FOUND
        assert snapshot(store) == before

    def test_occurrence_is_not_a_series_root(self, propagator, series):
        result = propagator.preview_update(series[0].id, None)
        assert result.outcome is Outcome.NOT_FOUND

    def test_standalone_activity(self, propagator, store, series):
        store.add(make_activity("one-off"))
        before = snapshot(store)
        result = propagator.apply_update(
            "series-1", ActivityDetails(title="x"), occurrence_id="one-off"
        )
        assert result.outcome is Outcome.VALIDATION_ERROR
        assert result.reasons == ["Activity is not part of a recurring series"]
        assert snapshot(store) == before

    def test_occurrence_of_another_series(self, propagator, store, clock, series):
        other = make_activity("series-2", start=dt("tue", "09:00"), end=dt("tue", "10:00"))
        foreign = RecurrenceManager(store, clock=clock).create_series(
            other, replace(TEN_WEEKS, max_occurrences=2)
        ).occurrences[0]
        result = propagator.apply_update(
            "series-1", ActivityDetails(title="x"),
            scope=UpdateScope.SINGLE_OCCURRENCE, occurrence_id=foreign.id,
        )
        assert result.outcome is Outcome.VALIDATION_ERROR

    def test_occurrence_required(self, propagator, series):
        result = propagator.apply_update("series-1", ActivityDetails(title="x"))
        assert result.outcome is Outcome.VALIDATION_ERROR
        assert result.reasons == ["occurrence_id is required for this scope"]

    def test_invalid_new_pattern(self, propagator, store, series):
        before = snapshot(store)
        result = propagator.apply_update(
            "series-1", None,
            new_pattern=RecurrencePattern(type=RecurrenceType.DAILY, interval=0),
            scope=UpdateScope.ENTIRE_SERIES,
        )
        assert result.outcome is Outcome.VALIDATION_ERROR
        assert snapshot(store) == before

    def test_invalid_details(self, propagator, series):
        result = propagator.apply_update(
            "series-1", ActivityDetails(end=dt("mon", "08:00")),
            scope=UpdateScope.ENTIRE_SERIES,
        )
        assert result.outcome is Outcome.VALIDATION_ERROR

    def test_corrupt_stored_pattern_raises(self, propagator, store, series):
        root = store.get_activity("series-1")
        store.add(replace(root, pattern=replace(TEN_WEEKS, interval=0)))
        with pytest.raises(CorruptPatternError):
            propagator.apply_update(
                "series-1", ActivityDetails(title="x"), scope=UpdateScope.ENTIRE_SERIES
            )
