"""Recurrence Generator and series upkeep.

generate_occurrences expands a series root (or any occurrence used as an
anchor) into concrete dated occurrences. RecurrenceManager persists a new
series, rolls its window forward, prunes old history, and reports broken
series links.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Callable, Iterator

from dateutil.relativedelta import relativedelta

from booking_primitives.schema import validate_interval, validate_pattern
from booking_primitives.settings import DEFAULT_SETTINGS, SchedulerSettings
from booking_primitives.store import ChangeSet, series_key
from booking_primitives.types import (
    Activity,
    ActivityStatus,
    CorruptPatternError,
    IntegrityReport,
    Outcome,
    RecurrencePattern,
    RecurrenceType,
    SeriesResult,
    new_id,
)

if TYPE_CHECKING:
    from booking_primitives.store import SchedulingStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pure generation
# ---------------------------------------------------------------------------


def iter_occurrence_starts(
    anchor: datetime, pattern: RecurrencePattern
) -> Iterator[datetime]:
    """Yield start datetimes of a pattern, beginning at the anchor. Unbounded.

    Month and year steps are always taken from the anchor, so a series on
    the 31st lands on the last day of short months and returns to the 31st
    afterwards.
    """
    interval = pattern.interval
    kind = pattern.type

    if kind is RecurrenceType.NONE:
        return

    if kind is RecurrenceType.WEEKLY and pattern.weekdays:
        # Interval windows are Monday-based weeks counted from the anchor's week.
        first_week = anchor.date() - timedelta(days=anchor.weekday())
        weekdays = sorted(pattern.weekdays)
        k = 0
        while True:
            window = first_week + timedelta(weeks=k * interval)
            for weekday in weekdays:
                day = window + timedelta(days=weekday)
                if day >= anchor.date():
                    yield datetime.combine(day, anchor.time())
            k += 1

    k = 0
    while True:
        if kind is RecurrenceType.DAILY:
            yield anchor + timedelta(days=k * interval)
        elif kind is RecurrenceType.WEEKLY:
            yield anchor + timedelta(weeks=k * interval)
        elif kind is RecurrenceType.MONTHLY:
            yield anchor + relativedelta(months=k * interval)
        elif kind is RecurrenceType.YEARLY:
            yield anchor + relativedelta(years=k * interval)
        else:
            raise ValueError(f"Unsupported recurrence type: {kind!r}")
        k += 1


def _shift(deadline: datetime | None, master: Activity, start: datetime) -> datetime | None:
    """Carry a deadline's offset from the master's start over to a new start."""
    if deadline is None:
        return None
    return start + (deadline - master.start)


def make_occurrence(master: Activity, start: datetime, number: int) -> Activity:
    """Copy of master at ``start`` with a fresh id and no enrollments."""
    return replace(
        master,
        id=new_id(),
        start=start,
        end=start + master.duration,
        enrolled=0,
        status=ActivityStatus.SCHEDULED,
        registration_deadline=_shift(master.registration_deadline, master, start),
        cancellation_deadline=_shift(master.cancellation_deadline, master, start),
        series_id=master.series_id or master.id,
        occurrence_number=number,
        is_series_root=False,
        pattern=None,
        detached_from=None,
    )


def generate_occurrences(
    master: Activity,
    pattern: RecurrencePattern,
    *,
    start_number: int = 1,
    until: datetime | None = None,
    settings: SchedulerSettings = DEFAULT_SETTINGS,
) -> list[Activity]:
    """Expand ``pattern`` from ``master``'s start into numbered occurrences.

    Generation stops at the first of: a start past pattern.end_date, an
    occurrence number above pattern.max_occurrences, a start after
    ``until``, or settings.max_occurrences_per_generation items.

    Raises CorruptPatternError if the pattern is invalid.
    """
    errors = validate_pattern(pattern)
    if errors:
        raise CorruptPatternError(master.series_id or master.id, errors)

    occurrences: list[Activity] = []
    for number, start in enumerate(
        iter_occurrence_starts(master.start, pattern), start=start_number
    ):
        if pattern.max_occurrences is not None and number > pattern.max_occurrences:
            break
        if pattern.end_date is not None and start.date() > pattern.end_date:
            break
        if until is not None and start > until:
            break
        if len(occurrences) >= settings.max_occurrences_per_generation:
            logger.warning(
                "Generation for series %s capped at %d occurrences",
                master.series_id or master.id,
                settings.max_occurrences_per_generation,
            )
            break
        occurrences.append(make_occurrence(master, start, number))

    return occurrences


def stored_pattern(root: Activity) -> RecurrencePattern:
    """The root's pattern, validated. Raises CorruptPatternError."""
    pattern = root.pattern
    if pattern is None:
        raise CorruptPatternError(root.id, ["series root has no pattern"])
    errors = validate_pattern(pattern)
    if errors:
        raise CorruptPatternError(root.id, errors)
    return pattern


# ---------------------------------------------------------------------------
# Series upkeep
# ---------------------------------------------------------------------------


class RecurrenceManager:
    """Creates series and keeps their rolling window of occurrences healthy."""

    def __init__(
        self,
        store: SchedulingStore,
        settings: SchedulerSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock

    def generation_window(self, pattern: RecurrencePattern) -> datetime | None:
        """Upper bound for unbounded patterns; None when the pattern ends itself."""
        if pattern.is_bounded:
            return None
        return self.clock() + relativedelta(months=self.settings.initial_generation_months)

    def create_series(
        self, master: Activity, pattern: RecurrencePattern
    ) -> SeriesResult:
        """Store master as a series root plus its first batch of occurrences."""
        errors = validate_pattern(pattern)
        errors.extend(validate_interval(master.start, master.end))
        if pattern.type is RecurrenceType.NONE:
            errors.append("A series needs a repeating pattern")
        if master.capacity < 0:
            errors.append("capacity cannot be negative")
        if errors:
            return SeriesResult(outcome=Outcome.VALIDATION_ERROR, reasons=errors)

        root = replace(
            master,
            series_id=master.id,
            occurrence_number=None,
            is_series_root=True,
            pattern=pattern,
        )
        occurrences = generate_occurrences(
            root, pattern,
            until=self.generation_window(pattern),
            settings=self.settings,
        )

        with self.store.transaction(
            series_key(root.id), timeout=self.settings.lock_timeout_seconds
        ):
            self.store.save(ChangeSet().put(root, *occurrences))

        logger.info(
            "Generated %d initial occurrences for series %s",
            len(occurrences), root.id,
        )
        return SeriesResult(outcome=Outcome.OK, root=root, occurrences=occurrences)

    def extend_series(self, series_id: str) -> list[Activity]:
        """Top up an unbounded series when its last occurrence gets close.

        Continues numbering and timing from the latest occurrence, so details
        changed by an earlier update carry forward.
        """
        with self.store.transaction(
            series_key(series_id), timeout=self.settings.lock_timeout_seconds
        ):
            root = self.store.get_activity(series_id)
            if root is None or not root.is_series_root:
                return []
            if root.status is ActivityStatus.CANCELLED:
                return []
            pattern = stored_pattern(root)

            now = self.clock()
            occurrences = self.store.list_series_occurrences(series_id)
            if not occurrences:
                anchor, first_number, skip = root, 1, 0
                last_start = now
            else:
                anchor = max(occurrences, key=lambda o: o.occurrence_number or 0)
                first_number, skip = anchor.occurrence_number or 0, 1
                last_start = anchor.start

            if last_start >= now + relativedelta(months=self.settings.minimum_future_months):
                return []

            until = max(last_start, now) + relativedelta(
                months=self.settings.extension_batch_months
            )
            fresh = generate_occurrences(
                anchor, pattern,
                start_number=first_number,
                until=until,
                settings=self.settings,
            )[skip:]
            self.store.save(ChangeSet().put(*fresh))

        if fresh:
            logger.info(
                "Extended series %s with %d new occurrences until %s",
                series_id, len(fresh), until.isoformat(),
            )
        return fresh

    def cleanup_old_occurrences(self) -> int:
        """Delete completed occurrences that ended before the retention cutoff."""
        cutoff = self.clock() - relativedelta(
            months=self.settings.history_retention_months
        )
        stale = [
            a for a in self.store.list_activities()
            if a.series_id is not None
            and not a.is_series_root
            and a.status is ActivityStatus.COMPLETED
            and a.end < cutoff
        ]
        if not stale:
            return 0

        changes = ChangeSet().delete(*stale)
        for occurrence in stale:
            changes.delete(*self.store.list_registrations(occurrence.id))
        self.store.save(changes)

        logger.info(
            "Cleaned up %d old occurrences before %s", len(stale), cutoff.isoformat()
        )
        return len(stale)

    def validate_integrity(self) -> IntegrityReport:
        """Find active roots with no occurrences and occurrences with no root."""
        activities = self.store.list_activities()
        roots = {a.id: a for a in activities if a.is_series_root}

        members: dict[str, int] = {}
        orphaned: list[str] = []
        for a in activities:
            if a.is_series_root or a.series_id is None:
                continue
            if a.series_id in roots:
                members[a.series_id] = members.get(a.series_id, 0) + 1
            else:
                orphaned.append(a.id)

        empty = [
            root_id for root_id, root in roots.items()
            if root.status is not ActivityStatus.CANCELLED and not members.get(root_id)
        ]

        for root_id in empty:
            logger.warning(
                "Series root %s has no occurrences - may need regeneration", root_id
            )
        if orphaned:
            logger.warning("Found %d orphaned occurrences", len(orphaned))

        return IntegrityReport(
            roots_without_occurrences=tuple(empty),
            orphaned_occurrences=tuple(orphaned),
        )

    def upcoming_occurrences(self, series_id: str, count: int = 10) -> list[Activity]:
        now = self.clock()
        upcoming = [
            o for o in self.store.list_series_occurrences(series_id) if o.start >= now
        ]
        return upcoming[:count]

    def occurrence_on(self, series_id: str, day: date) -> Activity | None:
        for occurrence in self.store.list_series_occurrences(series_id):
            if occurrence.start.date() == day:
                return occurrence
        return None
