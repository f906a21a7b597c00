"""Recurrence Update Propagator: push a pattern or detail change into a series.

Scopes:
    SINGLE_OCCURRENCE  the target is detached from its series and edited alone.
    THIS_AND_FUTURE    unstarted occurrences from the target onward are
                       deleted with their registrations and regenerated from
                       the edited target.
    ENTIRE_SERIES      as THIS_AND_FUTURE, anchored at the series root.

preview_update runs the same planning as apply_update without saving.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from booking_primitives.recurrence import (
    RecurrenceManager,
    generate_occurrences,
    stored_pattern,
)
from booking_primitives.schema import validate_interval, validate_pattern
from booking_primitives.settings import DEFAULT_SETTINGS, SchedulerSettings
from booking_primitives.store import ChangeSet, activity_key, series_key
from booking_primitives.types import (
    Activity,
    ActivityDetails,
    ActivityStatus,
    OccurrenceChange,
    Outcome,
    RecurrencePattern,
    RecurrenceUpdateResult,
    Registration,
    RegistrationStatus,
    UpdateScope,
)

if TYPE_CHECKING:
    from booking_primitives.store import SchedulingStore

logger = logging.getLogger(__name__)

# Occurrences in these states are history and are never regenerated.
_SETTLED = frozenset({
    ActivityStatus.COMPLETED,
    ActivityStatus.CANCELLED,
    ActivityStatus.IN_PROGRESS,
})

_INACTIVE = frozenset({RegistrationStatus.CANCELLED, RegistrationStatus.DECLINED})


def apply_details(activity: Activity, details: ActivityDetails | None) -> Activity:
    """Overwrite fields from details, keeping duration and deadline offsets.

    A new start without a new end keeps the old duration. Deadlines that are
    not overridden move with the start.
    """
    if details is None:
        return activity
    updated = details.apply_to(activity)
    if details.start is not None and details.end is None:
        updated = replace(updated, end=updated.start + activity.duration)

    shift = updated.start - activity.start
    if shift:
        if details.registration_deadline is None and activity.registration_deadline:
            updated = replace(
                updated, registration_deadline=activity.registration_deadline + shift
            )
        if details.cancellation_deadline is None and activity.cancellation_deadline:
            updated = replace(
                updated, cancellation_deadline=activity.cancellation_deadline + shift
            )
    return updated


@dataclass
class _Plan:
    root: Activity
    pattern: RecurrencePattern
    removed: list[Activity]
    regenerated: list[Activity]
    retained: int
    registrations: list[Registration] = field(default_factory=list)

    @property
    def affected_members(self) -> list[str]:
        return sorted({r.member_id for r in self.registrations})


def _failure(outcome: Outcome, *reasons: str) -> RecurrenceUpdateResult:
    return RecurrenceUpdateResult(outcome=outcome, reasons=list(reasons))


class RecurrenceUpdatePropagator:
    """Previews and applies edits to recurring series."""

    def __init__(
        self,
        store: SchedulingStore,
        settings: SchedulerSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.manager = RecurrenceManager(store, settings, clock)

    def preview_update(
        self,
        series_id: str,
        new_pattern: RecurrencePattern | None,
        occurrence_id: str | None = None,
        details: ActivityDetails | None = None,
    ) -> RecurrenceUpdateResult:
        """Report what apply_update would change. Saves nothing.

        Without occurrence_id the preview covers the entire series, otherwise
        the target occurrence and everything after it.
        """
        scope = (
            UpdateScope.THIS_AND_FUTURE if occurrence_id else UpdateScope.ENTIRE_SERIES
        )
        plan = self._plan(series_id, details, new_pattern, scope, occurrence_id)
        if isinstance(plan, RecurrenceUpdateResult):
            return plan

        result = self._summarise(plan)
        old = {o.occurrence_number: o for o in plan.removed}
        new = {o.occurrence_number: o for o in plan.regenerated}
        counts: dict[str, int] = {}
        for r in plan.registrations:
            counts[r.activity_id] = counts.get(r.activity_id, 0) + 1

        for number in sorted(set(old) | set(new), key=lambda n: n or 0):
            before, after = old.get(number), new.get(number)
            change = OccurrenceChange(
                occurrence_number=number or 0,
                old_start=before.start if before else None,
                new_start=after.start if after else None,
                registrations=counts.get(before.id, 0) if before else 0,
            )
            if before is None:
                result.added_occurrences.append(change)
            elif after is None:
                result.removed_occurrences.append(change)
            elif before.start != after.start:
                result.retimed_occurrences.append(change)

        if result.registrations_affected:
            with_registrations = len({r.activity_id for r in plan.registrations})
            result.warnings.append(
                f"{result.registrations_affected} registrations will be affected"
            )
            result.warnings.append(
                f"{with_registrations} events with registrations need handling"
            )
        return result

    def apply_update(
        self,
        series_id: str,
        details: ActivityDetails | None,
        new_pattern: RecurrencePattern | None = None,
        scope: UpdateScope = UpdateScope.THIS_AND_FUTURE,
        occurrence_id: str | None = None,
    ) -> RecurrenceUpdateResult:
        """Apply details and/or a new pattern to a series under ``scope``."""
        if scope is UpdateScope.SINGLE_OCCURRENCE:
            return self._update_single(series_id, details, new_pattern, occurrence_id)

        with self.store.transaction(
            series_key(series_id), timeout=self.settings.lock_timeout_seconds
        ):
            plan = self._plan(series_id, details, new_pattern, scope, occurrence_id)
            if isinstance(plan, RecurrenceUpdateResult):
                return plan

            root = replace(plan.root, pattern=plan.pattern)
            if scope is UpdateScope.ENTIRE_SERIES:
                root = replace(apply_details(root, details), pattern=plan.pattern)

            # Deleted and reported registrations come from this one locked read.
            with self.store.transaction(
                *(activity_key(o.id) for o in plan.removed),
                timeout=self.settings.lock_timeout_seconds,
            ):
                doomed = [
                    r for o in plan.removed for r in self.store.list_registrations(o.id)
                ]
                plan.registrations = [r for r in doomed if r.status not in _INACTIVE]
                changes = ChangeSet().put(root, *plan.regenerated)
                changes.delete(*plan.removed, *doomed)
                self.store.save(changes)

        result = self._summarise(plan)
        if result.registrations_affected:
            with_registrations = len({r.activity_id for r in plan.registrations})
            result.warnings.append(
                f"{with_registrations} events with registrations were cancelled"
            )
            result.warnings.append(
                f"{len(result.affected_members)} members will need to re-register"
            )

        logger.info(
            "Series %s updated (%s): deleted %d, created %d, preserved %d",
            series_id, scope.value, result.removed, result.added, result.retained,
        )
        return result

    # ------------------------------------------------------------------

    def _update_single(
        self,
        series_id: str,
        details: ActivityDetails | None,
        new_pattern: RecurrencePattern | None,
        occurrence_id: str | None,
    ) -> RecurrenceUpdateResult:
        if details is None:
            return _failure(
                Outcome.VALIDATION_ERROR,
                "details are required for a single-occurrence update",
            )

        with self.store.transaction(
            series_key(series_id), timeout=self.settings.lock_timeout_seconds
        ):
            found = self._locate(series_id, occurrence_id)
            if isinstance(found, RecurrenceUpdateResult):
                return found
            _, occurrence = found
            if occurrence is None:
                return _failure(
                    Outcome.VALIDATION_ERROR, "occurrence_id is required for this scope"
                )

            with self.store.transaction(
                activity_key(occurrence.id), timeout=self.settings.lock_timeout_seconds
            ):
                occurrence = self.store.get_activity(occurrence.id) or occurrence
                edited = apply_details(occurrence, details)
                errors = self._template_errors(edited)
                if errors:
                    return _failure(Outcome.VALIDATION_ERROR, *errors)

                detached = replace(edited, series_id=None, detached_from=series_id)
                self.store.save(ChangeSet().put(detached))
                confirmed = self.store.count_confirmed_registrations(occurrence.id)

        warnings: list[str] = []
        if new_pattern is not None:
            warnings.append("Pattern changes do not apply to a single occurrence")
        if detached.capacity < confirmed:
            warnings.append(
                f"Capacity {detached.capacity} is below the {confirmed} "
                f"confirmed registrations"
            )
        retained = len(self.store.list_series_occurrences(series_id))

        logger.info(
            "Occurrence %s detached from series %s and updated", occurrence.id, series_id
        )
        return RecurrenceUpdateResult(
            outcome=Outcome.OK, retained=retained, warnings=warnings
        )

    def _locate(
        self, series_id: str, occurrence_id: str | None
    ) -> tuple[Activity, Activity | None] | RecurrenceUpdateResult:
        """Resolve the series root and, if given, an occurrence inside it."""
        root = self.store.get_activity(series_id)
        if root is None or not root.is_series_root:
            return _failure(Outcome.NOT_FOUND, f"Series {series_id!r} not found")
        if occurrence_id is None:
            return root, None

        occurrence = self.store.get_activity(occurrence_id)
        if occurrence is None:
            return _failure(Outcome.NOT_FOUND, f"Activity {occurrence_id!r} not found")
        if occurrence.series_id is None:
            return _failure(
                Outcome.VALIDATION_ERROR, "Activity is not part of a recurring series"
            )
        if occurrence.is_series_root or occurrence.series_id != series_id:
            return _failure(
                Outcome.VALIDATION_ERROR,
                f"Activity {occurrence_id!r} is not an occurrence of series {series_id!r}",
            )
        return root, occurrence

    @staticmethod
    def _template_errors(activity: Activity) -> list[str]:
        errors = validate_interval(activity.start, activity.end)
        if activity.capacity < 0:
            errors.append("capacity cannot be negative")
        return errors

    def _plan(
        self,
        series_id: str,
        details: ActivityDetails | None,
        new_pattern: RecurrencePattern | None,
        scope: UpdateScope,
        occurrence_id: str | None,
    ) -> _Plan | RecurrenceUpdateResult:
        """Work out which occurrences go and what replaces them."""
        if scope is not UpdateScope.ENTIRE_SERIES and occurrence_id is None:
            return _failure(
                Outcome.VALIDATION_ERROR, "occurrence_id is required for this scope"
            )

        found = self._locate(
            series_id,
            None if scope is UpdateScope.ENTIRE_SERIES else occurrence_id,
        )
        if isinstance(found, RecurrenceUpdateResult):
            return found
        root, occurrence = found
        anchor = occurrence or root

        if new_pattern is not None:
            errors = validate_pattern(new_pattern)
            if errors:
                return _failure(Outcome.VALIDATION_ERROR, *errors)
            pattern = new_pattern
        else:
            pattern = stored_pattern(root)

        template = apply_details(anchor, details)
        errors = self._template_errors(template)
        if errors:
            return _failure(Outcome.VALIDATION_ERROR, *errors)

        now = self.clock()
        series = self.store.list_series_occurrences(series_id)
        tail = [o for o in series if o.start >= anchor.start]
        removed = [o for o in tail if o.status not in _SETTLED and o.start > now]
        removed_ids = {o.id for o in removed}
        retained = [o for o in series if o.id not in removed_ids]
        # Settled slots that have not ended yet still stand for their number.
        live_numbers = {
            o.occurrence_number for o in tail
            if o.id not in removed_ids and o.end > now
        }

        start_number = (
            1 if scope is UpdateScope.ENTIRE_SERIES else anchor.occurrence_number or 1
        )
        generated = generate_occurrences(
            template, pattern,
            start_number=start_number,
            until=self.manager.generation_window(pattern),
            settings=self.settings,
        )
        regenerated = [
            o for o in generated
            if o.start > now and o.occurrence_number not in live_numbers
        ]
        taken = {o.occurrence_number for o in retained}
        if any(o.occurrence_number in taken for o in regenerated):
            # A new pattern reuses numbers held by history; continue after it.
            first = max(n or 0 for n in taken) + 1
            regenerated = [
                replace(o, occurrence_number=number)
                for number, o in enumerate(regenerated, start=first)
            ]

        registrations = [
            r
            for o in removed
            for r in self.store.list_registrations(o.id)
            if r.status not in _INACTIVE
        ]
        return _Plan(
            root=root,
            pattern=pattern,
            removed=removed,
            regenerated=regenerated,
            retained=len(retained),
            registrations=registrations,
        )

    @staticmethod
    def _summarise(plan: _Plan) -> RecurrenceUpdateResult:
        return RecurrenceUpdateResult(
            outcome=Outcome.OK,
            added=len(plan.regenerated),
            removed=len(plan.removed),
            retained=plan.retained,
            registrations_affected=len(plan.registrations),
            affected_members=plan.affected_members,
        )
