"""Capacity & Waitlist Manager: admission, cancellation and FIFO promotion.

An activity admits Confirmed registrations up to its capacity. Beyond that,
members queue on the waitlist (if the activity allows one) in registration
order. Waitlist positions are always the contiguous run 1..N.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from booking_primitives.settings import DEFAULT_SETTINGS, SchedulerSettings
from booking_primitives.store import ChangeSet, activity_key
from booking_primitives.types import (
    Activity,
    ActivityStatus,
    BulkRegistrationResult,
    CancellationResult,
    EnrollmentCheck,
    Outcome,
    Registration,
    RegistrationResult,
    RegistrationStatus,
    new_id,
)

if TYPE_CHECKING:
    from booking_primitives.store import SchedulingStore

logger = logging.getLogger(__name__)

FULL_REASON = "Event is full and waitlist is not allowed"

_CLOSED_FOR_REGISTRATION = frozenset({ActivityStatus.CANCELLED, ActivityStatus.COMPLETED})


def plan_promotion(
    activity: Activity,
    confirmed_count: int,
    waitlisted: list[Registration],
) -> tuple[Activity, list[Registration], list[Registration]]:
    """Work out who leaves the waitlist and how the rest are renumbered.

    waitlisted must be ordered by registered_at. Returns the activity with
    its enrollment counter advanced, the promoted registrations, and the
    remaining waitlisted registrations whose position changed.
    """
    spots = activity.capacity - confirmed_count
    promoted: list[Registration] = []
    if spots > 0:
        promoted = [
            replace(r, status=RegistrationStatus.CONFIRMED, waitlist_position=None)
            for r in waitlisted[:spots]
        ]

    remaining = waitlisted[len(promoted):]
    renumbered = [
        replace(r, waitlist_position=position)
        for position, r in enumerate(remaining, start=1)
        if r.waitlist_position != position
    ]

    if promoted:
        activity = replace(activity, enrolled=activity.enrolled + len(promoted))
    return activity, promoted, renumbered


class CapacityManager:
    """Registration admission and waitlist upkeep for activities."""

    def __init__(
        self,
        store: SchedulingStore,
        settings: SchedulerSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock

    def register(
        self, activity_id: str, member_id: str, notes: str | None = None
    ) -> RegistrationResult:
        """Confirm, waitlist or decline a member for an activity."""
        if not member_id:
            return RegistrationResult(
                outcome=Outcome.VALIDATION_ERROR, reasons=["member_id is required"]
            )

        with self.store.transaction(
            activity_key(activity_id), timeout=self.settings.lock_timeout_seconds
        ):
            activity = self.store.get_activity(activity_id)
            if activity is None:
                return RegistrationResult(
                    outcome=Outcome.NOT_FOUND,
                    reasons=[f"Activity {activity_id!r} not found"],
                )

            now = self.clock()
            refusal = self._admission_refusal(activity, member_id, now)
            if refusal:
                return RegistrationResult(outcome=Outcome.CONFLICT, reasons=[refusal])

            confirmed = self.store.count_confirmed_registrations(activity_id)
            if confirmed < activity.capacity:
                registration = Registration(
                    id=new_id(),
                    activity_id=activity_id,
                    member_id=member_id,
                    status=RegistrationStatus.CONFIRMED,
                    registered_at=now,
                    notes=notes,
                )
                activity = replace(activity, enrolled=activity.enrolled + 1)
                self.store.save(ChangeSet().put(registration, activity))
            elif activity.allow_waitlist:
                position = len(self.store.list_waitlisted(activity_id)) + 1
                registration = Registration(
                    id=new_id(),
                    activity_id=activity_id,
                    member_id=member_id,
                    status=RegistrationStatus.WAITLISTED,
                    registered_at=now,
                    waitlist_position=position,
                    notes=notes,
                )
                self.store.save(ChangeSet().put(registration))
            else:
                logger.info(
                    "Registration declined for member %s on full activity %s",
                    member_id, activity_id,
                )
                return RegistrationResult(
                    outcome=Outcome.CONFLICT,
                    status=RegistrationStatus.DECLINED,
                    reasons=[FULL_REASON],
                )

        logger.info(
            "Member %s %s for activity %s%s",
            member_id, registration.status.value.lower(), activity_id,
            f" at position {registration.waitlist_position}"
            if registration.waitlist_position else "",
        )
        return RegistrationResult(
            outcome=Outcome.OK,
            status=registration.status,
            waitlist_position=registration.waitlist_position,
            registration=registration,
        )

    def cancel(self, registration_id: str) -> CancellationResult:
        """Cancel a registration and promote from the waitlist in the same save."""
        current = self.store.get_registration(registration_id)
        if current is None:
            return CancellationResult(
                outcome=Outcome.NOT_FOUND,
                reasons=[f"Registration {registration_id!r} not found"],
            )

        with self.store.transaction(
            activity_key(current.activity_id),
            timeout=self.settings.lock_timeout_seconds,
        ):
            registration = self.store.get_registration(registration_id) or current
            if registration.status is RegistrationStatus.CANCELLED:
                return CancellationResult(
                    outcome=Outcome.CONFLICT,
                    registration=registration,
                    reasons=["Registration is already cancelled"],
                )

            activity = self.store.get_activity(registration.activity_id)
            if activity is None:
                return CancellationResult(
                    outcome=Outcome.NOT_FOUND,
                    reasons=[f"Activity {registration.activity_id!r} not found"],
                )

            now = self.clock()
            if activity.cancellation_deadline and now > activity.cancellation_deadline:
                return CancellationResult(
                    outcome=Outcome.CONFLICT,
                    registration=registration,
                    reasons=["Cancellation deadline has passed"],
                )

            was_confirmed = registration.status is RegistrationStatus.CONFIRMED
            cancelled = replace(
                registration,
                status=RegistrationStatus.CANCELLED,
                waitlist_position=None,
                cancelled_at=now,
            )

            confirmed = self.store.count_confirmed_registrations(activity.id)
            if was_confirmed:
                confirmed -= 1
                activity = replace(activity, enrolled=max(0, activity.enrolled - 1))
            waitlisted = [
                r for r in self.store.list_waitlisted(activity.id)
                if r.id != registration.id
            ]

            activity, promoted, renumbered = plan_promotion(
                activity, confirmed, waitlisted
            )
            self.store.save(
                ChangeSet().put(cancelled, activity, *promoted, *renumbered)
            )

        logger.info(
            "Registration %s cancelled on activity %s; promoted %d from waitlist",
            registration_id, activity.id, len(promoted),
        )
        return CancellationResult(
            outcome=Outcome.OK, registration=cancelled, promoted=promoted
        )

    def promote_from_waitlist(self, activity_id: str) -> list[Registration]:
        """Fill free spots from the waitlist and close gaps in positions.

        Safe to call repeatedly: with no state change in between, the second
        call promotes nobody and writes nothing.
        """
        with self.store.transaction(
            activity_key(activity_id), timeout=self.settings.lock_timeout_seconds
        ):
            activity = self.store.get_activity(activity_id)
            if activity is None:
                return []

            activity, promoted, renumbered = plan_promotion(
                activity,
                self.store.count_confirmed_registrations(activity_id),
                self.store.list_waitlisted(activity_id),
            )
            changes = ChangeSet().put(*promoted, *renumbered)
            if promoted:
                changes.put(activity)
            self.store.save(changes)

        if promoted:
            logger.info(
                "Promoted %d registration(s) from the waitlist of activity %s",
                len(promoted), activity_id,
            )
        return promoted

    def bulk_register(
        self,
        activity_ids: list[str],
        member_ids: list[str],
        notes: str | None = None,
    ) -> BulkRegistrationResult:
        """Register every member for every activity; each pair stands alone."""
        errors: list[str] = []
        if not activity_ids:
            errors.append("No events specified for registration")
        if not member_ids:
            errors.append("No members specified for registration")
        if errors:
            return BulkRegistrationResult(
                outcome=Outcome.VALIDATION_ERROR, reasons=errors
            )

        result = BulkRegistrationResult()
        for activity_id in activity_ids:
            for member_id in member_ids:
                outcome = self.register(activity_id, member_id, notes)
                result.results.append((activity_id, member_id, outcome))

        logger.info(
            "Bulk registration completed: %d successful, %d failed",
            result.successful, result.failed,
        )
        return result

    def check_enrollment(self, activity_id: str) -> EnrollmentCheck | None:
        """Compare the cached enrollment counter with a fresh count."""
        activity = self.store.get_activity(activity_id)
        if activity is None:
            return None

        check = EnrollmentCheck(
            activity_id=activity_id,
            cached=activity.enrolled,
            actual=self.store.count_confirmed_registrations(activity_id),
        )
        if check.drifted:
            logger.warning(
                "Enrollment drift on activity %s: cached=%d actual=%d",
                activity_id, check.cached, check.actual,
            )
        return check

    # ------------------------------------------------------------------

    def _admission_refusal(
        self, activity: Activity, member_id: str, now: datetime
    ) -> str | None:
        if activity.is_series_root:
            return "Register for an occurrence, not the series template"
        if activity.status in _CLOSED_FOR_REGISTRATION:
            return f"Cannot register for an event with status: {activity.status.value}"
        if activity.registration_deadline and now > activity.registration_deadline:
            return "Registration deadline has passed"
        if self.store.find_active_registration(activity.id, member_id) is not None:
            return "Member is already registered for this event"
        return None
