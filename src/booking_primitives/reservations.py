"""Reservation lifecycle: book, move, cancel, check in/out, no-show.

Every write re-runs the availability check inside a transaction locked on
the resource, so the check and the write cannot interleave with another
request for the same resource.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from booking_primitives.availability import AvailabilityChecker
from booking_primitives.schema import validate_interval
from booking_primitives.settings import DEFAULT_SETTINGS, SchedulerSettings
from booking_primitives.store import ChangeSet, resource_key
from booking_primitives.types import (
    BookingResult,
    Outcome,
    Reservation,
    ReservationStatus,
    ResourceStatus,
    new_id,
)

if TYPE_CHECKING:
    from booking_primitives.store import SchedulingStore

logger = logging.getLogger(__name__)

_FROZEN_FOR_MODIFY = frozenset({
    ReservationStatus.CANCELLED,
    ReservationStatus.CHECKED_IN,
    ReservationStatus.COMPLETED,
})


def _failure(outcome: Outcome, *reasons: str) -> BookingResult:
    return BookingResult(outcome=outcome, reasons=list(reasons))


class ReservationService:
    """Reservation writes for one store."""

    def __init__(
        self,
        store: SchedulingStore,
        settings: SchedulerSettings = DEFAULT_SETTINGS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.checker = AvailabilityChecker(store, settings)

    def book(
        self,
        resource_id: str,
        member_id: str,
        start: datetime,
        end: datetime,
        notes: str | None = None,
    ) -> BookingResult:
        """Create a Confirmed reservation if the slot is free."""
        errors = validate_interval(start, end)
        if not member_id:
            errors.append("member_id is required")
        if errors:
            return _failure(Outcome.VALIDATION_ERROR, *errors)

        with self.store.transaction(
            resource_key(resource_id), timeout=self.settings.lock_timeout_seconds
        ):
            resource = self.store.get_resource(resource_id)
            if resource is None:
                return _failure(Outcome.NOT_FOUND, f"Resource {resource_id!r} not found")
            if resource.status is not ResourceStatus.AVAILABLE:
                return _failure(Outcome.CONFLICT, "Facility is not available for booking")

            now = self.clock()
            if start - now > timedelta(days=resource.max_days_in_advance):
                return _failure(
                    Outcome.CONFLICT,
                    f"Bookings open at most {resource.max_days_in_advance} days "
                    f"in advance",
                )

            availability = self.checker.check_availability(resource_id, start, end)
            if not availability.is_available:
                return BookingResult(
                    outcome=Outcome.CONFLICT,
                    reasons=list(availability.conflict_reasons),
                    availability=availability,
                )

            reservation = Reservation(
                id=new_id(),
                resource_id=resource_id,
                member_id=member_id,
                start=start,
                end=end,
                status=ReservationStatus.CONFIRMED,
                notes=notes,
                created_at=now,
            )
            self.store.save(ChangeSet().put(reservation))

        logger.info(
            "Reservation %s booked on %s for member %s (%s-%s)",
            reservation.id, resource_id, member_id,
            start.isoformat(), end.isoformat(),
        )
        return BookingResult(
            outcome=Outcome.OK, reservation=reservation, availability=availability
        )

    def modify(
        self, reservation_id: str, start: datetime, end: datetime
    ) -> BookingResult:
        """Move a reservation to [start, end) on the same resource."""
        errors = validate_interval(start, end)
        if errors:
            return _failure(Outcome.VALIDATION_ERROR, *errors)

        current = self.store.get_reservation(reservation_id)
        if current is None:
            return _failure(Outcome.NOT_FOUND, f"Reservation {reservation_id!r} not found")

        with self.store.transaction(
            resource_key(current.resource_id),
            timeout=self.settings.lock_timeout_seconds,
        ):
            reservation = self.store.get_reservation(reservation_id)
            if reservation is None:
                return _failure(
                    Outcome.NOT_FOUND, f"Reservation {reservation_id!r} not found"
                )

            now = self.clock()
            if reservation.start <= now + self.settings.modify_cutoff:
                hours = self.settings.modify_cutoff.total_seconds() / 3600
                return _failure(
                    Outcome.CONFLICT,
                    f"Cannot modify booking less than {hours:g} hours before start time",
                )
            if reservation.status in _FROZEN_FOR_MODIFY:
                return _failure(
                    Outcome.CONFLICT,
                    f"Cannot modify booking with status: {reservation.status.value}",
                )

            availability = self.checker.check_availability(
                reservation.resource_id, start, end,
                exclude_reservation_id=reservation.id,
            )
            if not availability.is_available:
                return BookingResult(
                    outcome=Outcome.CONFLICT,
                    reservation=reservation,
                    reasons=list(availability.conflict_reasons),
                    availability=availability,
                )

            moved = replace(reservation, start=start, end=end)
            self.store.save(ChangeSet().put(moved))

        logger.info(
            "Reservation %s moved to %s-%s",
            reservation_id, start.isoformat(), end.isoformat(),
        )
        return BookingResult(outcome=Outcome.OK, reservation=moved, availability=availability)

    def cancel(self, reservation_id: str, reason: str | None = None) -> BookingResult:
        def apply(reservation: Reservation, now: datetime) -> BookingResult:
            if reservation.status is ReservationStatus.CANCELLED:
                return _failure(Outcome.CONFLICT, "Booking is already cancelled")
            if reservation.status is ReservationStatus.COMPLETED:
                return _failure(Outcome.CONFLICT, "Cannot cancel completed booking")
            return self._ok(replace(
                reservation,
                status=ReservationStatus.CANCELLED,
                cancelled_at=now,
                cancellation_reason=reason or "Cancelled by user",
            ))

        return self._transition(reservation_id, apply)

    def check_in(self, reservation_id: str) -> BookingResult:
        def apply(reservation: Reservation, now: datetime) -> BookingResult:
            if reservation.status is not ReservationStatus.CONFIRMED:
                return _failure(
                    Outcome.CONFLICT,
                    f"Cannot check in booking with status: {reservation.status.value}",
                )
            window = self.settings.check_in_window
            if now < reservation.start - window:
                return _failure(
                    Outcome.CONFLICT,
                    f"Cannot check in more than {_minutes(window)} minutes "
                    f"before booking start time",
                )
            return self._ok(replace(
                reservation, status=ReservationStatus.CHECKED_IN, checked_in_at=now
            ))

        return self._transition(reservation_id, apply)

    def check_out(self, reservation_id: str) -> BookingResult:
        """Checked-in bookings end as Completed once their end time has passed."""
        def apply(reservation: Reservation, now: datetime) -> BookingResult:
            if reservation.status is not ReservationStatus.CHECKED_IN:
                return _failure(
                    Outcome.CONFLICT,
                    f"Cannot check out booking with status: {reservation.status.value}",
                )
            status = (
                ReservationStatus.COMPLETED
                if now >= reservation.end
                else ReservationStatus.CHECKED_OUT
            )
            return self._ok(replace(reservation, status=status, checked_out_at=now))

        return self._transition(reservation_id, apply)

    def mark_no_show(self, reservation_id: str) -> BookingResult:
        def apply(reservation: Reservation, now: datetime) -> BookingResult:
            if reservation.status is not ReservationStatus.CONFIRMED:
                return _failure(
                    Outcome.CONFLICT,
                    f"Cannot mark no-show for booking with status: "
                    f"{reservation.status.value}",
                )
            window = self.settings.check_in_window
            if now < reservation.start + window:
                return _failure(
                    Outcome.CONFLICT,
                    f"Cannot mark no-show until {_minutes(window)} minutes "
                    f"after booking start time",
                )
            return self._ok(replace(reservation, status=ReservationStatus.NO_SHOW))

        return self._transition(reservation_id, apply)

    # ------------------------------------------------------------------

    @staticmethod
    def _ok(reservation: Reservation) -> BookingResult:
        return BookingResult(outcome=Outcome.OK, reservation=reservation)

    def _transition(
        self,
        reservation_id: str,
        apply: Callable[[Reservation, datetime], BookingResult],
    ) -> BookingResult:
        """Load, decide, and save a single status change under the resource lock."""
        current = self.store.get_reservation(reservation_id)
        if current is None:
            return _failure(Outcome.NOT_FOUND, f"Reservation {reservation_id!r} not found")

        with self.store.transaction(
            resource_key(current.resource_id),
            timeout=self.settings.lock_timeout_seconds,
        ):
            reservation = self.store.get_reservation(reservation_id) or current
            result = apply(reservation, self.clock())
            if result.ok:
                self.store.save(ChangeSet().put(result.reservation))

        if result.ok:
            logger.info(
                "Reservation %s is now %s",
                reservation_id, result.reservation.status.value,
            )
        return result


def _minutes(delta: timedelta) -> int:
    return int(delta.total_seconds()) // 60
