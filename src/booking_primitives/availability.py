"""Availability Checker: can a resource take a reservation for [start, end)?

check_availability is a pure read. It reports every rule the request breaks
and, when something fails, proposes the next day (within the search horizon)
on which the same time of day and duration would pass.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from booking_primitives.overlap import classify_overlap, overlap_minutes
from booking_primitives.schema import validate_interval
from booking_primitives.settings import DEFAULT_SETTINGS, SchedulerSettings
from booking_primitives.types import AvailabilityResult, Conflict, Outcome, Resource

if TYPE_CHECKING:
    from booking_primitives.store import SchedulingStore

logger = logging.getLogger(__name__)

CONFLICT_REASON = "Time slot conflicts with existing reservations"

_DAY_NAMES = [
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
]


def _minutes(delta: timedelta) -> int:
    return int(delta.total_seconds()) // 60


class AvailabilityChecker:
    """Overlap, operating-rule and duration checks against one store."""

    def __init__(
        self,
        store: SchedulingStore,
        settings: SchedulerSettings = DEFAULT_SETTINGS,
    ) -> None:
        self.store = store
        self.settings = settings

    def check_availability(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_reservation_id: str | None = None,
    ) -> AvailabilityResult:
        """Decide whether [start, end) can be reserved on the resource.

        exclude_reservation_id lets an existing booking be moved without
        colliding with itself.
        """
        errors = validate_interval(start, end)
        if errors:
            return AvailabilityResult(
                is_available=False,
                conflict_reasons=errors,
                outcome=Outcome.VALIDATION_ERROR,
            )

        resource = self.store.get_resource(resource_id)
        if resource is None:
            return AvailabilityResult(
                is_available=False,
                conflict_reasons=[f"Resource {resource_id!r} not found"],
                outcome=Outcome.NOT_FOUND,
            )

        result = self.evaluate(resource, start, end, exclude_reservation_id)
        if not result.is_available:
            result.next_available_slot = self.next_available_slot(
                resource, start, end, exclude_reservation_id
            )

        logger.debug(
            "Availability %s %s-%s: available=%s reasons=%s next=%s",
            resource_id, start.isoformat(), end.isoformat(),
            result.is_available, result.conflict_reasons,
            result.next_available_slot,
        )
        return result

    def evaluate(
        self,
        resource: Resource,
        start: datetime,
        end: datetime,
        exclude_reservation_id: str | None = None,
    ) -> AvailabilityResult:
        """Run the overlap, operating-rule and duration checks. No slot search."""
        reasons: list[str] = []

        conflicting = self.store.list_overlapping_reservations(
            resource.id, start, end, exclude_reservation_id
        )
        if conflicting:
            reasons.append(CONFLICT_REASON)

        reasons.extend(self._operating_violations(resource, start, end))
        reasons.extend(self._duration_violations(resource, start, end))

        return AvailabilityResult(
            is_available=not reasons,
            conflict_reasons=reasons,
            conflicting_reservations=conflicting,
        )

    def next_available_slot(
        self,
        resource: Resource,
        start: datetime,
        end: datetime,
        exclude_reservation_id: str | None = None,
    ) -> datetime | None:
        """First day from end's date whose same-time slot passes every check."""
        duration = end - start
        base = datetime.combine(end.date(), start.time())

        for day in range(self.settings.search_horizon_days):
            proposed_start = base + timedelta(days=day)
            proposed_end = proposed_start + duration
            candidate = self.evaluate(
                resource, proposed_start, proposed_end, exclude_reservation_id
            )
            if candidate.is_available:
                return proposed_start
        return None

    def list_conflicts(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_reservation_id: str | None = None,
    ) -> list[Conflict]:
        """Describe each blocking reservation overlapping [start, end).

        Raises ValueError if the interval is malformed.
        """
        errors = validate_interval(start, end)
        if errors:
            raise ValueError("; ".join(errors))

        reservations = self.store.list_overlapping_reservations(
            resource_id, start, end, exclude_reservation_id
        )
        return [
            Conflict(
                reservation=r,
                overlap_type=classify_overlap(start, end, r.start, r.end),
                overlap_minutes=overlap_minutes(start, end, r.start, r.end),
            )
            for r in reservations
        ]

    # ------------------------------------------------------------------
    # Rule checks
    # ------------------------------------------------------------------

    @staticmethod
    def _operating_violations(
        resource: Resource, start: datetime, end: datetime
    ) -> list[str]:
        reasons: list[str] = []

        weekday = start.weekday()
        if resource.operating_days and weekday not in resource.operating_days:
            reasons.append(f"Resource is not open on {_DAY_NAMES[weekday]}")

        if resource.opening_time is not None and start.time() < resource.opening_time:
            reasons.append(
                f"Booking starts before operating hours "
                f"({resource.opening_time:%H:%M})"
            )

        if resource.closing_time is not None and (
            end.date() > start.date() or end.time() > resource.closing_time
        ):
            reasons.append(
                f"Booking ends after operating hours "
                f"({resource.closing_time:%H:%M})"
            )

        return reasons

    @staticmethod
    def _duration_violations(
        resource: Resource, start: datetime, end: datetime
    ) -> list[str]:
        reasons: list[str] = []
        minutes = _minutes(end - start)

        if minutes < resource.min_duration_minutes:
            reasons.append(
                f"Booking duration below minimum "
                f"({resource.min_duration_minutes} minutes)"
            )
        if minutes > resource.max_duration_minutes:
            reasons.append(
                f"Booking duration exceeds maximum "
                f"({resource.max_duration_minutes} minutes)"
            )
        return reasons
