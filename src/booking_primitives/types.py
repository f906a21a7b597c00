"""Shared types: entities, result values and fatal errors."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from enum import Enum


def new_id() -> str:
    """Fresh opaque identifier for a stored entity."""
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ResourceStatus(str, Enum):
    AVAILABLE = "Available"
    OCCUPIED = "Occupied"
    MAINTENANCE = "Maintenance"
    OUT_OF_ORDER = "OutOfOrder"
    RETIRED = "Retired"


class ReservationStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    CHECKED_IN = "CheckedIn"
    CHECKED_OUT = "CheckedOut"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    NO_SHOW = "NoShow"


# Statuses that hold a resource and therefore take part in overlap checks.
BLOCKING_STATUSES = frozenset(
    {ReservationStatus.CONFIRMED, ReservationStatus.CHECKED_IN}
)


class ActivityStatus(str, Enum):
    SCHEDULED = "Scheduled"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    RESCHEDULED = "Rescheduled"


class RegistrationStatus(str, Enum):
    CONFIRMED = "Confirmed"
    WAITLISTED = "Waitlisted"
    DECLINED = "Declined"
    CANCELLED = "Cancelled"


class RecurrenceType(str, Enum):
    NONE = "None"
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    YEARLY = "Yearly"


class UpdateScope(str, Enum):
    SINGLE_OCCURRENCE = "SingleOccurrence"
    THIS_AND_FUTURE = "ThisAndFuture"
    ENTIRE_SERIES = "EntireSeries"


class OverlapType(str, Enum):
    COMPLETE_OVERLAP = "Complete Overlap"
    CONTAINED_WITHIN = "Contained Within"
    PARTIAL_OVERLAP = "Partial Overlap"
    ADJACENT = "Adjacent"


class Outcome(str, Enum):
    """Kind of answer carried by every result value."""

    OK = "ok"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Resource:
    """A bookable facility and its read-only booking rules.

    operating_days uses date.weekday() numbering (0 = Monday). An empty set
    means the resource is open every day.
    """

    id: str
    name: str = ""
    status: ResourceStatus = ResourceStatus.AVAILABLE
    operating_days: frozenset[int] = frozenset()
    opening_time: time | None = None
    closing_time: time | None = None
    min_duration_minutes: int = 60
    max_duration_minutes: int = 180
    max_days_in_advance: int = 30
    capacity: int | None = None


@dataclass(frozen=True)
class Reservation:
    """A member's claim on a resource for [start, end)."""

    id: str
    resource_id: str
    member_id: str
    start: datetime
    end: datetime
    status: ReservationStatus = ReservationStatus.CONFIRMED
    notes: str | None = None
    created_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    checked_in_at: datetime | None = None
    checked_out_at: datetime | None = None

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds()) // 60


@dataclass(frozen=True)
class RecurrencePattern:
    """How a series root repeats.

    weekdays is only consulted for WEEKLY patterns. When both end_date and
    max_occurrences are set, whichever is reached first ends the series.
    """

    type: RecurrenceType = RecurrenceType.NONE
    interval: int = 1
    weekdays: frozenset[int] = frozenset()
    end_date: date | None = None
    max_occurrences: int | None = None

    @property
    def is_bounded(self) -> bool:
        return self.end_date is not None or self.max_occurrences is not None


@dataclass(frozen=True)
class Activity:
    """A capacity-bounded event. Occurrences point at their root by series_id."""

    id: str
    title: str
    start: datetime
    end: datetime
    capacity: int
    allow_waitlist: bool = True
    enrolled: int = 0
    status: ActivityStatus = ActivityStatus.SCHEDULED
    resource_id: str | None = None
    instructor_id: str | None = None
    price: float | None = None
    description: str = ""
    special_instructions: str | None = None
    required_equipment: tuple[str, ...] = ()
    registration_deadline: datetime | None = None
    cancellation_deadline: datetime | None = None
    series_id: str | None = None
    occurrence_number: int | None = None
    is_series_root: bool = False
    pattern: RecurrencePattern | None = None
    detached_from: str | None = None

    @property
    def duration(self):
        return self.end - self.start


@dataclass(frozen=True)
class ActivityDetails:
    """Field overrides for an occurrence or a series. None leaves a field alone."""

    title: str | None = None
    description: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    capacity: int | None = None
    allow_waitlist: bool | None = None
    resource_id: str | None = None
    instructor_id: str | None = None
    price: float | None = None
    special_instructions: str | None = None
    required_equipment: tuple[str, ...] | None = None
    registration_deadline: datetime | None = None
    cancellation_deadline: datetime | None = None

    def apply_to(self, activity: Activity) -> Activity:
        changes = {
            name: value
            for name, value in self.__dict__.items()
            if value is not None
        }
        return replace(activity, **changes)


@dataclass(frozen=True)
class Registration:
    """A member's place in an activity. waitlist_position is set iff Waitlisted."""

    id: str
    activity_id: str
    member_id: str
    status: RegistrationStatus
    registered_at: datetime
    waitlist_position: int | None = None
    notes: str | None = None
    cancelled_at: datetime | None = None


# ---------------------------------------------------------------------------
# Result values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Conflict:
    """An existing reservation that collides with a requested interval."""

    reservation: Reservation
    overlap_type: OverlapType
    overlap_minutes: int


@dataclass
class AvailabilityResult:
    is_available: bool
    conflict_reasons: list[str] = field(default_factory=list)
    conflicting_reservations: list[Reservation] = field(default_factory=list)
    next_available_slot: datetime | None = None
    outcome: Outcome = Outcome.OK


@dataclass
class BookingResult:
    outcome: Outcome
    reservation: Reservation | None = None
    reasons: list[str] = field(default_factory=list)
    availability: AvailabilityResult | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


@dataclass
class RegistrationResult:
    outcome: Outcome
    status: RegistrationStatus | None = None
    waitlist_position: int | None = None
    registration: Registration | None = None
    reasons: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


@dataclass
class CancellationResult:
    outcome: Outcome
    registration: Registration | None = None
    promoted: list[Registration] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


@dataclass
class BulkRegistrationResult:
    """Per (activity_id, member_id) outcomes of a bulk registration."""

    outcome: Outcome = Outcome.OK
    results: list[tuple[str, str, RegistrationResult]] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for _, _, r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return len(self.results) - self.successful


@dataclass(frozen=True)
class EnrollmentCheck:
    """Cached enrollment counter against a fresh count of confirmations."""

    activity_id: str
    cached: int
    actual: int

    @property
    def drifted(self) -> bool:
        return self.cached != self.actual


@dataclass
class SeriesResult:
    outcome: Outcome
    root: Activity | None = None
    occurrences: list[Activity] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


@dataclass(frozen=True)
class IntegrityReport:
    roots_without_occurrences: tuple[str, ...] = ()
    orphaned_occurrences: tuple[str, ...] = ()

    @property
    def is_clean(self) -> bool:
        return not self.roots_without_occurrences and not self.orphaned_occurrences


@dataclass(frozen=True)
class OccurrenceChange:
    """One line of a recurrence preview."""

    occurrence_number: int
    old_start: datetime | None
    new_start: datetime | None
    registrations: int = 0


@dataclass
class RecurrenceUpdateResult:
    outcome: Outcome
    added: int = 0
    removed: int = 0
    retained: int = 0
    registrations_affected: int = 0
    affected_members: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    added_occurrences: list[OccurrenceChange] = field(default_factory=list)
    removed_occurrences: list[OccurrenceChange] = field(default_factory=list)
    retimed_occurrences: list[OccurrenceChange] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.OK


# ---------------------------------------------------------------------------
# Fatal errors
# ---------------------------------------------------------------------------


class SchedulingError(Exception):
    """Base for conditions the scheduler cannot turn into a result value."""


class StoreError(SchedulingError):
    """Raised when the store cannot read or apply a change set."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Store failure during {operation}: {reason}")


class LockTimeoutError(SchedulingError):
    """Raised when a transaction cannot acquire its locks in time."""

    def __init__(self, keys: tuple[str, ...], timeout: float) -> None:
        self.keys = keys
        self.timeout = timeout
        super().__init__(
            f"Could not lock {', '.join(keys)} within {timeout:g}s; "
            f"nothing was written"
        )


class CorruptPatternError(SchedulingError):
    """Raised when a stored recurrence pattern fails validation."""

    def __init__(self, series_id: str, errors: list[str]) -> None:
        self.series_id = series_id
        self.errors = errors
        super().__init__(
            f"Recurrence pattern of series {series_id!r} is invalid: "
            + "; ".join(errors)
        )
