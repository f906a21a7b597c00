"""booking-primitives: Availability, capacity and recurrence rules for club scheduling."""

from booking_primitives.availability import AvailabilityChecker
from booking_primitives.capacity import CapacityManager
from booking_primitives.overlap import classify_overlap, overlap_minutes, overlaps
from booking_primitives.propagation import RecurrenceUpdatePropagator
from booking_primitives.recurrence import RecurrenceManager, generate_occurrences
from booking_primitives.reservations import ReservationService
from booking_primitives.settings import DEFAULT_SETTINGS, SchedulerSettings
from booking_primitives.store import ChangeSet, InMemoryStore, SchedulingStore
from booking_primitives.types import (
    Activity,
    ActivityDetails,
    CorruptPatternError,
    LockTimeoutError,
    Outcome,
    RecurrencePattern,
    RecurrenceType,
    Registration,
    RegistrationStatus,
    Reservation,
    ReservationStatus,
    Resource,
    SchedulingError,
    StoreError,
    UpdateScope,
)

__all__ = [
    "Activity",
    "ActivityDetails",
    "AvailabilityChecker",
    "CapacityManager",
    "ChangeSet",
    "CorruptPatternError",
    "DEFAULT_SETTINGS",
    "InMemoryStore",
    "LockTimeoutError",
    "Outcome",
    "RecurrenceManager",
    "RecurrencePattern",
    "RecurrenceType",
    "RecurrenceUpdatePropagator",
    "Registration",
    "RegistrationStatus",
    "Reservation",
    "ReservationService",
    "ReservationStatus",
    "Resource",
    "SchedulerSettings",
    "SchedulingError",
    "SchedulingStore",
    "StoreError",
    "UpdateScope",
    "classify_overlap",
    "generate_occurrences",
    "overlap_minutes",
    "overlaps",
]
