"""Input validation for intervals, resources, patterns and settings.

Every validator returns a list of error messages; an empty list means valid.
"""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Any

from booking_primitives.types import RecurrencePattern, RecurrenceType, Resource


def validate_interval(start: Any, end: Any) -> list[str]:
    """Check that [start, end) is a usable naive datetime interval."""
    errors: list[str] = []

    for name, value in (("start", start), ("end", end)):
        if not isinstance(value, datetime):
            errors.append(f"{name} must be a datetime, got {type(value).__name__}")
        elif value.tzinfo is not None:
            errors.append(
                f"{name} must be a naive datetime in facility local time "
                f"(got tzinfo={value.tzinfo!r})"
            )

    if errors:
        return errors

    if end <= start:
        errors.append(
            f"end ({end.isoformat()}) must be after start ({start.isoformat()})"
        )
    return errors


def validate_resource(resource: Resource) -> list[str]:
    """Check a resource's booking rules for internal consistency."""
    errors: list[str] = []

    if not resource.id:
        errors.append("Resource id is required")

    for day in resource.operating_days:
        if not isinstance(day, int) or day < 0 or day > 6:
            errors.append(f"Invalid operating day: {day} (must be 0-6)")

    if resource.min_duration_minutes < 0:
        errors.append("min_duration_minutes cannot be negative")
    if resource.max_duration_minutes < resource.min_duration_minutes:
        errors.append(
            f"max_duration_minutes ({resource.max_duration_minutes}) is below "
            f"min_duration_minutes ({resource.min_duration_minutes})"
        )

    if (
        resource.opening_time is not None
        and resource.closing_time is not None
        and resource.closing_time <= resource.opening_time
    ):
        errors.append(
            f"closing_time {resource.closing_time} must be after "
            f"opening_time {resource.opening_time}"
        )

    if resource.capacity is not None and resource.capacity < 1:
        errors.append("capacity must be at least 1 when set")

    return errors


def validate_pattern(pattern: RecurrencePattern) -> list[str]:
    """Check a recurrence pattern.

    Checks:
    - type is a RecurrenceType
    - interval is a positive integer
    - weekdays are 0-6 and only used with WEEKLY
    - max_occurrences, when set, is positive
    - end_date, when set, is a date
    """
    errors: list[str] = []

    if not isinstance(pattern.type, RecurrenceType):
        errors.append(f"Unknown recurrence type: {pattern.type!r}")
        return errors

    if not isinstance(pattern.interval, int) or pattern.interval < 1:
        errors.append(f"interval must be >= 1, got {pattern.interval!r}")

    for day in pattern.weekdays:
        if not isinstance(day, int) or day < 0 or day > 6:
            errors.append(f"Invalid weekday: {day} (must be 0-6)")

    if pattern.weekdays and pattern.type is not RecurrenceType.WEEKLY:
        errors.append("weekdays only apply to weekly patterns")

    if pattern.max_occurrences is not None and (
        not isinstance(pattern.max_occurrences, int) or pattern.max_occurrences < 1
    ):
        errors.append(
            f"max_occurrences must be >= 1, got {pattern.max_occurrences!r}"
        )

    if pattern.end_date is not None and (
        not isinstance(pattern.end_date, date) or isinstance(pattern.end_date, datetime)
    ):
        errors.append(f"end_date must be a date, got {pattern.end_date!r}")

    return errors


_POSITIVE_INT_SETTINGS = (
    "search_horizon_days",
    "initial_generation_months",
    "minimum_future_months",
    "extension_batch_months",
    "max_occurrences_per_generation",
    "history_retention_months",
)
_MINUTE_SETTINGS = ("modify_cutoff_minutes", "check_in_window_minutes")


def validate_settings(raw: dict[str, Any]) -> list[str]:
    """Validate a raw settings mapping (as loaded from JSON)."""
    errors: list[str] = []
    known = set(_POSITIVE_INT_SETTINGS) | set(_MINUTE_SETTINGS) | {"lock_timeout_seconds"}

    for key in raw:
        if key not in known:
            errors.append(f"Unknown setting: {key}")

    for key in _POSITIVE_INT_SETTINGS:
        if key in raw:
            value = raw[key]
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                errors.append(f"{key} must be a positive integer, got {value!r}")

    for key in _MINUTE_SETTINGS:
        if key in raw:
            value = raw[key]
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                errors.append(f"{key} must be a non-negative integer, got {value!r}")

    if "lock_timeout_seconds" in raw:
        value = raw["lock_timeout_seconds"]
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
            errors.append(f"lock_timeout_seconds must be positive, got {value!r}")

    return errors


def parse_time(s: str) -> time:
    """Parse 'HH:MM' into a time object."""
    parts = s.split(":")
    return time(int(parts[0]), int(parts[1]))
