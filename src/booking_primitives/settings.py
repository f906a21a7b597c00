"""Boundary: SchedulerSettings, the tunables shared by every service. Immutable."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from booking_primitives.schema import validate_settings


@dataclass(frozen=True)
class SchedulerSettings:
    """Configuration set once when the services are built.

    search_horizon_days:    days scanned for a next free slot
    modify_cutoff:          bookings starting sooner than this are frozen
    check_in_window:        slack around start for check-in and no-show
    lock_timeout_seconds:   how long a transaction waits for its locks
    *_months:               rolling window for recurring series
    max_occurrences_per_generation: runaway guard for one generation pass
    """

    search_horizon_days: int = 7
    modify_cutoff: timedelta = timedelta(hours=2)
    check_in_window: timedelta = timedelta(minutes=15)
    lock_timeout_seconds: float = 5.0
    initial_generation_months: int = 6
    minimum_future_months: int = 3
    extension_batch_months: int = 6
    max_occurrences_per_generation: int = 500
    history_retention_months: int = 12

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> SchedulerSettings:
        """Build settings from a plain mapping; durations are given in minutes.

        Raises ValueError listing every invalid key.
        """
        errors = validate_settings(raw)
        if errors:
            raise ValueError(
                "Invalid scheduler settings:\n"
                + "\n".join(f"  - {e}" for e in errors)
            )

        values = dict(raw)
        if "modify_cutoff_minutes" in values:
            values["modify_cutoff"] = timedelta(
                minutes=values.pop("modify_cutoff_minutes")
            )
        if "check_in_window_minutes" in values:
            values["check_in_window"] = timedelta(
                minutes=values.pop("check_in_window_minutes")
            )
        return cls(**values)


DEFAULT_SETTINGS = SchedulerSettings()
