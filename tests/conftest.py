"""Shared test fixtures and data loading for booking-primitives.

All test data lives in data/fixtures/ as JSON files.  This module loads
that data and exposes helper functions + pytest fixtures for the tests.

Reference week: Mon 2025-01-06 through Sun 2025-01-12.
Default clock: Sun 2025-01-05 12:00, advancing one second per reading.
"""

from __future__ import annotations

import json
from datetime import date, datetime, time, timedelta
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
FIXTURES_DIR = Path(__file__).resolve().parent.parent / "data" / "fixtures"
SCENARIOS_DIR = FIXTURES_DIR / "scenarios"


# ---------------------------------------------------------------------------
# Data loaders
# ---------------------------------------------------------------------------
def _load_json(path: Path):
    with open(path) as f:
        return json.load(f)


_reference = _load_json(FIXTURES_DIR / "reference.json")


# ---------------------------------------------------------------------------
# Reference constants derived from reference.json
# ---------------------------------------------------------------------------
NOW = datetime.fromisoformat(_reference["now"])

# Day lookup:  DAYS["mon"] → date(2025, 1, 6)
DAYS: dict[str, date] = {
    d["name"]: date.fromisoformat(d["date"]) for d in _reference["days"]
}


# ---------------------------------------------------------------------------
# Convenience helpers (importable by test modules)
# ---------------------------------------------------------------------------
def dt(day: str, time_label: str) -> datetime:
    """Datetime from day name and time label.

    >>> dt("mon", "09:00")
    datetime(2025, 1, 6, 9, 0)
    """
    return datetime.combine(DAYS[day], time.fromisoformat(time_label))


def at(pair: list[str] | None) -> datetime | None:
    """Datetime from a ["day", "HH:MM"] pair as stored in scenario files."""
    if pair is None:
        return None
    return dt(pair[0], pair[1])


def day_date(day: str) -> date:
    """Date object for a named day."""
    return DAYS[day]


class FakeClock:
    """Callable clock for the services. Each reading advances by ``step``."""

    def __init__(self, now: datetime = NOW, step: timedelta = timedelta(seconds=1)):
        self.now = now
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Entity factories
# ---------------------------------------------------------------------------
def load_resources():
    """All resources from resources.json, keyed by id."""
    from booking_primitives.loaders import load_resources_json

    return load_resources_json(FIXTURES_DIR / "resources.json")


def make_store(*resource_ids: str):
    """InMemoryStore seeded with the named resources (all of them by default)."""
    from booking_primitives.store import InMemoryStore

    resources = load_resources()
    store = InMemoryStore(default_timeout=1.0)
    wanted = resource_ids or tuple(resources)
    store.add(*(resources[r] for r in wanted))
    return store


def make_reservation(
    id: str,
    start: datetime,
    end: datetime,
    resource_id: str = "court-1",
    member_id: str = "m-1",
    status: str = "Confirmed",
):
    from booking_primitives.types import Reservation, ReservationStatus

    return Reservation(
        id=id,
        resource_id=resource_id,
        member_id=member_id,
        start=start,
        end=end,
        status=ReservationStatus(status),
    )


def make_activity(
    id: str = "act-1",
    capacity: int = 2,
    allow_waitlist: bool = True,
    start: datetime | None = None,
    end: datetime | None = None,
    **kwargs,
):
    """Activity on Wednesday evening of the reference week by default."""
    from booking_primitives.types import Activity

    start = start or dt("wed", "18:00")
    end = end or start + timedelta(hours=1)
    return Activity(
        id=id,
        title=kwargs.pop("title", "Beginners Tennis"),
        start=start,
        end=end,
        capacity=capacity,
        allow_waitlist=allow_waitlist,
        **kwargs,
    )


def make_pattern(data: dict):
    """RecurrencePattern from its JSON form."""
    from booking_primitives.types import RecurrencePattern, RecurrenceType

    end_date = data.get("end_date")
    return RecurrencePattern(
        type=RecurrenceType(data["type"]),
        interval=data.get("interval", 1),
        weekdays=frozenset(data.get("weekdays", [])),
        end_date=date.fromisoformat(end_date) if end_date else None,
        max_occurrences=data.get("max_occurrences"),
    )


def snapshot(store) -> dict:
    """Copy of every table, for asserting that nothing was written."""
    return {kind: dict(rows) for kind, rows in store._tables.items()}


# ---------------------------------------------------------------------------
# Scenario loader
# ---------------------------------------------------------------------------
def load_scenarios(name: str):
    """Load a scenario file from data/fixtures/scenarios/{name}.json."""
    return _load_json(SCENARIOS_DIR / f"{name}.json")


# ---------------------------------------------------------------------------
# pytest fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store():
    """Store with every resource from resources.json."""
    return make_store()


@pytest.fixture
def reservations(store, clock):
    from booking_primitives.reservations import ReservationService

    return ReservationService(store, clock=clock)


@pytest.fixture
def capacity(store, clock):
    from booking_primitives.capacity import CapacityManager

    return CapacityManager(store, clock=clock)


@pytest.fixture
def manager(store, clock):
    from booking_primitives.recurrence import RecurrenceManager

    return RecurrenceManager(store, clock=clock)


@pytest.fixture
def propagator(store, clock):
    from booking_primitives.propagation import RecurrenceUpdatePropagator

    return RecurrenceUpdatePropagator(store, clock=clock)
