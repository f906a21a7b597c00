"""Store contract and an in-memory, id-keyed implementation.

The scheduler never holds entities across calls. Every decision reads fresh
state through a SchedulingStore and hands back a ChangeSet that the store
applies atomically. Check-then-write sequences run inside
``store.transaction(*keys)`` so two requests for the same resource or
activity are serialised.
"""

from __future__ import annotations

import itertools
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Protocol, Union

from booking_primitives.overlap import overlaps
from booking_primitives.types import (
    BLOCKING_STATUSES,
    Activity,
    LockTimeoutError,
    Registration,
    RegistrationStatus,
    Reservation,
    Resource,
    StoreError,
)

Entity = Union[Resource, Reservation, Activity, Registration]

_INACTIVE_REGISTRATION = frozenset(
    {RegistrationStatus.CANCELLED, RegistrationStatus.DECLINED}
)


def resource_key(resource_id: str) -> str:
    return f"resource:{resource_id}"


def activity_key(activity_id: str) -> str:
    return f"activity:{activity_id}"


def series_key(series_id: str) -> str:
    return f"series:{series_id}"


@dataclass
class ChangeSet:
    """Entities to upsert and delete, applied all-or-nothing."""

    saves: list[Entity] = field(default_factory=list)
    deletes: list[Entity] = field(default_factory=list)

    def put(self, *entities: Entity) -> ChangeSet:
        self.saves.extend(entities)
        return self

    def delete(self, *entities: Entity) -> ChangeSet:
        self.deletes.extend(entities)
        return self

    def __bool__(self) -> bool:
        return bool(self.saves or self.deletes)

    def __len__(self) -> int:
        return len(self.saves) + len(self.deletes)


class SchedulingStore(Protocol):
    """What the scheduling services need from persistence."""

    def get_resource(self, resource_id: str) -> Resource | None: ...

    def get_reservation(self, reservation_id: str) -> Reservation | None: ...

    def get_activity(self, activity_id: str) -> Activity | None: ...

    def get_registration(self, registration_id: str) -> Registration | None: ...

    def list_overlapping_reservations(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
    ) -> list[Reservation]: ...

    def count_confirmed_registrations(self, activity_id: str) -> int: ...

    def list_waitlisted(self, activity_id: str) -> list[Registration]: ...

    def list_registrations(self, activity_id: str) -> list[Registration]: ...

    def find_active_registration(
        self, activity_id: str, member_id: str
    ) -> Registration | None: ...

    def list_series_occurrences(self, series_id: str) -> list[Activity]: ...

    def list_series_roots(self) -> list[Activity]: ...

    def list_activities(self) -> list[Activity]: ...

    def save(self, changes: ChangeSet) -> None: ...

    def transaction(self, *keys: str, timeout: float | None = None): ...


class InMemoryStore:
    """Arena store: one dict per entity type, keyed by id.

    Entities are frozen, so handing them out never exposes mutable state.
    Inside a transaction, save() buffers change sets; they are committed
    together when the outermost transaction exits cleanly and discarded if
    it raises. Reads inside a transaction see committed state only.
    """

    def __init__(self, default_timeout: float = 5.0) -> None:
        self.default_timeout = default_timeout
        self._tables: dict[type, dict[str, Entity]] = {
            Resource: {},
            Reservation: {},
            Activity: {},
            Registration: {},
        }
        self._write_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._key_locks: dict[str, threading.RLock] = {}
        self._local = threading.local()
        # Insertion order per (type, id); breaks ties between equal timestamps.
        self._sequence: dict[tuple[type, str], int] = {}
        self._counter = itertools.count()

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def add(self, *entities: Entity) -> None:
        """Insert entities directly (setup and tests)."""
        self.save(ChangeSet(saves=list(entities)))

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _lock_for(self, key: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.RLock()
            return lock

    @contextmanager
    def transaction(self, *keys: str, timeout: float | None = None) -> Iterator[None]:
        """Serialise work on ``keys`` and commit its saves atomically.

        Locks are taken in sorted order so overlapping key sets cannot
        deadlock. Raises LockTimeoutError when a lock is not free in time.
        """
        wait = self.default_timeout if timeout is None else timeout
        ordered = tuple(sorted(set(keys)))
        acquired: list[threading.RLock] = []
        for key in ordered:
            lock = self._lock_for(key)
            if not lock.acquire(timeout=wait):
                for held in reversed(acquired):
                    held.release()
                raise LockTimeoutError(ordered, wait)
            acquired.append(lock)

        outer = getattr(self._local, "pending", None) is None
        if outer:
            self._local.pending = []
        try:
            yield
            if outer:
                merged = ChangeSet()
                for changes in self._local.pending:
                    merged.saves.extend(changes.saves)
                    merged.deletes.extend(changes.deletes)
                self._apply(merged)
        finally:
            if outer:
                self._local.pending = None
            for lock in reversed(acquired):
                lock.release()

    @property
    def in_transaction(self) -> bool:
        return getattr(self._local, "pending", None) is not None

    def save(self, changes: ChangeSet) -> None:
        pending = getattr(self._local, "pending", None)
        if pending is not None:
            pending.append(changes)
        else:
            self._apply(changes)

    def _apply(self, changes: ChangeSet) -> None:
        if not changes:
            return
        for entity in [*changes.saves, *changes.deletes]:
            if type(entity) not in self._tables:
                raise StoreError("save", f"unsupported entity {type(entity).__name__}")
            if not getattr(entity, "id", None):
                raise StoreError("save", f"{type(entity).__name__} without an id")

        with self._write_lock:
            for entity in changes.deletes:
                self._tables[type(entity)].pop(entity.id, None)
                self._sequence.pop((type(entity), entity.id), None)
            for entity in changes.saves:
                self._tables[type(entity)][entity.id] = entity
                key = (type(entity), entity.id)
                self._sequence.setdefault(key, next(self._counter))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _rows(self, kind: type) -> list:
        with self._write_lock:
            return list(self._tables[kind].values())

    def get_resource(self, resource_id: str) -> Resource | None:
        return self._tables[Resource].get(resource_id)

    def get_reservation(self, reservation_id: str) -> Reservation | None:
        return self._tables[Reservation].get(reservation_id)

    def get_activity(self, activity_id: str) -> Activity | None:
        return self._tables[Activity].get(activity_id)

    def get_registration(self, registration_id: str) -> Registration | None:
        return self._tables[Registration].get(registration_id)

    def list_reservations(self, resource_id: str | None = None) -> list[Reservation]:
        rows = [
            r for r in self._rows(Reservation)
            if resource_id is None or r.resource_id == resource_id
        ]
        rows.sort(key=lambda r: (r.start, r.id))
        return rows

    def list_overlapping_reservations(
        self,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
    ) -> list[Reservation]:
        """Confirmed or checked-in reservations on the resource touching [start, end)."""
        return [
            r for r in self.list_reservations(resource_id)
            if r.status in BLOCKING_STATUSES
            and r.id != exclude_id
            and overlaps(start, end, r.start, r.end)
        ]

    def list_registrations(self, activity_id: str) -> list[Registration]:
        """Registrations on an activity, by registered_at then insertion order."""
        rows = [r for r in self._rows(Registration) if r.activity_id == activity_id]
        rows.sort(
            key=lambda r: (r.registered_at, self._sequence.get((Registration, r.id), 0))
        )
        return rows

    def count_confirmed_registrations(self, activity_id: str) -> int:
        return sum(
            1 for r in self.list_registrations(activity_id)
            if r.status is RegistrationStatus.CONFIRMED
        )

    def list_waitlisted(self, activity_id: str) -> list[Registration]:
        """Waitlisted registrations, earliest registered first.

        Equal timestamps keep their queue order by waitlist_position.
        """
        rows = [
            r for r in self.list_registrations(activity_id)
            if r.status is RegistrationStatus.WAITLISTED
        ]
        rows.sort(key=lambda r: (r.registered_at, r.waitlist_position or 0))
        return rows

    def find_active_registration(
        self, activity_id: str, member_id: str
    ) -> Registration | None:
        for r in self.list_registrations(activity_id):
            if r.member_id == member_id and r.status not in _INACTIVE_REGISTRATION:
                return r
        return None

    def list_activities(self) -> list[Activity]:
        rows = self._rows(Activity)
        rows.sort(key=lambda a: (a.start, a.id))
        return rows

    def list_series_occurrences(self, series_id: str) -> list[Activity]:
        """Occurrences of a series (root excluded), in start order."""
        return [
            a for a in self.list_activities()
            if a.series_id == series_id and not a.is_series_root
        ]

    def list_series_roots(self) -> list[Activity]:
        return [a for a in self.list_activities() if a.is_series_root]
