"""ASCII visualisation for development-time verification.

This module is dev-only and not imported by the services.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import TYPE_CHECKING

from booking_primitives.types import BLOCKING_STATUSES

if TYPE_CHECKING:
    from booking_primitives.store import InMemoryStore

_DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]

# 24-hour timeline, each char = 30 minutes (48 chars per day)
CHARS_PER_DAY = 48
MINUTES_PER_CHAR = 30


def _minute_of_day(t: time) -> int:
    return t.hour * 60 + t.minute


def _header() -> str:
    header_hours = "".join(f"{h:02d}" if h % 3 == 0 else "  " for h in range(24))
    return f"{'':>16s}  {header_hours}"


def show_resource_day(
    store: InMemoryStore,
    resource_id: str,
    start: date,
    end: date,
) -> str:
    """Print ASCII view of a resource's bookings for a date range.

    Legend: '.' = closed, '-' = open, 'A'-'Z' = blocking reservation
    (by member), 'x' = cancelled or finished reservation on an open slot.
    Returns the string and also prints to stdout.

    Args:
        store: store holding the resource and its reservations
        resource_id: resource to draw
        start: First date to show (inclusive)
        end: Last date to show (exclusive)
    """
    resource = store.get_resource(resource_id)
    if resource is None:
        raise KeyError(resource_id)

    lines: list[str] = [f"=== {resource.name or resource.id} ===", _header()]

    member_labels: dict[str, str] = {}
    label_chars = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    reservations = store.list_reservations(resource_id)

    opening = _minute_of_day(resource.opening_time) if resource.opening_time else 0
    closing = (
        _minute_of_day(resource.closing_time) if resource.closing_time else 24 * 60
    )

    current = start
    while current < end:
        label = f"{_DAY_NAMES[current.weekday()]} {current.strftime('%d %b')}"
        row = list("." * CHARS_PER_DAY)

        if not resource.operating_days or current.weekday() in resource.operating_days:
            for i in range(opening // MINUTES_PER_CHAR, closing // MINUTES_PER_CHAR):
                row[i] = "-"

        day_start = datetime.combine(current, time(0, 0))
        day_end = day_start + timedelta(days=1)
        for r in reservations:
            if r.end <= day_start or r.start >= day_end:
                continue
            first = max(r.start, day_start) - day_start
            last = min(r.end, day_end) - day_start
            first_char = int(first.total_seconds()) // 60 // MINUTES_PER_CHAR
            last_char = int(last.total_seconds()) // 60 // MINUTES_PER_CHAR

            if r.status in BLOCKING_STATUSES:
                if r.member_id not in member_labels:
                    idx = len(member_labels) % len(label_chars)
                    member_labels[r.member_id] = label_chars[idx]
                mark = member_labels[r.member_id]
            else:
                mark = "x"

            for i in range(first_char, min(last_char, CHARS_PER_DAY)):
                if mark != "x" or row[i] == "-":
                    row[i] = mark

        lines.append(f"{label:>16s}  {''.join(row)}")
        current += timedelta(days=1)

    if member_labels:
        legend_parts = [f"{v}={k}" for k, v in member_labels.items()]
        lines.append(
            f"\nLegend: . = closed, - = open, x = released, {', '.join(legend_parts)}"
        )

    result = "\n".join(lines)
    print(result)
    return result


def show_series(store: InMemoryStore, series_id: str) -> str:
    """Print one line per occurrence of a series with its enrollment.

    Format: ``#NN  Mon 06 Jan 09:00-10:00  Scheduled   [###..] 3/5 +2w``
    where the bar shows confirmed seats against capacity and +Nw the
    waitlist length. Returns the string and also prints to stdout.
    """
    root = store.get_activity(series_id)
    if root is None:
        raise KeyError(series_id)

    pattern = root.pattern
    summary = (
        f"{pattern.type.value} every {pattern.interval}" if pattern else "no pattern"
    )
    lines: list[str] = [f"=== {root.title} ({summary}) ==="]

    for occurrence in store.list_series_occurrences(series_id):
        confirmed = store.count_confirmed_registrations(occurrence.id)
        waitlisted = len(store.list_waitlisted(occurrence.id))
        seats = occurrence.capacity
        bar = "#" * min(confirmed, seats) + "." * max(seats - confirmed, 0)
        when = (
            f"{_DAY_NAMES[occurrence.start.weekday()]} "
            f"{occurrence.start.strftime('%d %b %H:%M')}-"
            f"{occurrence.end.strftime('%H:%M')}"
        )
        line = (
            f"#{occurrence.occurrence_number or 0:02d}  {when}  "
            f"{occurrence.status.value:<11s} [{bar}] {confirmed}/{seats}"
        )
        if waitlisted:
            line += f" +{waitlisted}w"
        lines.append(line)

    result = "\n".join(lines)
    print(result)
    return result
