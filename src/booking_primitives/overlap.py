"""Overlap primitive: half-open interval intersection tests.

Intervals are [start, end). Touching endpoints do not overlap, so a booking
ending at 11:00 and one starting at 11:00 can coexist.
"""

from __future__ import annotations

from datetime import datetime

from booking_primitives.types import OverlapType


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """True iff [a_start, a_end) and [b_start, b_end) intersect."""
    return a_start < b_end and b_start < a_end


def classify_overlap(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> OverlapType:
    """Describe how interval A relates to interval B.

    COMPLETE_OVERLAP: A covers B entirely.
    CONTAINED_WITHIN: B covers A entirely.
    PARTIAL_OVERLAP:  they intersect, neither contains the other.
    ADJACENT:         they do not intersect.
    """
    if not overlaps(a_start, a_end, b_start, b_end):
        return OverlapType.ADJACENT
    if a_start <= b_start and a_end >= b_end:
        return OverlapType.COMPLETE_OVERLAP
    if b_start <= a_start and b_end >= a_end:
        return OverlapType.CONTAINED_WITHIN
    return OverlapType.PARTIAL_OVERLAP


def overlap_minutes(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> int:
    """Whole minutes shared by both intervals (0 when disjoint)."""
    shared_start = max(a_start, b_start)
    shared_end = min(a_end, b_end)
    if shared_start >= shared_end:
        return 0
    return int((shared_end - shared_start).total_seconds()) // 60
