"""Time-conflict detection between a candidate event and existing events.

Intervals are treated as half-open: an event ending exactly when another
starts does not conflict with it. Events with a missing bound never conflict.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from calmirror.models import (
    ConflictingEvent,
    ConflictResult,
    Datespan,
    Event,
    TimeBound,
    Timespan,
    build_when,
    parse_date_bound,
)

CANDIDATE_EVENT_ID = "__candidate__"


class _HasWhen(Protocol):
    id: str
    when: Timespan | Datespan


def event_interval(when: Timespan | Datespan) -> tuple[float, float] | None:
    """Return ``(start, end)`` in epoch seconds, or None if a bound is missing."""
    if isinstance(when, Timespan):
        if when.start_time is None or when.end_time is None:
            return None
        return float(when.start_time), float(when.end_time)

    if when.start_date is None or when.end_date is None:
        return None
    start = parse_date_bound(when.start_date)
    end = parse_date_bound(when.end_date)
    if start is None or end is None:
        return None
    return start.timestamp(), end.timestamp()


def overlaps(a: _HasWhen, b: _HasWhen) -> bool:
    """Return True when the two events overlap in time.

    An event never overlaps itself (same id).
    """
    if a.id == b.id:
        return False

    interval_a = event_interval(a.when)
    interval_b = event_interval(b.when)
    if interval_a is None or interval_b is None:
        return False

    start_a, end_a = interval_a
    start_b, end_b = interval_b
    return start_a < end_b and start_b < end_a


def check_conflicts(
    start: TimeBound,
    end: TimeBound,
    existing_events: Iterable[Event],
    *,
    exclude_id: str | None = None,
) -> ConflictResult:
    """Report every event in *existing_events* overlapping ``[start, end)``.

    Numeric bounds are epoch seconds; string bounds are ISO dates. Results keep
    the order of *existing_events*. ``exclude_id`` drops the event being edited
    from its own conflict set.
    """
    candidate = Event(id=CANDIDATE_EVENT_ID, when=build_when(start, end))

    conflicting: list[ConflictingEvent] = []
    for event in existing_events:
        if exclude_id is not None and event.id == exclude_id:
            continue
        if overlaps(candidate, event):
            conflicting.append(
                ConflictingEvent(id=event.id, title=event.title, when=event.when)
            )

    return ConflictResult(
        has_conflict=bool(conflicting),
        conflicting_events=conflicting,
    )
