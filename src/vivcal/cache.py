"""In-memory event cache with merge, change hashing, and fetched-day tracking.

The cache is rebuildable from the provider at any time and makes no
durability promises. Readers always receive an immutable ``EventSet``
snapshot (a tuple sorted ascending by start), never a mutable reference.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from datetime import UTC, date, tzinfo

from vivcal.models import CalendarDate, CalendarEvent, Instant

EventSet = tuple[CalendarEvent, ...]

EMPTY_EVENT_SET: EventSet = ()


def sort_events(events: Iterable[CalendarEvent], *, tz: tzinfo = UTC) -> EventSet:
    """Sort ascending by start instant; ties fall back to the event id."""
    return tuple(sorted(events, key=lambda event: (event.start_at(tz), event.event_id)))


def _supersedes(candidate: CalendarEvent, current: CalendarEvent) -> bool:
    if candidate.updated_at is None:
        return False
    if current.updated_at is None:
        return True
    return candidate.updated_at > current.updated_at


def merge(
    existing: Iterable[CalendarEvent],
    incoming: Iterable[CalendarEvent],
    *,
    tz: tzinfo = UTC,
) -> EventSet:
    """Union two event collections by id.

    On an id collision the record with the later ``updated_at`` wins; an
    equal or missing timestamp keeps the record seen first. The result is
    re-sorted, so ``merge(s, s) == s`` and ``merge(s, ()) == s`` for any
    sorted ``s``.
    """
    by_id: dict[str, CalendarEvent] = {}
    for event in (*existing, *incoming):
        current = by_id.get(event.event_id)
        if current is None or _supersedes(event, current):
            by_id[event.event_id] = event
    return sort_events(by_id.values(), tz=tz)


def _boundary_key(value: Instant | CalendarDate) -> str:
    if isinstance(value, Instant):
        return value.at.astimezone(UTC).isoformat()
    return value.day.isoformat()


def compute_change_hash(events: Iterable[CalendarEvent]) -> str:
    """Digest over ``(id, start, updated_at)`` triples.

    Cosmetic differences (titles, descriptions, attendee order) that leave
    the triples untouched produce the same digest.
    """
    triples = sorted(
        (
            event.event_id,
            _boundary_key(event.start),
            event.updated_at.astimezone(UTC).isoformat() if event.updated_at else "",
        )
        for event in events
    )
    digest = hashlib.sha256()
    for triple in triples:
        digest.update("\x1f".join(triple).encode("utf-8"))
        digest.update(b"\x1e")
    return digest.hexdigest()


def event_day(event: CalendarEvent, tz: tzinfo) -> date:
    if isinstance(event.start, CalendarDate):
        return event.start.day
    return event.start.at.astimezone(tz).date()


class EventCache:
    """Single-owner store for the current event set and the fetched-day window."""

    def __init__(self, *, tz: tzinfo = UTC) -> None:
        self._tz = tz
        self._events: EventSet = EMPTY_EVENT_SET
        self._fetched_days: set[date] = set()
        self._change_hash = compute_change_hash(EMPTY_EVENT_SET)

    @property
    def tz(self) -> tzinfo:
        return self._tz

    @property
    def events(self) -> EventSet:
        return self._events

    @property
    def change_hash(self) -> str:
        return self._change_hash

    @property
    def is_empty(self) -> bool:
        return not self._events

    @property
    def fetched_days(self) -> frozenset[date]:
        return frozenset(self._fetched_days)

    def mark_fetched(self, day: date) -> None:
        self._fetched_days.add(day)

    def is_fetched(self, day: date) -> bool:
        return day in self._fetched_days

    def replace(self, events: Iterable[CalendarEvent], *, fetched_days: Iterable[date]) -> EventSet:
        """Swap in a complete window fetch; the fetched-day set is reset to *fetched_days*."""
        self._events = sort_events(events, tz=self._tz)
        self._change_hash = compute_change_hash(self._events)
        self._fetched_days = set(fetched_days)
        return self._events

    def merge_in(self, incoming: Iterable[CalendarEvent]) -> EventSet:
        self._events = merge(self._events, incoming, tz=self._tz)
        self._change_hash = compute_change_hash(self._events)
        return self._events

    def events_on(self, day: date) -> EventSet:
        return tuple(event for event in self._events if event_day(event, self._tz) == day)
