"""
Session scheduling and venue conflict detection.

An event's schedule is either a single date/time block or a list of
discontinuous sessions (multi-day events). Every consumer (conflict checks,
calendar projection) works on "the set of sessions" so neither has to branch
on which shape it was given.

Times are ``datetime.time`` values. Ranges are half-open: an event that ends
at 11:00 does not collide with one that starts at 11:00.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time
from typing import TYPE_CHECKING, Iterable, List, Optional, Union

if TYPE_CHECKING:  # pragma: no cover
    from campus_models import Event


@dataclass(frozen=True)
class Session:
    """One date + time-range block. ``location`` overrides the event venue."""

    date: date
    start_time: time
    end_time: time
    location: Optional[str] = None

    def venue(self, default: str) -> str:
        return self.location or default


@dataclass(frozen=True)
class SingleSession:
    date: date
    start_time: time
    end_time: time

    def sessions(self) -> List[Session]:
        return [Session(self.date, self.start_time, self.end_time)]


@dataclass(frozen=True)
class MultiSession:
    items: List[Session] = field(default_factory=list)

    def sessions(self) -> List[Session]:
        return sorted(self.items, key=lambda s: (s.date, s.start_time))


Schedule = Union[SingleSession, MultiSession]


def times_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    """Return True if time ranges [a_start, a_end) and [b_start, b_end) overlap."""
    return a_start < b_end and a_end > b_start


def sessions_collide(a: Session, a_venue: str, b: Session, b_venue: str) -> bool:
    return (
        a.venue(a_venue) == b.venue(b_venue)
        and a.date == b.date
        and times_overlap(a.start_time, a.end_time, b.start_time, b.end_time)
    )


def colliding_session(candidate: "Event", other: "Event") -> Optional[Session]:
    """Return the earliest session of ``other`` that collides with ``candidate``, if any."""
    mine = candidate.schedule.sessions()
    for b in other.schedule.sessions():
        if any(sessions_collide(a, candidate.location, b, other.location) for a in mine):
            return b
    return None


def find_conflicts(candidate: "Event", others: Iterable["Event"]) -> List["Event"]:
    """Return every event in ``others`` that collides with ``candidate``.

    The caller decides which events participate (normally the approved-family
    standard events). The candidate itself is skipped by id. All collisions
    are returned, not just the first.
    """
    return [
        other
        for other in others
        if other.event_id != candidate.event_id and colliding_session(candidate, other) is not None
    ]


@dataclass
class CalendarEntry:
    event_id: str
    title: str
    event_type: str
    date: date
    start_time: time
    end_time: time
    location: str


def calendar_entries(events: Iterable["Event"], start: date, end: date) -> List[CalendarEntry]:
    """Project events onto their sessions falling within [start, end] (inclusive)."""
    entries: List[CalendarEntry] = []
    for ev in events:
        for s in ev.schedule.sessions():
            if start <= s.date <= end:
                entries.append(
                    CalendarEntry(
                        event_id=ev.event_id,
                        title=ev.title,
                        event_type=ev.event_type,
                        date=s.date,
                        start_time=s.start_time,
                        end_time=s.end_time,
                        location=s.venue(ev.location),
                    )
                )
    entries.sort(key=lambda e: (e.date, e.start_time, e.title))
    return entries
