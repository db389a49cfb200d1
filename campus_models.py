"""
Campus Events data model

Implements:
- User, Event and the sub-entities an Event owns (Attendee, AgendaItem,
  Poll, Feedback)
- The domain error taxonomy shared by the facade and the HTTP layer
- Boundary helpers: "YYYY-MM-DD" / "HH:MM" parsing and formatting, and the
  document shape used by every storage backend

An Event is stored as one document with its attendees, agenda, polls and
feedback nested inside it. Deleting the event deletes all of them.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, time, datetime
from typing import Dict, List, Optional, Any

from scheduling import MultiSession, Schedule, Session, SingleSession


# -----------------------------
# Constants
# -----------------------------

STUDENT = "student"
ORGANIZER = "organizer"
ADMIN = "admin"
ROLES = (STUDENT, ORGANIZER, ADMIN)

PENDING = "pending"
ADMIN_APPROVED = "admin_approved"
APPROVED = "approved"
REJECTED = "rejected"
COMPLETED = "completed"
EVENT_STATUSES = (PENDING, ADMIN_APPROVED, APPROVED, REJECTED, COMPLETED)
APPROVED_FAMILY = (ADMIN_APPROVED, APPROVED)

STANDARD = "standard"
NOTICE = "notice"
EVENT_TYPES = (STANDARD, NOTICE)

CATEGORIES = ("Music", "Tech", "Workshop", "Social", "Sports", "Other")

# Attendee statuses
ACCEPTED = "accepted"
ATTENDEE_STATUSES = (PENDING, ACCEPTED, REJECTED)

DEFAULT_CAPACITY = 100
UNLIMITED_CAPACITY = 1_000_000_000  # notices


# -----------------------------
# Errors
# -----------------------------


class CampusError(Exception):
    """Base class for every domain failure.

    ``kind`` is the coarse category the HTTP layer maps to a status code,
    ``code`` the precise failure mode. Extra keyword arguments travel as
    ``payload`` (e.g. the list of colliding events).
    """

    kind = "ServerError"
    code = "ServerError"
    default_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None, **payload: Any) -> None:
        self.message = message or self.default_message
        self.payload = payload
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "code": self.code, "msg": self.message, **self.payload}


class ValidationError(CampusError):
    kind = "Validation"
    code = "ValidationError"
    default_message = "Invalid input."


class NotFound(CampusError):
    kind = "NotFound"
    code = "NotFound"
    default_message = "Not found."


class NotOnGuestList(NotFound):
    code = "NotOnGuestList"
    default_message = "Student has not RSVPd for this event."


class Unauthorized(CampusError):
    kind = "Unauthorized"
    code = "Unauthorized"
    default_message = "Not authorized."


class AccessDenied(Unauthorized):
    """Raised at check-in when the attendee was not accepted."""

    code = "AccessDenied"

    def __init__(self, status: str) -> None:
        super().__init__(f"AccessDenied:{status}", status=status)


class InvalidState(CampusError):
    kind = "InvalidState"
    code = "InvalidState"
    default_message = "Operation not allowed in the current event status."


class PollInactive(InvalidState):
    code = "PollInactive"
    default_message = "Poll is closed."


class EventFull(CampusError):
    kind = "Capacity"
    code = "EventFull"
    default_message = "Event is full."


class GatesClosed(CampusError):
    kind = "GateClosed"
    code = "GatesClosed"
    default_message = "Gates are closed for this event."


class AlreadyDone(CampusError):
    kind = "Conflict"
    code = "Conflict"


class VenueConflict(AlreadyDone):
    code = "VenueConflict"
    default_message = "Venue conflict detected."


class AlreadyApproved(AlreadyDone):
    code = "AlreadyApproved"
    default_message = "Event already approved."


class AlreadyVoted(AlreadyDone):
    code = "AlreadyVoted"
    default_message = "You already voted."


class AlreadyCheckedIn(AlreadyDone):
    code = "AlreadyCheckedIn"
    default_message = "Student already checked in."


class AlreadyReviewed(AlreadyDone):
    code = "AlreadyReviewed"
    default_message = "You have already reviewed this event."


class WriteConflict(Exception):
    """A document kept changing under us; a storage fault, not a domain error."""


# -----------------------------
# Data Models
# -----------------------------


@dataclass
class User:
    """A principal known to the system. Credentials live with the identity provider."""

    user_id: str
    name: str
    role: str
    email: str = ""
    student_id: Optional[str] = None


@dataclass
class Attendee:
    """A (user, event) membership with its own acceptance status and presence flag."""

    user_id: str
    status: str = ACCEPTED  # pending | accepted | rejected
    note: str = ""
    marked_present: bool = False


@dataclass
class AgendaItem:
    title: str
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    description: str = ""
    date: Optional[date] = None


@dataclass
class PollOption:
    text: str
    votes: int = 0


@dataclass
class Poll:
    """A micro-poll. Tallies are anonymous: only counts plus who has voted.

    Invariant: ``sum(o.votes for o in options) == len(voters)``.
    """

    poll_id: str
    question: str
    options: List[PollOption] = field(default_factory=list)
    active: bool = True
    voters: List[str] = field(default_factory=list)

    def total_votes(self) -> int:
        return sum(o.votes for o in self.options)


@dataclass
class Feedback:
    user_id: str
    rating: int
    comment: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Event:
    """The central aggregate: schedule, capacity, lifecycle and owned sub-entities.

    ``version`` is bumped on every successful write and used by the stores
    for compare-and-swap updates.
    """

    event_id: str
    title: str
    organizer_id: str
    schedule: Schedule
    location: str
    description: str = ""
    end_date: Optional[date] = None
    event_type: str = STANDARD
    category: str = "Other"
    capacity: int = DEFAULT_CAPACITY
    status: str = PENDING
    rejection_reason: Optional[str] = None
    request_note: Optional[str] = None
    is_gate_open: bool = False
    requires_approval: bool = False

    attendees: List[Attendee] = field(default_factory=list)
    agenda: List[AgendaItem] = field(default_factory=list)
    polls: List[Poll] = field(default_factory=list)
    gallery_images: List[str] = field(default_factory=list)
    feedback: List[Feedback] = field(default_factory=list)
    average_rating: float = 0.0

    version: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_notice(self) -> bool:
        return self.event_type == NOTICE

    def sessions(self) -> List[Session]:
        return self.schedule.sessions()

    def find_attendee(self, user_id: str) -> Optional[Attendee]:
        return next((a for a in self.attendees if a.user_id == user_id), None)

    def find_poll(self, poll_id: str) -> Optional[Poll]:
        return next((p for p in self.polls if p.poll_id == poll_id), None)


@dataclass(frozen=True)
class Actor:
    """A verified identity as handed over by the identity provider."""

    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


def new_id() -> str:
    return uuid.uuid4().hex


# -----------------------------
# Boundary helpers
# -----------------------------


def parse_date(s: str) -> date:
    return datetime.strptime(s, "%Y-%m-%d").date()


def parse_time(s: str) -> time:
    return datetime.strptime(s, "%H:%M").time()


def format_time(t: time) -> str:
    """Zero-padded 24h "HH:MM", so string order matches time order."""
    return t.strftime("%H:%M")


def as_date(value: Any, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return parse_date(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value!r} (expected YYYY-MM-DD)")


def _as_time(value: Any, field_name: str) -> time:
    if isinstance(value, time):
        return value
    try:
        return parse_time(str(value))
    except ValueError:
        raise ValidationError(f"Invalid {field_name}: {value!r} (expected HH:MM)")


def _session(d: Any, start: Any, end: Any, location: Optional[str] = None) -> Session:
    s = Session(
        date=as_date(d, "date"),
        start_time=_as_time(start, "start_time"),
        end_time=_as_time(end, "end_time"),
        location=location or None,
    )
    if s.start_time >= s.end_time:
        raise ValidationError(
            f"Session on {s.date.isoformat()} must start before it ends "
            f"({format_time(s.start_time)}-{format_time(s.end_time)})"
        )
    return s


def build_schedule(
    date_value: Any,
    start_time: Any,
    end_time: Any,
    event_dates: Optional[List[Dict[str, Any]]] = None,
) -> Schedule:
    """Build the tagged schedule from wire fields.

    A non-empty ``event_dates`` list wins over the primary date/time.
    """
    if event_dates:
        return MultiSession(
            [
                _session(item.get("date"), item.get("start_time"), item.get("end_time"), item.get("location"))
                for item in event_dates
            ]
        )
    if date_value is None or start_time is None or end_time is None:
        raise ValidationError("date, start_time and end_time are required")
    d = _session(date_value, start_time, end_time)
    return SingleSession(d.date, d.start_time, d.end_time)


def build_agenda(items: Optional[List[Dict[str, Any]]], schedule: Schedule) -> List[AgendaItem]:
    """Parse agenda items; a dated item must fall on one of the session dates."""
    days = {s.date for s in schedule.sessions()}
    agenda: List[AgendaItem] = []
    for item in items or []:
        title = (item.get("title") or "").strip()
        if not title:
            raise ValidationError("Agenda items need a title")
        day = as_date(item["date"], "agenda date") if item.get("date") else None
        if day is not None and day not in days:
            raise ValidationError(f"Agenda item {title!r} is not on one of the event's dates")
        agenda.append(
            AgendaItem(
                title=title,
                start_time=_as_time(item["start_time"], "agenda start_time") if item.get("start_time") else None,
                end_time=_as_time(item["end_time"], "agenda end_time") if item.get("end_time") else None,
                description=item.get("description") or "",
                date=day,
            )
        )
    return agenda


def check_capacity(value: Any) -> int:
    try:
        capacity = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid capacity: {value!r}")
    if capacity < 0:
        raise ValidationError("Capacity cannot be negative")
    return capacity


def check_category(value: Optional[str]) -> str:
    category = value or "Other"
    if category not in CATEGORIES:
        raise ValidationError(f"Unknown category: {category}")
    return category


# -----------------------------
# Document encoding
# -----------------------------


def _schedule_doc(ev: Event) -> Dict[str, Any]:
    sessions = ev.sessions()
    first = sessions[0]
    doc: Dict[str, Any] = {
        "date": first.date.isoformat(),
        "start_time": format_time(first.start_time),
        "end_time": format_time(first.end_time),
        "event_dates": [],
    }
    if isinstance(ev.schedule, MultiSession):
        doc["event_dates"] = [
            {
                "date": s.date.isoformat(),
                "start_time": format_time(s.start_time),
                "end_time": format_time(s.end_time),
                "location": s.location,
            }
            for s in sessions
        ]
    return doc


def event_to_doc(ev: Event) -> Dict[str, Any]:
    """Plain, JSON-safe document for an event (storage and API share it)."""
    doc: Dict[str, Any] = {
        "event_id": ev.event_id,
        "title": ev.title,
        "description": ev.description,
        "organizer_id": ev.organizer_id,
        "location": ev.location,
        "end_date": ev.end_date.isoformat() if ev.end_date else None,
        "event_type": ev.event_type,
        "category": ev.category,
        "capacity": ev.capacity,
        "status": ev.status,
        "rejection_reason": ev.rejection_reason,
        "request_note": ev.request_note,
        "is_gate_open": ev.is_gate_open,
        "requires_approval": ev.requires_approval,
        "attendees": [
            {"user_id": a.user_id, "status": a.status, "note": a.note, "marked_present": a.marked_present}
            for a in ev.attendees
        ],
        "agenda": [
            {
                "title": a.title,
                "start_time": format_time(a.start_time) if a.start_time else None,
                "end_time": format_time(a.end_time) if a.end_time else None,
                "description": a.description,
                "date": a.date.isoformat() if a.date else None,
            }
            for a in ev.agenda
        ],
        "polls": [poll_to_doc(p) for p in ev.polls],
        "gallery_images": list(ev.gallery_images),
        "feedback": [
            {"user_id": f.user_id, "rating": f.rating, "comment": f.comment, "created_at": f.created_at.isoformat()}
            for f in ev.feedback
        ],
        "average_rating": ev.average_rating,
        "version": ev.version,
        "created_at": ev.created_at.isoformat(),
    }
    doc.update(_schedule_doc(ev))
    return doc


def poll_to_doc(p: Poll) -> Dict[str, Any]:
    return {
        "poll_id": p.poll_id,
        "question": p.question,
        "options": [{"text": o.text, "votes": o.votes} for o in p.options],
        "active": p.active,
        "voters": list(p.voters),
    }


def event_from_doc(doc: Dict[str, Any]) -> Event:
    schedule = build_schedule(doc["date"], doc["start_time"], doc["end_time"], doc.get("event_dates"))
    return Event(
        event_id=doc["event_id"],
        title=doc["title"],
        organizer_id=doc["organizer_id"],
        schedule=schedule,
        location=doc["location"],
        description=doc.get("description", ""),
        end_date=as_date(doc["end_date"], "end_date") if doc.get("end_date") else None,
        event_type=doc.get("event_type", STANDARD),
        category=doc.get("category", "Other"),
        capacity=int(doc.get("capacity", DEFAULT_CAPACITY)),
        status=doc.get("status", PENDING),
        rejection_reason=doc.get("rejection_reason"),
        request_note=doc.get("request_note"),
        is_gate_open=bool(doc.get("is_gate_open", False)),
        requires_approval=bool(doc.get("requires_approval", False)),
        attendees=[
            Attendee(
                user_id=a["user_id"],
                status=a.get("status", ACCEPTED),
                note=a.get("note") or "",
                marked_present=bool(a.get("marked_present", False)),
            )
            for a in doc.get("attendees", [])
        ],
        agenda=build_agenda(doc.get("agenda"), schedule),
        polls=[
            Poll(
                poll_id=p["poll_id"],
                question=p["question"],
                options=[PollOption(o["text"], int(o.get("votes", 0))) for o in p.get("options", [])],
                active=bool(p.get("active", True)),
                voters=list(p.get("voters", [])),
            )
            for p in doc.get("polls", [])
        ],
        gallery_images=list(doc.get("gallery_images", [])),
        feedback=[
            Feedback(
                user_id=f["user_id"],
                rating=int(f["rating"]),
                comment=f.get("comment") or "",
                created_at=datetime.fromisoformat(f["created_at"]) if f.get("created_at") else datetime.utcnow(),
            )
            for f in doc.get("feedback", [])
        ],
        average_rating=float(doc.get("average_rating", 0.0)),
        version=int(doc.get("version", 0)),
        created_at=datetime.fromisoformat(doc["created_at"]) if doc.get("created_at") else datetime.utcnow(),
    )


def user_to_doc(u: User) -> Dict[str, Any]:
    return {"user_id": u.user_id, "name": u.name, "role": u.role, "email": u.email, "student_id": u.student_id}


def user_from_doc(doc: Dict[str, Any]) -> User:
    return User(
        user_id=doc["user_id"],
        name=doc["name"],
        role=doc["role"],
        email=doc.get("email", ""),
        student_id=doc.get("student_id"),
    )
