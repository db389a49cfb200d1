"""
Campus Events

Implements:
- Event lifecycle as an explicit state table (pending -> admin_approved ->
  approved -> completed, pending -> rejected -> pending on resubmission)
- Venue/time conflict checks on approval
- Capacity-bounded RSVP toggling with optional organizer approval
- Ticket check-in gated by a manual gate switch
- Per-event polls with one vote per voter, and post-event feedback

Every change to an event is a read-modify-write of the whole event document
applied through ``CampusEvents._mutate``, which retries on a lost
compare-and-swap. A domain error raised while the change is being computed
aborts the write, so nothing is ever half-applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, TypeVar

from campus_models import (
    ACCEPTED,
    ADMIN,
    ADMIN_APPROVED,
    APPROVED,
    APPROVED_FAMILY,
    COMPLETED,
    DEFAULT_CAPACITY,
    NOTICE,
    ORGANIZER,
    PENDING,
    REJECTED,
    ROLES,
    STANDARD,
    STUDENT,
    UNLIMITED_CAPACITY,
    AccessDenied,
    Actor,
    AlreadyApproved,
    AlreadyCheckedIn,
    AlreadyReviewed,
    AlreadyVoted,
    Attendee,
    Event,
    EventFull,
    Feedback,
    GatesClosed,
    InvalidState,
    NotFound,
    NotOnGuestList,
    Poll,
    PollInactive,
    PollOption,
    Unauthorized,
    User,
    ValidationError,
    VenueConflict,
    WriteConflict,
    as_date,
    build_agenda,
    build_schedule,
    check_capacity,
    check_category,
    event_to_doc,
    format_time,
    new_id,
)
from event_store import BaseStore, InMemoryStore
from scheduling import CalendarEntry, MultiSession, calendar_entries, colliding_session, find_conflicts

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_ATTENDING = "not_attending"

# (current status, actor role, target status). Anything not listed is refused.
LIFECYCLE: FrozenSet[Tuple[str, str, str]] = frozenset(
    {
        (PENDING, ADMIN, ADMIN_APPROVED),
        (PENDING, ADMIN, APPROVED),
        (ADMIN_APPROVED, ORGANIZER, APPROVED),
        (ADMIN_APPROVED, ADMIN, APPROVED),
        (PENDING, ADMIN, REJECTED),
        (ADMIN_APPROVED, ADMIN, REJECTED),
        (REJECTED, ORGANIZER, PENDING),
        (ADMIN_APPROVED, ORGANIZER, COMPLETED),
        (ADMIN_APPROVED, ADMIN, COMPLETED),
        (APPROVED, ORGANIZER, COMPLETED),
        (APPROVED, ADMIN, COMPLETED),
    }
)

# Fields only editable while the event is under review (or by an admin)
DETAIL_FIELDS = frozenset(
    {
        "title",
        "description",
        "date",
        "end_date",
        "start_time",
        "end_time",
        "location",
        "capacity",
        "category",
        "requires_approval",
        "agenda",
        "event_dates",
        "request_note",
    }
)
SCHEDULE_FIELDS = frozenset({"date", "start_time", "end_time", "event_dates"})
# Day-of operations, editable in any status
OPERATIONAL_FIELDS = frozenset({"gallery_images"})


@dataclass
class RsvpResult:
    status: str  # not_attending | pending | accepted
    attendees: List[Attendee]


@dataclass
class CheckInResult:
    student_name: str


def _conflict_payload(candidate: Event, conflicts: Iterable[Event]) -> List[Dict[str, str]]:
    items = []
    for ev in conflicts:
        hit = colliding_session(candidate, ev) or ev.sessions()[0]
        items.append(
            {
                "event_id": ev.event_id,
                "title": ev.title,
                "date": hit.date.isoformat(),
                "time": f"{format_time(hit.start_time)}-{format_time(hit.end_time)}",
            }
        )
    return items


class CampusEvents:
    """Main facade over the event store.

    Responsibilities:
    - Create events and notices, drive them through the lifecycle table
    - Refuse approvals that would double-book a venue
    - RSVP toggling against capacity, attendee review, check-in scans
    - Polls, feedback, gallery and gate switches
    - Read-side queries (published list, review queue, calendar)
    """

    def __init__(self, store: Optional[BaseStore] = None, max_write_retries: int = 8) -> None:
        # Pluggable storage: defaults to in-memory store
        self.store: BaseStore = store or InMemoryStore()
        self.max_write_retries = max_write_retries

    # -------- Plumbing --------

    def _load(self, event_id: str) -> Event:
        ev = self.store.get_event(event_id)
        if ev is None:
            raise NotFound(f"Event not found: {event_id}")
        return ev

    def _mutate(self, event_id: str, change: Callable[[Event], T]) -> T:
        """Apply ``change`` to the latest copy of the event and persist it atomically.

        ``change`` may run more than once (once per lost race) and must only
        touch the event it is given.
        """
        for attempt in range(1, self.max_write_retries + 1):
            ev = self._load(event_id)
            expected = ev.version
            result = change(ev)
            if self.store.replace_event(ev, expected):
                return result
            logger.warning("Lost write race on event %s (attempt %d)", event_id, attempt)
        raise WriteConflict(f"Event {event_id} is being updated too often, try again")

    @staticmethod
    def _require_role(actor: Actor, *roles: str) -> None:
        if actor.role not in roles:
            raise Unauthorized(f"Role {actor.role!r} cannot perform this action")

    @staticmethod
    def _require_owner(ev: Event, actor: Actor) -> None:
        if not actor.is_admin and ev.organizer_id != actor.user_id:
            raise Unauthorized("Not authorized")

    # -------- Users --------

    def register_user(self, user: User) -> User:
        """Add a principal to the directory. Students must carry a student id."""
        if user.role not in ROLES:
            raise ValidationError(f"Unknown role: {user.role}")
        if not user.name.strip():
            raise ValidationError("Name is required")
        if user.role == STUDENT and not user.student_id:
            raise ValidationError("student_id is required for students")
        try:
            self.store.add_user(user)
        except ValueError as e:
            raise ValidationError(str(e))
        return user

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound(f"User not found: {user_id}")
        return user

    def display_name(self, user_id: str) -> str:
        user = self.store.get_user(user_id)
        return user.name if user else user_id

    # -------- Creation --------

    def create_event(self, draft: Dict[str, Any], actor: Actor) -> Event:
        """Create a standard event in ``pending`` status, owned by ``actor``."""
        self._require_role(actor, ORGANIZER, ADMIN)
        ev = self._build_event(draft, actor, event_type=STANDARD)
        self.store.add_event(ev)
        logger.info("Event %s (%r) proposed by %s", ev.event_id, ev.title, actor.user_id)
        return ev

    def create_notice(self, draft: Dict[str, Any], actor: Actor) -> Event:
        """Publish a campus-wide notice. Notices skip review and take no RSVPs."""
        self._require_role(actor, ADMIN)
        draft = dict(draft)
        draft.setdefault("location", "Campus-wide")
        draft.setdefault("start_time", "00:00")
        draft.setdefault("end_time", "23:59")
        ev = self._build_event(draft, actor, event_type=NOTICE)
        ev.status = APPROVED
        ev.capacity = UNLIMITED_CAPACITY
        self.store.add_event(ev)
        logger.info("Notice %s (%r) posted by %s", ev.event_id, ev.title, actor.user_id)
        return ev

    def _build_event(self, draft: Dict[str, Any], actor: Actor, event_type: str) -> Event:
        title = (draft.get("title") or "").strip()
        if not title:
            raise ValidationError("Title is required")
        location = (draft.get("location") or "").strip()
        if not location:
            raise ValidationError("Location is required")
        schedule = build_schedule(
            draft.get("date"), draft.get("start_time"), draft.get("end_time"), draft.get("event_dates")
        )
        end_date = draft.get("end_date")
        ev = Event(
            event_id=new_id(),
            title=title,
            organizer_id=actor.user_id,
            schedule=schedule,
            location=location,
            description=draft.get("description") or "",
            end_date=as_date(end_date, "end_date") if end_date else None,
            event_type=event_type,
            category=check_category(draft.get("category")),
            capacity=check_capacity(DEFAULT_CAPACITY if draft.get("capacity") is None else draft["capacity"]),
            requires_approval=bool(draft.get("requires_approval", False)),
            request_note=draft.get("request_note"),
            agenda=build_agenda(draft.get("agenda"), schedule),
        )
        return ev

    # -------- Lifecycle --------

    def transition(self, event_id: str, actor: Actor, target: str, reason: Optional[str] = None) -> Event:
        """Move an event to ``target`` if the lifecycle table allows it."""

        def change(ev: Event) -> Event:
            self._apply_transition(ev, actor, target, reason)
            return ev

        ev = self._mutate(event_id, change)
        logger.info("Event %s is now %s (by %s)", event_id, ev.status, actor.user_id)
        return ev

    def _apply_transition(self, ev: Event, actor: Actor, target: str, reason: Optional[str]) -> None:
        if actor.role == ORGANIZER:
            self._require_owner(ev, actor)
        if not any(role == actor.role and to == target for _, role, to in LIFECYCLE):
            raise Unauthorized(f"Role {actor.role!r} cannot move an event to {target}")
        if target in APPROVED_FAMILY and ev.status in APPROVED_FAMILY:
            if ev.status == APPROVED or target == ADMIN_APPROVED:
                raise AlreadyApproved()
        if (ev.status, actor.role, target) not in LIFECYCLE:
            if any(frm == ev.status and to == target for frm, _, to in LIFECYCLE):
                raise Unauthorized(f"Role {actor.role!r} cannot move an event from {ev.status} to {target}")
            raise InvalidState(f"Cannot move an event from {ev.status} to {target}")

        if target == REJECTED:
            if not (reason or "").strip():
                raise ValidationError("A rejection reason is required")
            ev.rejection_reason = reason.strip()
        elif target in APPROVED_FAMILY and ev.status not in APPROVED_FAMILY:
            self._ensure_no_conflicts(ev)
        elif target == PENDING:
            ev.rejection_reason = None
        ev.status = target

    def _ensure_no_conflicts(self, ev: Event) -> None:
        if ev.is_notice:
            return
        booked = self.store.list_events(statuses=APPROVED_FAMILY, event_type=STANDARD)
        conflicts = find_conflicts(ev, booked)
        if conflicts:
            logger.info(
                "Approval of %s refused, collides with %s",
                ev.event_id,
                ", ".join(c.event_id for c in conflicts),
            )
            raise VenueConflict(conflicts=_conflict_payload(ev, conflicts))

    def approve_event(self, event_id: str, actor: Actor, publish: bool = False) -> Event:
        """Admin approval. Lands in ``admin_approved`` unless ``publish`` is set."""
        return self.transition(event_id, actor, APPROVED if publish else ADMIN_APPROVED)

    def publish_event(self, event_id: str, actor: Actor) -> Event:
        return self.transition(event_id, actor, APPROVED)

    def reject_event(self, event_id: str, actor: Actor, reason: str) -> Event:
        return self.transition(event_id, actor, REJECTED, reason)

    def complete_event(self, event_id: str, actor: Actor) -> Event:
        return self.transition(event_id, actor, COMPLETED)

    def update_event(self, event_id: str, actor: Actor, changes: Dict[str, Any]) -> Event:
        """Edit event details.

        Details may only change while the event is pending or rejected, unless
        the actor is an admin. An organizer editing a rejected event resubmits
        it: the event goes back to pending and the rejection reason is cleared.
        Gallery images can be edited in any status.
        """
        unknown = set(changes) - DETAIL_FIELDS - OPERATIONAL_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        self._require_role(actor, ORGANIZER, ADMIN)

        def change(ev: Event) -> Event:
            self._require_owner(ev, actor)
            details = {k: v for k, v in changes.items() if k in DETAIL_FIELDS}
            if details:
                if ev.status not in (PENDING, REJECTED) and not actor.is_admin:
                    raise InvalidState(f"Cannot edit the details of an event that is {ev.status}")
                self._apply_details(ev, details)
                if ev.status == REJECTED and actor.role == ORGANIZER:
                    self._apply_transition(ev, actor, PENDING, None)
            if "gallery_images" in changes:
                ev.gallery_images = [str(u) for u in changes["gallery_images"] or []]
            return ev

        ev = self._mutate(event_id, change)
        logger.info("Event %s edited by %s (%s)", event_id, actor.user_id, ", ".join(sorted(changes)))
        return ev

    @staticmethod
    def _apply_details(ev: Event, details: Dict[str, Any]) -> None:
        if "title" in details:
            title = (details["title"] or "").strip()
            if not title:
                raise ValidationError("Title is required")
            ev.title = title
        if "location" in details:
            location = (details["location"] or "").strip()
            if not location:
                raise ValidationError("Location is required")
            ev.location = location
        if "description" in details:
            ev.description = details["description"] or ""
        if "request_note" in details:
            ev.request_note = details["request_note"]
        if "category" in details:
            ev.category = check_category(details["category"])
        if "requires_approval" in details:
            ev.requires_approval = bool(details["requires_approval"])
        if "end_date" in details:
            end_date = details["end_date"]
            ev.end_date = as_date(end_date, "end_date") if end_date else None
        if "capacity" in details:
            capacity = check_capacity(details["capacity"])
            if capacity < len(ev.attendees):
                raise ValidationError(
                    f"Capacity {capacity} is below the {len(ev.attendees)} people already attending"
                )
            ev.capacity = capacity

        if SCHEDULE_FIELDS & set(details):
            if isinstance(ev.schedule, MultiSession) and "event_dates" not in details:
                raise ValidationError(
                    "Edit event_dates to reschedule a multi-session event"
                    " (an empty list turns it into a single session)"
                )
            current = event_to_doc(ev)
            merged = {k: details.get(k, current[k]) for k in SCHEDULE_FIELDS}
            ev.schedule = build_schedule(
                merged["date"], merged["start_time"], merged["end_time"], merged["event_dates"]
            )
            if "agenda" not in details:
                # re-validate the kept agenda against the new session dates
                details = dict(details, agenda=current["agenda"])
        if "agenda" in details:
            ev.agenda = build_agenda(details["agenda"], ev.schedule)

    def set_gallery(self, event_id: str, actor: Actor, urls: List[str]) -> Event:
        return self.update_event(event_id, actor, {"gallery_images": urls})

    def toggle_gate(self, event_id: str, actor: Actor) -> bool:
        """Flip the manual gate switch; returns the new state."""
        self._require_role(actor, ORGANIZER, ADMIN)

        def change(ev: Event) -> bool:
            self._require_owner(ev, actor)
            ev.is_gate_open = not ev.is_gate_open
            return ev.is_gate_open

        is_open = self._mutate(event_id, change)
        logger.info("Gates for event %s %s by %s", event_id, "opened" if is_open else "closed", actor.user_id)
        return is_open

    def delete_event(self, event_id: str, actor: Actor) -> None:
        """Delete an event and everything it owns. Owner or admin, any status."""
        ev = self._load(event_id)
        self._require_owner(ev, actor)
        if not self.store.delete_event(event_id):
            raise NotFound(f"Event not found: {event_id}")
        logger.info("Event %s deleted by %s", event_id, actor.user_id)

    # -------- RSVP --------

    def toggle_rsvp(self, event_id: str, user_id: str, note: Optional[str] = None) -> RsvpResult:
        """RSVP, or cancel an existing RSVP.

        A user already on the list is removed whatever their status. A new
        RSVP is refused with EventFull once the attendee list has reached
        capacity; otherwise it lands as ``pending`` when the organizer reviews
        RSVPs, else ``accepted``.
        """

        def change(ev: Event) -> RsvpResult:
            if ev.is_notice:
                raise InvalidState("Notices do not take RSVPs")
            if ev.status not in APPROVED_FAMILY:
                raise InvalidState(f"Cannot RSVP to an event that is {ev.status}")
            existing = ev.find_attendee(user_id)
            if existing is not None:
                ev.attendees.remove(existing)
                return RsvpResult(NOT_ATTENDING, list(ev.attendees))
            if len(ev.attendees) >= ev.capacity:
                raise EventFull()
            status = PENDING if ev.requires_approval else ACCEPTED
            ev.attendees.append(Attendee(user_id=user_id, status=status, note=note or ""))
            return RsvpResult(status, list(ev.attendees))

        result = self._mutate(event_id, change)
        logger.info("RSVP %s -> %s for event %s", user_id, result.status, event_id)
        return result

    def review_attendee(self, event_id: str, user_id: str, decision: str, actor: Actor) -> Attendee:
        """Accept or reject a pending RSVP. Decisions are final."""
        if decision not in (ACCEPTED, REJECTED):
            raise ValidationError(f"Decision must be {ACCEPTED!r} or {REJECTED!r}")
        self._require_role(actor, ORGANIZER, ADMIN)

        def change(ev: Event) -> Attendee:
            self._require_owner(ev, actor)
            attendee = ev.find_attendee(user_id)
            if attendee is None:
                raise NotFound(f"User {user_id} has not RSVPd for this event")
            if attendee.status != PENDING:
                raise InvalidState(f"RSVP already {attendee.status}")
            attendee.status = decision
            return attendee

        attendee = self._mutate(event_id, change)
        logger.info("RSVP of %s for event %s %s by %s", user_id, event_id, decision, actor.user_id)
        return attendee

    # -------- Check-in --------

    def check_in(self, event_id: str, scanned_user_id: str, actor: Actor) -> CheckInResult:
        """Validate a scanned ticket and mark the attendee present.

        Checked in order: event exists, caller may scan, gate is open, user
        is on the guest list, the RSVP was accepted, the user is not already
        in. The gate is a manual switch; the scheduled time window plays no
        part here.
        """
        self._load(event_id)
        self._require_role(actor, ORGANIZER, ADMIN)

        def change(ev: Event) -> Attendee:
            if not ev.is_gate_open:
                raise GatesClosed()
            attendee = ev.find_attendee(scanned_user_id)
            if attendee is None:
                raise NotOnGuestList()
            if attendee.status != ACCEPTED:
                raise AccessDenied(attendee.status)
            if attendee.marked_present:
                raise AlreadyCheckedIn()
            attendee.marked_present = True
            return attendee

        try:
            attendee = self._mutate(event_id, change)
        except (GatesClosed, NotOnGuestList, AccessDenied, AlreadyCheckedIn) as e:
            logger.info("Scan of %s at event %s refused: %s", scanned_user_id, event_id, e.code)
            raise
        logger.info("Checked in %s at event %s", attendee.user_id, event_id)
        return CheckInResult(student_name=self.display_name(attendee.user_id))

    # -------- Polls --------

    def create_poll(self, event_id: str, question: str, options: List[str], actor: Actor) -> Poll:
        question = (question or "").strip()
        texts = [str(o).strip() for o in options or [] if str(o).strip()]
        if not question:
            raise ValidationError("Poll question is required")
        if len(texts) < 2:
            raise ValidationError("A poll needs at least two options")
        self._require_role(actor, ORGANIZER, ADMIN)

        def change(ev: Event) -> Poll:
            self._require_owner(ev, actor)
            poll = Poll(poll_id=new_id(), question=question, options=[PollOption(t) for t in texts])
            ev.polls.append(poll)
            return poll

        poll = self._mutate(event_id, change)
        logger.info("Poll %s added to event %s", poll.poll_id, event_id)
        return poll

    def set_poll_active(self, event_id: str, poll_id: str, actor: Actor, active: bool) -> Poll:
        self._require_role(actor, ORGANIZER, ADMIN)

        def change(ev: Event) -> Poll:
            self._require_owner(ev, actor)
            poll = ev.find_poll(poll_id)
            if poll is None:
                raise NotFound(f"Poll not found: {poll_id}")
            poll.active = active
            return poll

        return self._mutate(event_id, change)

    def vote(self, event_id: str, poll_id: str, option_index: int, user_id: str) -> Poll:
        """Cast a single, final vote. Only counts and voter ids are kept."""

        def change(ev: Event) -> Poll:
            poll = ev.find_poll(poll_id)
            if poll is None:
                raise NotFound(f"Poll not found: {poll_id}")
            if not poll.active:
                raise PollInactive()
            if user_id in poll.voters:
                raise AlreadyVoted()
            if not 0 <= option_index < len(poll.options):
                raise ValidationError(f"Option {option_index} does not exist")
            poll.options[option_index].votes += 1
            poll.voters.append(user_id)
            return poll

        poll = self._mutate(event_id, change)
        logger.info("Vote recorded on poll %s of event %s", poll_id, event_id)
        return poll

    # -------- Feedback --------

    def submit_feedback(self, event_id: str, user_id: str, rating: int, comment: str = "") -> Event:
        try:
            rating = int(rating)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid rating: {rating!r}")
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5")

        def change(ev: Event) -> Event:
            if any(f.user_id == user_id for f in ev.feedback):
                raise AlreadyReviewed()
            ev.feedback.append(Feedback(user_id=user_id, rating=rating, comment=comment or ""))
            ev.average_rating = sum(f.rating for f in ev.feedback) / len(ev.feedback)
            return ev

        ev = self._mutate(event_id, change)
        logger.info("Feedback from %s on event %s (%d/5)", user_id, event_id, rating)
        return ev

    # -------- Queries --------

    def get_event(self, event_id: str) -> Event:
        return self._load(event_id)

    def list_published(self) -> List[Event]:
        """Approved events and notices, earliest session first."""
        events = list(self.store.list_events(statuses=(APPROVED,)))
        events.sort(key=lambda e: (e.sessions()[0].date, e.sessions()[0].start_time))
        return events

    def list_pending(self, actor: Actor) -> List[Event]:
        self._require_role(actor, ADMIN)
        return list(self.store.list_events(statuses=(PENDING,)))

    def list_by_organizer(self, actor: Actor) -> List[Event]:
        return list(self.store.list_events(organizer_id=actor.user_id))

    def calendar(self, start: date, end: date) -> List[CalendarEntry]:
        if end < start:
            raise ValidationError("Calendar end date is before its start date")
        return calendar_entries(self.list_published(), start, end)
