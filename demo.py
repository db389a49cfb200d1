"""Demo script to exercise CampusEvents with a small sample dataset.

Run: python demo.py

Supports two backends:
- In-memory (default)
- MongoDB (set DB_BACKEND=mongodb and MONGODB_URI in .env)
"""

import logging
import os

from dotenv import load_dotenv

from campus_events import CampusEvents
from campus_models import ADMIN, ORGANIZER, STUDENT, Actor, CampusError, User
from event_store import MongoStore
from logging_config import setup_logging

logger = logging.getLogger(__name__)

ADMIN_USER = User("U-ADMIN", "Admin User", ADMIN, "admin@college.edu")
ORGANIZERS = [
    User("U-CODING", "Coding Club", ORGANIZER, "coding@college.edu"),
    User("U-DRAMA", "Drama Club", ORGANIZER, "drama@college.edu"),
]
STUDENTS = [
    User(f"U-S{i}", f"Student {i}", STUDENT, f"student{i}@college.edu", f"S202300{i}")
    for i in range(1, 6)
]


def _as_actor(user: User) -> Actor:
    return Actor(user.user_id, user.role)


def seed_sample_data(campus: CampusEvents) -> dict:
    """Seed deterministic mock data through the public operations.

    Returns counts of inserted resources. Re-running skips users and events
    that already exist.
    """
    added = {"users": 0, "events": 0, "rsvps": 0}

    for user in [ADMIN_USER, *ORGANIZERS, *STUDENTS]:
        if not campus.store.user_exists(user.user_id):
            campus.register_user(user)
            added["users"] += 1

    admin = _as_actor(ADMIN_USER)
    coding, drama = (_as_actor(u) for u in ORGANIZERS)

    def propose(actor: Actor, draft: dict, approve: bool):
        if any(e.title == draft["title"] for e in campus.list_by_organizer(actor)):
            return None
        ev = campus.create_event(draft, actor)
        added["events"] += 1
        if approve:
            ev = campus.approve_event(ev.event_id, admin, publish=True)
        return ev

    mern = propose(
        coding,
        {
            "title": "Intro to MERN",
            "description": "Learn the basics of MERN stack",
            "date": "2025-01-15",
            "start_time": "10:00",
            "end_time": "12:00",
            "location": "Lab A",
            "category": "Workshop",
            "capacity": 3,
            "agenda": [
                {"title": "Setup", "start_time": "10:00", "end_time": "10:30", "date": "2025-01-15"},
                {"title": "Build a CRUD API", "start_time": "10:30", "end_time": "12:00", "date": "2025-01-15"},
            ],
        },
        approve=True,
    )
    propose(
        drama,
        {
            "title": "Annual Play Rehearsal",
            "description": "First run through",
            "date": "2025-01-16",
            "start_time": "14:00",
            "end_time": "18:00",
            "location": "Auditorium",
            "category": "Social",
            "requires_approval": True,
        },
        approve=True,
    )
    # Overnight hackathon, split into two sessions
    propose(
        coding,
        {
            "title": "Winter Hackathon",
            "description": "24 hour coding challenge",
            "date": "2025-01-20",
            "start_time": "09:00",
            "end_time": "23:59",
            "location": "Auditorium",
            "category": "Tech",
            "event_dates": [
                {"date": "2025-01-20", "start_time": "09:00", "end_time": "23:59"},
                {"date": "2025-01-21", "start_time": "00:00", "end_time": "09:00"},
            ],
            "request_note": "Need the hall overnight",
        },
        approve=False,
    )

    if mern is not None:
        for student in STUDENTS[:3]:
            campus.toggle_rsvp(mern.event_id, student.user_id)
            added["rsvps"] += 1

    return added


def print_event(campus: CampusEvents, event_id: str) -> None:
    ev = campus.get_event(event_id)
    print(f"{ev.title} [{ev.status}] at {ev.location}")
    for s in ev.sessions():
        print(f"  {s.date.isoformat()} {s.start_time:%H:%M}-{s.end_time:%H:%M}")
    print(f"  Attending: {len(ev.attendees)}/{ev.capacity}")
    print()


def main() -> None:
    load_dotenv()
    setup_logging()
    backend = os.getenv("DB_BACKEND", "memory").lower()
    if backend == "mongodb":
        uri = os.getenv("MONGODB_URI")
        db_name = os.getenv("DB_NAME", "campus_events")
        prefix = os.getenv("COLLECTION_PREFIX", "")
        if not uri:
            raise SystemExit("DB_BACKEND=mongodb requires MONGODB_URI in environment/.env")
        campus = CampusEvents(store=MongoStore(uri=uri, db_name=db_name, collection_prefix=prefix))
    else:
        campus = CampusEvents()
    seed_sample_data(campus)

    for ev in campus.list_published():
        print_event(campus, ev.event_id)

    # A colliding proposal is refused at approval time
    admin = _as_actor(ADMIN_USER)
    clash = campus.create_event(
        {
            "title": "Code Review Night",
            "date": "2025-01-15",
            "start_time": "11:00",
            "end_time": "13:00",
            "location": "Lab A",
        },
        _as_actor(ORGANIZERS[0]),
    )
    try:
        campus.approve_event(clash.event_id, admin)
    except CampusError as e:
        print(f"Approval refused: {e.message} {e.payload.get('conflicts')}")


if __name__ == "__main__":
    main()
