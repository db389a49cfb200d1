"""FastAPI server exposing the Campus Events API.

Run locally:
  uvicorn server:app --reload

Environment:
  DB_BACKEND=memory|mongodb
  MONGODB_URI=... (when DB_BACKEND=mongodb)
  DB_NAME=campus_events
  COLLECTION_PREFIX=dev_
  LOG_LEVEL=INFO
  MAX_WRITE_RETRIES=8
  CORS_ORIGINS=*

Identity comes from the upstream identity provider as two headers,
``X-User-Id`` and ``X-User-Role``. Token checks happen before requests
reach this service.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from campus_events import CampusEvents
from campus_models import (
    ROLES,
    Actor,
    CampusError,
    Event,
    User,
    ValidationError,
    WriteConflict,
    event_to_doc,
    parse_date,
    parse_time,
    poll_to_doc,
    user_to_doc,
)
from event_store import MongoStore
from logging_config import setup_logging

load_dotenv()

logger = logging.getLogger(__name__)


def get_system() -> CampusEvents:
    retries = int(os.getenv("MAX_WRITE_RETRIES", "8"))
    backend = os.getenv("DB_BACKEND", "memory").lower()
    if backend == "mongodb":
        uri = os.getenv("MONGODB_URI")
        db_name = os.getenv("DB_NAME", "campus_events")
        prefix = os.getenv("COLLECTION_PREFIX", "")
        if not uri:
            raise RuntimeError("DB_BACKEND=mongodb requires MONGODB_URI")
        store = MongoStore(uri=uri, db_name=db_name, collection_prefix=prefix)
        return CampusEvents(store=store, max_write_retries=retries)
    return CampusEvents(max_write_retries=retries)


campus = get_system()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Campus Events API started (%s backend)", type(campus.store).__name__)
    yield


app = FastAPI(title="Campus Events", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Error handling ----------

STATUS_BY_KIND = {
    "Validation": 422,
    "NotFound": 404,
    "Unauthorized": 403,
    "InvalidState": 400,
    "Capacity": 400,
    "GateClosed": 400,
    "Conflict": 409,
}


@app.exception_handler(CampusError)
async def campus_error_handler(request: Request, exc: CampusError):
    return JSONResponse(exc.to_dict(), status_code=STATUS_BY_KIND.get(exc.kind, 400))


@app.exception_handler(WriteConflict)
async def write_conflict_handler(request: Request, exc: WriteConflict):
    logger.warning("Gave up on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"kind": "ServerError", "msg": "Server busy, please retry"}, status_code=503)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error while processing %s %s", request.method, request.url.path)
    return JSONResponse({"kind": "ServerError", "msg": "Server Error"}, status_code=500)


# ---------- Identity ----------


def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Actor:
    if not x_user_id or x_user_role not in ROLES:
        raise HTTPException(status_code=401, detail="Missing or invalid identity")
    return Actor(user_id=x_user_id, role=x_user_role)


# ---------- Pydantic Schemas ----------


class WireModel(BaseModel):
    """Checks the "YYYY-MM-DD" / "HH:MM" fields of whichever schema inherits it."""

    @field_validator("date", "end_date", check_fields=False)
    @classmethod
    def _v_date(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_date(v)
        return v

    @field_validator("start_time", "end_time", check_fields=False)
    @classmethod
    def _v_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_time(v)
        return v


class SessionIn(WireModel):
    date: str  # YYYY-MM-DD
    start_time: str  # HH:MM
    end_time: str  # HH:MM
    location: Optional[str] = None


class AgendaItemIn(WireModel):
    title: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    description: Optional[str] = ""
    date: Optional[str] = None


class EventIn(WireModel):
    title: str
    description: str = ""
    date: str
    start_time: str
    end_time: str
    end_date: Optional[str] = None
    location: str
    category: str = "Other"
    capacity: int = Field(default=100, ge=0)
    requires_approval: bool = False
    agenda: List[AgendaItemIn] = Field(default_factory=list)
    event_dates: List[SessionIn] = Field(default_factory=list)
    request_note: Optional[str] = None


class EventUpdate(WireModel):
    title: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    end_date: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None
    capacity: Optional[int] = Field(default=None, ge=0)
    requires_approval: Optional[bool] = None
    agenda: Optional[List[AgendaItemIn]] = None
    event_dates: Optional[List[SessionIn]] = None
    request_note: Optional[str] = None
    gallery_images: Optional[List[str]] = None


class NoticeIn(WireModel):
    title: str
    description: str = ""
    date: str
    location: str = "Campus-wide"
    start_time: str = "00:00"
    end_time: str = "23:59"
    category: str = "Other"


class RejectIn(BaseModel):
    reason: str


class StatusIn(BaseModel):
    status: str


class GalleryIn(BaseModel):
    gallery_images: List[str]


class RsvpIn(BaseModel):
    note: Optional[str] = None


class ReviewIn(BaseModel):
    decision: Literal["accepted", "rejected"]


class ScanIn(BaseModel):
    event_id: str
    user_id: str


class PollIn(BaseModel):
    question: str
    options: List[str] = Field(min_length=2)


class PollStateIn(BaseModel):
    active: bool


class VoteIn(BaseModel):
    poll_id: str
    option_index: int = Field(ge=0)


class FeedbackIn(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = ""


class UserIn(BaseModel):
    user_id: str
    name: str
    role: Literal["student", "organizer", "admin"]
    email: str = ""
    student_id: Optional[str] = None


# ---------- Serializers ----------


def event_out(ev: Event) -> dict:
    doc = event_to_doc(ev)
    doc["organizer_name"] = campus.display_name(ev.organizer_id)
    doc["attending"] = len(ev.attendees)
    return doc


def attendee_out(a) -> dict:
    return {"user_id": a.user_id, "status": a.status, "note": a.note, "marked_present": a.marked_present}


# ---------- Routes: users ----------


@app.post("/api/users", status_code=201)
def create_user(payload: UserIn):
    user = campus.register_user(User(**payload.model_dump()))
    return user_to_doc(user)


@app.get("/api/users/{user_id}")
def get_user(user_id: str):
    return user_to_doc(campus.get_user(user_id))


# ---------- Routes: events ----------


@app.post("/api/events", status_code=201)
def create_event(payload: EventIn, actor: Actor = Depends(get_actor)):
    return event_out(campus.create_event(payload.model_dump(), actor))


@app.post("/api/events/notice", status_code=201)
def create_notice(payload: NoticeIn, actor: Actor = Depends(get_actor)):
    return event_out(campus.create_notice(payload.model_dump(), actor))


@app.get("/api/events")
def list_events():
    return [event_out(e) for e in campus.list_published()]


@app.get("/api/events/pending")
def list_pending(actor: Actor = Depends(get_actor)):
    return [event_out(e) for e in campus.list_pending(actor)]


@app.get("/api/events/mine")
def list_mine(actor: Actor = Depends(get_actor)):
    return [event_out(e) for e in campus.list_by_organizer(actor)]


@app.post("/api/events/scan")
def scan_ticket(payload: ScanIn, actor: Actor = Depends(get_actor)):
    result = campus.check_in(payload.event_id, payload.user_id, actor)
    return {"success": True, "msg": "Check-in Successful", "student_name": result.student_name}


@app.get("/api/calendar")
def calendar(start: str, end: str):
    try:
        start_d, end_d = parse_date(start), parse_date(end)
    except ValueError:
        raise ValidationError("start and end must be YYYY-MM-DD")
    return [
        {
            "event_id": c.event_id,
            "title": c.title,
            "event_type": c.event_type,
            "date": c.date.isoformat(),
            "start_time": c.start_time.strftime("%H:%M"),
            "end_time": c.end_time.strftime("%H:%M"),
            "location": c.location,
        }
        for c in campus.calendar(start_d, end_d)
    ]


@app.get("/api/events/{event_id}")
def get_event(event_id: str):
    ev = campus.get_event(event_id)
    doc = event_out(ev)
    doc["attendees"] = [dict(attendee_out(a), name=campus.display_name(a.user_id)) for a in ev.attendees]
    return doc


@app.put("/api/events/{event_id}")
def update_event(event_id: str, payload: EventUpdate, actor: Actor = Depends(get_actor)):
    changes = payload.model_dump(exclude_unset=True)
    return event_out(campus.update_event(event_id, actor, changes))


@app.delete("/api/events/{event_id}")
def delete_event(event_id: str, actor: Actor = Depends(get_actor)):
    campus.delete_event(event_id, actor)
    return {"ok": True}


@app.put("/api/events/{event_id}/approve")
def approve_event(event_id: str, publish: bool = False, actor: Actor = Depends(get_actor)):
    return event_out(campus.approve_event(event_id, actor, publish=publish))


@app.put("/api/events/{event_id}/reject")
def reject_event(event_id: str, payload: RejectIn, actor: Actor = Depends(get_actor)):
    return event_out(campus.reject_event(event_id, actor, payload.reason))


@app.put("/api/events/{event_id}/status")
def change_status(event_id: str, payload: StatusIn, actor: Actor = Depends(get_actor)):
    return event_out(campus.transition(event_id, actor, payload.status))


@app.put("/api/events/{event_id}/gate")
def toggle_gate(event_id: str, actor: Actor = Depends(get_actor)):
    return {"is_gate_open": campus.toggle_gate(event_id, actor)}


@app.put("/api/events/{event_id}/gallery")
def set_gallery(event_id: str, payload: GalleryIn, actor: Actor = Depends(get_actor)):
    return event_out(campus.set_gallery(event_id, actor, payload.gallery_images))


@app.post("/api/events/{event_id}/rsvp")
def toggle_rsvp(event_id: str, payload: Optional[RsvpIn] = None, actor: Actor = Depends(get_actor)):
    result = campus.toggle_rsvp(event_id, actor.user_id, payload.note if payload else None)
    return {"status": result.status, "attendees": [attendee_out(a) for a in result.attendees]}


@app.put("/api/events/{event_id}/attendees/{user_id}")
def review_attendee(event_id: str, user_id: str, payload: ReviewIn, actor: Actor = Depends(get_actor)):
    return attendee_out(campus.review_attendee(event_id, user_id, payload.decision, actor))


@app.post("/api/events/{event_id}/polls", status_code=201)
def create_poll(event_id: str, payload: PollIn, actor: Actor = Depends(get_actor)):
    return poll_to_doc(campus.create_poll(event_id, payload.question, payload.options, actor))


@app.put("/api/events/{event_id}/polls/{poll_id}")
def set_poll_state(event_id: str, poll_id: str, payload: PollStateIn, actor: Actor = Depends(get_actor)):
    return poll_to_doc(campus.set_poll_active(event_id, poll_id, actor, payload.active))


@app.post("/api/events/{event_id}/vote")
def vote(event_id: str, payload: VoteIn, actor: Actor = Depends(get_actor)):
    return poll_to_doc(campus.vote(event_id, payload.poll_id, payload.option_index, actor.user_id))


@app.post("/api/events/{event_id}/feedback")
def submit_feedback(event_id: str, payload: FeedbackIn, actor: Actor = Depends(get_actor)):
    ev = campus.submit_feedback(event_id, actor.user_id, payload.rating, payload.comment or "")
    return {"msg": "Feedback added", "average_rating": ev.average_rating}


# ---------- Mock Data ----------


@app.post("/api/mock/seed")
def seed_mock_data():
    from demo import seed_sample_data

    counts = seed_sample_data(campus)
    return {"inserted": counts, "events": [event_out(e) for e in campus.list_published()]}
