from concurrent.futures import ThreadPoolExecutor
from datetime import date

import pytest

from campus_events import NOT_ATTENDING, CampusEvents
from campus_models import (
    AccessDenied,
    Actor,
    AlreadyApproved,
    AlreadyCheckedIn,
    AlreadyVoted,
    EventFull,
    GatesClosed,
    InvalidState,
    NotFound,
    Unauthorized,
    User,
    ValidationError,
    VenueConflict,
    WriteConflict,
)
from event_store import InMemoryStore

ADMIN = Actor("U-ADMIN", "admin")
ORG = Actor("U-ORG", "organizer")
OTHER_ORG = Actor("U-ORG2", "organizer")
STUDENT = Actor("U-S1", "student")


@pytest.fixture()
def campus():
    return CampusEvents(max_write_retries=200)


def draft(**kwargs) -> dict:
    d = {
        "title": "AI Workshop",
        "date": "2025-01-10",
        "start_time": "09:00",
        "end_time": "11:00",
        "location": "Room X",
        "capacity": 50,
    }
    d.update(kwargs)
    return d


def live_event(campus: CampusEvents, **kwargs):
    ev = campus.create_event(draft(**kwargs), ORG)
    return campus.approve_event(ev.event_id, ADMIN, publish=True)


# -------- Lifecycle --------


def test_new_event_is_pending(campus):
    ev = campus.create_event(draft(), ORG)
    assert ev.status == "pending"
    assert ev.organizer_id == "U-ORG"
    assert campus.get_event(ev.event_id).title == "AI Workshop"


def test_create_rejects_inverted_times(campus):
    with pytest.raises(ValidationError):
        campus.create_event(draft(start_time="12:00", end_time="11:00"), ORG)


def test_create_rejects_agenda_outside_sessions(campus):
    with pytest.raises(ValidationError):
        campus.create_event(draft(agenda=[{"title": "Keynote", "date": "2025-01-11"}]), ORG)


def test_transition_table_guards(campus):
    ev = campus.create_event(draft(), ORG)
    with pytest.raises(Unauthorized):
        campus.approve_event(ev.event_id, ORG)
    with pytest.raises(Unauthorized):
        campus.approve_event(ev.event_id, STUDENT)
    with pytest.raises(InvalidState):
        campus.complete_event(ev.event_id, ORG)
    with pytest.raises(ValidationError):
        campus.reject_event(ev.event_id, ADMIN, "  ")

    ev = campus.approve_event(ev.event_id, ADMIN)
    assert ev.status == "admin_approved"
    with pytest.raises(AlreadyApproved):
        campus.approve_event(ev.event_id, ADMIN)
    with pytest.raises(Unauthorized):
        campus.publish_event(ev.event_id, OTHER_ORG)

    assert campus.publish_event(ev.event_id, ORG).status == "approved"
    with pytest.raises(AlreadyApproved):
        campus.approve_event(ev.event_id, ADMIN, publish=True)

    with pytest.raises(Unauthorized):
        campus.transition(ev.event_id, STUDENT, "approved")
    with pytest.raises(Unauthorized):
        campus.transition(ev.event_id, OTHER_ORG, "approved")

    assert campus.complete_event(ev.event_id, ADMIN).status == "completed"
    with pytest.raises(InvalidState):
        campus.approve_event(ev.event_id, ADMIN)


def test_rejected_edit_goes_back_to_pending(campus):
    ev = campus.create_event(draft(), ORG)
    ev = campus.reject_event(ev.event_id, ADMIN, "R")
    assert (ev.status, ev.rejection_reason) == ("rejected", "R")

    ev = campus.update_event(ev.event_id, ORG, {"location": "Room Y"})
    assert ev.status == "pending"
    assert ev.rejection_reason is None
    assert ev.location == "Room Y"


def test_admin_edit_keeps_rejected_status(campus):
    ev = campus.create_event(draft(), ORG)
    campus.reject_event(ev.event_id, ADMIN, "R")
    ev = campus.update_event(ev.event_id, ADMIN, {"title": "Renamed"})
    assert ev.status == "rejected"


def test_capacity_cannot_drop_below_attendance(campus):
    ev = live_event(campus, capacity=5)
    campus.toggle_rsvp(ev.event_id, "U-S1")
    campus.toggle_rsvp(ev.event_id, "U-S2")
    with pytest.raises(ValidationError):
        campus.update_event(ev.event_id, ADMIN, {"capacity": 1})
    assert campus.update_event(ev.event_id, ADMIN, {"capacity": 2}).capacity == 2


def test_schedule_edit_revalidates_agenda(campus):
    ev = campus.create_event(draft(agenda=[{"title": "Intro", "date": "2025-01-10"}]), ORG)
    with pytest.raises(ValidationError):
        campus.update_event(ev.event_id, ORG, {"date": "2025-01-11"})
    ev = campus.update_event(
        ev.event_id, ORG, {"date": "2025-01-11", "agenda": [{"title": "Intro", "date": "2025-01-11"}]}
    )
    assert ev.sessions()[0].date.isoformat() == "2025-01-11"


def test_multi_session_reschedule_needs_event_dates(campus):
    ev = campus.create_event(
        draft(
            event_dates=[
                {"date": "2025-01-10", "start_time": "09:00", "end_time": "11:00"},
                {"date": "2025-01-11", "start_time": "09:00", "end_time": "11:00"},
            ]
        ),
        ORG,
    )
    with pytest.raises(ValidationError):
        campus.update_event(ev.event_id, ORG, {"date": "2025-03-01", "start_time": "14:00", "end_time": "15:00"})
    assert [s.date.isoformat() for s in campus.get_event(ev.event_id).sessions()] == ["2025-01-10", "2025-01-11"]

    ev = campus.update_event(
        ev.event_id,
        ORG,
        {"date": "2025-03-01", "start_time": "14:00", "end_time": "15:00", "event_dates": []},
    )
    assert [(s.date.isoformat(), s.start_time.hour) for s in ev.sessions()] == [("2025-03-01", 14)]


def test_unknown_edit_fields_are_refused(campus):
    ev = campus.create_event(draft(), ORG)
    with pytest.raises(ValidationError):
        campus.update_event(ev.event_id, ORG, {"status": "approved"})


def test_delete_cascades(campus):
    ev = live_event(campus)
    campus.toggle_rsvp(ev.event_id, "U-S1")
    with pytest.raises(Unauthorized):
        campus.delete_event(ev.event_id, OTHER_ORG)
    campus.delete_event(ev.event_id, ORG)
    with pytest.raises(NotFound):
        campus.get_event(ev.event_id)


# -------- Conflicts --------


def test_conflicting_approval_is_atomic(campus):
    a = live_event(campus, title="A")
    b = campus.create_event(draft(title="B", start_time="10:00", end_time="12:00"), ORG)

    with pytest.raises(VenueConflict) as info:
        campus.approve_event(b.event_id, ADMIN)
    assert [c["event_id"] for c in info.value.payload["conflicts"]] == [a.event_id]

    after = campus.get_event(b.event_id)
    assert after.status == "pending"
    assert after.version == b.version


def test_conflicts_list_every_collision(campus):
    a = live_event(campus, title="A", start_time="09:00", end_time="10:00")
    c = live_event(campus, title="C", start_time="10:00", end_time="11:00")
    big = campus.create_event(draft(title="Big", start_time="08:00", end_time="12:00"), ORG)
    with pytest.raises(VenueConflict) as info:
        campus.approve_event(big.event_id, ADMIN)
    assert {x["event_id"] for x in info.value.payload["conflicts"]} == {a.event_id, c.event_id}


def test_pending_and_rejected_events_never_block(campus):
    campus.create_event(draft(title="Pending"), ORG)
    rejected = campus.create_event(draft(title="Rejected"), ORG)
    campus.reject_event(rejected.event_id, ADMIN, "no")
    ev = campus.create_event(draft(title="Mine"), ORG)
    assert campus.approve_event(ev.event_id, ADMIN).status == "admin_approved"


def test_admin_approved_events_block(campus):
    first = campus.create_event(draft(title="First"), ORG)
    campus.approve_event(first.event_id, ADMIN)
    second = campus.create_event(draft(title="Second"), OTHER_ORG)
    with pytest.raises(VenueConflict):
        campus.approve_event(second.event_id, ADMIN)


def test_each_session_is_checked(campus):
    live_event(campus, title="Saturday Talk", date="2025-01-11", start_time="10:00", end_time="11:00")
    multi = campus.create_event(
        draft(
            title="Weekend Lab",
            event_dates=[
                {"date": "2025-01-10", "start_time": "10:00", "end_time": "11:00"},
                {"date": "2025-01-11", "start_time": "10:30", "end_time": "12:00"},
            ],
        ),
        ORG,
    )
    with pytest.raises(VenueConflict) as info:
        campus.approve_event(multi.event_id, ADMIN)
    assert info.value.payload["conflicts"][0]["date"] == "2025-01-11"


def test_conflict_reports_the_overlapping_session(campus):
    live_event(
        campus,
        title="Weekend Lab",
        event_dates=[
            {"date": "2025-01-10", "start_time": "09:00", "end_time": "10:00"},
            {"date": "2025-01-11", "start_time": "13:00", "end_time": "15:00"},
        ],
    )
    talk = campus.create_event(draft(title="Saturday Talk", date="2025-01-11", start_time="14:00", end_time="16:00"), ORG)
    with pytest.raises(VenueConflict) as info:
        campus.approve_event(talk.event_id, ADMIN)
    assert info.value.payload["conflicts"][0]["date"] == "2025-01-11"
    assert info.value.payload["conflicts"][0]["time"] == "13:00-15:00"


def test_notices_do_not_hold_venues(campus):
    campus.create_notice({"title": "Exam week", "date": "2025-01-10", "location": "Room X"}, ADMIN)
    ev = campus.create_event(draft(), ORG)
    assert campus.approve_event(ev.event_id, ADMIN).status == "admin_approved"


# -------- RSVP --------


def test_rsvp_toggle_never_duplicates(campus):
    ev = live_event(campus)
    assert campus.toggle_rsvp(ev.event_id, "U-S1").status == "accepted"
    assert campus.toggle_rsvp(ev.event_id, "U-S1").status == NOT_ATTENDING
    result = campus.toggle_rsvp(ev.event_id, "U-S1")
    assert [a.user_id for a in result.attendees] == ["U-S1"]
    assert [a.user_id for a in campus.get_event(ev.event_id).attendees] == ["U-S1"]


def test_rsvp_refused_outside_approved_family(campus):
    ev = campus.create_event(draft(), ORG)
    with pytest.raises(InvalidState):
        campus.toggle_rsvp(ev.event_id, "U-S1")
    campus.approve_event(ev.event_id, ADMIN)
    assert campus.toggle_rsvp(ev.event_id, "U-S1").status == "accepted"
    campus.complete_event(ev.event_id, ORG)
    with pytest.raises(InvalidState):
        campus.toggle_rsvp(ev.event_id, "U-S2")


def test_cancel_works_for_pending_rsvp(campus):
    ev = live_event(campus, requires_approval=True)
    assert campus.toggle_rsvp(ev.event_id, "U-S1", note="plus one?").status == "pending"
    assert campus.toggle_rsvp(ev.event_id, "U-S1").status == NOT_ATTENDING


def test_concurrent_rsvps_respect_capacity(campus):
    ev = live_event(campus, capacity=1)
    users = [f"U-S{i}" for i in range(12)]

    def attempt(user_id):
        try:
            return campus.toggle_rsvp(ev.event_id, user_id).status
        except EventFull:
            return "full"

    with ThreadPoolExecutor(max_workers=12) as pool:
        outcomes = list(pool.map(attempt, users))

    assert outcomes.count("accepted") == 1
    assert outcomes.count("full") == 11
    assert len(campus.get_event(ev.event_id).attendees) == 1


def test_review_decisions_are_final(campus):
    ev = live_event(campus, requires_approval=True)
    campus.toggle_rsvp(ev.event_id, "U-S1")
    with pytest.raises(Unauthorized):
        campus.review_attendee(ev.event_id, "U-S1", "accepted", OTHER_ORG)
    with pytest.raises(ValidationError):
        campus.review_attendee(ev.event_id, "U-S1", "maybe", ORG)
    assert campus.review_attendee(ev.event_id, "U-S1", "rejected", ORG).status == "rejected"
    with pytest.raises(InvalidState):
        campus.review_attendee(ev.event_id, "U-S1", "accepted", ORG)
    with pytest.raises(NotFound):
        campus.review_attendee(ev.event_id, "U-S9", "accepted", ORG)


# -------- Check-in --------


def test_gate_closed_blocks_every_scan(campus):
    # Scheduled window is irrelevant: only the switch counts
    ev = live_event(campus)
    campus.toggle_rsvp(ev.event_id, "U-S1")
    with pytest.raises(GatesClosed):
        campus.check_in(ev.event_id, "U-S1", ORG)
    with pytest.raises(GatesClosed):
        campus.check_in(ev.event_id, "U-S404", ORG)
    assert campus.get_event(ev.event_id).attendees[0].marked_present is False


def test_check_in_order_of_failures(campus):
    ev = live_event(campus, requires_approval=True)
    with pytest.raises(NotFound):
        campus.check_in("missing", "U-S1", ORG)
    with pytest.raises(NotFound):
        campus.check_in("missing", "U-S1", STUDENT)
    with pytest.raises(Unauthorized):
        campus.check_in(ev.event_id, "U-S1", STUDENT)
    campus.toggle_gate(ev.event_id, ORG)
    campus.toggle_rsvp(ev.event_id, "U-S1")
    with pytest.raises(AccessDenied) as info:
        campus.check_in(ev.event_id, "U-S1", ORG)
    assert str(info.value) == "AccessDenied:pending"
    campus.review_attendee(ev.event_id, "U-S1", "rejected", ORG)
    with pytest.raises(AccessDenied) as info:
        campus.check_in(ev.event_id, "U-S1", ORG)
    assert info.value.payload == {"status": "rejected"}


def test_check_in_returns_display_name(campus):
    campus.register_user(User("U-S1", "Student One", "student", student_id="S2023001"))
    ev = live_event(campus)
    campus.toggle_gate(ev.event_id, ORG)
    campus.toggle_rsvp(ev.event_id, "U-S1")
    campus.toggle_rsvp(ev.event_id, "U-S2")
    assert campus.check_in(ev.event_id, "U-S1", ORG).student_name == "Student One"
    assert campus.check_in(ev.event_id, "U-S2", ADMIN).student_name == "U-S2"


def test_concurrent_duplicate_scans_succeed_once(campus):
    ev = live_event(campus)
    campus.toggle_gate(ev.event_id, ORG)
    campus.toggle_rsvp(ev.event_id, "U-S1")

    def scan(_):
        try:
            campus.check_in(ev.event_id, "U-S1", ORG)
            return "ok"
        except AlreadyCheckedIn:
            return "dup"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(scan, range(8)))

    assert outcomes.count("ok") == 1
    assert outcomes.count("dup") == 7


def test_gate_toggle_requires_owner(campus):
    ev = live_event(campus)
    with pytest.raises(Unauthorized):
        campus.toggle_gate(ev.event_id, OTHER_ORG)
    assert campus.toggle_gate(ev.event_id, ADMIN) is True
    assert campus.toggle_gate(ev.event_id, ORG) is False


# -------- Polls --------


def test_poll_tally_invariant(campus):
    ev = live_event(campus)
    poll = campus.create_poll(ev.event_id, "Snacks?", ["Chips", "Fruit", "None"], ORG)
    campus.vote(ev.event_id, poll.poll_id, 0, "U-S1")
    campus.vote(ev.event_id, poll.poll_id, 2, "U-S2")
    with pytest.raises(AlreadyVoted):
        campus.vote(ev.event_id, poll.poll_id, 1, "U-S1")
    with pytest.raises(ValidationError):
        campus.vote(ev.event_id, poll.poll_id, 7, "U-S3")

    stored = campus.get_event(ev.event_id).find_poll(poll.poll_id)
    assert [o.votes for o in stored.options] == [1, 0, 1]
    assert stored.total_votes() == len(stored.voters) == 2


def test_concurrent_votes_keep_tally(campus):
    ev = live_event(campus)
    poll = campus.create_poll(ev.event_id, "Pick one", ["A", "B"], ORG)
    voters = [f"U-S{i}" for i in range(20)]

    with ThreadPoolExecutor(max_workers=10) as pool:
        list(pool.map(lambda i: campus.vote(ev.event_id, poll.poll_id, i % 2, voters[i]), range(20)))

    stored = campus.get_event(ev.event_id).find_poll(poll.poll_id)
    assert stored.total_votes() == len(stored.voters) == 20
    assert sorted(stored.voters) == sorted(voters)


def test_poll_needs_two_options(campus):
    ev = live_event(campus)
    with pytest.raises(ValidationError):
        campus.create_poll(ev.event_id, "Only one?", ["Yes", "  "], ORG)
    with pytest.raises(Unauthorized):
        campus.create_poll(ev.event_id, "Q", ["A", "B"], OTHER_ORG)


# -------- Feedback & queries --------


def test_feedback_average(campus):
    ev = live_event(campus)
    campus.submit_feedback(ev.event_id, "U-S1", 4)
    ev = campus.submit_feedback(ev.event_id, "U-S2", 5, "great")
    assert ev.average_rating == 4.5
    with pytest.raises(ValidationError):
        campus.submit_feedback(ev.event_id, "U-S3", 0)


def test_published_listing_and_calendar(campus):
    later = live_event(campus, title="Later", date="2025-02-01")
    sooner = live_event(campus, title="Sooner", date="2025-01-05")
    campus.create_event(draft(title="Hidden"), ORG)
    assert [e.title for e in campus.list_published()] == ["Sooner", "Later"]

    entries = campus.calendar(date(2025, 1, 1), date(2025, 1, 31))
    assert [e.event_id for e in entries] == [sooner.event_id]
    assert later.event_id not in {e.event_id for e in entries}


def test_write_conflict_after_retries():
    class AlwaysStale(InMemoryStore):
        def replace_event(self, event, expected_version):
            return False

    campus = CampusEvents(store=AlwaysStale(), max_write_retries=3)
    ev = campus.create_event(draft(), ORG)
    with pytest.raises(WriteConflict):
        campus.approve_event(ev.event_id, ADMIN)
