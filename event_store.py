"""
Storage backends for Campus Events.

Both backends keep one document per event (sub-entities nested) and one per
user, and both offer the same per-document compare-and-swap:
``replace_event(event, expected_version)`` writes only if the stored version
still equals ``expected_version`` and returns False otherwise. The facade
retries on False, which is what keeps concurrent RSVPs, scans and votes from
overwriting each other.

Expected environment variables for MongoDB (see README/.env):
- MONGODB_URI
- DB_NAME (default: campus_events)
- COLLECTION_PREFIX (optional)
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, runtime_checkable

from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from campus_models import (
    Event,
    User,
    event_from_doc,
    event_to_doc,
    user_from_doc,
    user_to_doc,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class BaseStore(Protocol):
    # Events
    def add_event(self, event: Event) -> None: ...
    def get_event(self, event_id: str) -> Optional[Event]: ...
    def replace_event(self, event: Event, expected_version: int) -> bool: ...
    def delete_event(self, event_id: str) -> bool: ...
    def list_events(
        self,
        statuses: Optional[Sequence[str]] = None,
        organizer_id: Optional[str] = None,
        event_type: Optional[str] = None,
    ) -> Iterable[Event]: ...

    # Users
    def user_exists(self, user_id: str) -> bool: ...
    def add_user(self, user: User) -> None: ...
    def get_user(self, user_id: str) -> Optional[User]: ...


def _matches(doc: dict, statuses, organizer_id, event_type) -> bool:
    if statuses is not None and doc["status"] not in statuses:
        return False
    if organizer_id is not None and doc["organizer_id"] != organizer_id:
        return False
    if event_type is not None and doc["event_type"] != event_type:
        return False
    return True


class InMemoryStore:
    """In-process store.

    Documents are kept encoded, so every read hands out a fresh Event and no
    caller can mutate shared state without going through ``replace_event``.
    Each event has its own lock guarding the compare-and-swap.
    """

    def __init__(self) -> None:
        self.events: Dict[str, dict] = {}
        self.event_order: List[str] = []
        self.users: Dict[str, User] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, event_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(event_id, threading.Lock())

    # Events
    def add_event(self, event: Event) -> None:
        with self._registry_lock:
            if event.event_id in self.events:
                raise ValueError(f"Event ID already exists: {event.event_id}")
            self.events[event.event_id] = event_to_doc(event)
            self.event_order.append(event.event_id)

    def get_event(self, event_id: str) -> Optional[Event]:
        doc = self.events.get(event_id)
        return event_from_doc(doc) if doc else None

    def replace_event(self, event: Event, expected_version: int) -> bool:
        with self._lock_for(event.event_id):
            current = self.events.get(event.event_id)
            if current is None or current["version"] != expected_version:
                logger.debug("Stale write for event %s (expected v%s)", event.event_id, expected_version)
                return False
            event.version = expected_version + 1
            self.events[event.event_id] = event_to_doc(event)
            return True

    def delete_event(self, event_id: str) -> bool:
        with self._registry_lock:
            if self.events.pop(event_id, None) is None:
                return False
            self.event_order.remove(event_id)
            self._locks.pop(event_id, None)
            return True

    def list_events(self, statuses=None, organizer_id=None, event_type=None) -> Iterable[Event]:
        with self._registry_lock:
            docs = [self.events[eid] for eid in self.event_order]
        return [event_from_doc(d) for d in docs if _matches(d, statuses, organizer_id, event_type)]

    # Users
    def user_exists(self, user_id: str) -> bool:
        return user_id in self.users

    def add_user(self, user: User) -> None:
        if user.user_id in self.users:
            raise ValueError(f"User ID already exists: {user.user_id}")
        self.users[user.user_id] = user

    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)


class MongoStore:
    """MongoDB-backed store using PyMongo.

    Collections:
    - events: one document per event, sub-entities nested, plus a ``version``
    - users: principal directory (id, name, role, email, student id)
    """

    def __init__(self, uri: str, db_name: str = "campus_events", collection_prefix: str = "") -> None:
        self.client = MongoClient(uri)
        self.db = self.client[db_name]
        p = collection_prefix
        self.c_events: Collection = self.db[f"{p}events"]
        self.c_users: Collection = self.db[f"{p}users"]
        self._ensure_indexes()

    # Indexes for integrity and query performance
    def _ensure_indexes(self) -> None:
        self.c_events.create_index("event_id", unique=True)
        self.c_events.create_index([("status", ASCENDING), ("location", ASCENDING), ("date", ASCENDING)])
        self.c_events.create_index([("organizer_id", ASCENDING), ("created_at", ASCENDING)])
        self.c_users.create_index("user_id", unique=True)

    # Events
    def add_event(self, event: Event) -> None:
        try:
            self.c_events.insert_one(event_to_doc(event))
        except DuplicateKeyError as e:  # pragma: no cover
            raise ValueError(f"Event ID already exists: {event.event_id}") from e

    def get_event(self, event_id: str) -> Optional[Event]:
        doc = self.c_events.find_one({"event_id": event_id}, projection={"_id": 0})
        return event_from_doc(doc) if doc else None

    def replace_event(self, event: Event, expected_version: int) -> bool:
        doc = event_to_doc(event)
        doc["version"] = expected_version + 1
        result = self.c_events.replace_one({"event_id": event.event_id, "version": expected_version}, doc)
        if result.matched_count != 1:
            logger.debug("Stale write for event %s (expected v%s)", event.event_id, expected_version)
            return False
        event.version = expected_version + 1
        return True

    def delete_event(self, event_id: str) -> bool:
        return self.c_events.delete_one({"event_id": event_id}).deleted_count == 1

    def list_events(self, statuses=None, organizer_id=None, event_type=None) -> Iterable[Event]:
        query: dict = {}
        if statuses is not None:
            query["status"] = {"$in": list(statuses)}
        if organizer_id is not None:
            query["organizer_id"] = organizer_id
        if event_type is not None:
            query["event_type"] = event_type
        for doc in self.c_events.find(query, projection={"_id": 0}, sort=[("created_at", ASCENDING)]):
            yield event_from_doc(doc)

    # Users
    def user_exists(self, user_id: str) -> bool:
        return self.c_users.count_documents({"user_id": user_id}, limit=1) == 1

    def add_user(self, user: User) -> None:
        try:
            self.c_users.insert_one(user_to_doc(user))
        except DuplicateKeyError as e:
            raise ValueError(f"User ID already exists: {user.user_id}") from e

    def get_user(self, user_id: str) -> Optional[User]:
        doc = self.c_users.find_one({"user_id": user_id}, projection={"_id": 0})
        return user_from_doc(doc) if doc else None
