"""
infrastructure.py

In-memory implementation of all repository interfaces and the Unit of Work.

This is a self-contained backend that stores everything in plain Python
dicts.  Users are keyed by normalised NRIC, projects by case-folded name,
registrations by (NRIC, project) and events by UUID.  Applications keep one
current slot per applicant and an archive of every application ever made.

One InMemoryDatabase is built per engine and handed in explicitly; it owns a
re-entrant lock that every InMemoryUnitOfWork holds from __enter__ to
__exit__, so each use case sees and leaves a consistent state.

Rollback is journal based: the first time a unit of work reads or writes an
object, the store copies it into the open _Journal.  A use case therefore
pays for the objects it touches, not for the size of the database.  The
event log is append-only; its reads are not journalled, and rollback drops
the events added during the block.

To swap in a real database later, implement the same Abstract* interfaces
from application.py and hand the engine a different unit-of-work factory.
Nothing in service.py or application.py needs to change.
"""

from __future__ import annotations

import copy
import threading
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from application import (
    AbstractApplicationRepository,
    AbstractEventRepository,
    AbstractProjectRepository,
    AbstractRegistrationRepository,
    AbstractUnitOfWork,
    AbstractUserRepository,
)
from errors import DuplicateKeyError
from model import (
    Application,
    EngineEvent,
    OfficerRegistration,
    Project,
    Role,
    User,
)


def normalize_nric(nric: str) -> str:
    return (nric or "").strip().upper()


def project_key(name: str) -> str:
    return (name or "").strip().casefold()


# ---------------------------------------------------------------------------
# Undo journal
# ---------------------------------------------------------------------------

_ABSENT = object()


class _Journal:
    """Original state of every key a unit of work has touched."""

    def __init__(self):
        # One memo for the whole block: an object held by two stores
        # (current and archived applications) is restored as one object.
        self._memo: dict = {}
        self._originals: Dict[int, Tuple["_Store", dict]] = {}
        self._orders: Dict[int, list] = {}

    def touch(self, store: "_Store", key) -> None:
        _, originals = self._originals.setdefault(id(store), (store, {}))
        if key in originals:
            return
        obj = dict.get(store, key, _ABSENT)
        originals[key] = obj if obj is _ABSENT else copy.deepcopy(obj, self._memo)

    def before_remove(self, store: "_Store", key) -> None:
        # Removal loses the key's position; remember the order once per store.
        self._orders.setdefault(id(store), list(store))
        self.touch(store, key)

    def undo(self) -> None:
        for store, originals in self._originals.values():
            for key, original in originals.items():
                if original is _ABSENT:
                    dict.pop(store, key, None)
                else:
                    dict.__setitem__(store, key, original)
        for store_id, order in self._orders.items():
            store = self._originals[store_id][0]
            items = [(key, store[key]) for key in order if key in store]
            dict.clear(store)
            dict.update(store, items)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with get/save/delete helpers that report to the open journal."""

    def __init__(self, journal_reads: bool = True):
        super().__init__()
        self.journal: Optional[_Journal] = None
        self._journal_reads = journal_reads

    def _touch(self, key) -> None:
        if self.journal is not None:
            self.journal.touch(self, key)

    def fetch(self, key):
        obj = self.get(key)
        if obj is not None and self._journal_reads:
            self._touch(key)
        return obj

    def put(self, key, obj) -> None:
        self._touch(key)
        self[key] = obj

    def remove(self, key) -> None:
        if key not in self:
            return
        if self.journal is not None:
            self.journal.before_remove(self, key)
        del self[key]

    def select(self, predicate) -> list:
        found = [(k, v) for k, v in self.items() if predicate(v)]
        if self._journal_reads:
            for key, _ in found:
                self._touch(key)
        return [v for _, v in found]

    def all(self) -> list:
        return self.select(lambda _: True)

    def wipe(self) -> None:
        for key in list(self):
            self.remove(key)


# ---------------------------------------------------------------------------
# Shared in-memory database
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    _STORES = (
        "users",
        "projects",
        "applications",
        "application_history",
        "registrations",
        "events",
    )

    def __init__(self):
        self.users:               _Store = _Store()   # NRIC -> User
        self.projects:            _Store = _Store()   # casefolded name -> Project
        self.applications:        _Store = _Store()   # NRIC -> current Application
        self.application_history: _Store = _Store()   # id -> Application
        self.registrations:       _Store = _Store()   # (NRIC, casefolded name) -> OfficerRegistration
        self.events:              _Store = _Store(journal_reads=False)   # id -> EngineEvent

        self.last_event_sequence = 0
        self.lock = threading.RLock()
        self.listeners: List[Callable[[EngineEvent], None]] = []

    def attach(self, journal: Optional[_Journal]) -> None:
        for name in self._STORES:
            getattr(self, name).journal = journal

    def clear(self) -> None:
        with self.lock:
            for name in self._STORES:
                getattr(self, name).wipe()
            self.last_event_sequence = 0


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryUserRepository(AbstractUserRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, nric):              return self._s.fetch(normalize_nric(nric))
    def list_all(self):               return self._s.all()
    def list_by_role(self, role: Role):
        return self._s.select(lambda u: u.role is role)

    def add(self, user: User) -> None:
        key = normalize_nric(user.nric)
        if key in self._s:
            raise DuplicateKeyError("users", key)
        user.nric = key
        self._s.put(key, user)

    def save(self, user: User) -> None:
        self._s.put(normalize_nric(user.nric), user)


class InMemoryProjectRepository(AbstractProjectRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, name):              return self._s.fetch(project_key(name))
    def list_all(self):               return self._s.all()
    def list_visible(self):
        return self._s.select(lambda p: p.visible)
    def list_for_manager(self, manager_nric):
        nric = normalize_nric(manager_nric)
        return self._s.select(lambda p: p.manager_nric == nric)

    def add(self, project: Project) -> None:
        key = project_key(project.name)
        if key in self._s:
            raise DuplicateKeyError("projects", project.name)
        self._s.put(key, project)

    def save(self, project: Project) -> None:
        self._s.put(project_key(project.name), project)

    def delete(self, name):           self._s.remove(project_key(name))


class InMemoryApplicationRepository(AbstractApplicationRepository):
    def __init__(self, current: _Store, history: _Store):
        self._current = current
        self._history = history

    def _with_history(self, applications: List[Application]) -> List[Application]:
        # The archive holds the same objects; journal them there too.
        for application in applications:
            self._history.fetch(application.id)
        return applications

    def get_current(self, applicant_nric):
        application = self._current.fetch(normalize_nric(applicant_nric))
        if application is not None:
            self._with_history([application])
        return application

    def history(self, applicant_nric):
        nric = normalize_nric(applicant_nric)
        archived = self._history.select(lambda a: a.applicant_nric == nric)
        if archived:
            self._current.fetch(nric)
        return archived

    def list_for_project(self, project_name):
        key = project_key(project_name)
        return self._with_history(
            self._current.select(lambda a: project_key(a.project_name) == key)
        )

    def list_all(self):
        return self._with_history(self._current.all())

    def add(self, application: Application) -> None:
        nric = normalize_nric(application.applicant_nric)
        existing = self.get_current(nric)
        if existing is not None and existing.is_active:
            raise DuplicateKeyError("applications", nric)
        application.applicant_nric = nric
        self._current.put(nric, application)
        self._history.put(application.id, application)

    def save(self, application: Application) -> None:
        nric = normalize_nric(application.applicant_nric)
        self.get_current(nric)
        self._current.put(nric, application)
        self._history.put(application.id, application)


class InMemoryRegistrationRepository(AbstractRegistrationRepository):
    def __init__(self, store: _Store): self._s = store

    @staticmethod
    def _key(officer_nric, project_name):
        return normalize_nric(officer_nric), project_key(project_name)

    def get(self, officer_nric, project_name):
        return self._s.fetch(self._key(officer_nric, project_name))

    def list_for_officer(self, officer_nric):
        nric = normalize_nric(officer_nric)
        return self._s.select(lambda r: r.officer_nric == nric)

    def list_for_project(self, project_name):
        key = project_key(project_name)
        return self._s.select(lambda r: project_key(r.project_name) == key)

    def list_all(self):               return self._s.all()

    def save(self, registration: OfficerRegistration) -> None:
        registration.officer_nric = normalize_nric(registration.officer_nric)
        self._s.put(self._key(registration.officer_nric, registration.project_name), registration)

    def delete_for_project(self, project_name):
        key = project_key(project_name)
        for k in [k for k in self._s if k[1] == key]:
            self._s.remove(k)


class InMemoryEventRepository(AbstractEventRepository):
    def __init__(self, db: InMemoryDatabase, pending: List[EngineEvent]):
        self._db = db
        self._s = db.events
        self._pending = pending

    def list_all(self):               return self._s.all()

    def save(self, event: EngineEvent) -> None:
        if event.id in self._s:
            raise DuplicateKeyError("events", str(event.id))
        self._s.put(event.id, event)
        self._db.last_event_sequence = max(self._db.last_event_sequence, event.sequence_number)
        self._pending.append(event)

    def next_sequence(self) -> int:
        return self._db.last_event_sequence + 1


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Holds the database lock for the whole `with` block.

    The outermost __enter__ opens a journal on the database; rollback()
    replays it, so an exception raised part-way through a use case leaves
    no partial mutation behind.  Events saved during the block are
    dispatched to db.listeners after the lock is released, and only if
    committed.  Each listener gets its own copy of each event.  Every
    listener sees every event; the first listener error is then re-raised
    to the caller, and the commit stands.
    """

    def __init__(self, db: InMemoryDatabase):
        self._db = db
        self._depth = 0
        self._journal: Optional[_Journal] = None
        self._sequence_mark = 0
        self._pending: List[EngineEvent] = []
        self._committed: List[EngineEvent] = []

        self.users         = InMemoryUserRepository(db.users)
        self.projects      = InMemoryProjectRepository(db.projects)
        self.applications  = InMemoryApplicationRepository(db.applications, db.application_history)
        self.registrations = InMemoryRegistrationRepository(db.registrations)
        self.events        = InMemoryEventRepository(db, self._pending)

    def __enter__(self) -> "InMemoryUnitOfWork":
        self._db.lock.acquire()
        if self._depth == 0 and self._db.users.journal is None:
            self._journal = _Journal()
            self._sequence_mark = self._db.last_event_sequence
            self._db.attach(self._journal)
        self._depth += 1
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._depth -= 1
        try:
            if self._depth == 0:
                super().__exit__(exc_type, exc_val, exc_tb)
                if self._journal is not None:
                    self._db.attach(None)
                    self._journal = None
        finally:
            self._db.lock.release()
        if self._depth == 0 and exc_type is None:
            self._dispatch()

    def commit(self) -> None:
        self._committed.extend(self._pending)
        self._pending.clear()

    def rollback(self) -> None:
        if self._journal is not None:
            self._journal.undo()
            self._db.last_event_sequence = self._sequence_mark
        self._pending.clear()
        self._committed.clear()

    def _dispatch(self) -> None:
        events, self._committed = self._committed, []
        failures = []
        for event in events:
            for listener in list(self._db.listeners):
                try:
                    listener(copy.copy(event))
                except Exception as exc:
                    logger.exception(f"Listener {listener!r} failed on event {event.sequence_number}")
                    failures.append(exc)
        if failures:
            raise failures[0]
