"""
model.py

Domain models for the BTO (Build-To-Order) flat allocation engine.

Entities
--------
- User
- FlatType
- Project
- Application
- OfficerRegistration
- EngineEvent

All models use Python dataclasses for clean, framework-agnostic definitions.
Users are keyed by NRIC and projects by name; applications and events carry
UUIDs for traceability.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Role(str, Enum):
    """
    Capability set of a user.

    APPLICANT – May apply for flats.
    OFFICER   – May apply for flats and handle one project at a time.
    MANAGER   – Creates projects and processes applications / officers.
    """
    APPLICANT = "applicant"
    OFFICER = "officer"
    MANAGER = "manager"

    @property
    def can_apply(self) -> bool:
        return self in (Role.APPLICANT, Role.OFFICER)

    @property
    def can_handle_projects(self) -> bool:
        return self is Role.OFFICER

    @property
    def can_manage_projects(self) -> bool:
        return self is Role.MANAGER


class MaritalStatus(str, Enum):
    SINGLE = "single"
    MARRIED = "married"

    @classmethod
    def parse(cls, value: str) -> Optional["MaritalStatus"]:
        """Case-insensitive lookup; returns None for anything unrecognised."""
        try:
            return cls(value.strip().lower())
        except (AttributeError, ValueError):
            return None


class ApplicationStatus(str, Enum):
    """Lifecycle status of a flat application."""
    PENDING = "pending"
    SUCCESSFUL = "successful"
    UNSUCCESSFUL = "unsuccessful"
    BOOKED = "booked"
    WITHDRAWN = "withdrawn"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"

    @property
    def is_active(self) -> bool:
        return self not in (ApplicationStatus.UNSUCCESSFUL, ApplicationStatus.WITHDRAWN)


class RegistrationStatus(str, Enum):
    """Approval status of an officer's request to handle a project."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_active(self) -> bool:
        return self is not RegistrationStatus.REJECTED


class Decision(str, Enum):
    """A staff member's verdict on a pending request."""
    APPROVE = "approve"
    REJECT = "reject"


class EventKind(str, Enum):
    """Category of a recorded engine mutation."""
    APPLICATION_SUBMITTED = "application_submitted"
    APPLICATION_APPROVED = "application_approved"
    APPLICATION_REJECTED = "application_rejected"
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_APPROVED = "withdrawal_approved"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"
    FLAT_BOOKED = "flat_booked"
    OFFICER_REGISTERED = "officer_registered"
    OFFICER_APPROVED = "officer_approved"
    OFFICER_REJECTED = "officer_rejected"
    PROJECT_CREATED = "project_created"
    PROJECT_UPDATED = "project_updated"
    PROJECT_VISIBILITY_TOGGLED = "project_visibility_toggled"
    PROJECT_DELETED = "project_deleted"


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@dataclass
class User:
    """
    A person known to the engine, identified solely by NRIC.

    Role-specific fields are only meaningful for the roles that use them:
    `assigned_project` for officers and managers, `managed_projects` for
    managers.
    """
    nric: str = ""
    name: str = ""
    age: int = 0
    marital_status: str = MaritalStatus.SINGLE.value
    role: Role = Role.APPLICANT

    assigned_project: Optional[str] = None
    managed_projects: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Projects & inventory
# ---------------------------------------------------------------------------


@dataclass
class FlatType:
    """
    A unit category within a project (e.g. "2-Room") and its inventory.

    Invariant: 0 <= remaining_units <= total_units.  Counters are only
    mutated through service.InventoryLedger.
    """
    label: str = ""
    total_units: int = 0
    remaining_units: int = 0
    price: int = 0

    @property
    def taken_units(self) -> int:
        return self.total_units - self.remaining_units


@dataclass
class Project:
    """
    A BTO project with an inclusive application window.

    Visibility is independent of the window.  Officer slots count approved
    officers; the roster keeps their names in approval order.
    """
    name: str = ""
    neighborhood: str = ""
    open_date: date = field(default_factory=date.today)
    close_date: date = field(default_factory=date.today)
    visible: bool = True
    manager_nric: str = ""

    max_officer_slots: int = 10
    current_officer_slots: int = 0
    officers: List[str] = field(default_factory=list)

    flat_types: Dict[str, FlatType] = field(default_factory=dict)

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def find_flat_type(self, label: str) -> Optional[FlatType]:
        """Case-insensitive lookup of a flat type by label."""
        wanted = label.strip().casefold()
        for key, flat in self.flat_types.items():
            if key.casefold() == wanted:
                return flat
        return None

    def is_open_on(self, day: date) -> bool:
        return self.open_date <= day <= self.close_date

    @property
    def has_free_officer_slot(self) -> bool:
        return self.current_officer_slots < self.max_officer_slots


# ---------------------------------------------------------------------------
# Applications & registrations
# ---------------------------------------------------------------------------


@dataclass
class Application:
    """
    An applicant's request for one flat type in one project.

    `unit_reserved` records whether a unit is currently held for this
    application; it is set at submission and cleared when the unit is
    released.  `status_before_withdrawal` holds the status to restore if a
    withdrawal request is rejected.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    applicant_nric: str = ""
    project_name: str = ""
    flat_type: str = ""
    status: ApplicationStatus = ApplicationStatus.PENDING
    status_before_withdrawal: Optional[ApplicationStatus] = None
    unit_reserved: bool = False

    applied_on: date = field(default_factory=date.today)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status.is_active


@dataclass
class OfficerRegistration:
    """An officer's request to handle a project, keyed by (officer, project)."""
    officer_nric: str = ""
    project_name: str = ""
    status: RegistrationStatus = RegistrationStatus.PENDING
    requested_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None
    processed_by_nric: Optional[str] = None


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass
class EngineEvent:
    """
    Immutable record of one committed mutation.

    Events are handed to persistence listeners so they can append-log or
    re-export; they must never be edited once written.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    sequence_number: int = 0            # Monotonically increasing per database
    kind: EventKind = EventKind.PROJECT_UPDATED
    actor_nric: Optional[str] = None
    subject_nric: Optional[str] = None
    project_name: Optional[str] = None
    detail: str = ""
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
