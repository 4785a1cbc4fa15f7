"""
snapshot.py

Load / export contract between the engine and whatever persists it.

A snapshot is a plain JSON document validated by the Pydantic v2 models
below.  Loading replaces the whole database inside one unit of work and
derives what the stored rows leave implicit:

  - managers own every project whose manager_nric is theirs, and are
    assigned the project open today, else the earliest upcoming one;
  - officers named on a project roster get an APPROVED registration and are
    assigned to that project;
  - projects past their close date are hidden (HIDE_CLOSED_PROJECTS_ON_LOAD).

Exporting writes the current state back in the same shape.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator

from config import Settings
from errors import ValidationError
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork, normalize_nric, project_key
from model import (
    Application,
    ApplicationStatus,
    FlatType,
    MaritalStatus,
    OfficerRegistration,
    Project,
    RegistrationStatus,
    Role,
    User,
)


# ===========================================================================
# RECORD SCHEMAS  (Pydantic v2)
# ===========================================================================

class UserRecord(BaseModel):
    nric: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    age: int = Field(..., ge=0)
    marital_status: str
    role: Role
    assigned_project: Optional[str] = None
    managed_projects: List[str] = Field(default_factory=list)

    @field_validator("nric")
    @classmethod
    def normalize(cls, v: str) -> str:
        return normalize_nric(v)

    @field_validator("marital_status")
    @classmethod
    def validate_marital_status(cls, v: str) -> str:
        status = MaritalStatus.parse(v)
        if status is None:
            raise ValueError(f"marital_status must be one of: {[s.value for s in MaritalStatus]}")
        return status.value


class FlatTypeRecord(BaseModel):
    label: str = Field(..., min_length=1)
    total_units: int = Field(..., ge=0)
    remaining_units: Optional[int] = Field(
        default=None, description="Defaults to total_units when absent"
    )
    price: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_remaining(self) -> "FlatTypeRecord":
        if self.remaining_units is None:
            self.remaining_units = self.total_units
        if not 0 <= self.remaining_units <= self.total_units:
            raise ValueError(
                f"remaining_units of '{self.label}' must be between 0 and {self.total_units}"
            )
        return self


class ProjectRecord(BaseModel):
    name: str = Field(..., min_length=1)
    neighborhood: str = ""
    open_date: date
    close_date: date
    visible: bool = True
    manager_nric: str = Field(..., min_length=1)
    max_officer_slots: int = Field(default=10, ge=1)
    current_officer_slots: Optional[int] = Field(default=None, ge=0)
    officers: List[str] = Field(default_factory=list, description="Officer names or NRICs")
    flat_types: List[FlatTypeRecord] = Field(default_factory=list)

    @field_validator("manager_nric")
    @classmethod
    def normalize(cls, v: str) -> str:
        return normalize_nric(v)

    @model_validator(mode="after")
    def check_window_and_slots(self) -> "ProjectRecord":
        if self.close_date < self.open_date:
            raise ValueError(f"close_date of '{self.name}' is before its open_date")
        slots = self.current_officer_slots
        if slots is not None and slots > self.max_officer_slots:
            raise ValueError(f"'{self.name}' has more officers than officer slots")
        if len(self.officers) > self.max_officer_slots:
            raise ValueError(f"'{self.name}' rosters more officers than officer slots")
        return self


class ApplicationRecord(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    applicant_nric: str = Field(..., min_length=1)
    project_name: str = Field(..., min_length=1)
    flat_type: str = Field(..., min_length=1)
    status: ApplicationStatus = ApplicationStatus.PENDING
    status_before_withdrawal: Optional[ApplicationStatus] = None
    unit_reserved: Optional[bool] = Field(
        default=None,
        description="Absent in older snapshots: only BOOKED units count as taken",
    )
    applied_on: date = Field(default_factory=date.today)

    @field_validator("applicant_nric")
    @classmethod
    def normalize(cls, v: str) -> str:
        return normalize_nric(v)


class RegistrationRecord(BaseModel):
    officer_nric: str = Field(..., min_length=1)
    project_name: str = Field(..., min_length=1)
    status: RegistrationStatus = RegistrationStatus.PENDING
    requested_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    processed_by_nric: Optional[str] = None

    @field_validator("officer_nric")
    @classmethod
    def normalize(cls, v: str) -> str:
        return normalize_nric(v)


class EngineSnapshot(BaseModel):
    """
    Whole-engine document.  Applications are listed oldest first; per applicant
    the active one, else the last one, fills the current slot and the rest
    are history.
    """
    users: List[UserRecord] = Field(default_factory=list)
    projects: List[ProjectRecord] = Field(default_factory=list)
    applications: List[ApplicationRecord] = Field(default_factory=list)
    registrations: List[RegistrationRecord] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_keys(self) -> "EngineSnapshot":
        _unique("user NRIC", [u.nric for u in self.users])
        _unique("project name", [project_key(p.name) for p in self.projects])
        _unique(
            "active application per applicant",
            [a.applicant_nric for a in self.applications if a.status.is_active],
        )
        _unique(
            "active registration per officer",
            [r.officer_nric for r in self.registrations if r.status.is_active],
        )
        return self


def _unique(what: str, keys: List[str]) -> None:
    seen = set()
    for key in keys:
        if key in seen:
            raise ValueError(f"duplicate {what}: {key}")
        seen.add(key)


# ===========================================================================
# LOAD
# ===========================================================================

def load_snapshot(
    db: InMemoryDatabase,
    snapshot: EngineSnapshot,
    settings: Optional[Settings] = None,
    today: Optional[date] = None,
) -> None:
    """
    Replace the contents of `db` with `snapshot`; all or nothing.

    Raises errors.ValidationError, leaving `db` untouched, when a row names a
    user, project or flat type the snapshot does not define, or when the
    officer rosters would give an officer a second active registration.
    """
    settings = settings or Settings()
    today = today or date.today()
    now = datetime.now(timezone.utc)
    _check_references(snapshot)

    with InMemoryUnitOfWork(db) as uow:
        db.clear()

        for rec in snapshot.users:
            uow.users.add(User(
                nric=rec.nric,
                name=rec.name,
                age=rec.age,
                marital_status=rec.marital_status,
                role=rec.role,
                assigned_project=rec.assigned_project,
                managed_projects=list(rec.managed_projects),
            ))

        for rec in snapshot.projects:
            project = Project(
                name=rec.name.strip(),
                neighborhood=rec.neighborhood,
                open_date=rec.open_date,
                close_date=rec.close_date,
                visible=rec.visible,
                manager_nric=rec.manager_nric,
                max_officer_slots=rec.max_officer_slots,
                current_officer_slots=rec.current_officer_slots or 0,
                flat_types={
                    f.label: FlatType(
                        label=f.label,
                        total_units=f.total_units,
                        remaining_units=f.remaining_units,
                        price=f.price,
                    )
                    for f in rec.flat_types
                },
            )
            if settings.HIDE_CLOSED_PROJECTS_ON_LOAD and project.close_date < today:
                project.visible = False
            uow.projects.add(project)

        for rec in snapshot.registrations:
            uow.registrations.save(OfficerRegistration(
                officer_nric=rec.officer_nric,
                project_name=rec.project_name,
                status=rec.status,
                requested_at=rec.requested_at or now,
                processed_at=rec.processed_at,
                processed_by_nric=rec.processed_by_nric,
            ))

        # Archived rows first so each applicant's active application lands in the current slot.
        for rec in sorted(snapshot.applications, key=lambda a: a.status.is_active):
            unit_reserved = rec.unit_reserved
            if unit_reserved is None:
                unit_reserved = rec.status is ApplicationStatus.BOOKED
            uow.applications.save(Application(
                id=rec.id,
                applicant_nric=rec.applicant_nric,
                project_name=rec.project_name,
                flat_type=rec.flat_type,
                status=rec.status,
                status_before_withdrawal=rec.status_before_withdrawal,
                unit_reserved=unit_reserved and rec.status.is_active,
                applied_on=rec.applied_on,
                updated_at=now,
            ))

        _derive_manager_assignments(uow, today)
        _derive_officer_roster(uow, {p.name.strip(): p for p in snapshot.projects}, now)
        _check_one_active_registration(uow)
        uow.commit()

    logger.info(
        f"Snapshot loaded: {len(snapshot.users)} users, {len(snapshot.projects)} projects, "
        f"{len(snapshot.applications)} applications, {len(snapshot.registrations)} registrations"
    )


def _check_references(snapshot: EngineSnapshot) -> None:
    users = {normalize_nric(u.nric): u for u in snapshot.users}
    projects = {project_key(p.name): p for p in snapshot.projects}

    for p in snapshot.projects:
        manager = users.get(normalize_nric(p.manager_nric))
        if manager is None or not manager.role.can_manage_projects:
            raise ValidationError(f"Project '{p.name}' names unknown manager {p.manager_nric}.")

    for a in snapshot.applications:
        applicant = users.get(normalize_nric(a.applicant_nric))
        if applicant is None or not applicant.role.can_apply:
            raise ValidationError(f"Application {a.id} names unknown applicant {a.applicant_nric}.")
        project = projects.get(project_key(a.project_name))
        if project is None:
            raise ValidationError(f"Application {a.id} names unknown project '{a.project_name}'.")
        labels = {f.label.strip().casefold() for f in project.flat_types}
        if a.flat_type.strip().casefold() not in labels:
            raise ValidationError(
                f"Application {a.id} names flat type '{a.flat_type}' not offered by '{project.name}'."
            )

    for r in snapshot.registrations:
        officer = users.get(normalize_nric(r.officer_nric))
        if officer is None or not officer.role.can_handle_projects:
            raise ValidationError(f"Registration names unknown officer {r.officer_nric}.")
        if project_key(r.project_name) not in projects:
            raise ValidationError(f"Registration names unknown project '{r.project_name}'.")


def _check_one_active_registration(uow: InMemoryUnitOfWork) -> None:
    active: Dict[str, str] = {}
    for registration in uow.registrations.list_all():
        if not registration.status.is_active:
            continue
        nric = registration.officer_nric
        if nric in active:
            raise ValidationError(
                f"Officer {nric} would hold active registrations for both "
                f"'{active[nric]}' and '{registration.project_name}'."
            )
        active[nric] = registration.project_name


def _derive_manager_assignments(uow: InMemoryUnitOfWork, today: date) -> None:
    for manager in uow.users.list_by_role(Role.MANAGER):
        owned = sorted(uow.projects.list_for_manager(manager.nric), key=lambda p: p.open_date)
        known = {project_key(name) for name in manager.managed_projects}
        for project in owned:
            if project_key(project.name) not in known:
                manager.managed_projects.append(project.name)

        if manager.assigned_project and uow.projects.get(manager.assigned_project) is None:
            manager.assigned_project = None
        if manager.assigned_project is None:
            current = next((p for p in owned if p.is_open_on(today)), None)
            upcoming = next((p for p in owned if p.open_date > today), None)
            chosen = current or upcoming
            manager.assigned_project = chosen.name if chosen else None
        uow.users.save(manager)


def _derive_officer_roster(
    uow: InMemoryUnitOfWork,
    records: Dict[str, ProjectRecord],
    now: datetime,
) -> None:
    officers = uow.users.list_by_role(Role.OFFICER)
    for project in uow.projects.list_all():
        rec = records[project.name]
        for entry in rec.officers:
            wanted = entry.strip()
            officer = next(
                (o for o in officers
                 if o.nric == normalize_nric(wanted) or o.name.casefold() == wanted.casefold()),
                None,
            )
            if officer is None:
                logger.warning(f"Roster of {project.name} names unknown officer '{wanted}'; skipped")
                continue
            registration = uow.registrations.get(officer.nric, project.name)
            if registration is not None and registration.status is not RegistrationStatus.APPROVED:
                raise ValidationError(
                    f"{officer.name} is on the roster of {project.name} "
                    f"but their registration is {registration.status.value}."
                )
            project.officers.append(officer.name)
            if registration is None:
                uow.registrations.save(OfficerRegistration(
                    officer_nric=officer.nric,
                    project_name=project.name,
                    status=RegistrationStatus.APPROVED,
                    requested_at=now,
                    processed_at=now,
                    processed_by_nric=project.manager_nric,
                ))
            if officer.assigned_project is None:
                officer.assigned_project = project.name
                uow.users.save(officer)
        if rec.current_officer_slots is None:
            project.current_officer_slots = len(project.officers)
        uow.projects.save(project)


# ===========================================================================
# EXPORT
# ===========================================================================

def export_snapshot(db: InMemoryDatabase) -> EngineSnapshot:
    with InMemoryUnitOfWork(db) as uow:
        users = [
            UserRecord(
                nric=u.nric,
                name=u.name,
                age=u.age,
                marital_status=u.marital_status,
                role=u.role,
                assigned_project=u.assigned_project,
                managed_projects=list(u.managed_projects),
            )
            for u in uow.users.list_all()
        ]
        projects = [
            ProjectRecord(
                name=p.name,
                neighborhood=p.neighborhood,
                open_date=p.open_date,
                close_date=p.close_date,
                visible=p.visible,
                manager_nric=p.manager_nric,
                max_officer_slots=p.max_officer_slots,
                current_officer_slots=p.current_officer_slots,
                officers=list(p.officers),
                flat_types=[
                    FlatTypeRecord(
                        label=f.label,
                        total_units=f.total_units,
                        remaining_units=f.remaining_units,
                        price=f.price,
                    )
                    for f in p.flat_types.values()
                ],
            )
            for p in uow.projects.list_all()
        ]
        applications = []
        for user in uow.users.list_all():
            current = uow.applications.get_current(user.nric)
            archived = [a for a in uow.applications.history(user.nric) if a is not current]
            applications.extend(_application_record(a) for a in archived)
            if current is not None:
                applications.append(_application_record(current))
        registrations = [
            RegistrationRecord(
                officer_nric=r.officer_nric,
                project_name=r.project_name,
                status=r.status,
                requested_at=r.requested_at,
                processed_at=r.processed_at,
                processed_by_nric=r.processed_by_nric,
            )
            for r in uow.registrations.list_all()
        ]
        return EngineSnapshot(
            users=users,
            projects=projects,
            applications=applications,
            registrations=registrations,
        )


def _application_record(a: Application) -> ApplicationRecord:
    return ApplicationRecord(
        id=a.id,
        applicant_nric=a.applicant_nric,
        project_name=a.project_name,
        flat_type=a.flat_type,
        status=a.status,
        status_before_withdrawal=a.status_before_withdrawal,
        unit_reserved=a.unit_reserved,
        applied_on=a.applied_on,
    )


# ===========================================================================
# JSON FILES
# ===========================================================================

def read_snapshot(path: Union[str, Path]) -> EngineSnapshot:
    return EngineSnapshot.model_validate_json(Path(path).read_text(encoding="utf-8"))


def write_snapshot(snapshot: EngineSnapshot, path: Union[str, Path]) -> None:
    Path(path).write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
    logger.info(f"Snapshot written to {path}")
