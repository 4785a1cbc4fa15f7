"""
application.py

Application layer for the BTO flat allocation engine.

Overview
--------
BTOEngine (engine.py) calls into this module; this module calls into
service.py.  It holds:

  1. Output DTOs.  Callers only ever see these flat, string-formatted
     copies, never the live model objects held by the stores.
  2. Abstract repositories for users, projects, applications, officer
     registrations and events (in-memory versions in infrastructure.py).
  3. AbstractUnitOfWork: one use case, one commit or one rollback.
  4. Use cases, one class per engine operation.  Each fetches what it
     needs, asks a service to validate and apply the transition, saves the
     result and records an EngineEvent.

Structure
---------
DTOs
    UserDTO, FlatTypeDTO, ProjectDTO, ApplicationDTO
    OfficerRegistrationDTO, BookingReceiptDTO, EngineEventDTO

Repository interfaces
    AbstractUserRepository
    AbstractProjectRepository
    AbstractApplicationRepository
    AbstractRegistrationRepository
    AbstractEventRepository

Unit of Work
    AbstractUnitOfWork

Use Cases
    --- Applications ---
    SubmitApplicationUseCase
    ReviewApplicationUseCase
    RequestWithdrawalUseCase
    ReviewWithdrawalUseCase
    BookFlatUseCase

    --- Officer registration ---
    RegisterOfficerUseCase
    ProcessOfficerRegistrationUseCase

    --- Project administration ---
    CreateProjectUseCase
    UpdateProjectUseCase
    UpdateFlatUnitsUseCase
    ToggleVisibilityUseCase
    DeleteProjectUseCase

    --- Queries ---
    QueryAvailableProjectsUseCase and the read-only listings below it

Design notes
------------
- Use cases receive commands and return DTOs only.
- Each use case runs inside the UnitOfWork handed to execute(); leaving the
  `with uow:` block through an exception rolls every mutation back.
- Services are injected through EngineServices so that configured rules
  (eligibility ages, slot limit, window enforcement) reach every use case.
- All timestamps flowing out are ISO-8601 strings (UTC).
- Errors bubble up as errors.ApplicationError subclasses.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple

from loguru import logger

from config import Settings
from errors import (
    AuthorizationError,
    FlatTypeNotFoundError,
    NoApplicationFoundError,
    NotFoundError,
    ProjectAlreadyExistsError,
    ProjectHasActiveApplicationsError,
    ProjectNotFoundError,
    UserNotFoundError,
)
from model import (
    Application,
    ApplicationStatus,
    Decision,
    EngineEvent,
    EventKind,
    FlatType,
    OfficerRegistration,
    Project,
    RegistrationStatus,
    Role,
    User,
)
from service import (
    ApplicationFilter,
    ApplicationLifecycle,
    EligibilityPolicy,
    InventoryLedger,
    ManagerProjectGuard,
    OfficerRegistrationWorkflow,
    ProjectFilter,
    ProjectService,
    _require_manager,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class UserDTO:
    nric: str
    name: str
    age: int
    marital_status: str
    role: str
    assigned_project: Optional[str]
    managed_projects: List[str]


@dataclass
class FlatTypeDTO:
    label: str
    total_units: int
    remaining_units: int
    price: int


@dataclass
class ProjectDTO:
    name: str
    neighborhood: str
    open_date: str
    close_date: str
    visible: bool
    manager_nric: str
    max_officer_slots: int
    current_officer_slots: int
    officers: List[str]
    flat_types: List[FlatTypeDTO]
    created_at: str
    updated_at: str


@dataclass
class ApplicationDTO:
    id: str
    applicant_nric: str
    project_name: str
    flat_type: str
    status: str
    status_before_withdrawal: Optional[str]
    applied_on: str
    updated_at: str


@dataclass
class OfficerRegistrationDTO:
    officer_nric: str
    project_name: str
    status: str
    requested_at: str
    processed_at: Optional[str]
    processed_by_nric: Optional[str]


@dataclass
class BookingReceiptDTO:
    """Everything printed on a flat booking receipt."""
    application_id: str
    applicant_nric: str
    applicant_name: str
    applicant_age: int
    marital_status: str
    project_name: str
    neighborhood: str
    flat_type: str
    price: int
    status: str
    issued_at: str


@dataclass
class EngineEventDTO:
    id: str
    sequence_number: int
    kind: str
    actor_nric: Optional[str]
    subject_nric: Optional[str]
    project_name: Optional[str]
    detail: str
    occurred_at: str


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def user(u: User) -> UserDTO:
        return UserDTO(
            nric=u.nric,
            name=u.name,
            age=u.age,
            marital_status=u.marital_status,
            role=u.role.value,
            assigned_project=u.assigned_project,
            managed_projects=list(u.managed_projects),
        )

    @staticmethod
    def flat_type(f: FlatType) -> FlatTypeDTO:
        return FlatTypeDTO(
            label=f.label,
            total_units=f.total_units,
            remaining_units=f.remaining_units,
            price=f.price,
        )

    @staticmethod
    def project(p: Project, labels: Optional[List[str]] = None) -> ProjectDTO:
        """`labels` restricts the listed flat types, in the project's own order."""
        flats = [
            f for f in p.flat_types.values()
            if labels is None or f.label in labels
        ]
        return ProjectDTO(
            name=p.name,
            neighborhood=p.neighborhood,
            open_date=_fmt_date(p.open_date),
            close_date=_fmt_date(p.close_date),
            visible=p.visible,
            manager_nric=p.manager_nric,
            max_officer_slots=p.max_officer_slots,
            current_officer_slots=p.current_officer_slots,
            officers=list(p.officers),
            flat_types=[_Assembler.flat_type(f) for f in flats],
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def application(a: Application) -> ApplicationDTO:
        return ApplicationDTO(
            id=str(a.id),
            applicant_nric=a.applicant_nric,
            project_name=a.project_name,
            flat_type=a.flat_type,
            status=a.status.value,
            status_before_withdrawal=(
                a.status_before_withdrawal.value if a.status_before_withdrawal else None
            ),
            applied_on=_fmt_date(a.applied_on),
            updated_at=_fmt(a.updated_at),
        )

    @staticmethod
    def registration(r: OfficerRegistration) -> OfficerRegistrationDTO:
        return OfficerRegistrationDTO(
            officer_nric=r.officer_nric,
            project_name=r.project_name,
            status=r.status.value,
            requested_at=_fmt(r.requested_at),
            processed_at=_fmt(r.processed_at),
            processed_by_nric=r.processed_by_nric,
        )

    @staticmethod
    def receipt(a: Application, applicant: User, project: Optional[Project]) -> BookingReceiptDTO:
        flat = project.find_flat_type(a.flat_type) if project is not None else None
        return BookingReceiptDTO(
            application_id=str(a.id),
            applicant_nric=applicant.nric,
            applicant_name=applicant.name,
            applicant_age=applicant.age,
            marital_status=applicant.marital_status,
            project_name=a.project_name,
            neighborhood=project.neighborhood if project is not None else "",
            flat_type=a.flat_type,
            price=flat.price if flat is not None else 0,
            status=a.status.value,
            issued_at=_fmt(datetime.now(timezone.utc)),
        )

    @staticmethod
    def event(e: EngineEvent) -> EngineEventDTO:
        return EngineEventDTO(
            id=str(e.id),
            sequence_number=e.sequence_number,
            kind=e.kind.value,
            actor_nric=e.actor_nric,
            subject_nric=e.subject_nric,
            project_name=e.project_name,
            detail=e.detail,
            occurred_at=_fmt(e.occurred_at),
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractUserRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, nric: str) -> Optional[User]: ...
    @abc.abstractmethod
    def list_all(self) -> List[User]: ...
    @abc.abstractmethod
    def list_by_role(self, role: Role) -> List[User]: ...
    @abc.abstractmethod
    def add(self, user: User) -> None:
        """Insert a new user; raises DuplicateKeyError if the NRIC is taken."""
    @abc.abstractmethod
    def save(self, user: User) -> None: ...


class AbstractProjectRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, name: str) -> Optional[Project]:
        """Case-insensitive lookup by project name."""
    @abc.abstractmethod
    def list_all(self) -> List[Project]: ...
    @abc.abstractmethod
    def list_visible(self) -> List[Project]: ...
    @abc.abstractmethod
    def list_for_manager(self, manager_nric: str) -> List[Project]: ...
    @abc.abstractmethod
    def add(self, project: Project) -> None:
        """Insert a new project; raises DuplicateKeyError if the name is taken."""
    @abc.abstractmethod
    def save(self, project: Project) -> None: ...
    @abc.abstractmethod
    def delete(self, name: str) -> None: ...


class AbstractApplicationRepository(abc.ABC):
    """
    One current slot per applicant plus the archive of every application the
    applicant ever made (the current one included).
    """
    @abc.abstractmethod
    def get_current(self, applicant_nric: str) -> Optional[Application]: ...
    @abc.abstractmethod
    def history(self, applicant_nric: str) -> List[Application]: ...
    @abc.abstractmethod
    def list_for_project(self, project_name: str) -> List[Application]:
        """Current applications filed against `project_name`."""
    @abc.abstractmethod
    def list_all(self) -> List[Application]:
        """Every applicant's current application."""
    @abc.abstractmethod
    def add(self, application: Application) -> None:
        """Fill the applicant's slot; raises DuplicateKeyError if it holds an active application."""
    @abc.abstractmethod
    def save(self, application: Application) -> None: ...


class AbstractRegistrationRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, officer_nric: str, project_name: str) -> Optional[OfficerRegistration]: ...
    @abc.abstractmethod
    def list_for_officer(self, officer_nric: str) -> List[OfficerRegistration]: ...
    @abc.abstractmethod
    def list_for_project(self, project_name: str) -> List[OfficerRegistration]: ...
    @abc.abstractmethod
    def list_all(self) -> List[OfficerRegistration]: ...
    @abc.abstractmethod
    def save(self, registration: OfficerRegistration) -> None: ...
    @abc.abstractmethod
    def delete_for_project(self, project_name: str) -> None: ...


class AbstractEventRepository(abc.ABC):
    @abc.abstractmethod
    def list_all(self) -> List[EngineEvent]: ...
    @abc.abstractmethod
    def save(self, event: EngineEvent) -> None: ...
    @abc.abstractmethod
    def next_sequence(self) -> int: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.projects.save(project)
            uow.commit()
    """
    users: AbstractUserRepository
    projects: AbstractProjectRepository
    applications: AbstractApplicationRepository
    registrations: AbstractRegistrationRepository
    events: AbstractEventRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICES (shared across use cases)
# ===========================================================================

@dataclass
class EngineServices:
    """The configured domain services one engine instance works with."""
    policy: EligibilityPolicy = field(default_factory=EligibilityPolicy)
    ledger: InventoryLedger = field(default_factory=InventoryLedger)
    lifecycle: Optional[ApplicationLifecycle] = None
    officers: OfficerRegistrationWorkflow = field(default_factory=OfficerRegistrationWorkflow)
    guard: ManagerProjectGuard = field(default_factory=ManagerProjectGuard)
    projects: ProjectService = field(default_factory=ProjectService)

    def __post_init__(self):
        if self.lifecycle is None:
            self.lifecycle = ApplicationLifecycle(self.policy, self.ledger)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineServices":
        policy = EligibilityPolicy(
            small_flat_type=settings.SMALL_FLAT_TYPE,
            single_min_age=settings.SINGLE_MIN_AGE,
            married_min_age=settings.MARRIED_MIN_AGE,
        )
        ledger = InventoryLedger()
        return cls(
            policy=policy,
            ledger=ledger,
            lifecycle=ApplicationLifecycle(
                policy, ledger, enforce_window=settings.ENFORCE_APPLICATION_WINDOW
            ),
            projects=ProjectService(max_officer_slots_limit=settings.MAX_OFFICER_SLOTS_LIMIT),
        )


class _ServiceUseCase:
    def __init__(self, services: Optional[EngineServices] = None):
        self.services = services or EngineServices()


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_user_or_raise(uow: AbstractUnitOfWork, nric: str) -> User:
    user = uow.users.get(nric)
    if user is None:
        raise UserNotFoundError(nric)
    return user


def _get_project_or_raise(uow: AbstractUnitOfWork, name: str) -> Project:
    project = uow.projects.get(name)
    if project is None:
        raise ProjectNotFoundError(name)
    return project


def _project_of(uow: AbstractUnitOfWork, application: Optional[Application]) -> Optional[Project]:
    if application is None:
        return None
    return uow.projects.get(application.project_name)


def _record(
    uow: AbstractUnitOfWork,
    kind: EventKind,
    actor_nric: Optional[str] = None,
    subject_nric: Optional[str] = None,
    project_name: Optional[str] = None,
    detail: str = "",
) -> EngineEvent:
    """Append an event; listeners receive it once the unit of work commits."""
    event = EngineEvent(
        sequence_number=uow.events.next_sequence(),
        kind=kind,
        actor_nric=actor_nric,
        subject_nric=subject_nric,
        project_name=project_name,
        detail=detail,
    )
    uow.events.save(event)
    return event


# ===========================================================================
# USE CASES: APPLICATIONS
# ===========================================================================

@dataclass
class SubmitApplicationCommand:
    applicant_nric: str
    project_name: str
    flat_type: str
    today: Optional[date] = None


class SubmitApplicationUseCase(_ServiceUseCase):
    """Create a PENDING application and reserve one unit of the chosen flat type."""

    def execute(self, cmd: SubmitApplicationCommand, uow: AbstractUnitOfWork) -> ApplicationDTO:
        with uow:
            applicant = _get_user_or_raise(uow, cmd.applicant_nric)
            project = uow.projects.get(cmd.project_name)
            application = self.services.lifecycle.submit(
                applicant,
                project,
                cmd.project_name,
                cmd.flat_type,
                uow.applications.get_current(applicant.nric),
                today=cmd.today,
            )
            uow.applications.add(application)
            uow.projects.save(project)
            _record(
                uow, EventKind.APPLICATION_SUBMITTED,
                actor_nric=applicant.nric,
                subject_nric=applicant.nric,
                project_name=project.name,
                detail=application.flat_type,
            )
            uow.commit()
            logger.info(
                f"Application {application.id} submitted by {applicant.nric} "
                f"for {project.name} / {application.flat_type}"
            )
            return _Assembler.application(application)


@dataclass
class ReviewApplicationCommand:
    manager_nric: str
    applicant_nric: str
    project_name: str
    decision: Decision


class ReviewApplicationUseCase(_ServiceUseCase):
    def execute(self, cmd: ReviewApplicationCommand, uow: AbstractUnitOfWork) -> ApplicationDTO:
        with uow:
            manager = _get_user_or_raise(uow, cmd.manager_nric)
            project = _get_project_or_raise(uow, cmd.project_name)
            applicant = _get_user_or_raise(uow, cmd.applicant_nric)
            application = uow.applications.get_current(applicant.nric)
            if application is not None and application.project_name.casefold() != project.name.casefold():
                application = None

            application = self.services.lifecycle.approve_or_reject(
                manager, project, application, cmd.decision
            )
            uow.applications.save(application)
            uow.projects.save(project)
            kind = (
                EventKind.APPLICATION_APPROVED
                if cmd.decision is Decision.APPROVE
                else EventKind.APPLICATION_REJECTED
            )
            _record(
                uow, kind,
                actor_nric=manager.nric,
                subject_nric=applicant.nric,
                project_name=project.name,
            )
            uow.commit()
            logger.info(f"Application {application.id} {application.status.value} by {manager.nric}")
            return _Assembler.application(application)


@dataclass
class RequestWithdrawalCommand:
    applicant_nric: str


class RequestWithdrawalUseCase(_ServiceUseCase):
    def execute(self, cmd: RequestWithdrawalCommand, uow: AbstractUnitOfWork) -> ApplicationDTO:
        with uow:
            applicant = _get_user_or_raise(uow, cmd.applicant_nric)
            application = self.services.lifecycle.request_withdraw(
                uow.applications.get_current(applicant.nric)
            )
            uow.applications.save(application)
            _record(
                uow, EventKind.WITHDRAWAL_REQUESTED,
                actor_nric=applicant.nric,
                subject_nric=applicant.nric,
                project_name=application.project_name,
            )
            uow.commit()
            logger.info(f"Withdrawal requested for application {application.id}")
            return _Assembler.application(application)


@dataclass
class ReviewWithdrawalCommand:
    manager_nric: str
    applicant_nric: str
    decision: Decision


class ReviewWithdrawalUseCase(_ServiceUseCase):
    """Approve (WITHDRAWN, unit released) or reject (previous status) a withdrawal request."""

    def execute(self, cmd: ReviewWithdrawalCommand, uow: AbstractUnitOfWork) -> ApplicationDTO:
        with uow:
            manager = _get_user_or_raise(uow, cmd.manager_nric)
            applicant = _get_user_or_raise(uow, cmd.applicant_nric)
            application = uow.applications.get_current(applicant.nric)
            project = _project_of(uow, application)

            lifecycle = self.services.lifecycle
            if cmd.decision is Decision.APPROVE:
                application = lifecycle.approve_withdraw(manager, project, application)
                kind = EventKind.WITHDRAWAL_APPROVED
            else:
                application = lifecycle.reject_withdraw(manager, project, application)
                kind = EventKind.WITHDRAWAL_REJECTED
            uow.applications.save(application)
            uow.projects.save(project)
            _record(
                uow, kind,
                actor_nric=manager.nric,
                subject_nric=applicant.nric,
                project_name=project.name,
            )
            uow.commit()
            logger.info(
                f"Withdrawal of application {application.id} {cmd.decision.value}d by {manager.nric}; "
                f"status now {application.status.value}"
            )
            return _Assembler.application(application)


@dataclass
class BookFlatCommand:
    officer_nric: str
    applicant_nric: str


class BookFlatUseCase(_ServiceUseCase):
    """An officer books the flat of a SUCCESSFUL applicant in their assigned project."""

    def execute(self, cmd: BookFlatCommand, uow: AbstractUnitOfWork) -> BookingReceiptDTO:
        with uow:
            officer = _get_user_or_raise(uow, cmd.officer_nric)
            applicant = _get_user_or_raise(uow, cmd.applicant_nric)
            project = (
                uow.projects.get(officer.assigned_project)
                if officer.assigned_project else None
            )
            application = self.services.lifecycle.book(
                officer, project, uow.applications.get_current(applicant.nric)
            )
            uow.applications.save(application)
            uow.projects.save(project)
            _record(
                uow, EventKind.FLAT_BOOKED,
                actor_nric=officer.nric,
                subject_nric=applicant.nric,
                project_name=project.name,
                detail=application.flat_type,
            )
            uow.commit()
            logger.info(
                f"Flat {application.flat_type} in {project.name} booked for {applicant.nric} "
                f"by officer {officer.nric}"
            )
            return _Assembler.receipt(application, applicant, project)


# ===========================================================================
# USE CASES: OFFICER REGISTRATION
# ===========================================================================

@dataclass
class RegisterOfficerCommand:
    officer_nric: str
    project_name: str


class RegisterOfficerUseCase(_ServiceUseCase):
    def execute(self, cmd: RegisterOfficerCommand, uow: AbstractUnitOfWork) -> OfficerRegistrationDTO:
        with uow:
            officer = _get_user_or_raise(uow, cmd.officer_nric)
            project = uow.projects.get(cmd.project_name)
            applied = any(
                a.project_name.casefold() == cmd.project_name.strip().casefold()
                for a in uow.applications.history(officer.nric)
            )
            registration = self.services.officers.register(
                officer,
                project,
                cmd.project_name,
                uow.registrations.list_for_officer(officer.nric),
                applied_as_applicant=applied,
            )
            uow.registrations.save(registration)
            _record(
                uow, EventKind.OFFICER_REGISTERED,
                actor_nric=officer.nric,
                subject_nric=officer.nric,
                project_name=project.name,
            )
            uow.commit()
            logger.info(f"Officer {officer.nric} registered for {project.name}")
            return _Assembler.registration(registration)


@dataclass
class ProcessOfficerRegistrationCommand:
    manager_nric: str
    officer_nric: str
    project_name: str
    decision: Decision


class ProcessOfficerRegistrationUseCase(_ServiceUseCase):
    def execute(
        self, cmd: ProcessOfficerRegistrationCommand, uow: AbstractUnitOfWork
    ) -> OfficerRegistrationDTO:
        with uow:
            manager = _get_user_or_raise(uow, cmd.manager_nric)
            officer = _get_user_or_raise(uow, cmd.officer_nric)
            project = _get_project_or_raise(uow, cmd.project_name)
            registration = self.services.officers.process(
                manager,
                officer,
                project,
                uow.registrations.get(officer.nric, project.name),
                cmd.decision,
            )
            uow.registrations.save(registration)
            uow.projects.save(project)
            uow.users.save(officer)
            kind = (
                EventKind.OFFICER_APPROVED
                if registration.status is RegistrationStatus.APPROVED
                else EventKind.OFFICER_REJECTED
            )
            _record(
                uow, kind,
                actor_nric=manager.nric,
                subject_nric=officer.nric,
                project_name=project.name,
            )
            uow.commit()
            logger.info(
                f"Registration of officer {officer.nric} for {project.name} "
                f"{registration.status.value} by {manager.nric}"
            )
            return _Assembler.registration(registration)


# ===========================================================================
# USE CASES: PROJECT ADMINISTRATION
# ===========================================================================

@dataclass
class CreateProjectCommand:
    manager_nric: str
    name: str
    neighborhood: str
    open_date: date
    close_date: date
    max_officer_slots: int
    flat_types: Dict[str, Tuple[int, int]]   # label -> (total_units, price)
    visible: bool = True


class CreateProjectUseCase(_ServiceUseCase):
    """
    Create a project owned by the acting manager.

    The window may not overlap the manager's currently assigned project.  A
    manager without an assignment is assigned to the new project.
    """

    def execute(self, cmd: CreateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            manager = _get_user_or_raise(uow, cmd.manager_nric)
            project = self.services.projects.create_project(
                manager,
                name=cmd.name,
                neighborhood=cmd.neighborhood,
                open_date=cmd.open_date,
                close_date=cmd.close_date,
                max_officer_slots=cmd.max_officer_slots,
                flat_types=cmd.flat_types,
                visible=cmd.visible,
            )
            if uow.projects.get(project.name) is not None:
                raise ProjectAlreadyExistsError(f"A project named '{project.name}' already exists.")
            assigned = (
                uow.projects.get(manager.assigned_project)
                if manager.assigned_project else None
            )
            self.services.guard.check_can_create(project, assigned)

            uow.projects.add(project)
            if assigned is None:
                manager.assigned_project = project.name
            manager.managed_projects.append(project.name)
            uow.users.save(manager)
            _record(
                uow, EventKind.PROJECT_CREATED,
                actor_nric=manager.nric,
                project_name=project.name,
            )
            uow.commit()
            logger.info(f"Project {project.name} created by manager {manager.nric}")
            return _Assembler.project(project)


@dataclass
class UpdateProjectCommand:
    manager_nric: str
    project_name: str
    neighborhood: Optional[str] = None
    open_date: Optional[date] = None
    close_date: Optional[date] = None
    max_officer_slots: Optional[int] = None


class UpdateProjectUseCase(_ServiceUseCase):
    def execute(self, cmd: UpdateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            manager = _get_user_or_raise(uow, cmd.manager_nric)
            project = _get_project_or_raise(uow, cmd.project_name)
            project = self.services.projects.update_project(
                manager,
                project,
                neighborhood=cmd.neighborhood,
                open_date=cmd.open_date,
                close_date=cmd.close_date,
                max_officer_slots=cmd.max_officer_slots,
            )
            uow.projects.save(project)
            changed = [
                name for name in ("neighborhood", "open_date", "close_date", "max_officer_slots")
                if getattr(cmd, name) is not None
            ]
            _record(
                uow, EventKind.PROJECT_UPDATED,
                actor_nric=manager.nric,
                project_name=project.name,
                detail=",".join(changed),
            )
            uow.commit()
            logger.info(f"Project {project.name} updated by {manager.nric}: {', '.join(changed)}")
            return _Assembler.project(project)


@dataclass
class UpdateFlatUnitsCommand:
    manager_nric: str
    project_name: str
    flat_type: str
    total_units: int
    price: int


class UpdateFlatUnitsUseCase(_ServiceUseCase):
    """Resize a flat type; units already reserved or booked stay taken."""

    def execute(self, cmd: UpdateFlatUnitsCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            manager = _get_user_or_raise(uow, cmd.manager_nric)
            project = _get_project_or_raise(uow, cmd.project_name)
            _require_manager(manager, project)
            flat = project.find_flat_type(cmd.flat_type)
            if flat is None:
                raise FlatTypeNotFoundError(project.name, cmd.flat_type)
            self.services.ledger.resize(flat, cmd.total_units, cmd.price)
            project.updated_at = datetime.now(timezone.utc)
            uow.projects.save(project)
            _record(
                uow, EventKind.PROJECT_UPDATED,
                actor_nric=manager.nric,
                project_name=project.name,
                detail=f"{flat.label}={flat.total_units}@{flat.price}",
            )
            uow.commit()
            logger.info(
                f"{project.name} / {flat.label} resized to {flat.total_units} units "
                f"({flat.remaining_units} remaining) at {flat.price}"
            )
            return _Assembler.project(project)


@dataclass
class ToggleVisibilityCommand:
    project_name: str
    manager_nric: Optional[str] = None


class ToggleVisibilityUseCase(_ServiceUseCase):
    def execute(self, cmd: ToggleVisibilityCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            manager = _get_user_or_raise(uow, cmd.manager_nric) if cmd.manager_nric else None
            project = _get_project_or_raise(uow, cmd.project_name)
            project = self.services.projects.toggle_visibility(project, manager)
            uow.projects.save(project)
            _record(
                uow, EventKind.PROJECT_VISIBILITY_TOGGLED,
                actor_nric=cmd.manager_nric,
                project_name=project.name,
                detail="visible" if project.visible else "hidden",
            )
            uow.commit()
            logger.info(f"Project {project.name} is now {'visible' if project.visible else 'hidden'}")
            return _Assembler.project(project)


@dataclass
class DeleteProjectCommand:
    manager_nric: str
    project_name: str


class DeleteProjectUseCase:
    """
    Remove a project with no active applications, together with its officer
    registrations and every user assignment pointing at it.
    """

    def execute(self, cmd: DeleteProjectCommand, uow: AbstractUnitOfWork) -> None:
        with uow:
            manager = _get_user_or_raise(uow, cmd.manager_nric)
            project = _get_project_or_raise(uow, cmd.project_name)
            _require_manager(manager, project)
            if any(a.is_active for a in uow.applications.list_for_project(project.name)):
                raise ProjectHasActiveApplicationsError(
                    f"Project '{project.name}' still has active applications."
                )

            key = project.name.casefold()
            manager.managed_projects = [
                name for name in manager.managed_projects if name.casefold() != key
            ]
            uow.users.save(manager)
            for user in uow.users.list_all():
                if user.assigned_project is not None and user.assigned_project.casefold() == key:
                    user.assigned_project = None
                    uow.users.save(user)
            uow.registrations.delete_for_project(project.name)
            uow.projects.delete(project.name)
            _record(
                uow, EventKind.PROJECT_DELETED,
                actor_nric=manager.nric,
                project_name=project.name,
            )
            uow.commit()
            logger.info(f"Project {project.name} deleted by {manager.nric}")


# ===========================================================================
# USE CASES: QUERIES
# ===========================================================================

class QueryAvailableProjectsUseCase(_ServiceUseCase):
    """
    Projects an applicant may apply to right now: visible, not yet closed,
    not the project the user is handling, and offering at least one flat
    type the user is eligible for.  Only eligible flat types are listed.
    """

    def execute(
        self,
        applicant_nric: str,
        uow: AbstractUnitOfWork,
        project_filter: Optional[ProjectFilter] = None,
        today: Optional[date] = None,
    ) -> List[ProjectDTO]:
        today = today or date.today()
        with uow:
            user = _get_user_or_raise(uow, applicant_nric)
            if not user.role.can_apply:
                raise AuthorizationError(f"User {user.nric} ({user.role.value}) cannot apply for flats.")
            handled = (user.assigned_project or "").casefold() if user.role.can_handle_projects else ""
            result = []
            for project in sorted(uow.projects.list_visible(), key=lambda p: p.name.casefold()):
                if project.close_date < today or project.name.casefold() == handled:
                    continue
                labels = self.services.policy.eligible_labels(user, project.flat_types.keys())
                if not labels:
                    continue
                if project_filter is not None and not project_filter.matches(project):
                    continue
                result.append(_Assembler.project(project, labels))
            return result


class FindUserUseCase:
    def execute(self, nric: str, uow: AbstractUnitOfWork) -> UserDTO:
        with uow:
            return _Assembler.user(_get_user_or_raise(uow, nric))


class GetProjectUseCase:
    def execute(self, project_name: str, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            return _Assembler.project(_get_project_or_raise(uow, project_name))


class ListProjectsUseCase:
    def execute(
        self,
        uow: AbstractUnitOfWork,
        project_filter: Optional[ProjectFilter] = None,
        manager_nric: Optional[str] = None,
    ) -> List[ProjectDTO]:
        with uow:
            projects = (
                uow.projects.list_for_manager(manager_nric)
                if manager_nric else uow.projects.list_all()
            )
            return [
                _Assembler.project(p)
                for p in sorted(projects, key=lambda p: p.name.casefold())
                if project_filter is None or project_filter.matches(p)
            ]


class GetApplicationUseCase:
    """The applicant's current application; NoApplicationFound if the slot is empty."""

    def execute(self, applicant_nric: str, uow: AbstractUnitOfWork) -> ApplicationDTO:
        with uow:
            applicant = _get_user_or_raise(uow, applicant_nric)
            application = uow.applications.get_current(applicant.nric)
            if application is None:
                raise NoApplicationFoundError(f"No application found for {applicant.nric}.")
            return _Assembler.application(application)


class ApplicationHistoryUseCase:
    def execute(self, applicant_nric: str, uow: AbstractUnitOfWork) -> List[ApplicationDTO]:
        with uow:
            applicant = _get_user_or_raise(uow, applicant_nric)
            return [_Assembler.application(a) for a in uow.applications.history(applicant.nric)]


class ListApplicationsUseCase:
    """Booking report: current applications matching an ApplicationFilter."""

    def execute(
        self,
        uow: AbstractUnitOfWork,
        application_filter: Optional[ApplicationFilter] = None,
    ) -> List[ApplicationDTO]:
        with uow:
            result = []
            for application in uow.applications.list_all():
                if application_filter is not None and not application_filter.matches(
                    application, uow.users.get(application.applicant_nric)
                ):
                    continue
                result.append(_Assembler.application(application))
            return result


class ManagerApplicationsUseCase:
    """Current applications with the given status across a manager's projects."""

    def __init__(self, status: ApplicationStatus):
        self.status = status

    def execute(self, manager_nric: str, uow: AbstractUnitOfWork) -> List[ApplicationDTO]:
        with uow:
            manager = _get_user_or_raise(uow, manager_nric)
            if not manager.role.can_manage_projects:
                raise AuthorizationError(f"User {manager.nric} is not a manager.")
            result = []
            for project in uow.projects.list_for_manager(manager.nric):
                result.extend(
                    _Assembler.application(a)
                    for a in uow.applications.list_for_project(project.name)
                    if a.status is self.status
                )
            return result


class ProjectApplicationsUseCase:
    """Current applications of one project with the given status."""

    def __init__(self, status: ApplicationStatus):
        self.status = status

    def execute(self, project_name: str, uow: AbstractUnitOfWork) -> List[ApplicationDTO]:
        with uow:
            project = _get_project_or_raise(uow, project_name)
            return [
                _Assembler.application(a)
                for a in uow.applications.list_for_project(project.name)
                if a.status is self.status
            ]


class RegistrationStatusUseCase:
    def execute(
        self, officer_nric: str, project_name: str, uow: AbstractUnitOfWork
    ) -> Optional[OfficerRegistrationDTO]:
        with uow:
            officer = _get_user_or_raise(uow, officer_nric)
            registration = uow.registrations.get(officer.nric, project_name)
            return _Assembler.registration(registration) if registration else None


class ListRegistrationsUseCase:
    def execute(
        self,
        uow: AbstractUnitOfWork,
        project_name: Optional[str] = None,
        status: Optional[RegistrationStatus] = None,
    ) -> List[OfficerRegistrationDTO]:
        with uow:
            if project_name is not None:
                registrations = uow.registrations.list_for_project(
                    _get_project_or_raise(uow, project_name).name
                )
            else:
                registrations = uow.registrations.list_all()
            return [
                _Assembler.registration(r)
                for r in registrations
                if status is None or r.status is status
            ]


class AssignedProjectDetailsUseCase:
    """The project an officer or manager is currently assigned to, if any."""

    def execute(self, nric: str, uow: AbstractUnitOfWork) -> Optional[ProjectDTO]:
        with uow:
            user = _get_user_or_raise(uow, nric)
            if user.role is Role.APPLICANT:
                raise AuthorizationError(f"User {user.nric} has no project assignments.")
            if not user.assigned_project:
                return None
            project = uow.projects.get(user.assigned_project)
            return _Assembler.project(project) if project else None


class BookingReceiptUseCase:
    def execute(self, applicant_nric: str, uow: AbstractUnitOfWork) -> BookingReceiptDTO:
        with uow:
            applicant = _get_user_or_raise(uow, applicant_nric)
            application = uow.applications.get_current(applicant.nric)
            if application is None or application.status is not ApplicationStatus.BOOKED:
                raise NotFoundError(f"No booked flat found for {applicant.nric}.")
            return _Assembler.receipt(application, applicant, _project_of(uow, application))


class ListEventsUseCase:
    def execute(self, uow: AbstractUnitOfWork, since: int = 0) -> List[EngineEventDTO]:
        """Events with a sequence number greater than `since`, oldest first."""
        with uow:
            return [
                _Assembler.event(e)
                for e in sorted(uow.events.list_all(), key=lambda e: e.sequence_number)
                if e.sequence_number > since
            ]
