"""
engine.py

In-process front door of the BTO allocation engine.

BTOEngine wires one InMemoryDatabase, the configured services and the use
cases together.  Every public method runs exactly one use case inside a fresh
unit of work and returns DTOs from application.py.

Error handling
--------------
  ApplicationError  → logged at WARNING with its code, then re-raised
  DuplicateKeyError → propagates untouched (store corruption)
  ValueError        → raised by ProjectSpec for malformed input

Example
-------
    engine = BTOEngine(InMemoryDatabase())
    engine.load_snapshot(read_snapshot("data.json"))
    engine.submit_application("S1234567A", "Acacia Breeze", "2-Room")
"""

from __future__ import annotations

from datetime import date
from typing import Callable, Dict, List, Optional, TypeVar

from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator

from application import (
    ApplicationDTO,
    ApplicationHistoryUseCase,
    AssignedProjectDetailsUseCase,
    BookFlatCommand,
    BookFlatUseCase,
    BookingReceiptDTO,
    BookingReceiptUseCase,
    CreateProjectCommand,
    CreateProjectUseCase,
    DeleteProjectCommand,
    DeleteProjectUseCase,
    EngineEventDTO,
    EngineServices,
    FindUserUseCase,
    GetApplicationUseCase,
    GetProjectUseCase,
    ListApplicationsUseCase,
    ListEventsUseCase,
    ListProjectsUseCase,
    ListRegistrationsUseCase,
    ManagerApplicationsUseCase,
    OfficerRegistrationDTO,
    ProcessOfficerRegistrationCommand,
    ProcessOfficerRegistrationUseCase,
    ProjectApplicationsUseCase,
    ProjectDTO,
    QueryAvailableProjectsUseCase,
    RegisterOfficerCommand,
    RegisterOfficerUseCase,
    RegistrationStatusUseCase,
    RequestWithdrawalCommand,
    RequestWithdrawalUseCase,
    ReviewApplicationCommand,
    ReviewApplicationUseCase,
    ReviewWithdrawalCommand,
    ReviewWithdrawalUseCase,
    SubmitApplicationCommand,
    SubmitApplicationUseCase,
    ToggleVisibilityCommand,
    ToggleVisibilityUseCase,
    UpdateFlatUnitsCommand,
    UpdateFlatUnitsUseCase,
    UpdateProjectCommand,
    UpdateProjectUseCase,
    UserDTO,
)
from config import Settings
from errors import ApplicationError
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import ApplicationStatus, Decision, EngineEvent, RegistrationStatus
from service import ApplicationFilter, ProjectFilter
from snapshot import EngineSnapshot, export_snapshot, load_snapshot

T = TypeVar("T")


# ===========================================================================
# INPUT SCHEMAS  (Pydantic v2)
# ===========================================================================

class FlatTypeSpec(BaseModel):
    units: int = Field(..., ge=0)
    price: int = Field(..., ge=0)


class ProjectSpec(BaseModel):
    """Everything a manager supplies to create a project."""
    name: str = Field(..., min_length=1, max_length=200)
    neighborhood: str = Field(..., min_length=1, max_length=200)
    open_date: date
    close_date: date
    max_officer_slots: int = Field(default=10, ge=1)
    flat_types: Dict[str, FlatTypeSpec] = Field(
        ..., min_length=1, description="Flat type label -> units and price"
    )
    visible: bool = True

    @field_validator("name", "neighborhood")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @model_validator(mode="after")
    def check_window(self) -> "ProjectSpec":
        if self.close_date < self.open_date:
            raise ValueError("close_date must not be before open_date")
        return self


# ===========================================================================
# FACADE
# ===========================================================================

class BTOEngine:
    """
    Application lifecycle, inventory, officer registration and project
    administration over one in-memory database.
    """

    def __init__(self, db: InMemoryDatabase, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or Settings()
        self.services = EngineServices.from_settings(self.settings)
        self._uow_factory = lambda: InMemoryUnitOfWork(db)

    def _run(self, operation: str, call: Callable[[InMemoryUnitOfWork], T]) -> T:
        try:
            return call(self._uow_factory())
        except ApplicationError as exc:
            logger.warning(f"{operation} rejected [{exc.code}]: {exc}")
            raise

    # --- Applications -------------------------------------------------------

    def submit_application(
        self,
        applicant_nric: str,
        project_name: str,
        flat_type: str,
        today: Optional[date] = None,
    ) -> ApplicationDTO:
        cmd = SubmitApplicationCommand(applicant_nric, project_name, flat_type, today=today)
        return self._run(
            "submit_application",
            lambda uow: SubmitApplicationUseCase(self.services).execute(cmd, uow),
        )

    def approve_reject_application(
        self,
        manager_nric: str,
        applicant_nric: str,
        project_name: str,
        decision: Decision,
    ) -> ApplicationDTO:
        cmd = ReviewApplicationCommand(manager_nric, applicant_nric, project_name, Decision(decision))
        return self._run(
            "approve_reject_application",
            lambda uow: ReviewApplicationUseCase(self.services).execute(cmd, uow),
        )

    def request_withdraw(self, applicant_nric: str) -> ApplicationDTO:
        cmd = RequestWithdrawalCommand(applicant_nric)
        return self._run(
            "request_withdraw",
            lambda uow: RequestWithdrawalUseCase(self.services).execute(cmd, uow),
        )

    def approve_withdraw(self, manager_nric: str, applicant_nric: str) -> ApplicationDTO:
        cmd = ReviewWithdrawalCommand(manager_nric, applicant_nric, Decision.APPROVE)
        return self._run(
            "approve_withdraw",
            lambda uow: ReviewWithdrawalUseCase(self.services).execute(cmd, uow),
        )

    def reject_withdraw(self, manager_nric: str, applicant_nric: str) -> ApplicationDTO:
        cmd = ReviewWithdrawalCommand(manager_nric, applicant_nric, Decision.REJECT)
        return self._run(
            "reject_withdraw",
            lambda uow: ReviewWithdrawalUseCase(self.services).execute(cmd, uow),
        )

    def book_flat(self, officer_nric: str, applicant_nric: str) -> BookingReceiptDTO:
        cmd = BookFlatCommand(officer_nric, applicant_nric)
        return self._run(
            "book_flat",
            lambda uow: BookFlatUseCase(self.services).execute(cmd, uow),
        )

    # --- Officer registration -----------------------------------------------

    def register_officer(self, officer_nric: str, project_name: str) -> OfficerRegistrationDTO:
        cmd = RegisterOfficerCommand(officer_nric, project_name)
        return self._run(
            "register_officer",
            lambda uow: RegisterOfficerUseCase(self.services).execute(cmd, uow),
        )

    def process_officer_registration(
        self,
        manager_nric: str,
        officer_nric: str,
        project_name: str,
        decision: Decision,
    ) -> OfficerRegistrationDTO:
        cmd = ProcessOfficerRegistrationCommand(
            manager_nric, officer_nric, project_name, Decision(decision)
        )
        return self._run(
            "process_officer_registration",
            lambda uow: ProcessOfficerRegistrationUseCase(self.services).execute(cmd, uow),
        )

    # --- Project administration ---------------------------------------------

    def create_project(self, manager_nric: str, spec: ProjectSpec) -> ProjectDTO:
        cmd = CreateProjectCommand(
            manager_nric=manager_nric,
            name=spec.name,
            neighborhood=spec.neighborhood,
            open_date=spec.open_date,
            close_date=spec.close_date,
            max_officer_slots=spec.max_officer_slots,
            flat_types={label: (f.units, f.price) for label, f in spec.flat_types.items()},
            visible=spec.visible,
        )
        return self._run(
            "create_project",
            lambda uow: CreateProjectUseCase(self.services).execute(cmd, uow),
        )

    def _update(self, operation: str, cmd: UpdateProjectCommand) -> ProjectDTO:
        return self._run(operation, lambda uow: UpdateProjectUseCase(self.services).execute(cmd, uow))

    def update_neighborhood(self, manager_nric: str, project_name: str, neighborhood: str) -> ProjectDTO:
        return self._update(
            "update_neighborhood",
            UpdateProjectCommand(manager_nric, project_name, neighborhood=neighborhood),
        )

    def update_open_date(self, manager_nric: str, project_name: str, open_date: date) -> ProjectDTO:
        return self._update(
            "update_open_date",
            UpdateProjectCommand(manager_nric, project_name, open_date=open_date),
        )

    def update_close_date(self, manager_nric: str, project_name: str, close_date: date) -> ProjectDTO:
        return self._update(
            "update_close_date",
            UpdateProjectCommand(manager_nric, project_name, close_date=close_date),
        )

    def update_officer_slots(self, manager_nric: str, project_name: str, max_officer_slots: int) -> ProjectDTO:
        return self._update(
            "update_officer_slots",
            UpdateProjectCommand(manager_nric, project_name, max_officer_slots=max_officer_slots),
        )

    def update_flat_units(
        self,
        manager_nric: str,
        project_name: str,
        flat_type: str,
        total_units: int,
        price: int,
    ) -> ProjectDTO:
        cmd = UpdateFlatUnitsCommand(manager_nric, project_name, flat_type, total_units, price)
        return self._run(
            "update_flat_units",
            lambda uow: UpdateFlatUnitsUseCase(self.services).execute(cmd, uow),
        )

    def toggle_visibility(self, project_name: str, manager_nric: Optional[str] = None) -> ProjectDTO:
        cmd = ToggleVisibilityCommand(project_name, manager_nric)
        return self._run(
            "toggle_visibility",
            lambda uow: ToggleVisibilityUseCase(self.services).execute(cmd, uow),
        )

    def delete_project(self, manager_nric: str, project_name: str) -> None:
        cmd = DeleteProjectCommand(manager_nric, project_name)
        self._run("delete_project", lambda uow: DeleteProjectUseCase().execute(cmd, uow))

    # --- Queries ------------------------------------------------------------

    def query_available_projects(
        self,
        applicant_nric: str,
        project_filter: Optional[ProjectFilter] = None,
        today: Optional[date] = None,
    ) -> List[ProjectDTO]:
        return self._run(
            "query_available_projects",
            lambda uow: QueryAvailableProjectsUseCase(self.services).execute(
                applicant_nric, uow, project_filter=project_filter, today=today
            ),
        )

    def find_user(self, nric: str) -> UserDTO:
        return self._run("find_user", lambda uow: FindUserUseCase().execute(nric, uow))

    def get_project(self, project_name: str) -> ProjectDTO:
        return self._run("get_project", lambda uow: GetProjectUseCase().execute(project_name, uow))

    def list_projects(
        self,
        project_filter: Optional[ProjectFilter] = None,
        manager_nric: Optional[str] = None,
    ) -> List[ProjectDTO]:
        return self._run(
            "list_projects",
            lambda uow: ListProjectsUseCase().execute(uow, project_filter=project_filter, manager_nric=manager_nric),
        )

    def get_application(self, applicant_nric: str) -> ApplicationDTO:
        return self._run(
            "get_application", lambda uow: GetApplicationUseCase().execute(applicant_nric, uow)
        )

    def application_history(self, applicant_nric: str) -> List[ApplicationDTO]:
        return self._run(
            "application_history", lambda uow: ApplicationHistoryUseCase().execute(applicant_nric, uow)
        )

    def list_applications(self, application_filter: Optional[ApplicationFilter] = None) -> List[ApplicationDTO]:
        return self._run(
            "list_applications",
            lambda uow: ListApplicationsUseCase().execute(uow, application_filter=application_filter),
        )

    def pending_applications_for_manager(self, manager_nric: str) -> List[ApplicationDTO]:
        return self._run(
            "pending_applications_for_manager",
            lambda uow: ManagerApplicationsUseCase(ApplicationStatus.PENDING).execute(manager_nric, uow),
        )

    def withdrawal_requests_for_manager(self, manager_nric: str) -> List[ApplicationDTO]:
        return self._run(
            "withdrawal_requests_for_manager",
            lambda uow: ManagerApplicationsUseCase(ApplicationStatus.WITHDRAWAL_REQUESTED).execute(
                manager_nric, uow
            ),
        )

    def successful_applications_for_project(self, project_name: str) -> List[ApplicationDTO]:
        return self._run(
            "successful_applications_for_project",
            lambda uow: ProjectApplicationsUseCase(ApplicationStatus.SUCCESSFUL).execute(project_name, uow),
        )

    def booked_applications_for_project(self, project_name: str) -> List[ApplicationDTO]:
        return self._run(
            "booked_applications_for_project",
            lambda uow: ProjectApplicationsUseCase(ApplicationStatus.BOOKED).execute(project_name, uow),
        )

    def registration_status(self, officer_nric: str, project_name: str) -> Optional[OfficerRegistrationDTO]:
        return self._run(
            "registration_status",
            lambda uow: RegistrationStatusUseCase().execute(officer_nric, project_name, uow),
        )

    def pending_registrations_for_project(self, project_name: str) -> List[OfficerRegistrationDTO]:
        return self._run(
            "pending_registrations_for_project",
            lambda uow: ListRegistrationsUseCase().execute(
                uow, project_name=project_name, status=RegistrationStatus.PENDING
            ),
        )

    def list_registrations(self, status: Optional[RegistrationStatus] = None) -> List[OfficerRegistrationDTO]:
        return self._run(
            "list_registrations",
            lambda uow: ListRegistrationsUseCase().execute(uow, status=status),
        )

    def assigned_project_details(self, nric: str) -> Optional[ProjectDTO]:
        return self._run(
            "assigned_project_details", lambda uow: AssignedProjectDetailsUseCase().execute(nric, uow)
        )

    def booking_receipt(self, applicant_nric: str) -> BookingReceiptDTO:
        return self._run(
            "booking_receipt", lambda uow: BookingReceiptUseCase().execute(applicant_nric, uow)
        )

    def events(self, since: int = 0) -> List[EngineEventDTO]:
        return self._run("events", lambda uow: ListEventsUseCase().execute(uow, since=since))

    # --- Snapshot boundary --------------------------------------------------

    def load_snapshot(self, snapshot: EngineSnapshot, today: Optional[date] = None) -> None:
        load_snapshot(self.db, snapshot, self.settings, today=today)

    def export_snapshot(self) -> EngineSnapshot:
        return export_snapshot(self.db)

    def subscribe(self, listener: Callable[[EngineEvent], None]) -> Callable[[], None]:
        """Call `listener` with every committed event; returns an unsubscribe function."""
        self.db.listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self.db.listeners:
                self.db.listeners.remove(listener)

        return unsubscribe
