"""
service.py

Allocation rules of the BTO engine.

Responsibilities
----------------
Classes here decide whether a transition is allowed and apply it to the
model objects they are handed (from model.py).  They never load or store
anything; the use cases in application.py fetch the objects, call in here,
and save the results inside one unit of work.

Services
--------
- EligibilityPolicy            – Who may apply for which flat type
- InventoryLedger              – Unit counters of a FlatType: reserve / release / resize
- ApplicationLifecycle         – Application state machine
- OfficerRegistrationWorkflow  – Officer registration and slot allocation
- ManagerProjectGuard          – One overlapping project per manager
- ProjectService               – Project creation and field-level edits
- ProjectFilter / ApplicationFilter – Listing and report criteria

Design notes
------------
- Business rule violations raise a typed errors.ApplicationError subclass.
- Authorization checks are declared as guard helpers and called at the
  start of each operation that requires elevated rights.
- Every check runs before the first mutation, so a failing call leaves the
  objects it was given untouched.
- Methods return the mutated object(s) so the caller can hand them to a
  repository.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from errors import (
    AlreadyActiveRegistrationError,
    AlreadyAppliedAsApplicantError,
    AlreadyHasActiveApplicationError,
    ApplicationWindowClosedError,
    AuthorizationError,
    FlatTypeNotFoundError,
    HandlingOfficerCannotApplyError,
    InvalidTransitionError,
    NegativeRemainingError,
    NoApplicationFoundError,
    NoPendingApplicationError,
    NoSlotsAvailableError,
    NoSuccessfulApplicationError,
    NotEligibleError,
    NotManagingError,
    NotPendingOrAlreadyProcessedError,
    NoUnitsAvailableError,
    NoWithdrawalRequestError,
    OverlappingAssignmentError,
    ProjectNotFoundError,
    ProjectNotVisibleError,
    ValidationError,
    WithdrawalAlreadyRequestedError,
)
from model import (
    Application,
    ApplicationStatus,
    Decision,
    FlatType,
    MaritalStatus,
    OfficerRegistration,
    Project,
    RegistrationStatus,
    User,
)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_manager(manager: User, project: Project) -> None:
    """Raise NotManagingError unless `manager` is the manager who owns `project`."""
    if not manager.role.can_manage_projects or project.manager_nric != manager.nric:
        raise NotManagingError(manager.nric, project.name)


def _check_window(open_date: date, close_date: date) -> None:
    if close_date < open_date:
        raise ValidationError("close_date must not be before open_date.")


# ---------------------------------------------------------------------------
# EligibilityPolicy
# ---------------------------------------------------------------------------

class EligibilityPolicy:
    """
    Pure eligibility rule.

    Single applicants aged 35 and above may only apply for the smaller unit
    category; married applicants aged 21 and above may apply for any
    category; every other combination is ineligible.
    """

    def __init__(
        self,
        small_flat_type: str = "2-Room",
        single_min_age: int = 35,
        married_min_age: int = 21,
    ):
        self.small_flat_type = small_flat_type
        self.single_min_age = single_min_age
        self.married_min_age = married_min_age

    def is_eligible(self, marital_status: str, age: int, flat_type_label: str) -> bool:
        status = MaritalStatus.parse(marital_status)
        if status is MaritalStatus.SINGLE and age >= self.single_min_age:
            return flat_type_label.strip().casefold() == self.small_flat_type.casefold()
        if status is MaritalStatus.MARRIED and age >= self.married_min_age:
            return True
        return False

    def eligible_labels(self, user: User, labels: Iterable[str]) -> List[str]:
        return [
            label for label in labels
            if self.is_eligible(user.marital_status, user.age, label)
        ]


# ---------------------------------------------------------------------------
# InventoryLedger
# ---------------------------------------------------------------------------

class InventoryLedger:
    """
    The only code allowed to touch FlatType unit counters.

    Invariant: 0 <= remaining_units <= total_units after every call.
    """

    def reserve(self, flat: FlatType) -> FlatType:
        if flat.remaining_units <= 0:
            raise NoUnitsAvailableError(f"No units available for flat type '{flat.label}'.")
        flat.remaining_units -= 1
        return flat

    def release(self, flat: FlatType) -> FlatType:
        """Return one unit; capped at total so a double release is harmless."""
        flat.remaining_units = min(flat.remaining_units + 1, flat.total_units)
        return flat

    def resize(self, flat: FlatType, new_total: int, new_price: int) -> FlatType:
        """
        Change the unit total and price, keeping already-taken units taken.

        Raises NegativeRemainingError rather than clamping when the new total
        is smaller than the number of units already reserved or booked.
        """
        if new_total < 0:
            raise ValidationError("Number of units cannot be negative.")
        if new_price < 0:
            raise ValidationError("Price cannot be negative.")
        new_remaining = new_total - flat.taken_units
        if new_remaining < 0:
            raise NegativeRemainingError(
                f"Cannot resize '{flat.label}' to {new_total} units: "
                f"{flat.taken_units} units are already taken."
            )
        flat.total_units = new_total
        flat.remaining_units = new_remaining
        flat.price = new_price
        return flat


# ---------------------------------------------------------------------------
# ApplicationLifecycle
# ---------------------------------------------------------------------------

class ApplicationLifecycle:
    """
    State machine of an Application.

        (none) --submit--> PENDING
        PENDING --approve--> SUCCESSFUL
        PENDING --reject--> UNSUCCESSFUL
        PENDING | SUCCESSFUL --request_withdraw--> WITHDRAWAL_REQUESTED
        WITHDRAWAL_REQUESTED --approve_withdraw--> WITHDRAWN
        WITHDRAWAL_REQUESTED --reject_withdraw--> previous status
        SUCCESSFUL --book--> BOOKED

    A unit is reserved once, at submission, and held until the application
    is rejected or withdrawn.  Booking only finalises the status.
    """

    def __init__(
        self,
        policy: EligibilityPolicy,
        ledger: InventoryLedger,
        enforce_window: bool = True,
    ):
        self.policy = policy
        self.ledger = ledger
        self.enforce_window = enforce_window

    # --- Submission ---------------------------------------------------------

    def submit(
        self,
        applicant: User,
        project: Optional[Project],
        project_name: str,
        flat_type_label: str,
        active_application: Optional[Application],
        today: Optional[date] = None,
    ) -> Application:
        """
        Create a PENDING application and reserve one unit for it.

        Checks run in order: role, active application, project existence,
        handling officer, visibility, application window, flat type,
        eligibility, unit availability.
        """
        today = today or date.today()
        if not applicant.role.can_apply:
            raise AuthorizationError(f"User {applicant.nric} ({applicant.role.value}) cannot apply for flats.")
        if active_application is not None and active_application.is_active:
            raise AlreadyHasActiveApplicationError(
                "You already have an active application. Withdraw or wait for rejection to reapply."
            )
        if project is None:
            raise ProjectNotFoundError(project_name)
        if (
            applicant.role.can_handle_projects
            and applicant.assigned_project is not None
            and applicant.assigned_project.casefold() == project.name.casefold()
        ):
            raise HandlingOfficerCannotApplyError("You cannot apply for projects you are handling.")
        if not project.visible:
            raise ProjectNotVisibleError("This project is no longer visible to applicants.")
        if self.enforce_window and not project.is_open_on(today):
            raise ApplicationWindowClosedError("This project is not open for applications.")
        flat = project.find_flat_type(flat_type_label)
        if flat is None:
            raise FlatTypeNotFoundError(project.name, flat_type_label)
        if not self.policy.is_eligible(applicant.marital_status, applicant.age, flat.label):
            raise NotEligibleError("You are not eligible to apply for this flat type.")

        self.ledger.reserve(flat)
        return Application(
            applicant_nric=applicant.nric,
            project_name=project.name,
            flat_type=flat.label,
            status=ApplicationStatus.PENDING,
            unit_reserved=True,
            applied_on=today,
            updated_at=_utcnow(),
        )

    # --- Manager review -----------------------------------------------------

    def approve_or_reject(
        self,
        manager: User,
        project: Project,
        application: Optional[Application],
        decision: Decision,
    ) -> Application:
        _require_manager(manager, project)
        if application is None or application.status is not ApplicationStatus.PENDING:
            raise NoPendingApplicationError("Only pending applications can be processed.")

        if decision is Decision.APPROVE:
            application.status = ApplicationStatus.SUCCESSFUL
        else:
            self._release(project, application)
            application.status = ApplicationStatus.UNSUCCESSFUL
        application.updated_at = _utcnow()
        return application

    # --- Withdrawal ---------------------------------------------------------

    def request_withdraw(self, application: Optional[Application]) -> Application:
        if application is None or not application.is_active:
            raise NoApplicationFoundError("No application found to withdraw.")
        if application.status is ApplicationStatus.WITHDRAWAL_REQUESTED:
            raise WithdrawalAlreadyRequestedError("You have already requested a withdrawal.")
        if application.status is ApplicationStatus.BOOKED:
            raise InvalidTransitionError("A booked application cannot be withdrawn.")

        application.status_before_withdrawal = application.status
        application.status = ApplicationStatus.WITHDRAWAL_REQUESTED
        application.updated_at = _utcnow()
        return application

    def approve_withdraw(
        self,
        manager: User,
        project: Optional[Project],
        application: Optional[Application],
    ) -> Application:
        self._require_withdrawal_request(application)
        self._require_reviewer(manager, project, application)

        self._release(project, application)
        application.status = ApplicationStatus.WITHDRAWN
        application.status_before_withdrawal = None
        application.updated_at = _utcnow()
        return application

    def reject_withdraw(
        self,
        manager: User,
        project: Optional[Project],
        application: Optional[Application],
    ) -> Application:
        self._require_withdrawal_request(application)
        self._require_reviewer(manager, project, application)

        application.status = application.status_before_withdrawal or ApplicationStatus.PENDING
        application.status_before_withdrawal = None
        application.updated_at = _utcnow()
        return application

    # --- Booking ------------------------------------------------------------

    def book(
        self,
        officer: User,
        project: Optional[Project],
        application: Optional[Application],
    ) -> Application:
        """
        Flip a SUCCESSFUL application in the officer's project to BOOKED.

        The unit was reserved at submission; it is only reserved here if the
        application arrived without one (e.g. loaded from an older snapshot).
        """
        if not officer.role.can_handle_projects:
            raise AuthorizationError(f"User {officer.nric} is not an officer.")
        if (
            project is None
            or application is None
            or application.status is not ApplicationStatus.SUCCESSFUL
            or application.project_name.casefold() != project.name.casefold()
        ):
            raise NoSuccessfulApplicationError(
                "No successful application found for this applicant in your project."
            )
        if not application.unit_reserved:
            flat = self._flat_of(project, application)
            self.ledger.reserve(flat)
            application.unit_reserved = True

        application.status = ApplicationStatus.BOOKED
        application.updated_at = _utcnow()
        return application

    # --- Internals ----------------------------------------------------------

    @staticmethod
    def _require_withdrawal_request(application: Optional[Application]) -> None:
        if application is None or application.status is not ApplicationStatus.WITHDRAWAL_REQUESTED:
            raise NoWithdrawalRequestError("No withdrawal request found for this applicant.")

    @staticmethod
    def _require_reviewer(manager: User, project: Optional[Project], application: Application) -> None:
        if project is None:
            raise ProjectNotFoundError(application.project_name)
        _require_manager(manager, project)

    @staticmethod
    def _flat_of(project: Project, application: Application) -> FlatType:
        flat = project.find_flat_type(application.flat_type)
        if flat is None:
            raise FlatTypeNotFoundError(project.name, application.flat_type)
        return flat

    def _release(self, project: Project, application: Application) -> None:
        if not application.unit_reserved:
            return
        flat = project.find_flat_type(application.flat_type)
        if flat is not None:
            self.ledger.release(flat)
        application.unit_reserved = False


# ---------------------------------------------------------------------------
# OfficerRegistrationWorkflow
# ---------------------------------------------------------------------------

class OfficerRegistrationWorkflow:
    """
    Officer registration state machine: PENDING -> APPROVED | REJECTED.

    An officer holds at most one active (PENDING or APPROVED) registration
    across all projects.  Approval consumes an officer slot; slots are never
    released by the engine.
    """

    def register(
        self,
        officer: User,
        project: Optional[Project],
        project_name: str,
        officer_registrations: List[OfficerRegistration],
        applied_as_applicant: bool,
    ) -> OfficerRegistration:
        if not officer.role.can_handle_projects:
            raise AuthorizationError(f"User {officer.nric} is not an officer.")
        active = next((r for r in officer_registrations if r.status.is_active), None)
        if active is not None:
            raise AlreadyActiveRegistrationError(
                f"You have an active officer registration for project: {active.project_name} "
                f"(status: {active.status.value})."
            )
        if applied_as_applicant:
            raise AlreadyAppliedAsApplicantError("You have already applied for this project as an applicant.")
        if project is None:
            raise ProjectNotFoundError(project_name)

        return OfficerRegistration(
            officer_nric=officer.nric,
            project_name=project.name,
            status=RegistrationStatus.PENDING,
            requested_at=_utcnow(),
        )

    def process(
        self,
        manager: User,
        officer: User,
        project: Project,
        registration: Optional[OfficerRegistration],
        decision: Decision,
    ) -> OfficerRegistration:
        _require_manager(manager, project)
        if registration is None or registration.status is not RegistrationStatus.PENDING:
            raise NotPendingOrAlreadyProcessedError("Officer did not apply or has already been processed.")

        if decision is Decision.APPROVE:
            if not project.has_free_officer_slot:
                raise NoSlotsAvailableError("No more officer slots available for this project.")
            project.current_officer_slots += 1
            project.officers.append(officer.name)
            project.updated_at = _utcnow()
            officer.assigned_project = project.name
            registration.status = RegistrationStatus.APPROVED
        else:
            registration.status = RegistrationStatus.REJECTED

        registration.processed_at = _utcnow()
        registration.processed_by_nric = manager.nric
        return registration


# ---------------------------------------------------------------------------
# ManagerProjectGuard
# ---------------------------------------------------------------------------

class ManagerProjectGuard:
    """
    A manager may not create a project whose window overlaps the project they
    are currently assigned to.  Only the current assignment is compared, not
    every project the manager has ever run.
    """

    @staticmethod
    def overlaps(new_start: date, new_end: date, existing_start: date, existing_end: date) -> bool:
        return new_start <= existing_end and new_end >= existing_start

    def can_create(self, new_project: Project, assigned_project: Optional[Project]) -> bool:
        if assigned_project is None:
            return True
        return not self.overlaps(
            new_project.open_date,
            new_project.close_date,
            assigned_project.open_date,
            assigned_project.close_date,
        )

    def check_can_create(self, new_project: Project, assigned_project: Optional[Project]) -> None:
        if not self.can_create(new_project, assigned_project):
            raise OverlappingAssignmentError(
                f"You are already managing a project ({assigned_project.name}) "
                "that overlaps with these dates."
            )


# ---------------------------------------------------------------------------
# ProjectService
# ---------------------------------------------------------------------------

class ProjectService:
    """
    Manages project creation and field-level edits by the owning manager.
    """

    def __init__(self, max_officer_slots_limit: int = 10):
        self.max_officer_slots_limit = max_officer_slots_limit

    def create_project(
        self,
        manager: User,
        name: str,
        neighborhood: str,
        open_date: date,
        close_date: date,
        max_officer_slots: int,
        flat_types: Dict[str, tuple],
        visible: bool = True,
    ) -> Project:
        """
        Create and return a new Project instance (unsaved).

        `flat_types` maps label -> (total_units, price).
        """
        if not manager.role.can_manage_projects:
            raise AuthorizationError(f"User {manager.nric} is not a manager.")
        if not name.strip():
            raise ValidationError("Project name must not be blank.")
        _check_window(open_date, close_date)
        self._check_slots(max_officer_slots, current=0)
        flats = {}
        for label, (total, price) in flat_types.items():
            if total < 0 or price < 0:
                raise ValidationError(f"Units and price of '{label}' cannot be negative.")
            flats[label] = FlatType(label=label, total_units=total, remaining_units=total, price=price)
        return Project(
            name=name.strip(),
            neighborhood=neighborhood.strip(),
            open_date=open_date,
            close_date=close_date,
            visible=visible,
            manager_nric=manager.nric,
            max_officer_slots=max_officer_slots,
            flat_types=flats,
            created_at=_utcnow(),
            updated_at=_utcnow(),
        )

    def update_project(
        self,
        manager: User,
        project: Project,
        neighborhood: Optional[str] = None,
        open_date: Optional[date] = None,
        close_date: Optional[date] = None,
        max_officer_slots: Optional[int] = None,
    ) -> Project:
        """Apply field-level updates to a project; all fields are validated first."""
        _require_manager(manager, project)
        if neighborhood is not None and not neighborhood.strip():
            raise ValidationError("Neighborhood must not be blank.")
        _check_window(
            open_date if open_date is not None else project.open_date,
            close_date if close_date is not None else project.close_date,
        )
        if max_officer_slots is not None:
            self._check_slots(max_officer_slots, current=project.current_officer_slots)

        if neighborhood is not None:
            project.neighborhood = neighborhood.strip()
        if open_date is not None:
            project.open_date = open_date
        if close_date is not None:
            project.close_date = close_date
        if max_officer_slots is not None:
            project.max_officer_slots = max_officer_slots
        project.updated_at = _utcnow()
        return project

    def toggle_visibility(self, project: Project, manager: Optional[User] = None) -> Project:
        if manager is not None:
            _require_manager(manager, project)
        project.visible = not project.visible
        project.updated_at = _utcnow()
        return project

    def _check_slots(self, max_officer_slots: int, current: int) -> None:
        if not 1 <= max_officer_slots <= self.max_officer_slots_limit:
            raise ValidationError(
                f"Number of officer slots must be between 1 and {self.max_officer_slots_limit}."
            )
        if max_officer_slots < current:
            raise ValidationError(
                f"Cannot reduce officer slots below the {current} officers already approved."
            )


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def _casefold_set(values: Optional[Iterable[str]]) -> Optional[Set[str]]:
    if values is None:
        return None
    return {v.strip().casefold() for v in values}


@dataclass
class ProjectFilter:
    """Listing criteria for projects.  Unset fields match everything."""
    neighborhoods: Optional[Set[str]] = None
    flat_type: Optional[str] = None     # Matches only if that type has units left
    min_price: Optional[int] = None
    max_price: Optional[int] = None

    def matches(self, project: Project) -> bool:
        hoods = _casefold_set(self.neighborhoods)
        if hoods is not None and project.neighborhood.casefold() not in hoods:
            return False
        if self.flat_type is not None:
            flat = project.find_flat_type(self.flat_type)
            if flat is None or flat.remaining_units <= 0:
                return False
        if self.min_price is not None or self.max_price is not None:
            return any(
                (self.min_price is None or flat.price >= self.min_price)
                and (self.max_price is None or flat.price <= self.max_price)
                for flat in project.flat_types.values()
            )
        return True


@dataclass
class ApplicationFilter:
    """Report criteria for applications; applicant fields need the applicant record."""
    project_names: Optional[Set[str]] = None
    flat_type: Optional[str] = None
    statuses: Optional[Set[ApplicationStatus]] = None
    marital_status: Optional[str] = None
    min_age: Optional[int] = None
    max_age: Optional[int] = None

    def matches(self, application: Application, applicant: Optional[User]) -> bool:
        names = _casefold_set(self.project_names)
        if names is not None and application.project_name.casefold() not in names:
            return False
        if self.flat_type is not None and application.flat_type.casefold() != self.flat_type.strip().casefold():
            return False
        if self.statuses is not None and application.status not in self.statuses:
            return False
        needs_applicant = (
            self.marital_status is not None or self.min_age is not None or self.max_age is not None
        )
        if not needs_applicant:
            return True
        if applicant is None:
            return False
        if self.marital_status is not None and MaritalStatus.parse(applicant.marital_status) is not MaritalStatus.parse(self.marital_status):
            return False
        if self.min_age is not None and applicant.age < self.min_age:
            return False
        if self.max_age is not None and applicant.age > self.max_age:
            return False
        return True
