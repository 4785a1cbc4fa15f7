"""Unit tests for the service layer, without stores or units of work."""

from datetime import date, timedelta

import pytest

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
    NoPendingApplicationError,
    NoSlotsAvailableError,
    NotEligibleError,
    NotManagingError,
    NotPendingOrAlreadyProcessedError,
    NoUnitsAvailableError,
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
)

TODAY = date.today()


def make_project(**overrides) -> Project:
    fields = dict(
        name="Acacia Breeze",
        neighborhood="Yishun",
        open_date=TODAY - timedelta(days=1),
        close_date=TODAY + timedelta(days=10),
        manager_nric="T8765432F",
        max_officer_slots=2,
        flat_types={
            "2-Room": FlatType("2-Room", total_units=2, remaining_units=2, price=350000),
            "3-Room": FlatType("3-Room", total_units=1, remaining_units=1, price=450000),
        },
    )
    fields.update(overrides)
    return Project(**fields)


@pytest.fixture
def manager():
    return User(nric="T8765432F", name="Michael", age=36, marital_status="Single", role=Role.MANAGER)


@pytest.fixture
def married():
    return User(nric="T7654321B", name="Sarah", age=40, marital_status="Married", role=Role.APPLICANT)


@pytest.fixture
def officer():
    return User(nric="T1234567J", name="Daniel", age=36, marital_status="Single", role=Role.OFFICER)


@pytest.fixture
def lifecycle():
    return ApplicationLifecycle(EligibilityPolicy(), InventoryLedger())


# ---------------------------------------------------------------------------
# EligibilityPolicy
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "status, age, label, expected",
    [
        ("Single", 35, "2-Room", True),
        ("single", 60, "2-room", True),
        ("Single", 35, "3-Room", False),
        ("Single", 34, "2-Room", False),
        ("Married", 21, "3-Room", True),
        ("MARRIED", 21, "2-Room", True),
        ("Married", 20, "2-Room", False),
        ("Divorced", 50, "2-Room", False),
        ("", 50, "2-Room", False),
    ],
)
def test_eligibility_rules(status, age, label, expected):
    assert EligibilityPolicy().is_eligible(status, age, label) is expected


def test_eligibility_thresholds_are_configurable():
    policy = EligibilityPolicy(small_flat_type="Studio", single_min_age=40, married_min_age=25)
    assert policy.is_eligible("Single", 40, "Studio")
    assert not policy.is_eligible("Single", 39, "Studio")
    assert not policy.is_eligible("Single", 45, "2-Room")
    assert not policy.is_eligible("Married", 24, "3-Room")


def test_eligible_labels_keeps_order(married):
    single = User(nric="S1", age=35, marital_status="Single")
    labels = ["2-Room", "3-Room"]
    assert EligibilityPolicy().eligible_labels(single, labels) == ["2-Room"]
    assert EligibilityPolicy().eligible_labels(married, labels) == labels


# ---------------------------------------------------------------------------
# InventoryLedger
# ---------------------------------------------------------------------------

def test_reserve_until_empty():
    ledger = InventoryLedger()
    flat = FlatType("3-Room", total_units=1, remaining_units=1, price=1)
    ledger.reserve(flat)
    assert flat.remaining_units == 0
    with pytest.raises(NoUnitsAvailableError):
        ledger.reserve(flat)
    assert flat.remaining_units == 0


def test_release_is_capped_at_total():
    flat = FlatType("3-Room", total_units=2, remaining_units=2, price=1)
    InventoryLedger().release(flat)
    assert flat.remaining_units == 2


def test_resize_keeps_taken_units():
    flat = FlatType("3-Room", total_units=5, remaining_units=2, price=1)
    InventoryLedger().resize(flat, new_total=8, new_price=2)
    assert (flat.total_units, flat.remaining_units, flat.price) == (8, 5, 2)


def test_resize_below_taken_is_rejected_not_clamped():
    flat = FlatType("3-Room", total_units=5, remaining_units=2, price=1)
    with pytest.raises(NegativeRemainingError):
        InventoryLedger().resize(flat, new_total=2, new_price=1)
    assert (flat.total_units, flat.remaining_units) == (5, 2)


@pytest.mark.parametrize("total, price", [(-1, 0), (1, -5)])
def test_resize_rejects_negative_values(total, price):
    flat = FlatType("3-Room", total_units=5, remaining_units=5, price=1)
    with pytest.raises(ValidationError):
        InventoryLedger().resize(flat, total, price)


# ---------------------------------------------------------------------------
# ApplicationLifecycle
# ---------------------------------------------------------------------------

def test_submit_reserves_a_unit(lifecycle, married):
    project = make_project()
    application = lifecycle.submit(married, project, project.name, "3-room", None)
    assert application.status is ApplicationStatus.PENDING
    assert application.flat_type == "3-Room"
    assert application.unit_reserved
    assert project.flat_types["3-Room"].remaining_units == 0


def test_submit_check_order(lifecycle, married, manager):
    project = make_project()
    active = Application(applicant_nric=married.nric, project_name=project.name, flat_type="3-Room")

    with pytest.raises(AuthorizationError):
        lifecycle.submit(manager, project, project.name, "3-Room", None)
    with pytest.raises(AlreadyHasActiveApplicationError):
        lifecycle.submit(married, None, "Nowhere", "3-Room", active)
    with pytest.raises(ProjectNotFoundError):
        lifecycle.submit(married, None, "Nowhere", "3-Room", None)
    with pytest.raises(ProjectNotVisibleError):
        lifecycle.submit(married, make_project(visible=False), project.name, "3-Room", None)
    with pytest.raises(ApplicationWindowClosedError):
        lifecycle.submit(
            married, make_project(close_date=TODAY - timedelta(days=1), open_date=TODAY - timedelta(days=5)),
            project.name, "3-Room", None,
        )
    with pytest.raises(FlatTypeNotFoundError):
        lifecycle.submit(married, project, project.name, "5-Room", None)


def test_inactive_previous_application_does_not_block(lifecycle, married):
    project = make_project()
    old = Application(applicant_nric=married.nric, status=ApplicationStatus.WITHDRAWN)
    assert lifecycle.submit(married, project, project.name, "2-Room", old).status is ApplicationStatus.PENDING


def test_window_check_can_be_disabled(married):
    lifecycle = ApplicationLifecycle(EligibilityPolicy(), InventoryLedger(), enforce_window=False)
    project = make_project(open_date=TODAY + timedelta(days=3), close_date=TODAY + timedelta(days=9))
    assert lifecycle.submit(married, project, project.name, "2-Room", None).unit_reserved


def test_handling_officer_cannot_apply(lifecycle, officer):
    project = make_project()
    officer.assigned_project = project.name
    with pytest.raises(HandlingOfficerCannotApplyError):
        lifecycle.submit(officer, project, project.name, "2-Room", None)


def test_ineligible_submit_leaves_inventory(lifecycle):
    single = User(nric="S1234567A", age=35, marital_status="Single")
    project = make_project()
    with pytest.raises(NotEligibleError):
        lifecycle.submit(single, project, project.name, "3-Room", None)
    assert project.flat_types["3-Room"].remaining_units == 1


def test_reject_releases_the_unit(lifecycle, married, manager):
    project = make_project()
    application = lifecycle.submit(married, project, project.name, "3-Room", None)
    lifecycle.approve_or_reject(manager, project, application, Decision.REJECT)
    assert application.status is ApplicationStatus.UNSUCCESSFUL
    assert not application.unit_reserved
    assert project.flat_types["3-Room"].remaining_units == 1


def test_only_owner_reviews(lifecycle, married, manager):
    project = make_project()
    application = lifecycle.submit(married, project, project.name, "3-Room", None)
    other = User(nric="S5678901G", role=Role.MANAGER)
    with pytest.raises(NotManagingError):
        lifecycle.approve_or_reject(other, project, application, Decision.APPROVE)
    lifecycle.approve_or_reject(manager, project, application, Decision.APPROVE)
    with pytest.raises(NoPendingApplicationError):
        lifecycle.approve_or_reject(manager, project, application, Decision.APPROVE)


def test_withdrawal_round_trip_restores_previous_status(lifecycle, married, manager):
    project = make_project()
    application = lifecycle.submit(married, project, project.name, "3-Room", None)
    lifecycle.approve_or_reject(manager, project, application, Decision.APPROVE)

    lifecycle.request_withdraw(application)
    with pytest.raises(WithdrawalAlreadyRequestedError):
        lifecycle.request_withdraw(application)
    lifecycle.reject_withdraw(manager, project, application)
    assert application.status is ApplicationStatus.SUCCESSFUL
    assert application.status_before_withdrawal is None

    lifecycle.request_withdraw(application)
    lifecycle.approve_withdraw(manager, project, application)
    assert application.status is ApplicationStatus.WITHDRAWN
    assert project.flat_types["3-Room"].remaining_units == 1


def test_booked_application_cannot_be_withdrawn(lifecycle, married, manager, officer):
    project = make_project()
    officer.assigned_project = project.name
    application = lifecycle.submit(married, project, project.name, "2-Room", None)
    lifecycle.approve_or_reject(manager, project, application, Decision.APPROVE)
    lifecycle.book(officer, project, application)
    assert application.status is ApplicationStatus.BOOKED
    assert project.flat_types["2-Room"].remaining_units == 1
    with pytest.raises(InvalidTransitionError):
        lifecycle.request_withdraw(application)


def test_book_reserves_when_loaded_without_reservation(lifecycle, officer):
    project = make_project()
    application = Application(
        applicant_nric="T7654321B",
        project_name=project.name,
        flat_type="2-Room",
        status=ApplicationStatus.SUCCESSFUL,
        unit_reserved=False,
    )
    lifecycle.book(officer, project, application)
    assert application.unit_reserved
    assert project.flat_types["2-Room"].remaining_units == 1


# ---------------------------------------------------------------------------
# OfficerRegistrationWorkflow
# ---------------------------------------------------------------------------

def test_register_checks(officer, married):
    workflow = OfficerRegistrationWorkflow()
    project = make_project()
    active = OfficerRegistration(officer_nric=officer.nric, project_name="Elsewhere")

    with pytest.raises(AuthorizationError):
        workflow.register(married, project, project.name, [], False)
    with pytest.raises(AlreadyActiveRegistrationError):
        workflow.register(officer, project, project.name, [active], False)
    with pytest.raises(AlreadyAppliedAsApplicantError):
        workflow.register(officer, project, project.name, [], True)
    with pytest.raises(ProjectNotFoundError):
        workflow.register(officer, None, "Nowhere", [], False)

    rejected = OfficerRegistration(officer_nric=officer.nric, status=RegistrationStatus.REJECTED)
    registration = workflow.register(officer, project, project.name, [rejected], False)
    assert registration.status is RegistrationStatus.PENDING


def test_process_approval_consumes_slot(officer, manager):
    workflow = OfficerRegistrationWorkflow()
    project = make_project(max_officer_slots=1)
    registration = workflow.register(officer, project, project.name, [], False)
    workflow.process(manager, officer, project, registration, Decision.APPROVE)

    assert registration.status is RegistrationStatus.APPROVED
    assert registration.processed_by_nric == manager.nric
    assert project.current_officer_slots == 1
    assert project.officers == ["Daniel"]
    assert officer.assigned_project == project.name

    with pytest.raises(NotPendingOrAlreadyProcessedError):
        workflow.process(manager, officer, project, registration, Decision.REJECT)


def test_process_approval_when_full(officer, manager):
    workflow = OfficerRegistrationWorkflow()
    project = make_project(max_officer_slots=1, current_officer_slots=1, officers=["Emily"])
    registration = workflow.register(officer, project, project.name, [], False)
    with pytest.raises(NoSlotsAvailableError):
        workflow.process(manager, officer, project, registration, Decision.APPROVE)
    assert registration.status is RegistrationStatus.PENDING
    assert project.officers == ["Emily"]


# ---------------------------------------------------------------------------
# ManagerProjectGuard / ProjectService
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "new, existing, expected",
    [
        ((1, 5), (5, 9), True),       # shared boundary day
        ((1, 4), (5, 9), False),
        ((10, 12), (5, 9), False),
        ((6, 7), (5, 9), True),
        ((1, 20), (5, 9), True),
    ],
)
def test_overlap_is_inclusive(new, existing, expected):
    d = lambda n: TODAY + timedelta(days=n)
    assert ManagerProjectGuard.overlaps(d(new[0]), d(new[1]), d(existing[0]), d(existing[1])) is expected


def test_guard_compares_only_assigned_project():
    guard = ManagerProjectGuard()
    new = make_project(name="New")
    assert guard.can_create(new, None)
    with pytest.raises(OverlappingAssignmentError):
        guard.check_can_create(new, make_project())


def test_create_project_validation(manager, married):
    service = ProjectService(max_officer_slots_limit=10)
    flats = {"2-Room": (2, 100)}
    with pytest.raises(AuthorizationError):
        service.create_project(married, "P", "N", TODAY, TODAY, 1, flats)
    with pytest.raises(ValidationError):
        service.create_project(manager, "P", "N", TODAY, TODAY - timedelta(days=1), 1, flats)
    with pytest.raises(ValidationError):
        service.create_project(manager, "P", "N", TODAY, TODAY, 11, flats)
    with pytest.raises(ValidationError):
        service.create_project(manager, "P", "N", TODAY, TODAY, 1, {"2-Room": (-1, 100)})

    project = service.create_project(manager, " P ", "N", TODAY, TODAY, 1, flats)
    assert project.name == "P"
    assert project.flat_types["2-Room"].remaining_units == 2


def test_update_project_validates_before_mutating(manager):
    service = ProjectService()
    project = make_project(current_officer_slots=2)
    with pytest.raises(ValidationError):
        service.update_project(manager, project, neighborhood="Tampines", max_officer_slots=1)
    assert project.neighborhood == "Yishun"

    with pytest.raises(ValidationError):
        service.update_project(manager, project, close_date=project.open_date - timedelta(days=1))

    service.update_project(manager, project, neighborhood="Tampines", close_date=TODAY + timedelta(days=30))
    assert project.neighborhood == "Tampines"
    assert project.close_date == TODAY + timedelta(days=30)


def test_toggle_visibility_checks_owner_only_when_given(manager):
    service = ProjectService()
    project = make_project()
    service.toggle_visibility(project)
    assert not project.visible
    with pytest.raises(NotManagingError):
        service.toggle_visibility(project, User(nric="X", role=Role.MANAGER))
    service.toggle_visibility(project, manager)
    assert project.visible


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------

def test_project_filter():
    project = make_project()
    project.flat_types["3-Room"].remaining_units = 0
    assert ProjectFilter().matches(project)
    assert ProjectFilter(neighborhoods={"yishun"}).matches(project)
    assert not ProjectFilter(neighborhoods={"Tampines"}).matches(project)
    assert ProjectFilter(flat_type="2-room").matches(project)
    assert not ProjectFilter(flat_type="3-Room").matches(project)
    assert ProjectFilter(min_price=400000).matches(project)
    assert not ProjectFilter(max_price=300000).matches(project)


def test_application_filter(married):
    application = Application(
        applicant_nric=married.nric, project_name="Acacia Breeze", flat_type="3-Room"
    )
    assert ApplicationFilter(project_names={"acacia breeze"}).matches(application, married)
    assert not ApplicationFilter(statuses={ApplicationStatus.BOOKED}).matches(application, married)
    assert ApplicationFilter(marital_status="married", min_age=30, max_age=40).matches(application, married)
    assert not ApplicationFilter(max_age=39).matches(application, married)
    assert not ApplicationFilter(min_age=18).matches(application, None)
