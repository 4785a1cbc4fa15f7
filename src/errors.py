"""
errors.py

Exception hierarchy for the BTO allocation engine.

Every rule violation is a recoverable, typed error.  Each class carries a
stable `code` so callers (a CLI, a persistence adapter, a test) can branch on
the kind of failure without parsing messages.

    ApplicationError
    ├── NotFoundError
    │   ├── ProjectNotFoundError, UserNotFoundError, FlatTypeNotFoundError
    │   └── NoApplicationFoundError
    ├── AuthorizationError
    │   └── NotManagingError
    ├── ValidationError
    └── ... one class per business rule

DuplicateKeyError is not an ApplicationError: it signals store corruption and
is raised by repositories at insert time.
"""

from __future__ import annotations

from typing import Optional


class ApplicationError(Exception):
    """Raised when an operation cannot complete due to a business rule violation."""

    code = "ApplicationError"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""
    code = "NotFound"


class AuthorizationError(ApplicationError):
    """Raised when the acting user lacks the required role."""
    code = "NotAuthorized"


class ValidationError(ApplicationError):
    """Raised when an input value is out of range or inconsistent."""
    code = "Validation"


class DuplicateKeyError(Exception):
    """Raised by a store when an insert would collide with an existing key."""

    def __init__(self, store: str, key: str):
        self.store = store
        self.key = key
        super().__init__(f"{store} already holds key '{key}'")


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class ProjectNotFoundError(NotFoundError):
    code = "ProjectNotFound"

    def __init__(self, project_name: str):
        self.project_name = project_name
        super().__init__(f"Project '{project_name}' not found.")


class UserNotFoundError(NotFoundError):
    code = "UserNotFound"

    def __init__(self, nric: str):
        self.nric = nric
        super().__init__(f"No user with NRIC {nric}.")


class FlatTypeNotFoundError(NotFoundError):
    code = "FlatTypeNotFound"

    def __init__(self, project_name: str, flat_type: str):
        self.project_name = project_name
        self.flat_type = flat_type
        super().__init__(f"Flat type '{flat_type}' does not exist in project '{project_name}'.")


class NoApplicationFoundError(NotFoundError):
    code = "NoApplicationFound"


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

class NotManagingError(AuthorizationError):
    code = "NotManaging"

    def __init__(self, manager_nric: str, project_name: str):
        self.manager_nric = manager_nric
        self.project_name = project_name
        super().__init__(f"Manager {manager_nric} does not manage project '{project_name}'.")


# ---------------------------------------------------------------------------
# Application lifecycle
# ---------------------------------------------------------------------------

class NotEligibleError(ApplicationError):
    code = "NotEligible"


class AlreadyHasActiveApplicationError(ApplicationError):
    code = "AlreadyHasActiveApplication"


class ProjectNotVisibleError(ApplicationError):
    code = "ProjectNotVisible"


class ApplicationWindowClosedError(ApplicationError):
    code = "ApplicationWindowClosed"


class HandlingOfficerCannotApplyError(ApplicationError):
    code = "HandlingOfficerCannotApply"


class NoPendingApplicationError(ApplicationError):
    code = "NoPendingApplication"


class WithdrawalAlreadyRequestedError(ApplicationError):
    code = "WithdrawalAlreadyRequested"


class NoWithdrawalRequestError(ApplicationError):
    code = "NoWithdrawalRequest"


class NoSuccessfulApplicationError(ApplicationError):
    code = "NoSuccessfulApplication"


class InvalidTransitionError(ApplicationError):
    code = "InvalidTransition"


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------

class NoUnitsAvailableError(ApplicationError):
    code = "NoUnitsAvailable"


class NegativeRemainingError(ApplicationError):
    code = "NegativeRemaining"


# ---------------------------------------------------------------------------
# Officer registration
# ---------------------------------------------------------------------------

class AlreadyActiveRegistrationError(ApplicationError):
    code = "AlreadyActiveRegistration"


class AlreadyAppliedAsApplicantError(ApplicationError):
    code = "AlreadyAppliedAsApplicant"


class NotPendingOrAlreadyProcessedError(ApplicationError):
    code = "NotPendingOrAlreadyProcessed"


class NoSlotsAvailableError(ApplicationError):
    code = "NoSlotsAvailable"


# ---------------------------------------------------------------------------
# Project administration
# ---------------------------------------------------------------------------

class OverlappingAssignmentError(ApplicationError):
    code = "OverlappingAssignment"


class ProjectAlreadyExistsError(ApplicationError):
    code = "ProjectAlreadyExists"


class ProjectHasActiveApplicationsError(ApplicationError):
    code = "ProjectHasActiveApplications"
