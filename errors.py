from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    resource_not_found = "RESOURCE_NOT_FOUND"
    access_denied = "ACCESS_DENIED"
    validation_error = "VALIDATION_ERROR"
    budget_exceeded = "BUDGET_EXCEEDED"
    duplicate_budget = "DUPLICATE_BUDGET"
    unauthorized = "UNAUTHORIZED"
    internal_error = "INTERNAL_ERROR"


# Client-facing messages. Exception text never crosses the API boundary.
CLIENT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.resource_not_found: "The requested resource was not found",
    ErrorKind.access_denied: "Access denied",
    ErrorKind.validation_error: "One or more fields failed validation",
    ErrorKind.budget_exceeded: "Expense exceeds remaining monthly budget",
    ErrorKind.duplicate_budget: "A budget already exists for this user, year and month",
    ErrorKind.unauthorized: "Authentication required",
    ErrorKind.internal_error: "An unexpected error occurred",
}


class LedgerError(ValueError):
    kind: ErrorKind = ErrorKind.internal_error


class ResourceNotFound(LedgerError):
    kind = ErrorKind.resource_not_found


class AccessDenied(LedgerError):
    kind = ErrorKind.access_denied


class BudgetExceeded(LedgerError):
    kind = ErrorKind.budget_exceeded


class DuplicateBudget(LedgerError):
    kind = ErrorKind.duplicate_budget


class Unauthorized(LedgerError):
    kind = ErrorKind.unauthorized


class ValidationFailed(LedgerError):
    """Field constraint violation; ``errors`` maps each offending field to a message."""

    kind = ErrorKind.validation_error

    def __init__(self, errors: dict[str, str], message: Optional[str] = None) -> None:
        self.errors = dict(errors)
        super().__init__(message or "; ".join(f"{k}: {v}" for k, v in self.errors.items()))

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationFailed":
        return cls({field: message})
