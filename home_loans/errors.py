"""
Error Taxonomy Module

Distinguishable error types for the home loan core. Every error carries an
ErrorKind so the boundary layer can branch without string-matching messages.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Broad error categories exposed to callers"""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    FATAL = "fatal"


class HomeLoanError(Exception):
    """Base exception for all home loan core errors"""

    kind = ErrorKind.FATAL
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(HomeLoanError):
    """Bad input shape or range, rejected before any mutation"""

    kind = ErrorKind.VALIDATION
    status_code = 400

    def __init__(self, message: str, field_errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.field_errors = field_errors or {}


class NotFoundError(HomeLoanError):
    """Unknown loan, installment or applicant"""

    kind = ErrorKind.NOT_FOUND
    status_code = 404

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConflictError(HomeLoanError):
    """Request conflicts with the current state of an entity"""

    kind = ErrorKind.CONFLICT
    status_code = 409


class InvalidStateTransition(ConflictError):
    """Status edge not present in the transition table"""

    def __init__(self, loan_id: str, current, target):
        super().__init__(
            f"Loan {loan_id} cannot move from {current.value} to {target.value}"
        )
        self.loan_id = loan_id
        self.current = current
        self.target = target


class AlreadyPaidError(ConflictError):
    """Installment was already paid; the stored transaction id is kept"""

    def __init__(self, installment_id: str, transaction_id: Optional[str]):
        super().__init__(f"Installment {installment_id} is already paid")
        self.installment_id = installment_id
        self.transaction_id = transaction_id


class ScheduleAlreadyGeneratedError(ConflictError):
    """A repayment schedule already exists for the loan"""

    def __init__(self, loan_id: str):
        super().__init__(f"EMI schedule already generated for loan {loan_id}")
        self.loan_id = loan_id


class ConcurrentModificationError(ConflictError):
    """A concurrent writer changed the record between read and update"""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} {entity_id} was modified concurrently, retry")
        self.entity_type = entity_type
        self.entity_id = entity_id


class PersistenceFailure(HomeLoanError):
    """Store failure; the enclosing transaction has been rolled back"""

    kind = ErrorKind.FATAL
    status_code = 500


class NotificationFailure(HomeLoanError):
    """Notification delivery failed. Never surfaced past the outbox."""

    kind = ErrorKind.FATAL
    status_code = 502


def to_error_response(exc: Exception) -> Dict[str, Any]:
    """
    Render an exception as a response body for the boundary layer.

    Domain errors keep their message and kind; anything else is reported as a
    generic failure so internal details do not leak.
    """
    timestamp = datetime.now(timezone.utc).isoformat()

    if isinstance(exc, PersistenceFailure) or not isinstance(exc, HomeLoanError):
        return {
            "status": 500,
            "kind": ErrorKind.FATAL.value,
            "message": "An unexpected error occurred",
            "errors": {},
            "timestamp": timestamp,
        }

    return {
        "status": exc.status_code,
        "kind": exc.kind.value,
        "message": exc.message,
        "errors": dict(getattr(exc, "field_errors", {})),
        "timestamp": timestamp,
    }
