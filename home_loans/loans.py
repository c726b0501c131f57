"""
Loan Module

Home loan application records and the lifecycle state machine that moves them
from submission through review, approval or rejection, disbursement and closure.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Union
from enum import Enum
import logging
import uuid

from .applicants import ApplicantDirectory
from .errors import (
    ConcurrentModificationError, InvalidStateTransition, NotFoundError, ValidationError
)
from .logging_config import log_action
from .notifications import NotificationKind, NotificationOutbox, announce
from .storage import StorageInterface, StorageRecord


LOANS_TABLE = "loan_applications"
STATUS_HISTORY_TABLE = "loan_status_changes"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    DRAFT = "draft"
    SUBMITTED = "submitted"          # Initial state, schedule generated alongside
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"            # Terminal
    DISBURSED = "disbursed"          # Funds released to the borrower
    CLOSED = "closed"                # Terminal

    @classmethod
    def parse(cls, value: Union['LoanStatus', str]) -> 'LoanStatus':
        """Parse a status name or value case-insensitively"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            key = value.strip()
            for status in cls:
                if key.upper() == status.name or key.lower() == status.value:
                    return status
        raise ValidationError(
            f"Unknown loan status: {value!r}",
            {"status": f"must be one of {', '.join(s.name for s in cls)}"}
        )


TRANSITIONS: Dict[LoanStatus, FrozenSet[LoanStatus]] = {
    LoanStatus.DRAFT: frozenset(),
    LoanStatus.SUBMITTED: frozenset({LoanStatus.UNDER_REVIEW}),
    LoanStatus.UNDER_REVIEW: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED}),
    LoanStatus.APPROVED: frozenset({LoanStatus.DISBURSED}),
    LoanStatus.REJECTED: frozenset(),
    LoanStatus.DISBURSED: frozenset({LoanStatus.CLOSED}),
    LoanStatus.CLOSED: frozenset(),
}

TERMINAL_STATUSES = frozenset({LoanStatus.REJECTED, LoanStatus.CLOSED})


def allowed_transitions(status: LoanStatus) -> FrozenSet[LoanStatus]:
    """Statuses reachable from `status` in one step"""
    return TRANSITIONS[status]


def is_terminal(status: LoanStatus) -> bool:
    return status in TERMINAL_STATUSES


@dataclass
class LoanApplication(StorageRecord):
    """
    Home loan application.

    created_at is the submission timestamp. amount, interest_rate and
    tenure_months are fixed at creation; only status and updated_at move.
    """
    applicant_id: str
    amount: Decimal
    tenure_months: int
    interest_rate: Decimal              # Annual rate in percent, e.g. 8.50
    purpose: str
    property_value: Optional[Decimal] = None
    status: LoanStatus = LoanStatus.SUBMITTED
    schedule_generated: bool = False

    @property
    def submitted_at(self) -> datetime:
        return self.created_at

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanApplication':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['interest_rate'] = Decimal(data['interest_rate'])
        if data.get('property_value') is not None:
            data['property_value'] = Decimal(data['property_value'])
        data['status'] = LoanStatus(data['status'])
        return super().from_dict(data)


@dataclass
class LoanStatusChange(StorageRecord):
    """Immutable record of one status transition"""
    loan_id: str
    from_status: LoanStatus
    to_status: LoanStatus
    remarks: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['from_status'] = self.from_status.value
        result['to_status'] = self.to_status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanStatusChange':
        data = dict(data)
        data['from_status'] = LoanStatus(data['from_status'])
        data['to_status'] = LoanStatus(data['to_status'])
        return super().from_dict(data)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def load_loan(storage: StorageInterface, loan_id: str) -> LoanApplication:
    """Load a loan or raise NotFoundError"""
    data = storage.load(LOANS_TABLE, loan_id)
    if not data:
        raise NotFoundError("Loan", loan_id)
    return LoanApplication.from_dict(data)


class LoanLifecycleController:
    """
    Enforces the loan status graph.

    Holds only injected collaborators; every transition is a conditional update
    keyed on the status that was read, so two writers racing on one loan cannot
    both apply an edge.
    """

    def __init__(
        self,
        storage: StorageInterface,
        applicants: ApplicantDirectory,
        outbox: NotificationOutbox,
        clock: Callable[[], datetime] = utc_now
    ):
        self.storage = storage
        self.applicants = applicants
        self.outbox = outbox
        self.clock = clock
        self.logger = logging.getLogger("home_loans.loans")

    def get_loan(self, loan_id: str) -> LoanApplication:
        return load_loan(self.storage, loan_id)

    def transition(
        self,
        loan_id: str,
        target_status: Union[LoanStatus, str],
        remarks: Optional[str] = None
    ) -> LoanApplication:
        """
        Move a loan to a new status

        Args:
            loan_id: Loan to update
            target_status: LoanStatus or its name/value
            remarks: Free text kept in the status history

        Returns:
            The updated LoanApplication

        Raises:
            ValidationError: Unknown status value
            NotFoundError: Unknown loan
            InvalidStateTransition: Edge not in the transition table
            ConcurrentModificationError: Another writer moved the loan first
        """
        target = LoanStatus.parse(target_status)
        loan = self.get_loan(loan_id)
        if target not in allowed_transitions(loan.status):
            raise InvalidStateTransition(loan_id, loan.status, target)

        now = self.clock()
        with self.storage.atomic():
            updated = self.storage.compare_and_set(
                LOANS_TABLE, loan_id,
                expected={'status': loan.status.value},
                updates={'status': target.value, 'updated_at': now.isoformat()}
            )
            if updated is None:
                fresh = self.get_loan(loan_id)
                if target not in allowed_transitions(fresh.status):
                    raise InvalidStateTransition(loan_id, fresh.status, target)
                raise ConcurrentModificationError("Loan", loan_id)

            change = LoanStatusChange(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                from_status=loan.status,
                to_status=target,
                remarks=remarks
            )
            self.storage.save(STATUS_HISTORY_TABLE, change.id, change.to_dict())

        result = LoanApplication.from_dict(updated)
        log_action(
            self.logger, "info",
            f"Loan {loan_id} moved from {loan.status.value} to {target.value}",
            user_id=result.applicant_id, action="loan_status_changed", resource=loan_id,
            extra={"from": loan.status.value, "to": target.value}
        )

        announce(
            self.outbox, self.applicants, result.applicant_id,
            NotificationKind.LOAN_STATUS_CHANGED,
            {
                "loan_id": result.id,
                "status": result.status.value,
                "previous_status": loan.status.value,
                "amount": str(result.amount),
                "remarks": remarks
            }
        )
        return result

    def status_history(self, loan_id: str) -> List[LoanStatusChange]:
        """Transitions applied to a loan, oldest first"""
        self.get_loan(loan_id)
        changes = [
            LoanStatusChange.from_dict(data)
            for data in self.storage.find(STATUS_HISTORY_TABLE, {'loan_id': loan_id})
        ]
        return sorted(changes, key=lambda change: change.created_at)
