"""
EMI Module

Repayment schedule generation and installment payment recording.

A schedule is generated once per loan, in the same atomic unit that stores the
loan, and its installments never change amount. Paying an installment is a
single conditional PENDING -> PAID update, so duplicate or concurrent
submissions for the same installment cannot both succeed.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import logging
import uuid

from .amortization import add_months, compute_monthly_installment
from .applicants import ApplicantDirectory
from .errors import (
    AlreadyPaidError, NotFoundError, ScheduleAlreadyGeneratedError, ValidationError
)
from .loans import LOANS_TABLE, LoanApplication, utc_now
from .logging_config import log_action
from .notifications import NotificationKind, NotificationOutbox, announce
from .storage import StorageInterface, StorageRecord


INSTALLMENTS_TABLE = "emi_installments"


class PaymentStatus(Enum):
    """Installment payment status"""
    PENDING = "pending"
    PAID = "paid"


@dataclass
class EmiInstallment(StorageRecord):
    """One scheduled monthly repayment"""
    loan_id: str
    installment_number: int
    due_date: date
    amount: Decimal
    payment_status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None

    def __post_init__(self):
        # transaction_id is present exactly when the installment is paid
        if (self.transaction_id is not None) != (self.payment_status == PaymentStatus.PAID):
            raise ValueError(
                f"Installment {self.id}: transaction id must be set if and only if status is PAID"
            )

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['due_date'] = self.due_date.isoformat()
        result['payment_status'] = self.payment_status.value
        result['paid_at'] = self.paid_at.isoformat() if self.paid_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EmiInstallment':
        data = dict(data)
        data['due_date'] = date.fromisoformat(data['due_date'])
        data['amount'] = Decimal(data['amount'])
        data['payment_status'] = PaymentStatus(data['payment_status'])
        if data.get('paid_at'):
            data['paid_at'] = datetime.fromisoformat(data['paid_at'])
        return super().from_dict(data)


def _ordered(records: List[Dict[str, Any]]) -> List[EmiInstallment]:
    installments = [EmiInstallment.from_dict(data) for data in records]
    return sorted(installments, key=lambda emi: emi.installment_number)


class EmiScheduleGenerator:
    """Builds and stores the constant-EMI repayment schedule of a loan"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.logger = logging.getLogger("home_loans.emi")

    def generate_schedule(self, loan: LoanApplication) -> List[EmiInstallment]:
        """
        Generate the repayment schedule for a stored loan.

        Due dates run monthly from the submission date: installment i falls i
        calendar months after it. Every installment carries the same amount.
        The loan's schedule_generated flag is flipped by conditional update in
        the same atomic block, which makes a second call fail.

        Raises:
            NotFoundError: The loan has not been stored
            ScheduleAlreadyGeneratedError: A schedule already exists
            ValidationError: The loan terms cannot be amortized
        """
        installment_amount = compute_monthly_installment(
            loan.amount, loan.interest_rate, loan.tenure_months
        )
        start = loan.submitted_at.date()
        now = utc_now()

        with self.storage.atomic():
            marked = self.storage.compare_and_set(
                LOANS_TABLE, loan.id,
                expected={'schedule_generated': False},
                updates={'schedule_generated': True}
            )
            if marked is None:
                if not self.storage.exists(LOANS_TABLE, loan.id):
                    raise NotFoundError("Loan", loan.id)
                raise ScheduleAlreadyGeneratedError(loan.id)
            if self.storage.find(INSTALLMENTS_TABLE, {'loan_id': loan.id}):
                raise ScheduleAlreadyGeneratedError(loan.id)

            schedule = []
            for number in range(1, loan.tenure_months + 1):
                installment = EmiInstallment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    installment_number=number,
                    due_date=add_months(start, number),
                    amount=installment_amount
                )
                self.storage.save(INSTALLMENTS_TABLE, installment.id, installment.to_dict())
                schedule.append(installment)

        loan.schedule_generated = True
        log_action(
            self.logger, "info",
            f"Generated {len(schedule)} installments of {installment_amount} for loan {loan.id}",
            user_id=loan.applicant_id, action="emi_schedule_generated", resource=loan.id
        )
        return schedule

    def list_schedule(self, loan_id: str) -> List[EmiInstallment]:
        """Installments of a loan in due order"""
        if not self.storage.exists(LOANS_TABLE, loan_id):
            raise NotFoundError("Loan", loan_id)
        return _ordered(self.storage.find(INSTALLMENTS_TABLE, {'loan_id': loan_id}))


class PaymentRecorder:
    """Records installment payments at most once per installment"""

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
        self.logger = logging.getLogger("home_loans.payments")

    def get_installment(self, installment_id: str) -> EmiInstallment:
        data = self.storage.load(INSTALLMENTS_TABLE, installment_id)
        if not data:
            raise NotFoundError("EMI installment", installment_id)
        return EmiInstallment.from_dict(data)

    def pay_installment(self, installment_id: str, transaction_id: str) -> EmiInstallment:
        """
        Mark an installment as paid

        Args:
            installment_id: Installment to pay
            transaction_id: Payment reference from the payment provider

        Returns:
            The paid installment

        Raises:
            ValidationError: Missing or blank transaction id
            NotFoundError: Unknown installment
            AlreadyPaidError: Installment already paid, stored reference unchanged
        """
        if not isinstance(transaction_id, str) or not transaction_id.strip():
            raise ValidationError("Transaction ID is required",
                                  {"transaction_id": "must not be empty"})
        transaction_id = transaction_id.strip()

        now = self.clock()
        with self.storage.atomic():
            updated = self.storage.compare_and_set(
                INSTALLMENTS_TABLE, installment_id,
                expected={'payment_status': PaymentStatus.PENDING.value},
                updates={
                    'payment_status': PaymentStatus.PAID.value,
                    'transaction_id': transaction_id,
                    'paid_at': now.isoformat(),
                    'updated_at': now.isoformat()
                }
            )
            if updated is None:
                existing = self.get_installment(installment_id)
                raise AlreadyPaidError(installment_id, existing.transaction_id)

        installment = EmiInstallment.from_dict(updated)
        log_action(
            self.logger, "info",
            f"Installment {installment.installment_number} of loan {installment.loan_id} paid",
            action="emi_paid", resource=installment_id,
            extra={"transaction_id": transaction_id, "amount": str(installment.amount)}
        )

        self._confirm(installment)
        return installment

    def _confirm(self, installment: EmiInstallment) -> None:
        data = self.storage.load(LOANS_TABLE, installment.loan_id)
        if not data:
            self.logger.warning(f"Loan {installment.loan_id} missing, payment confirmation skipped")
            return
        announce(
            self.outbox, self.applicants, data['applicant_id'],
            NotificationKind.EMI_PAYMENT_CONFIRMED,
            {
                "loan_id": installment.loan_id,
                "installment_id": installment.id,
                "installment_number": installment.installment_number,
                "amount": str(installment.amount),
                "due_date": installment.due_date.isoformat(),
                "transaction_id": installment.transaction_id
            }
        )

    def list_pending(self, loan_ids: List[str]) -> List[EmiInstallment]:
        """Pending installments across several loans, earliest due first"""
        pending = []
        for loan_id in loan_ids:
            pending.extend(
                EmiInstallment.from_dict(data)
                for data in self.storage.find(
                    INSTALLMENTS_TABLE,
                    {'loan_id': loan_id, 'payment_status': PaymentStatus.PENDING.value}
                )
            )
        return sorted(pending, key=lambda emi: (emi.due_date, emi.loan_id, emi.installment_number))
