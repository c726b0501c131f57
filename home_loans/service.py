"""
Home Loan Service Module

Facade over the lifecycle controller, schedule generator and payment recorder.
This is the surface an HTTP/RPC layer wraps; it accepts an already-authenticated
applicant id and never deals with credentials.
"""

from decimal import Decimal
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union
import logging
import uuid

from .amortization import Number, compute_monthly_installment, quantize_amount
from .applicants import ApplicantDirectory, StorageApplicantDirectory
from .config import HomeLoanConfig, get_config
from .emi import (
    INSTALLMENTS_TABLE, EmiInstallment, EmiScheduleGenerator, PaymentRecorder, PaymentStatus
)
from .loans import (
    LOANS_TABLE, LoanApplication, LoanLifecycleController, LoanStatus, LoanStatusChange,
    utc_now
)
from .logging_config import log_action, setup_logging
from .notifications import NotificationKind, NotificationOutbox, announce, create_gateway
from .schemas import LoanApplicationRequest, parse_request
from .storage import StorageInterface, create_storage


class HomeLoanService:
    """
    Entry point for home loan operations.

    Stateless apart from its injected collaborators and static configuration.
    """

    def __init__(
        self,
        storage: StorageInterface,
        applicants: ApplicantDirectory,
        outbox: NotificationOutbox,
        config: Optional[HomeLoanConfig] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.storage = storage
        self.applicants = applicants
        self.outbox = outbox
        self.config = config or get_config()
        self.clock = clock
        self.logger = logging.getLogger("home_loans.service")

        self.lifecycle = LoanLifecycleController(storage, applicants, outbox, clock=clock)
        self.schedule_generator = EmiScheduleGenerator(storage)
        self.payment_recorder = PaymentRecorder(storage, applicants, outbox, clock=clock)

    def apply_loan(
        self,
        user_id: str,
        amount: Number,
        tenure_months: int,
        annual_rate_percent: Number,
        property_value: Optional[Number] = None,
        purpose: str = ""
    ) -> LoanApplication:
        """
        Submit a home loan application and generate its EMI schedule

        The loan and all of its installments are stored in one atomic unit.

        Args:
            user_id: Authenticated applicant id
            amount: Principal, at least the configured minimum
            tenure_months: Loan duration, at least the configured minimum
            annual_rate_percent: Annual interest rate in percent, > 0
            property_value: Optional property valuation, >= 0
            purpose: What the loan is for

        Returns:
            The stored LoanApplication in SUBMITTED status
        """
        request = parse_request(
            LoanApplicationRequest,
            {
                "amount": amount,
                "tenure_months": tenure_months,
                "interest_rate": annual_rate_percent,
                "property_value": property_value,
                "purpose": purpose
            },
            context={
                "min_loan_amount": self.config.min_loan_amount,
                "min_tenure_months": self.config.min_tenure_months,
                "max_purpose_length": self.config.max_purpose_length
            }
        )
        self.applicants.get_applicant(user_id)

        now = self.clock()
        loan = LoanApplication(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            applicant_id=user_id,
            amount=quantize_amount(request.amount),
            tenure_months=request.tenure_months,
            interest_rate=request.interest_rate,
            purpose=request.purpose,
            property_value=(
                quantize_amount(request.property_value)
                if request.property_value is not None else None
            ),
            status=LoanStatus.SUBMITTED
        )

        with self.storage.atomic():
            self.storage.save(LOANS_TABLE, loan.id, loan.to_dict())
            schedule = self.schedule_generator.generate_schedule(loan)

        log_action(
            self.logger, "info", f"Loan application {loan.id} submitted",
            user_id=user_id, action="loan_applied", resource=loan.id,
            extra={"amount": str(loan.amount), "tenure_months": loan.tenure_months}
        )

        announce(
            self.outbox, self.applicants, user_id,
            NotificationKind.LOAN_APPLICATION_RECEIVED,
            {
                "loan_id": loan.id,
                "amount": str(loan.amount),
                "property_value": str(loan.property_value) if loan.property_value is not None else None,
                "tenure_months": loan.tenure_months,
                "interest_rate": str(loan.interest_rate),
                "monthly_installment": str(schedule[0].amount),
                "currency": self.config.currency_code,
                "submitted_at": loan.submitted_at.isoformat()
            }
        )
        return loan

    def transition_status(
        self,
        loan_id: str,
        target_status: Union[LoanStatus, str],
        remarks: Optional[str] = None
    ) -> LoanApplication:
        return self.lifecycle.transition(loan_id, target_status, remarks)

    def pay_installment(self, installment_id: str, transaction_id: str) -> EmiInstallment:
        return self.payment_recorder.pay_installment(installment_id, transaction_id)

    def list_schedule(self, loan_id: str) -> List[EmiInstallment]:
        return self.schedule_generator.list_schedule(loan_id)

    def list_pending_for_user(self, user_id: str) -> List[EmiInstallment]:
        """Pending installments across every loan of the applicant"""
        loan_ids = [loan.id for loan in self.list_user_loans(user_id)]
        return self.payment_recorder.list_pending(loan_ids)

    def get_loan(self, loan_id: str) -> LoanApplication:
        return self.lifecycle.get_loan(loan_id)

    def list_user_loans(self, user_id: str) -> List[LoanApplication]:
        self.applicants.get_applicant(user_id)
        loans = [
            LoanApplication.from_dict(data)
            for data in self.storage.find(LOANS_TABLE, {'applicant_id': user_id})
        ]
        return sorted(loans, key=lambda loan: loan.submitted_at)

    def list_all_loans(self) -> List[LoanApplication]:
        loans = [LoanApplication.from_dict(data) for data in self.storage.load_all(LOANS_TABLE)]
        return sorted(loans, key=lambda loan: loan.submitted_at)

    def list_loans_by_status(self, status: Union[LoanStatus, str]) -> List[LoanApplication]:
        status = LoanStatus.parse(status)
        loans = [
            LoanApplication.from_dict(data)
            for data in self.storage.find(LOANS_TABLE, {'status': status.value})
        ]
        return sorted(loans, key=lambda loan: loan.submitted_at)

    def status_history(self, loan_id: str) -> List[LoanStatusChange]:
        return self.lifecycle.status_history(loan_id)

    def calculate_monthly_emi(self, principal: Number, annual_rate_percent: Number,
                              tenure_months: int) -> Decimal:
        return compute_monthly_installment(principal, annual_rate_percent, tenure_months)

    def portfolio_summary(self) -> Dict[str, Any]:
        """Loan counts per status with total and approved principal"""
        loans = self.list_all_loans()
        by_status = {status.value: 0 for status in LoanStatus}
        total_amount = Decimal("0.00")
        approved_amount = Decimal("0.00")

        for loan in loans:
            by_status[loan.status.value] += 1
            total_amount += loan.amount
            if loan.status == LoanStatus.APPROVED:
                approved_amount += loan.amount

        return {
            "total_loans": len(loans),
            "pending_loans": by_status[LoanStatus.SUBMITTED.value],
            "approved_loans": by_status[LoanStatus.APPROVED.value],
            "rejected_loans": by_status[LoanStatus.REJECTED.value],
            "by_status": by_status,
            "total_loan_amount": total_amount,
            "approved_loan_amount": approved_amount,
        }

    def send_due_reminders(self, as_of: Optional[date] = None,
                           days_ahead: Optional[int] = None) -> int:
        """
        Publish a reminder for every pending installment due on or before
        as_of + days_ahead, overdue ones included. Only disbursed loans are in
        repayment; installments of loans in any other status are skipped.

        Returns:
            Number of reminders handed to the outbox
        """
        as_of = as_of or self.clock().date()
        if days_ahead is None:
            days_ahead = self.config.reminder_days_ahead
        horizon = as_of + timedelta(days=days_ahead)

        due = [
            EmiInstallment.from_dict(data)
            for data in self.storage.find(
                INSTALLMENTS_TABLE, {'payment_status': PaymentStatus.PENDING.value}
            )
        ]
        due = sorted(
            (emi for emi in due if emi.due_date <= horizon),
            key=lambda emi: (emi.due_date, emi.loan_id, emi.installment_number)
        )

        loans: Dict[str, LoanApplication] = {}
        sent = 0
        for emi in due:
            if emi.loan_id not in loans:
                loans[emi.loan_id] = self.get_loan(emi.loan_id)
            loan = loans[emi.loan_id]
            if loan.status != LoanStatus.DISBURSED:
                continue
            published = announce(
                self.outbox, self.applicants, loan.applicant_id,
                NotificationKind.EMI_PAYMENT_REMINDER,
                {
                    "loan_id": emi.loan_id,
                    "installment_id": emi.id,
                    "installment_number": emi.installment_number,
                    "amount": str(emi.amount),
                    "due_date": emi.due_date.isoformat(),
                    "overdue": emi.due_date < as_of
                }
            )
            if published:
                sent += 1

        log_action(
            self.logger, "info", f"Sent {sent} EMI reminders for {as_of.isoformat()}",
            action="emi_reminders_sent", extra={"days_ahead": days_ahead}
        )
        return sent


def build_service(config: Optional[HomeLoanConfig] = None,
                  storage: Optional[StorageInterface] = None,
                  applicants: Optional[ApplicantDirectory] = None) -> HomeLoanService:
    """Wire a HomeLoanService from configuration"""
    config = config or get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    storage = storage or create_storage(config.database_url)
    applicants = applicants or StorageApplicantDirectory(storage)
    gateway = create_gateway(
        config.notification_channel,
        webhook_url=config.notification_webhook_url,
        timeout=config.notification_timeout
    )
    return HomeLoanService(storage, applicants, NotificationOutbox(gateway), config=config)
