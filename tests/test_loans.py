"""
Test suite for the loan lifecycle state machine

Covers the transition table, status parsing, status history, notification
side effects and conflicting concurrent transitions.
"""

import pytest
import threading
from decimal import Decimal

from home_loans.errors import (
    ConflictError, InvalidStateTransition, NotFoundError, NotificationFailure, ValidationError
)
from home_loans.loans import (
    TRANSITIONS, LoanApplication, LoanLifecycleController, LoanStatus, allowed_transitions,
    is_terminal
)
from home_loans.notifications import NotificationKind

from .constants import FIXED_NOW, USER_ID


class TestTransitionTable:
    """Test the static transition graph"""

    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(LoanStatus)

    def test_review_branches_to_approval_or_rejection(self):
        assert allowed_transitions(LoanStatus.UNDER_REVIEW) == {
            LoanStatus.APPROVED, LoanStatus.REJECTED
        }

    def test_terminal_statuses_have_no_exits(self):
        for status in (LoanStatus.REJECTED, LoanStatus.CLOSED):
            assert is_terminal(status)
            assert allowed_transitions(status) == frozenset()

    def test_disbursed_is_not_terminal(self):
        assert not is_terminal(LoanStatus.DISBURSED)


class TestLoanStatusParse:
    """Test status parsing from external input"""

    @pytest.mark.parametrize("raw", ["APPROVED", "approved", " Approved "])
    def test_parse_name_or_value(self, raw):
        assert LoanStatus.parse(raw) == LoanStatus.APPROVED

    def test_parse_underscore_value(self):
        assert LoanStatus.parse("under_review") == LoanStatus.UNDER_REVIEW

    @pytest.mark.parametrize("raw", ["PENDING", "", None, 3])
    def test_unknown_status_rejected(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            LoanStatus.parse(raw)
        assert "status" in exc_info.value.field_errors


class TestLoanApplicationRecord:
    """Test loan record serialization"""

    def test_round_trip(self):
        loan = LoanApplication(
            id="loan-1", created_at=FIXED_NOW, updated_at=FIXED_NOW, applicant_id=USER_ID,
            amount=Decimal("2500000.00"), tenure_months=240, interest_rate=Decimal("8.65"),
            purpose="Flat purchase", property_value=Decimal("3200000.00"),
            status=LoanStatus.UNDER_REVIEW
        )
        data = loan.to_dict()
        assert data['status'] == "under_review"
        assert data['amount'] == "2500000.00"
        assert LoanApplication.from_dict(data) == loan

    def test_submitted_at_is_creation_time(self):
        loan = LoanApplication(
            id="loan-1", created_at=FIXED_NOW, updated_at=FIXED_NOW, applicant_id=USER_ID,
            amount=Decimal("50000.00"), tenure_months=12, interest_rate=Decimal("9"),
            purpose="Repairs"
        )
        assert loan.submitted_at == FIXED_NOW
        assert loan.status == LoanStatus.SUBMITTED


class TestLoanLifecycle:
    """Test status transitions through the service"""

    def test_new_loan_is_submitted(self, loan):
        assert loan.status == LoanStatus.SUBMITTED

    def test_full_legal_path(self, service, loan):
        """SUBMITTED -> UNDER_REVIEW -> APPROVED -> DISBURSED -> CLOSED"""
        path = [
            LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED, LoanStatus.DISBURSED, LoanStatus.CLOSED
        ]
        for status in path:
            updated = service.transition_status(loan.id, status)
            assert updated.status == status
            assert service.get_loan(loan.id).status == status

    def test_rejection_path(self, service, loan):
        service.transition_status(loan.id, LoanStatus.UNDER_REVIEW)
        rejected = service.transition_status(loan.id, "REJECTED", remarks="Income not verified")
        assert rejected.status == LoanStatus.REJECTED

        with pytest.raises(InvalidStateTransition):
            service.transition_status(loan.id, LoanStatus.UNDER_REVIEW)

    def test_backwards_edge_rejected_and_status_unchanged(self, service, loan):
        for status in (LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED, LoanStatus.DISBURSED):
            service.transition_status(loan.id, status)

        with pytest.raises(InvalidStateTransition) as exc_info:
            service.transition_status(loan.id, LoanStatus.UNDER_REVIEW)

        assert exc_info.value.current == LoanStatus.DISBURSED
        assert exc_info.value.target == LoanStatus.UNDER_REVIEW
        assert service.get_loan(loan.id).status == LoanStatus.DISBURSED

    def test_cannot_skip_review(self, service, loan):
        with pytest.raises(InvalidStateTransition):
            service.transition_status(loan.id, LoanStatus.APPROVED)
        assert service.get_loan(loan.id).status == LoanStatus.SUBMITTED

    def test_self_transition_rejected(self, service, loan):
        with pytest.raises(InvalidStateTransition):
            service.transition_status(loan.id, LoanStatus.SUBMITTED)

    def test_unknown_status_string(self, service, loan):
        with pytest.raises(ValidationError):
            service.transition_status(loan.id, "ON_HOLD")
        assert service.get_loan(loan.id).status == LoanStatus.SUBMITTED

    def test_unknown_loan(self, service):
        with pytest.raises(NotFoundError):
            service.transition_status("missing", LoanStatus.UNDER_REVIEW)

    def test_terms_never_change(self, service, loan):
        service.transition_status(loan.id, LoanStatus.UNDER_REVIEW)
        updated = service.transition_status(loan.id, LoanStatus.APPROVED)

        assert updated.amount == loan.amount
        assert updated.interest_rate == loan.interest_rate
        assert updated.tenure_months == loan.tenure_months
        assert updated.submitted_at == loan.submitted_at

    def test_status_history_keeps_remarks(self, service, loan):
        service.transition_status(loan.id, LoanStatus.UNDER_REVIEW, remarks="Documents received")
        service.transition_status(loan.id, LoanStatus.APPROVED, remarks="Credit score 780")

        history = service.status_history(loan.id)

        assert [(c.from_status, c.to_status) for c in history] == [
            (LoanStatus.SUBMITTED, LoanStatus.UNDER_REVIEW),
            (LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED),
        ]
        assert [c.remarks for c in history] == ["Documents received", "Credit score 780"]

    def test_rejected_transition_leaves_no_history(self, service, loan):
        with pytest.raises(InvalidStateTransition):
            service.transition_status(loan.id, LoanStatus.CLOSED)
        assert service.status_history(loan.id) == []


class TestTransitionNotifications:
    """Test notifications emitted after a transition commits"""

    def test_status_change_notified(self, service, loan, gateway):
        gateway.notify.reset_mock()

        service.transition_status(loan.id, LoanStatus.UNDER_REVIEW, remarks="Queued")

        gateway.notify.assert_called_once()
        kind, recipient, payload = gateway.notify.call_args[0]
        assert kind == NotificationKind.LOAN_STATUS_CHANGED
        assert recipient == "asha@example.com"
        assert payload["status"] == "under_review"
        assert payload["previous_status"] == "submitted"
        assert payload["remarks"] == "Queued"
        assert payload["applicant_name"] == "Asha Verma"

    def test_invalid_transition_not_notified(self, service, loan, gateway):
        gateway.notify.reset_mock()

        with pytest.raises(InvalidStateTransition):
            service.transition_status(loan.id, LoanStatus.DISBURSED)
        gateway.notify.assert_not_called()

    def test_notification_failure_does_not_undo_transition(self, service, loan, gateway, outbox):
        gateway.notify.side_effect = NotificationFailure("SMTP unavailable")

        updated = service.transition_status(loan.id, LoanStatus.UNDER_REVIEW)

        assert updated.status == LoanStatus.UNDER_REVIEW
        assert service.get_loan(loan.id).status == LoanStatus.UNDER_REVIEW
        assert outbox.stats()["failed"] == 1


class TestConcurrentTransitions:
    """Test racing writers on one loan"""

    def test_approve_and_reject_race_has_one_winner(self, storage, applicants, outbox, clock, loan):
        controller = LoanLifecycleController(storage, applicants, outbox, clock=clock)
        controller.transition(loan.id, LoanStatus.UNDER_REVIEW)

        barrier = threading.Barrier(2)
        results = {}
        errors = {}

        def move(target):
            barrier.wait()
            try:
                results[target] = controller.transition(loan.id, target)
            except ConflictError as e:
                errors[target] = e

        threads = [
            threading.Thread(target=move, args=(target,))
            for target in (LoanStatus.APPROVED, LoanStatus.REJECTED)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 1
        assert len(errors) == 1

        winner = next(iter(results))
        assert controller.get_loan(loan.id).status == winner

        history = controller.status_history(loan.id)
        assert [c.to_status for c in history] == [LoanStatus.UNDER_REVIEW, winner]
