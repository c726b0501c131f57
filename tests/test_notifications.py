"""
Tests for the notification side channel
"""

import pytest
from unittest.mock import Mock

import requests

from home_loans.errors import NotificationFailure
from home_loans.notifications import (
    LogNotificationGateway, NotificationKind, NotificationOutbox,
    OutboundNotification, WebhookNotificationGateway, announce, create_gateway
)

from .constants import USER_ID


class TestOutboundNotification:
    """Test the queued notification record"""

    def test_to_dict(self):
        notification = OutboundNotification(
            event_kind=NotificationKind.LOAN_STATUS_CHANGED,
            recipient="asha@example.com",
            payload={"loan_id": "loan-1"}
        )
        data = notification.to_dict()

        assert data["event_kind"] == "loan.status_changed"
        assert data["recipient"] == "asha@example.com"
        assert data["payload"] == {"loan_id": "loan-1"}
        assert data["event_id"]


class TestNotificationOutbox:
    """Test queueing and delivery"""

    def test_publish_delivers_immediately(self, gateway, outbox):
        outbox.publish(NotificationKind.EMI_PAYMENT_CONFIRMED, "asha@example.com", {"amount": "10.00"})

        gateway.notify.assert_called_once_with(
            NotificationKind.EMI_PAYMENT_CONFIRMED, "asha@example.com", {"amount": "10.00"}
        )
        assert outbox.stats() == {"delivered": 1, "failed": 0, "pending": 0}

    def test_enqueue_then_dispatch(self, gateway, outbox):
        outbox.enqueue(NotificationKind.EMI_PAYMENT_REMINDER, "a@example.com", {})
        outbox.enqueue(NotificationKind.EMI_PAYMENT_REMINDER, "b@example.com", {})

        assert outbox.pending == 2
        gateway.notify.assert_not_called()

        assert outbox.dispatch() == 2
        assert outbox.pending == 0
        assert [c[0][1] for c in gateway.notify.call_args_list] == ["a@example.com", "b@example.com"]

    def test_failures_are_counted_not_raised(self, gateway, outbox):
        gateway.notify.side_effect = [NotificationFailure("bounced"), None, ValueError("bad payload")]

        for recipient in ("a@example.com", "b@example.com", "c@example.com"):
            outbox.publish(NotificationKind.LOAN_STATUS_CHANGED, recipient, {})

        assert outbox.stats() == {"delivered": 1, "failed": 2, "pending": 0}

    def test_failure_logged_as_error(self, gateway):
        logger = Mock()
        logger.isEnabledFor.return_value = True
        outbox = NotificationOutbox(gateway, logger=logger)
        gateway.notify.side_effect = NotificationFailure("bounced")

        outbox.publish(NotificationKind.LOAN_STATUS_CHANGED, "a@example.com", {})

        logger.handle.assert_called_once()
        record = logger.makeRecord.return_value
        assert record.action == "notification_failed"


class TestLogNotificationGateway:
    """Test the log channel"""

    def test_writes_structured_record(self):
        logger = Mock()
        logger.isEnabledFor.return_value = True
        gateway = LogNotificationGateway(logger=logger)

        gateway.notify(NotificationKind.LOAN_APPLICATION_RECEIVED, "asha@example.com", {"loan_id": "L1"})

        logger.handle.assert_called_once()
        record = logger.makeRecord.return_value
        assert record.action == "loan.application_received"
        assert record.resource == "asha@example.com"
        assert record.extra == {"loan_id": "L1"}


class TestWebhookNotificationGateway:
    """Test webhook delivery with a mocked HTTP session"""

    def _gateway(self, status_code=200, side_effect=None):
        session = Mock(spec=requests.Session)
        session.post.return_value = Mock(status_code=status_code)
        session.post.side_effect = side_effect
        return WebhookNotificationGateway("https://hooks.example.com/loans", timeout=3.0,
                                          session=session), session

    def test_posts_json_body(self):
        gateway, session = self._gateway()

        gateway.notify(NotificationKind.EMI_PAYMENT_CONFIRMED, "asha@example.com", {"amount": "8884.88"})

        session.post.assert_called_once()
        args, kwargs = session.post.call_args
        assert args[0] == "https://hooks.example.com/loans"
        assert kwargs["timeout"] == 3.0
        assert kwargs["json"]["type"] == "emi.payment_confirmed"
        assert kwargs["json"]["recipient"] == "asha@example.com"
        assert kwargs["json"]["payload"] == {"amount": "8884.88"}

    def test_accepts_any_2xx(self):
        gateway, _ = self._gateway(status_code=202)
        gateway.notify(NotificationKind.EMI_PAYMENT_REMINDER, "asha@example.com", {})

    def test_http_error_status(self):
        gateway, _ = self._gateway(status_code=500)
        with pytest.raises(NotificationFailure, match="500"):
            gateway.notify(NotificationKind.EMI_PAYMENT_REMINDER, "asha@example.com", {})

    def test_connection_error(self):
        gateway, _ = self._gateway(side_effect=requests.ConnectionError("refused"))
        with pytest.raises(NotificationFailure):
            gateway.notify(NotificationKind.EMI_PAYMENT_REMINDER, "asha@example.com", {})

    def test_url_required(self):
        with pytest.raises(ValueError):
            WebhookNotificationGateway("")


class TestCreateGateway:
    """Test gateway selection"""

    def test_log_channel(self):
        assert isinstance(create_gateway("log"), LogNotificationGateway)

    def test_webhook_channel(self):
        gateway = create_gateway("webhook", webhook_url="https://hooks.example.com", timeout=2.0)
        assert isinstance(gateway, WebhookNotificationGateway)
        assert gateway.timeout == 2.0

    def test_unknown_channel(self):
        with pytest.raises(ValueError):
            create_gateway("carrier-pigeon")


class TestAnnounce:
    """Test recipient resolution before publishing"""

    def test_resolves_email_and_name(self, gateway, outbox, applicants):
        assert announce(outbox, applicants, USER_ID, NotificationKind.LOAN_STATUS_CHANGED,
                        {"loan_id": "L1"})

        gateway.notify.assert_called_once_with(
            NotificationKind.LOAN_STATUS_CHANGED, "asha@example.com",
            {"loan_id": "L1", "applicant_name": "Asha Verma"}
        )

    def test_unknown_applicant_skipped(self, gateway, outbox, applicants):
        assert not announce(outbox, applicants, "ghost", NotificationKind.LOAN_STATUS_CHANGED, {})
        gateway.notify.assert_not_called()

