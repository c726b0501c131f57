"""
Notification Module

Outbound, best-effort notification side channel. The core enqueues a
notification only after its transaction has committed; the outbox then hands
it to a NotificationGateway. Delivery failures are logged and counted, never
raised to the caller and never rolled back into the core.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import logging
import queue
import threading
import uuid

import requests

from .errors import HomeLoanError, NotificationFailure
from .logging_config import log_action


class NotificationKind(Enum):
    """Events the core announces to the outside world"""
    LOAN_APPLICATION_RECEIVED = "loan.application_received"
    LOAN_STATUS_CHANGED = "loan.status_changed"
    EMI_PAYMENT_CONFIRMED = "emi.payment_confirmed"
    EMI_PAYMENT_REMINDER = "emi.payment_reminder"


@dataclass
class OutboundNotification:
    """A queued notification"""
    event_kind: NotificationKind
    recipient: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_id': self.event_id,
            'event_kind': self.event_kind.value,
            'recipient': self.recipient,
            'payload': self.payload,
            'timestamp': self.timestamp.isoformat()
        }


class NotificationGateway(ABC):
    """Delivery sink. Implementations raise NotificationFailure on failure."""

    @abstractmethod
    def notify(self, event_kind: NotificationKind, recipient: str,
               payload: Dict[str, Any]) -> None:
        pass


class LogNotificationGateway(NotificationGateway):
    """Writes each notification as a structured log line"""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("home_loans.notifications.log")

    def notify(self, event_kind: NotificationKind, recipient: str,
               payload: Dict[str, Any]) -> None:
        log_action(
            self.logger, "info", f"Notification {event_kind.value} to {recipient}",
            action=event_kind.value, resource=recipient, extra=payload
        )


class WebhookNotificationGateway(NotificationGateway):
    """POSTs each notification as JSON to a webhook endpoint"""

    def __init__(self, url: str, timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        if not url:
            raise ValueError("Webhook URL is required")
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def notify(self, event_kind: NotificationKind, recipient: str,
               payload: Dict[str, Any]) -> None:
        body = {
            "type": event_kind.value,
            "recipient": recipient,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
        try:
            response = self.session.post(
                self.url,
                json=body,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            raise NotificationFailure(f"Webhook delivery failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise NotificationFailure(
                f"Webhook delivery failed with HTTP {response.status_code}"
            )


class NotificationOutbox:
    """
    Queue of committed-change notifications.

    publish() is called by the core after commit. It enqueues and immediately
    drains the queue on the calling thread; any gateway failure is converted to
    NotificationFailure, logged and counted.
    """

    def __init__(self, gateway: NotificationGateway,
                 logger: Optional[logging.Logger] = None):
        self.gateway = gateway
        self.logger = logger or logging.getLogger("home_loans.notifications")
        self._queue: "queue.Queue[OutboundNotification]" = queue.Queue()
        self._lock = threading.Lock()
        self._delivered = 0
        self._failed = 0

    def enqueue(self, event_kind: NotificationKind, recipient: str,
                payload: Dict[str, Any]) -> OutboundNotification:
        """Queue a notification without delivering it"""
        notification = OutboundNotification(
            event_kind=event_kind,
            recipient=recipient,
            payload=payload
        )
        self._queue.put(notification)
        return notification

    def dispatch(self) -> int:
        """Deliver everything queued so far. Returns the number delivered."""
        delivered = 0
        while True:
            try:
                notification = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            if self._deliver(notification):
                delivered += 1

    def publish(self, event_kind: NotificationKind, recipient: str,
                payload: Dict[str, Any]) -> None:
        """Enqueue and dispatch; never raises"""
        self.enqueue(event_kind, recipient, payload)
        self.dispatch()

    def _deliver(self, notification: OutboundNotification) -> bool:
        try:
            self.gateway.notify(
                notification.event_kind, notification.recipient, notification.payload
            )
        except Exception as e:
            failure = e if isinstance(e, NotificationFailure) else NotificationFailure(str(e))
            with self._lock:
                self._failed += 1
            log_action(
                self.logger, "error",
                f"Notification {notification.event_kind.value} to {notification.recipient} failed: {failure}",
                action="notification_failed",
                resource=notification.event_id,
                extra={"event_kind": notification.event_kind.value}
            )
            return False

        with self._lock:
            self._delivered += 1
        return True

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"delivered": self._delivered, "failed": self._failed, "pending": self.pending}


def create_gateway(channel: str, webhook_url: str = "", timeout: float = 5.0) -> NotificationGateway:
    """Build the configured notification gateway"""
    if channel == "log":
        return LogNotificationGateway()
    if channel == "webhook":
        return WebhookNotificationGateway(webhook_url, timeout=timeout)
    raise ValueError(f"Unknown notification channel: {channel}")


def announce(outbox: NotificationOutbox, applicants, applicant_id: str,
             event_kind: NotificationKind, payload: Dict[str, Any]) -> bool:
    """
    Resolve the applicant's contact and publish a notification.

    Runs after commit. An unresolvable applicant is logged like any other
    delivery failure. Returns True when the notification was handed to the outbox.
    """
    try:
        applicant = applicants.get_applicant(applicant_id)
    except HomeLoanError as e:
        log_action(
            outbox.logger, "warning",
            f"No recipient for {event_kind.value}: {e}",
            user_id=applicant_id, action="notification_skipped"
        )
        return False

    outbox.publish(
        event_kind, applicant.email,
        dict(payload, applicant_name=applicant.full_name)
    )
    return True
