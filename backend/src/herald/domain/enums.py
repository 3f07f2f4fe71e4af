"""Domain enumerations for the notification engine."""

from __future__ import annotations

import enum


class Channel(str, enum.Enum):
    """Delivery channel."""

    PUSH = "push"
    SMS = "sms"
    EMAIL = "email"
    IN_APP = "in_app"


class Priority(str, enum.Enum):
    """Processing priority.  High and urgent may exceed a spent budget."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @property
    def escalated(self) -> bool:
        return self in (Priority.HIGH, Priority.URGENT)


_PRIORITY_RANK: dict[Priority, int] = {
    Priority.LOW: 0,
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class NotificationStatus(str, enum.Enum):
    """Lifecycle state machine for a notification."""

    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"
    TIMED_OUT = "timed_out"

    # ── Allowed transitions ──
    def can_transition_to(self, target: NotificationStatus) -> bool:
        return target in _NOTIFICATION_TRANSITIONS.get(self, set())

    @property
    def is_final(self) -> bool:
        """No further attempt may be admitted once delivered or cancelled."""
        return self in (NotificationStatus.DELIVERED, NotificationStatus.CANCELLED)

    @property
    def is_terminal(self) -> bool:
        return self.is_final or self == NotificationStatus.FAILED


_NOTIFICATION_TRANSITIONS: dict[NotificationStatus, set[NotificationStatus]] = {
    NotificationStatus.QUEUED: {
        NotificationStatus.SENDING,
        NotificationStatus.FAILED,
        NotificationStatus.CANCELLED,
    },
    NotificationStatus.SENDING: {
        NotificationStatus.SENT,
        NotificationStatus.DELIVERED,
        NotificationStatus.RETRYING,
        NotificationStatus.FAILED,
        NotificationStatus.TIMED_OUT,
        NotificationStatus.CANCELLED,
    },
    NotificationStatus.SENT: {
        NotificationStatus.DELIVERED,
        NotificationStatus.RETRYING,
        NotificationStatus.FAILED,
    },
    NotificationStatus.RETRYING: {
        NotificationStatus.SENDING,
        NotificationStatus.DELIVERED,
        NotificationStatus.FAILED,
        NotificationStatus.CANCELLED,
    },
    NotificationStatus.TIMED_OUT: {
        NotificationStatus.RETRYING,
        NotificationStatus.FAILED,
        NotificationStatus.DELIVERED,
    },
    NotificationStatus.FAILED: {
        NotificationStatus.RETRYING,
        NotificationStatus.DELIVERED,
    },
}


class AttemptOutcome(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class DeliveryStatus(str, enum.Enum):
    """Normalised status reported by a gateway delivery callback."""

    ACCEPTED = "accepted"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    UNDELIVERED = "undelivered"

    @property
    def is_failure(self) -> bool:
        return self in (DeliveryStatus.FAILED, DeliveryStatus.UNDELIVERED)


class RateLimitLevel(str, enum.Enum):
    """Bucket hierarchy, evaluated in declaration order."""

    USER = "user"
    SERVICE = "service"
    TENANT = "tenant"


class BillingEvent(str, enum.Enum):
    """When a channel's per-message cost is booked."""

    SEND = "send"
    DELIVERY = "delivery"


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class WebhookFamily(str, enum.Enum):
    TWILIO = "twilio"
    VONAGE = "vonage"
    SENDGRID = "sendgrid"
    MAILGUN = "mailgun"
    FCM = "fcm"
