"""Domain entities — objects with identity and lifecycle.

Entities are *mutable* but expose controlled mutation methods that enforce
business invariants.  They carry a unique ``id`` field.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from herald.domain.enums import (
    AttemptOutcome,
    Channel,
    DeliveryStatus,
    NotificationStatus,
    Priority,
)
from herald.domain.exceptions import InvalidNotificationTransitionError
from herald.domain.value_objects import CostScope


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════
#  Provider attempt
# ═══════════════════════════════════════════════════════════════
@dataclass(slots=True)
class ProviderAttempt:
    """One concrete try through one gateway, owned by its Notification.

    Several provider attempts share an ``attempt_number`` when a failover
    happened inside the same logical attempt.
    """

    provider: str
    attempt_number: int
    id: str = field(default_factory=_new_id)
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    provider_message_id: str | None = None
    delivery_status: DeliveryStatus | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def succeed(self, provider_message_id: str | None, at: datetime | None = None) -> None:
        self.outcome = AttemptOutcome.SUCCEEDED
        self.provider_message_id = provider_message_id
        self.delivery_status = DeliveryStatus.ACCEPTED
        self.updated_at = at or _utcnow()

    def fail(self, error_code: str, error_message: str | None = None, at: datetime | None = None) -> None:
        self.outcome = AttemptOutcome.FAILED
        self.error_code = error_code
        self.error_message = error_message
        self.updated_at = at or _utcnow()

    def apply_delivery_status(self, status: DeliveryStatus, at: datetime | None = None) -> bool:
        """Record a gateway callback.  Returns False when nothing changed."""
        if self.delivery_status == status:
            return False
        # A terminal callback is never downgraded by a late intermediate one
        if self.delivery_status in (DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.UNDELIVERED):
            if status in (DeliveryStatus.ACCEPTED, DeliveryStatus.SENT):
                return False
        self.delivery_status = status
        if status == DeliveryStatus.DELIVERED:
            self.outcome = AttemptOutcome.SUCCEEDED
        elif status.is_failure:
            self.outcome = AttemptOutcome.FAILED
            self.error_code = self.error_code or f"PROVIDER_{status.value.upper()}"
        self.updated_at = at or _utcnow()
        return True


# ═══════════════════════════════════════════════════════════════
#  Notification
# ═══════════════════════════════════════════════════════════════
@dataclass(slots=True)
class Notification:
    """A message to one recipient on one channel, with FSM-based lifecycle.

    The ``id`` never changes across retries or failover; only ``attempts``
    grows.  ``version`` is bumped by the repository on every save.
    """

    tenant_id: str
    user_id: str
    service_origin: str
    channel: Channel
    recipient: str
    id: str = field(default_factory=_new_id)
    priority: Priority = Priority.NORMAL
    status: NotificationStatus = NotificationStatus.QUEUED
    subject: str | None = None
    body: str = ""
    locale: str = "en"
    template_key: str | None = None
    scheduled_for: datetime | None = None
    attempts: list[ProviderAttempt] = field(default_factory=list)

    # Logical attempts consumed and admin-granted extras
    attempt_count: int = 0
    extra_attempts: int = 0

    correlation_id: str = field(default_factory=_new_id)
    idempotency_key: str | None = None
    admitted: bool = False
    cancel_requested: bool = False
    forced_provider: str | None = None
    next_attempt_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    sent_at: datetime | None = None
    delivered_at: datetime | None = None

    # ── State transitions ────────────────────────────────────
    def transition_to(self, new_status: NotificationStatus, at: datetime | None = None) -> NotificationStatus:
        """Move to ``new_status`` and return the previous status."""
        if not self.status.can_transition_to(new_status):
            raise InvalidNotificationTransitionError(self.status.value, new_status.value)
        previous = self.status
        self.status = new_status
        self.updated_at = at or _utcnow()
        return previous

    def start_sending(self, at: datetime | None = None) -> int:
        """Open a new logical attempt and return its 1-based number."""
        self.transition_to(NotificationStatus.SENDING, at)
        self.attempt_count += 1
        self.next_attempt_at = None
        return self.attempt_count

    def void_attempt(self) -> None:
        """Give back the current logical attempt when no provider was called."""
        self.attempt_count = max(0, self.attempt_count - 1)

    def mark_sent(self, at: datetime | None = None) -> None:
        self.transition_to(NotificationStatus.SENT, at)
        self.sent_at = self.updated_at
        self.error_code = None
        self.error_message = None

    def mark_delivered(self, at: datetime | None = None) -> None:
        self.transition_to(NotificationStatus.DELIVERED, at)
        self.delivered_at = self.updated_at
        self.sent_at = self.sent_at or self.updated_at
        self.next_attempt_at = None
        self.error_code = None
        self.error_message = None

    def schedule_retry(
        self,
        eligible_at: datetime,
        error_code: str | None,
        error_message: str | None = None,
        at: datetime | None = None,
    ) -> None:
        if self.status != NotificationStatus.RETRYING:
            self.transition_to(NotificationStatus.RETRYING, at)
        self.next_attempt_at = eligible_at
        self.error_code = error_code
        self.error_message = error_message

    def fail(self, error_code: str, error_message: str | None = None, at: datetime | None = None) -> None:
        self.transition_to(NotificationStatus.FAILED, at)
        self.next_attempt_at = None
        self.error_code = error_code
        self.error_message = error_message

    def time_out(self, at: datetime | None = None) -> None:
        self.transition_to(NotificationStatus.TIMED_OUT, at)
        self.error_code = "DELIVERY_TIMEOUT"

    def cancel(self, reason: str | None = None, at: datetime | None = None) -> None:
        self.transition_to(NotificationStatus.CANCELLED, at)
        self.next_attempt_at = None
        self.error_code = "CANCELLED"
        self.error_message = reason

    # ── Attempts ─────────────────────────────────────────────
    def record_attempt(self, provider: str, at: datetime | None = None) -> ProviderAttempt:
        attempt = ProviderAttempt(provider=provider, attempt_number=self.attempt_count)
        if at is not None:
            attempt.created_at = at
            attempt.updated_at = at
        self.attempts.append(attempt)
        return attempt

    def find_attempt(self, provider_message_id: str) -> ProviderAttempt | None:
        for attempt in self.attempts:
            if attempt.provider_message_id == provider_message_id:
                return attempt
        return None

    def merge_attempts(self, other: Notification) -> None:
        """Append attempts from ``other`` that this copy has not seen yet."""
        known = {attempt.id for attempt in self.attempts}
        for attempt in other.attempts:
            if attempt.id not in known:
                self.attempts.append(attempt)

    @property
    def last_failed_provider(self) -> str | None:
        for attempt in reversed(self.attempts):
            if attempt.outcome == AttemptOutcome.FAILED:
                return attempt.provider
        return None

    def attempts_remaining(self, max_attempts: int) -> int:
        return max(0, max_attempts + self.extra_attempts - self.attempt_count)

    @property
    def cost_scope(self) -> CostScope:
        return CostScope(self.tenant_id, self.service_origin)

    @property
    def is_final(self) -> bool:
        return self.status.is_final


# ═══════════════════════════════════════════════════════════════
#  Cost ledger record
# ═══════════════════════════════════════════════════════════════
@dataclass(slots=True)
class CostRecord:
    """Append-only ledger entry, immutable after creation."""

    tenant_id: str
    service_origin: str
    channel: Channel
    unit_cost_micros: int
    units: int = 1
    provider: str | None = None
    notification_id: str | None = None
    id: str = field(default_factory=_new_id)
    occurred_at: datetime = field(default_factory=_utcnow)

    @property
    def total_micros(self) -> int:
        return self.unit_cost_micros * self.units


# ═══════════════════════════════════════════════════════════════
#  Audit record
# ═══════════════════════════════════════════════════════════════
@dataclass(slots=True)
class AuditRecord:
    actor: str
    action: str
    target_id: str
    reason: str
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    occurred_at: datetime = field(default_factory=_utcnow)
