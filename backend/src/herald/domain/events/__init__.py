"""Domain events — typed records of things that happened in the domain.

Events are published *after* a successful domain operation so that other
bounded contexts or infrastructure adapters can react asynchronously.
Outbound consumers receive them wrapped in an :class:`EventEnvelope`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class DomainEvent:
    """Base class for all domain events."""

    event_type: str = "domain.event"
    occurred_at: datetime = field(default_factory=_utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> str | None:
        return None


# ── Notification events ──────────────────────────────────────
@dataclass(frozen=True, slots=True)
class NotificationStatusChanged(DomainEvent):
    event_type: str = "notification.status_changed"
    notification_id: str = ""
    tenant_id: str = ""
    channel: str = ""
    previous_status: str = ""
    status: str = ""
    attempt_count: int = 0
    error_code: str | None = None

    @property
    def subject(self) -> str | None:
        return self.notification_id


@dataclass(frozen=True, slots=True)
class DeliveryFailedAlert(DomainEvent):
    """Terminal failure after retry exhaustion."""

    event_type: str = "notification.delivery_failed"
    notification_id: str = ""
    tenant_id: str = ""
    service_origin: str = ""
    channel: str = ""
    attempts: int = 0
    error_code: str | None = None
    error_message: str | None = None
    providers: tuple[str, ...] = ()

    @property
    def subject(self) -> str | None:
        return self.notification_id


@dataclass(frozen=True, slots=True)
class ReconcileRequested(DomainEvent):
    """A gateway reported a delivery status out-of-band."""

    event_type: str = "notification.reconcile_requested"
    family: str = ""
    provider_message_id: str = ""
    status: str = ""
    error_code: str | None = None
    raw_status: str = ""

    @property
    def subject(self) -> str | None:
        return self.provider_message_id


@dataclass(frozen=True, slots=True)
class AdminRetryRequested(DomainEvent):
    event_type: str = "notification.admin_retry"
    notification_id: str = ""
    retry_attempt_id: str = ""
    actor: str = ""
    reason: str = ""
    force_provider: str | None = None

    @property
    def subject(self) -> str | None:
        return self.notification_id


# ── Admission events ─────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class BudgetThresholdCrossed(DomainEvent):
    event_type: str = "budget.threshold_crossed"
    scope_key: str = ""
    threshold_pct: float = 0.0
    utilization_pct: float = 0.0
    spend_micros: int = 0
    cap_micros: int = 0

    @property
    def subject(self) -> str | None:
        return self.scope_key


@dataclass(frozen=True, slots=True)
class RateLimitOverrideUsed(DomainEvent):
    event_type: str = "rate_limit.override_used"
    tenant_id: str = ""
    user_id: str = ""
    service_origin: str = ""
    actor: str = ""
    reason: str = ""

    @property
    def subject(self) -> str | None:
        return self.tenant_id


# ── Provider events ──────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class CircuitStateChanged(DomainEvent):
    event_type: str = "provider.circuit_state_changed"
    channel: str = ""
    provider: str = ""
    previous_state: str = ""
    state: str = ""
    failures: int = 0

    @property
    def subject(self) -> str | None:
        return f"{self.channel}/{self.provider}"


# ═══════════════════════════════════════════════════════════════
#  Envelope
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class EventEnvelope:
    """Structured wrapper used for every outbound domain event."""

    id: str
    type: str
    source: str
    subject: str | None
    time: datetime
    data: dict[str, Any]
    datacontenttype: str = "application/json"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "time": self.time.isoformat(),
            "datacontenttype": self.datacontenttype,
            "data": self.data,
        }


_ENVELOPE_FIELDS = frozenset({"event_type", "occurred_at", "metadata"})


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    return value


def to_envelope(event: DomainEvent, source: str) -> EventEnvelope:
    data = {
        f.name: _plain(getattr(event, f.name))
        for f in fields(event)
        if f.name not in _ENVELOPE_FIELDS
    }
    if event.metadata:
        data["metadata"] = dict(event.metadata)
    return EventEnvelope(
        id=uuid.uuid4().hex,
        type=event.event_type,
        source=source,
        subject=event.subject,
        time=event.occurred_at,
        data=data,
    )
