"""Data Transfer Objects — Pydantic models for API boundaries.

DTOs handle serialisation, validation, and documentation.  They live in the
application layer because they are *not* domain objects — they adapt between
the external world and the domain.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from herald.application.commands import (
    BatchResult,
    QueueNotificationCommand,
)
from herald.domain.entities import AuditRecord, Notification, ProviderAttempt
from herald.domain.value_objects import AdminOverride


# ═══════════════════════════════════════════════════════════════
#  Common
# ═══════════════════════════════════════════════════════════════
class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    environment: str = "development"
    services: dict[str, str] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════
#  Notifications
# ═══════════════════════════════════════════════════════════════
class OverrideRequest(BaseModel):
    actor: str = Field(..., min_length=1, max_length=128)
    reason: str = ""
    scopes: list[str] = Field(default_factory=list)

    def to_override(self) -> AdminOverride:
        return AdminOverride(actor=self.actor, reason=self.reason, scopes=frozenset(self.scopes))


class NotificationRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str = Field(..., min_length=1, max_length=128)
    channel: str = Field(..., pattern="^(sms|email|push|in_app)$")
    recipient: str = Field(..., min_length=1, max_length=320)
    priority: str = Field("normal", pattern="^(low|normal|high|urgent)$")
    subject: str | None = Field(None, max_length=512)
    body: str | None = None
    template_key: str | None = Field(None, max_length=128)
    variables: dict[str, Any] = Field(default_factory=dict)
    locale: str = Field("en", max_length=10)
    scheduled_for: datetime | None = None
    idempotency_key: str | None = Field(None, max_length=128)
    correlation_id: str | None = Field(None, max_length=64)
    metadata: dict[str, Any] = Field(default_factory=dict)
    override: OverrideRequest | None = None

    def to_command(self, tenant_id: str, service_origin: str) -> QueueNotificationCommand:
        return QueueNotificationCommand(
            tenant_id=tenant_id,
            user_id=self.user_id,
            service_origin=service_origin,
            channel=self.channel,
            recipient=self.recipient,
            priority=self.priority,
            subject=self.subject,
            body=self.body,
            template_key=self.template_key,
            variables=dict(self.variables),
            locale=self.locale,
            scheduled_for=self.scheduled_for,
            idempotency_key=self.idempotency_key,
            correlation_id=self.correlation_id,
            metadata=dict(self.metadata),
            override=self.override.to_override() if self.override else None,
        )


class BatchRequest(BaseModel):
    # Size limits are enforced by the orchestrator so they share one error shape
    items: list[NotificationRequest]


class QueuedResponse(BaseModel):
    notification_id: str
    status: str
    duplicate: bool = False


class BatchItemResponse(BaseModel):
    index: int
    success: bool
    notification_id: str | None = None
    status: str | None = None
    error_code: str | None = None
    error: str | None = None


class BatchResponse(BaseModel):
    results: list[BatchItemResponse]
    succeeded: int
    failed: int

    @classmethod
    def from_result(cls, batch: BatchResult) -> BatchResponse:
        return cls(
            results=[
                BatchItemResponse(
                    index=r.index,
                    success=r.success,
                    notification_id=r.notification_id,
                    status=r.status.value if r.status else None,
                    error_code=r.error_code,
                    error=r.error,
                )
                for r in batch.results
            ],
            succeeded=batch.succeeded,
            failed=batch.failed,
        )


class SendResponse(BaseModel):
    notification_id: str
    status: str
    provider_message_id: str | None = None
    provider: str | None = None
    error_code: str | None = None


class CancelRequest(BaseModel):
    reason: str = Field("", max_length=500)


class CancelResponse(BaseModel):
    notification_id: str
    status: str
    cancel_requested: bool


class ProviderAttemptResponse(BaseModel):
    id: str
    provider: str
    attempt_number: int
    outcome: str
    provider_message_id: str | None = None
    delivery_status: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, a: ProviderAttempt) -> ProviderAttemptResponse:
        return cls(
            id=a.id,
            provider=a.provider,
            attempt_number=a.attempt_number,
            outcome=a.outcome.value,
            provider_message_id=a.provider_message_id,
            delivery_status=a.delivery_status.value if a.delivery_status else None,
            error_code=a.error_code,
            error_message=a.error_message,
            created_at=a.created_at,
            updated_at=a.updated_at,
        )


class NotificationResponse(BaseModel):
    id: str
    tenant_id: str
    user_id: str
    service_origin: str
    channel: str
    priority: str
    status: str
    recipient: str
    subject: str | None = None
    template_key: str | None = None
    scheduled_for: datetime | None = None
    attempt_count: int
    correlation_id: str
    idempotency_key: str | None = None
    cancel_requested: bool = False
    next_attempt_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    attempts: list[ProviderAttemptResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    sent_at: datetime | None = None
    delivered_at: datetime | None = None

    @classmethod
    def from_entity(cls, n: Notification) -> NotificationResponse:
        return cls(
            id=n.id,
            tenant_id=n.tenant_id,
            user_id=n.user_id,
            service_origin=n.service_origin,
            channel=n.channel.value,
            priority=n.priority.value,
            status=n.status.value,
            recipient=n.recipient,
            subject=n.subject,
            template_key=n.template_key,
            scheduled_for=n.scheduled_for,
            attempt_count=n.attempt_count,
            correlation_id=n.correlation_id,
            idempotency_key=n.idempotency_key,
            cancel_requested=n.cancel_requested,
            next_attempt_at=n.next_attempt_at,
            error_code=n.error_code,
            error_message=n.error_message,
            attempts=[ProviderAttemptResponse.from_entity(a) for a in n.attempts],
            created_at=n.created_at,
            updated_at=n.updated_at,
            sent_at=n.sent_at,
            delivered_at=n.delivered_at,
        )


# ═══════════════════════════════════════════════════════════════
#  Rate limits & webhooks
# ═══════════════════════════════════════════════════════════════
class RateLimitResponse(BaseModel):
    scope: str | None = None
    limit: int | None = None
    remaining: int | None = None
    reset_at: datetime | None = None


class WebhookAck(BaseModel):
    accepted: int


# ═══════════════════════════════════════════════════════════════
#  Admin
# ═══════════════════════════════════════════════════════════════
class AdminRetryRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    actor: str = Field("admin", min_length=1, max_length=128)
    force_provider: str | None = Field(None, max_length=32)


class AdminRetryResponse(BaseModel):
    retry_attempt_id: str
    notification_id: str
    status: str


class BreakerResetRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    actor: str = Field("admin", min_length=1, max_length=128)


class CircuitResponse(BaseModel):
    channel: str
    provider: str
    state: str
    failures: int
    opened_at: float | None = None
    probe_started_at: float | None = None
    retry_after_s: float = 0.0


class BudgetScopeResponse(BaseModel):
    scope_key: str
    spend_micros: int
    cap_micros: int
    utilization_pct: float
    warn_pct: float
    limit_pct: float


class BudgetUtilizationResponse(BaseModel):
    tenant_id: str
    scopes: list[BudgetScopeResponse]


class AuditRecordResponse(BaseModel):
    id: str
    actor: str
    action: str
    target_id: str
    reason: str
    details: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime

    @classmethod
    def from_entity(cls, r: AuditRecord) -> AuditRecordResponse:
        return cls(
            id=r.id,
            actor=r.actor,
            action=r.action,
            target_id=r.target_id,
            reason=r.reason,
            details=dict(r.details),
            occurred_at=r.occurred_at,
        )
