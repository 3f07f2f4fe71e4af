"""Commands and results — write-side inputs and outputs of the orchestrator.

Commands are plain dataclasses built by the inbound adapters (REST router,
tests); they carry raw values that the orchestrator validates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from herald.domain.enums import NotificationStatus
from herald.domain.value_objects import AdminOverride, RateLimitDecision


# ═══════════════════════════════════════════════════════════════
#  Commands
# ═══════════════════════════════════════════════════════════════
@dataclass
class QueueNotificationCommand:
    """Input for queueing or synchronously sending a notification."""

    tenant_id: str
    user_id: str
    service_origin: str
    channel: str
    recipient: str
    priority: str = "normal"
    subject: str | None = None
    body: str | None = None
    template_key: str | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    locale: str = "en"
    scheduled_for: datetime | None = None
    idempotency_key: str | None = None
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    override: AdminOverride | None = None


@dataclass
class CancelNotificationCommand:
    notification_id: str
    reason: str = ""
    tenant_id: str | None = None


@dataclass
class AdminRetryCommand:
    notification_id: str
    reason: str
    actor: str
    force_provider: str | None = None


# ═══════════════════════════════════════════════════════════════
#  Results
# ═══════════════════════════════════════════════════════════════
@dataclass
class QueueResult:
    notification_id: str
    status: NotificationStatus
    duplicate: bool = False
    rate_limit: RateLimitDecision | None = None


@dataclass
class BatchItemResult:
    index: int
    success: bool
    notification_id: str | None = None
    status: NotificationStatus | None = None
    error_code: str | None = None
    error: str | None = None


@dataclass
class BatchResult:
    results: list[BatchItemResult]

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.succeeded


@dataclass
class SendResult:
    notification_id: str
    status: NotificationStatus
    provider_message_id: str | None = None
    provider: str | None = None
    error_code: str | None = None
    rate_limit: RateLimitDecision | None = None


@dataclass
class CancelResult:
    notification_id: str
    status: NotificationStatus
    cancel_requested: bool = False


@dataclass
class AdminRetryResult:
    retry_attempt_id: str
    notification_id: str
    status: NotificationStatus
