"""Domain-specific exception hierarchy.

All exceptions inherit from ``DomainError`` so callers can catch the entire
family in one clause while still discriminating on subclass.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any


class DomainError(Exception):
    """Base class for all domain-layer errors."""

    def __init__(self, message: str, *, code: str = "DOMAIN_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)

    @property
    def details(self) -> dict[str, Any]:
        return {}


# ── Validation ───────────────────────────────────────────────
class ValidationError(DomainError):
    """Input failed domain validation rules."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="VALIDATION_ERROR")


# ── Notification ─────────────────────────────────────────────
class NotificationError(DomainError):
    """Base for notification lifecycle errors."""


class InvalidNotificationTransitionError(NotificationError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot transition notification from {current!r} to {target!r}",
            code="INVALID_NOTIFICATION_TRANSITION",
        )


class NotificationNotFoundError(NotificationError):
    def __init__(self, notification_id: str) -> None:
        super().__init__(
            f"Notification {notification_id!r} not found", code="NOTIFICATION_NOT_FOUND"
        )


class ConcurrencyConflictError(NotificationError):
    """Optimistic version check failed; someone else saved first."""

    def __init__(self, notification_id: str, expected_version: int) -> None:
        self.notification_id = notification_id
        self.expected_version = expected_version
        super().__init__(
            f"Notification {notification_id!r} changed since version {expected_version}",
            code="CONCURRENCY_CONFLICT",
        )


class TemplateRenderError(NotificationError):
    def __init__(self, template_key: str, reason: str = "") -> None:
        self.template_key = template_key
        suffix = f": {reason}" if reason else ""
        super().__init__(
            f"Template {template_key!r} could not be rendered{suffix}",
            code="TEMPLATE_RENDER_FAILURE",
        )


# ── Admission ────────────────────────────────────────────────
class RateLimitedError(DomainError):
    def __init__(
        self,
        scope: str,
        limit: int,
        retry_after_seconds: float,
        reset_at: datetime,
        remaining: int = 0,
    ) -> None:
        self.scope = scope
        self.limit = limit
        self.retry_after_seconds = retry_after_seconds
        self.reset_at = reset_at
        self.remaining = remaining
        super().__init__(
            f"Rate limit exceeded for {scope} scope (max {limit}); "
            f"retry in {self.retry_after:d}s",
            code="RATE_LIMITED",
        )

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.retry_after_seconds))

    @property
    def details(self) -> dict[str, Any]:
        return {
            "scope": self.scope,
            "limit": self.limit,
            "retry_after_seconds": self.retry_after,
            "reset_at": self.reset_at.isoformat(),
        }


class BudgetExceededError(DomainError):
    def __init__(self, scope: str, utilization_pct: float) -> None:
        self.scope = scope
        self.utilization_pct = utilization_pct
        super().__init__(
            f"Monthly budget for {scope} is exhausted ({utilization_pct:.1f}% used)",
            code="BUDGET_EXCEEDED",
        )

    @property
    def details(self) -> dict[str, Any]:
        return {"scope": self.scope, "utilization_pct": round(self.utilization_pct, 2)}


# ── Delivery ─────────────────────────────────────────────────
class ProviderUnavailableError(DomainError):
    """Every provider for the channel is circuit-open and no fallback remains."""

    def __init__(self, channel: str, retry_after_seconds: float = 0.0) -> None:
        self.channel = channel
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"No provider available for channel {channel!r}",
            code="PROVIDER_UNAVAILABLE",
        )

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.retry_after_seconds))

    @property
    def details(self) -> dict[str, Any]:
        return {"channel": self.channel, "retry_after_seconds": self.retry_after}


class DeliveryTimeoutError(DomainError):
    """Synchronous send exceeded its hard timeout.  Never retried by the system."""

    def __init__(self, timeout_seconds: float, notification_id: str | None = None) -> None:
        self.timeout_seconds = timeout_seconds
        self.notification_id = notification_id
        super().__init__(
            f"Delivery did not complete within {timeout_seconds:g}s",
            code="DELIVERY_TIMEOUT",
        )

    @property
    def details(self) -> dict[str, Any]:
        return {"notification_id": self.notification_id, "timeout_seconds": self.timeout_seconds}


# ── Webhooks ─────────────────────────────────────────────────
class InvalidSignatureError(DomainError):
    def __init__(self, family: str) -> None:
        super().__init__(
            f"Webhook signature for {family!r} is missing or invalid",
            code="INVALID_SIGNATURE",
        )


# ── Auth ─────────────────────────────────────────────────────
class AuthorisationError(DomainError):
    def __init__(self, message: str = "Insufficient permissions") -> None:
        super().__init__(message, code="AUTHORISATION_ERROR")
