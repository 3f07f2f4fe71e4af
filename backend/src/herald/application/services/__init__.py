"""Application services."""

from herald.application.services.budget import BudgetEnforcer
from herald.application.services.orchestrator import DeliveryOrchestrator
from herald.application.services.rate_limiter import AdmissionRequest, RateLimiter
from herald.application.services.webhooks import WebhookIngest

__all__ = [
    "AdmissionRequest",
    "BudgetEnforcer",
    "DeliveryOrchestrator",
    "RateLimiter",
    "WebhookIngest",
]
