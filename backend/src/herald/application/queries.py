"""Read-side use cases.

Query handlers are intentionally simple: they fetch data from repositories
or shared state and return domain objects.  No mutation of domain state
happens here.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from herald.application.services.budget import BudgetEnforcer, ScopeUtilization
from herald.application.services.rate_limiter import AdmissionRequest, RateLimiter
from herald.domain.entities import AuditRecord, Notification
from herald.domain.exceptions import NotificationNotFoundError
from herald.domain.value_objects import RateLimitDecision
from herald.ports.outbound import AuditLog, NotificationRepository
from herald.shared.providers.router import ProviderRouter
from herald.shared.providers.types import CircuitSnapshot

logger = structlog.get_logger(__name__)


# ═══════════════════════════════════════════════════════════════
#  Get Notification
# ═══════════════════════════════════════════════════════════════
@dataclass
class GetNotificationQuery:
    notification_id: str
    tenant_id: str | None = None


class GetNotificationHandler:
    def __init__(self, repository: NotificationRepository) -> None:
        self._repo = repository

    async def handle(self, query: GetNotificationQuery) -> Notification:
        logger.debug("get_notification", notification_id=query.notification_id)
        notification = await self._repo.get(query.notification_id)
        # Another tenant's notification is reported as missing
        if notification is None or (query.tenant_id and notification.tenant_id != query.tenant_id):
            raise NotificationNotFoundError(query.notification_id)
        return notification


# ═══════════════════════════════════════════════════════════════
#  Audit trail
# ═══════════════════════════════════════════════════════════════
class GetAuditTrailHandler:
    def __init__(self, audit_log: AuditLog) -> None:
        self._audit = audit_log

    async def handle(self, target_id: str) -> list[AuditRecord]:
        return await self._audit.list_for(target_id)


# ═══════════════════════════════════════════════════════════════
#  Provider health
# ═══════════════════════════════════════════════════════════════
class GetProviderStatusHandler:
    def __init__(self, router: ProviderRouter) -> None:
        self._router = router

    async def handle(self) -> list[CircuitSnapshot]:
        return await self._router.snapshots()


# ═══════════════════════════════════════════════════════════════
#  Budget utilisation
# ═══════════════════════════════════════════════════════════════
class GetBudgetUtilizationHandler:
    def __init__(self, budget: BudgetEnforcer) -> None:
        self._budget = budget

    async def handle(self, tenant_id: str) -> list[ScopeUtilization]:
        logger.debug("get_budget_utilization", tenant_id=tenant_id)
        return await self._budget.tenant_utilization(tenant_id)


# ═══════════════════════════════════════════════════════════════
#  Rate-limit status
# ═══════════════════════════════════════════════════════════════
class GetRateLimitStatusHandler:
    def __init__(self, rate_limiter: RateLimiter) -> None:
        self._rate_limiter = rate_limiter

    async def handle(self, request: AdmissionRequest) -> RateLimitDecision | None:
        return await self._rate_limiter.peek(request)
