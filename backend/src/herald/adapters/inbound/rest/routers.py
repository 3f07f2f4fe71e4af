"""Health, Notifications, Rate limits, Webhooks, Admin — REST routers."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import ORJSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import Response

from herald.application.commands import AdminRetryCommand, CancelNotificationCommand
from herald.application.dtos import (
    AdminRetryRequest,
    AdminRetryResponse,
    AuditRecordResponse,
    BatchRequest,
    BatchResponse,
    BreakerResetRequest,
    BudgetScopeResponse,
    BudgetUtilizationResponse,
    CancelRequest,
    CancelResponse,
    CircuitResponse,
    ErrorResponse,
    HealthResponse,
    NotificationRequest,
    NotificationResponse,
    QueuedResponse,
    RateLimitResponse,
    SendResponse,
    WebhookAck,
)
from herald.application.queries import GetNotificationQuery
from herald.application.services.orchestrator import DeliveryOrchestrator
from herald.application.services.rate_limiter import AdmissionRequest
from herald.dependencies import CallerScope, Container, get_caller, get_container, get_orchestrator
from herald.domain.entities import AuditRecord
from herald.domain.enums import Channel
from herald.shared.errors import rate_limit_headers
from herald.shared.security.rbac import require_admin

_ERRORS = {
    402: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
}


# ═══════════════════════════════════════════════════════════════
#  Health
# ═══════════════════════════════════════════════════════════════
health_router = APIRouter(tags=["Health"])


@health_router.get("/health", response_model=HealthResponse)
async def health_check(container: Container = Depends(get_container)) -> ORJSONResponse:
    settings = container.settings
    services: dict[str, str] = {}

    try:
        services["store"] = "connected" if await container.store.health_check() else "disconnected"
    except Exception as exc:
        services["store"] = "disconnected"
        services["store_error"] = str(exc)

    if container.engine is not None:
        try:
            async with container.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            services["database"] = "connected"
        except Exception as exc:
            services["database"] = "disconnected"
            services["database_error"] = str(exc)
    else:
        services["database"] = "memory"

    services["worker"] = "running" if container.worker.running else "stopped"

    healthy = services["store"] == "connected" and services["database"] in ("connected", "memory")
    body = HealthResponse(
        status="ok" if healthy else "degraded",
        environment=settings.app_env.value,
        services=services,
    )
    return ORJSONResponse(content=body.model_dump(), status_code=200 if healthy else 503)


@health_router.get("/metrics")
async def prometheus_metrics() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


# ═══════════════════════════════════════════════════════════════
#  Notifications
# ═══════════════════════════════════════════════════════════════
notifications_router = APIRouter(prefix="/notifications", tags=["Notifications"])


@notifications_router.post(
    "",
    response_model=QueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=_ERRORS,
)
async def queue_notification(
    body: NotificationRequest,
    response: Response,
    caller: CallerScope = Depends(get_caller),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> QueuedResponse:
    result = await orchestrator.queue(body.to_command(caller.tenant_id, caller.service_origin))
    if result.rate_limit is not None:
        response.headers.update(rate_limit_headers(result.rate_limit))
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return QueuedResponse(
        notification_id=result.notification_id,
        status=result.status.value,
        duplicate=result.duplicate,
    )


@notifications_router.post("/batch", response_model=BatchResponse, status_code=status.HTTP_207_MULTI_STATUS)
async def queue_batch(
    body: BatchRequest,
    caller: CallerScope = Depends(get_caller),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> BatchResponse:
    batch = await orchestrator.queue_batch(
        [item.to_command(caller.tenant_id, caller.service_origin) for item in body.items]
    )
    return BatchResponse.from_result(batch)


@notifications_router.post(
    "/send",
    response_model=SendResponse,
    responses={**_ERRORS, 503: {"model": ErrorResponse}, 504: {"model": ErrorResponse}},
)
async def send_notification(
    body: NotificationRequest,
    response: Response,
    timeout: float | None = Query(None, gt=0, description="Hard timeout in seconds"),
    caller: CallerScope = Depends(get_caller),
    container: Container = Depends(get_container),
) -> SendResponse:
    limit = container.settings.sync_timeout_seconds
    result = await container.orchestrator.send_now(
        body.to_command(caller.tenant_id, caller.service_origin),
        timeout=min(timeout, limit) if timeout else limit,
    )
    if result.rate_limit is not None:
        response.headers.update(rate_limit_headers(result.rate_limit))
    return SendResponse(
        notification_id=result.notification_id,
        status=result.status.value,
        provider_message_id=result.provider_message_id,
        provider=result.provider,
        error_code=result.error_code,
    )


@notifications_router.get("/{notification_id}", response_model=NotificationResponse, responses=_ERRORS)
async def get_notification(
    notification_id: str,
    caller: CallerScope = Depends(get_caller),
    container: Container = Depends(get_container),
) -> NotificationResponse:
    notification = await container.notification_query.handle(
        GetNotificationQuery(notification_id, tenant_id=caller.tenant_id)
    )
    return NotificationResponse.from_entity(notification)


@notifications_router.post("/{notification_id}/cancel", response_model=CancelResponse, responses=_ERRORS)
async def cancel_notification(
    notification_id: str,
    body: CancelRequest | None = None,
    caller: CallerScope = Depends(get_caller),
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> CancelResponse:
    result = await orchestrator.cancel(
        CancelNotificationCommand(
            notification_id=notification_id,
            reason=body.reason if body else "",
            tenant_id=caller.tenant_id,
        )
    )
    return CancelResponse(
        notification_id=result.notification_id,
        status=result.status.value,
        cancel_requested=result.cancel_requested,
    )


# ═══════════════════════════════════════════════════════════════
#  Rate limits
# ═══════════════════════════════════════════════════════════════
rate_limits_router = APIRouter(prefix="/rate-limits", tags=["Rate Limits"])


@rate_limits_router.get("", response_model=RateLimitResponse)
async def rate_limit_status(
    response: Response,
    user_id: str = Query(..., min_length=1),
    channel: Channel = Query(...),
    caller: CallerScope = Depends(get_caller),
    container: Container = Depends(get_container),
) -> RateLimitResponse:
    """Most constrained scope for a prospective notification, without consuming."""
    decision = await container.rate_limit_query.handle(
        AdmissionRequest(
            tenant_id=caller.tenant_id,
            user_id=user_id,
            service_origin=caller.service_origin,
            channel=channel.value,
        )
    )
    if decision is None:
        return RateLimitResponse()
    response.headers.update(rate_limit_headers(decision))
    return RateLimitResponse(
        scope=decision.scope,
        limit=decision.limit,
        remaining=decision.remaining,
        reset_at=decision.reset_at,
    )


# ═══════════════════════════════════════════════════════════════
#  Webhooks
# ═══════════════════════════════════════════════════════════════
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@webhooks_router.post(
    "/{family}",
    response_model=WebhookAck,
    responses={401: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def gateway_callback(
    family: str,
    request: Request,
    container: Container = Depends(get_container),
) -> WebhookAck:
    body = await request.body()
    base = container.settings.webhook_base_url.rstrip("/")
    # Signed URLs are the public ones the gateway called, not the proxied ones
    url = f"{base}{request.url.path}" if base else str(request.url)
    if base and request.url.query:
        url = f"{url}?{request.url.query}"
    accepted = await container.webhooks.ingest(family, body, request.headers, url)
    return WebhookAck(accepted=accepted)


# ═══════════════════════════════════════════════════════════════
#  Admin
# ═══════════════════════════════════════════════════════════════
admin_router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


@admin_router.post(
    "/notifications/{notification_id}/retry",
    response_model=AdminRetryResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={**_ERRORS, 403: {"model": ErrorResponse}},
)
async def admin_retry(
    notification_id: str,
    body: AdminRetryRequest,
    orchestrator: DeliveryOrchestrator = Depends(get_orchestrator),
) -> AdminRetryResponse:
    result = await orchestrator.admin_retry(
        AdminRetryCommand(
            notification_id=notification_id,
            reason=body.reason,
            actor=body.actor,
            force_provider=body.force_provider,
        )
    )
    return AdminRetryResponse(
        retry_attempt_id=result.retry_attempt_id,
        notification_id=result.notification_id,
        status=result.status.value,
    )


@admin_router.get("/providers", response_model=list[CircuitResponse])
async def provider_status(container: Container = Depends(get_container)) -> list[CircuitResponse]:
    snapshots = await container.provider_status_query.handle()
    return [CircuitResponse(**s.to_dict()) for s in snapshots]


@admin_router.post("/providers/{channel}/{provider_id}/reset", response_model=CircuitResponse)
async def reset_provider(
    channel: Channel,
    provider_id: str,
    body: BreakerResetRequest,
    container: Container = Depends(get_container),
) -> CircuitResponse:
    """Force a provider's circuit closed."""
    handle = container.router.get(channel, provider_id)
    if handle is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Provider {provider_id!r} does not serve channel {channel.value!r}",
        )
    await handle.breaker.reset(actor=body.actor, reason=body.reason)
    await container.audit_log.append(
        AuditRecord(
            actor=body.actor,
            action="provider.circuit_reset",
            target_id=handle.breaker.key,
            reason=body.reason,
        )
    )
    snapshot = await handle.breaker.snapshot()
    return CircuitResponse(**snapshot.to_dict())


@admin_router.get("/budgets/{tenant_id}", response_model=BudgetUtilizationResponse)
async def budget_utilization(
    tenant_id: str,
    container: Container = Depends(get_container),
) -> BudgetUtilizationResponse:
    scopes = await container.budget_query.handle(tenant_id)
    return BudgetUtilizationResponse(
        tenant_id=tenant_id,
        scopes=[BudgetScopeResponse(**s.to_dict()) for s in scopes],
    )


@admin_router.get("/audit/{target_id}", response_model=list[AuditRecordResponse])
async def audit_trail(
    target_id: str,
    container: Container = Depends(get_container),
) -> list[AuditRecordResponse]:
    records = await container.audit_query.handle(target_id)
    return [AuditRecordResponse.from_entity(r) for r in records]
