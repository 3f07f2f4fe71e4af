"""Global exception handlers — map domain errors to HTTP responses."""

from __future__ import annotations

import math
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse

from herald.domain.exceptions import (
    AuthorisationError,
    BudgetExceededError,
    ConcurrencyConflictError,
    DeliveryTimeoutError,
    DomainError,
    InvalidNotificationTransitionError,
    InvalidSignatureError,
    NotificationNotFoundError,
    ProviderUnavailableError,
    RateLimitedError,
    TemplateRenderError,
    ValidationError,
)
from herald.domain.value_objects import RateLimitDecision

logger = structlog.get_logger(__name__)

# Checked in order; the first matching class decides the status code
_STATUS_CODES: tuple[tuple[type[DomainError], int], ...] = (
    (ValidationError, 422),
    (TemplateRenderError, 422),
    (NotificationNotFoundError, 404),
    (InvalidNotificationTransitionError, 409),
    (ConcurrencyConflictError, 409),
    (BudgetExceededError, 402),
    (InvalidSignatureError, 401),
    (AuthorisationError, 403),
)


def _body(exc: DomainError) -> dict[str, Any]:
    return {"code": exc.code, "message": exc.message, "details": exc.details}


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    """Headers describing the most constrained scope of an admission."""
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(math.ceil(decision.reset_epoch)),
        "X-RateLimit-Scope": decision.scope,
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Register all domain→HTTP exception mappings."""

    @app.exception_handler(RateLimitedError)
    async def handle_rate_limited(request: Request, exc: RateLimitedError) -> ORJSONResponse:
        return ORJSONResponse(
            status_code=429,
            content=_body(exc),
            headers={
                "Retry-After": str(exc.retry_after),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": str(exc.remaining),
                "X-RateLimit-Reset": str(math.ceil(exc.reset_at.timestamp())),
                "X-RateLimit-Scope": exc.scope,
            },
        )

    @app.exception_handler(ProviderUnavailableError)
    async def handle_unavailable(request: Request, exc: ProviderUnavailableError) -> ORJSONResponse:
        logger.warning("provider_unavailable_http", channel=exc.channel, retry_after=exc.retry_after)
        return ORJSONResponse(
            status_code=503,
            content=_body(exc),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(DeliveryTimeoutError)
    async def handle_timeout(request: Request, exc: DeliveryTimeoutError) -> ORJSONResponse:
        return ORJSONResponse(status_code=504, content=_body(exc))

    @app.exception_handler(DomainError)
    async def handle_domain(request: Request, exc: DomainError) -> ORJSONResponse:
        status_code = next(
            (code for cls, code in _STATUS_CODES if isinstance(exc, cls)),
            400,
        )
        return ORJSONResponse(status_code=status_code, content=_body(exc))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("unhandled_exception", error=str(exc))
        return ORJSONResponse(
            status_code=500,
            content={
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": {},
            },
        )
