"""Failover dispatcher — one logical delivery attempt across providers.

Walks the channel's failover chain: each provider the breaker admits gets a
``ProviderAttempt`` on the notification and a call bounded by the attempt
timeout.  The first accepted send ends the attempt; a provider failure moves
on to the next one within the same logical attempt.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

import structlog

from herald.domain.entities import Notification, ProviderAttempt
from herald.domain.exceptions import ProviderUnavailableError
from herald.domain.services.retry_scheduler import run_with_timeout
from herald.shared.observability.metrics import PROVIDER_ATTEMPTS
from herald.shared.providers.router import ProviderRouter
from herald.shared.providers.types import ProviderHandle

logger = structlog.get_logger(__name__)


@dataclass
class DispatchResult:
    """Outcome of one logical attempt."""

    success: bool
    handle: ProviderHandle | None = None
    attempt: ProviderAttempt | None = None
    tried: list[str] = field(default_factory=list)
    error_code: str | None = None
    error_message: str | None = None

    @property
    def provider_message_id(self) -> str | None:
        return self.attempt.provider_message_id if self.attempt else None

    @property
    def confirms_delivery(self) -> bool:
        return bool(self.handle and self.handle.config.confirms_delivery)


class FailoverDispatcher:
    """Executes a logical attempt with in-attempt provider failover."""

    def __init__(self, router: ProviderRouter, *, clock: Callable[[], float] = time.time) -> None:
        self._router = router
        self._clock = clock

    @property
    def router(self) -> ProviderRouter:
        return self._router

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def dispatch(
        self,
        notification: Notification,
        timeout_s: float,
        *,
        avoid: str | None = None,
        force_provider: str | None = None,
        on_accepted: Callable[[ProviderAttempt], Awaitable[None]] | None = None,
    ) -> DispatchResult:
        """Deliver through the first provider that accepts.

        ``on_accepted`` runs as soon as a gateway accepts, before any breaker
        bookkeeping, so the provider message id can be stored right away.

        Raises:
            ProviderUnavailableError: no provider on the channel admitted a call.
        """
        channel = notification.channel
        result = DispatchResult(success=False)
        log = logger.bind(notification_id=notification.id, channel=channel.value)

        async for handle in self._router.candidates(channel, avoid=avoid, force=force_provider):
            pid = handle.provider_id
            result.tried.append(pid)
            attempt = notification.record_attempt(pid, at=self._now())
            start = time.monotonic()
            try:
                response = await run_with_timeout(
                    handle.gateway.send(notification),
                    min(timeout_s, handle.config.timeout_s),
                )
            except asyncio.TimeoutError:
                attempt.fail("PROVIDER_TIMEOUT", f"No response within {timeout_s:g}s", at=self._now())
                log.warning("provider_timeout", provider=pid, timeout_s=timeout_s)
            except asyncio.CancelledError:
                attempt.fail("CANCELLED", "Attempt cancelled by caller", at=self._now())
                raise
            except Exception as exc:
                attempt.fail("PROVIDER_ERROR", f"{type(exc).__name__}: {exc}", at=self._now())
                log.warning("provider_request_failed", provider=pid, error=str(exc))
            else:
                if response.success:
                    attempt.succeed(response.provider_message_id, at=self._now())
                    if on_accepted is not None:
                        await on_accepted(attempt)
                    await self._record_outcome(handle, True)
                    PROVIDER_ATTEMPTS.labels(channel=channel.value, provider=pid, outcome="succeeded").inc()
                    log.info(
                        "provider_request_success",
                        provider=pid,
                        provider_message_id=response.provider_message_id,
                        latency_ms=round((time.monotonic() - start) * 1000, 1),
                    )
                    if len(result.tried) > 1:
                        log.info("provider_failover_success", provider=pid, failed_providers=result.tried[:-1])
                    result.success = True
                    result.handle = handle
                    result.attempt = attempt
                    result.error_code = None
                    result.error_message = None
                    return result
                attempt.fail(response.error_code or "PROVIDER_REJECTED", response.error_message, at=self._now())
                log.warning("provider_rejected", provider=pid, error_code=attempt.error_code)

            await self._record_outcome(handle, False)
            PROVIDER_ATTEMPTS.labels(channel=channel.value, provider=pid, outcome="failed").inc()
            result.handle = handle
            result.attempt = attempt
            result.error_code = attempt.error_code
            result.error_message = attempt.error_message

        if not result.tried:
            retry_after = await self._router.retry_after(channel)
            log.warning("no_available_providers", retry_after_s=round(retry_after, 2))
            raise ProviderUnavailableError(channel.value, retry_after)
        return result

    async def _record_outcome(self, handle: ProviderHandle, success: bool) -> None:
        # Breaker bookkeeping never changes the outcome of a call already made
        try:
            await self._router.record_outcome(handle, success)
        except Exception as exc:
            logger.error(
                "breaker_record_failed",
                provider=handle.provider_id,
                success=success,
                error=str(exc),
            )
