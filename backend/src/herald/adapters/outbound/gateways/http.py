"""Shared plumbing for gateways that talk HTTP."""

from __future__ import annotations

import logging
from typing import Any

import httpx
import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from herald.ports.outbound import GatewayResult, NotificationGateway

logger = structlog.get_logger(__name__)

# Transport-level hiccups are retried inside the attempt; HTTP errors are not
gateway_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    retry=retry_if_exception_type((httpx.NetworkError, httpx.RemoteProtocolError)),
    before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
    reraise=True,
)


class HttpGateway(NotificationGateway):
    """Base for HTTP gateways: owns the client and maps error responses."""

    provider_id = "http"

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        auth: Any = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            auth=auth,
            timeout=timeout,
        )
        logger.info("gateway_initialized", provider=self.provider_id, base_url=base_url)

    def rejection(self, resp: httpx.Response) -> GatewayResult | None:
        """Return a rejected result for a non-2xx response, else None."""
        if resp.is_success:
            return None
        detail = resp.text[:300]
        logger.warning(
            "gateway_http_error",
            provider=self.provider_id,
            status_code=resp.status_code,
            detail=detail,
        )
        return GatewayResult.rejected(f"HTTP_{resp.status_code}", detail or None)

    async def close(self) -> None:
        await self._client.aclose()
