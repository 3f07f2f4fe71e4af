"""Mailgun email gateway."""

from __future__ import annotations

import httpx
import structlog

from herald.adapters.outbound.gateways.http import HttpGateway, gateway_retry
from herald.domain.entities import Notification
from herald.ports.outbound import GatewayResult

logger = structlog.get_logger(__name__)

_BASE_URL = "https://api.mailgun.net/v3"


class MailgunGateway(HttpGateway):
    provider_id = "mailgun"

    def __init__(
        self,
        api_key: str,
        domain: str,
        from_email: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._domain = domain
        self._from = from_email
        super().__init__(
            base_url=_BASE_URL,
            timeout=timeout,
            auth=("api", api_key),
            client=client,
        )

    @gateway_retry
    async def send(self, notification: Notification) -> GatewayResult:
        form = {
            "from": self._from,
            "to": notification.recipient,
            "subject": notification.subject or "",
            "text": notification.body,
            "v:notification_id": notification.id,
        }
        resp = await self._client.post(f"/{self._domain}/messages", data=form)
        rejected = self.rejection(resp)
        if rejected:
            return rejected
        message_id = str(resp.json().get("id", "")).strip("<>")
        logger.info("mailgun_message_queued", message_id=message_id, notification_id=notification.id)
        return GatewayResult.accepted(message_id)
