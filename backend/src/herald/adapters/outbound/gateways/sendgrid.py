"""SendGrid email gateway (v3 Mail Send)."""

from __future__ import annotations

import uuid

import httpx
import structlog

from herald.adapters.outbound.gateways.http import HttpGateway, gateway_retry
from herald.domain.entities import Notification
from herald.ports.outbound import GatewayResult

logger = structlog.get_logger(__name__)

_BASE_URL = "https://api.sendgrid.com/v3"


class SendGridGateway(HttpGateway):
    provider_id = "sendgrid"

    def __init__(
        self,
        api_key: str,
        from_email: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._from = from_email
        super().__init__(
            base_url=_BASE_URL,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
            client=client,
        )

    @gateway_retry
    async def send(self, notification: Notification) -> GatewayResult:
        payload = {
            "personalizations": [
                {
                    "to": [{"email": notification.recipient}],
                    "custom_args": {"notification_id": notification.id},
                }
            ],
            "from": {"email": self._from},
            "subject": notification.subject or "",
            "content": [{"type": "text/plain", "value": notification.body}],
        }
        resp = await self._client.post("/mail/send", json=payload)
        rejected = self.rejection(resp)
        if rejected:
            return rejected
        # 202 Accepted carries no body; the id comes back as a header
        message_id = resp.headers.get("X-Message-Id") or uuid.uuid4().hex
        logger.info("sendgrid_mail_accepted", message_id=message_id, notification_id=notification.id)
        return GatewayResult.accepted(message_id)
