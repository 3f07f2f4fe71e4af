"""Vonage SMS gateway (Messages API)."""

from __future__ import annotations

import httpx
import structlog

from herald.adapters.outbound.gateways.http import HttpGateway, gateway_retry
from herald.domain.entities import Notification
from herald.ports.outbound import GatewayResult

logger = structlog.get_logger(__name__)

_BASE_URL = "https://api.nexmo.com"


class VonageGateway(HttpGateway):
    provider_id = "vonage"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        from_number: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._from = from_number
        super().__init__(
            base_url=_BASE_URL,
            timeout=timeout,
            auth=(api_key, api_secret),
            client=client,
        )

    @gateway_retry
    async def send(self, notification: Notification) -> GatewayResult:
        payload = {
            "message_type": "text",
            "channel": "sms",
            "to": notification.recipient.lstrip("+"),
            "from": self._from,
            "text": notification.body,
            "client_ref": notification.id,
        }
        resp = await self._client.post("/v1/messages", json=payload)
        rejected = self.rejection(resp)
        if rejected:
            return rejected
        message_uuid = str(resp.json().get("message_uuid", ""))
        logger.info("vonage_message_created", message_uuid=message_uuid, notification_id=notification.id)
        return GatewayResult.accepted(message_uuid)
