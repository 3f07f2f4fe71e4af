"""Firebase Cloud Messaging push gateway (HTTP v1 API)."""

from __future__ import annotations

import httpx
import structlog

from herald.adapters.outbound.gateways.http import HttpGateway, gateway_retry
from herald.domain.entities import Notification
from herald.ports.outbound import GatewayResult

logger = structlog.get_logger(__name__)

_BASE_URL = "https://fcm.googleapis.com/v1"


class FcmGateway(HttpGateway):
    """Sends to one device registration token per notification.

    ``access_token`` is an OAuth2 bearer token for the project's service
    account; refreshing it is left to the deployment.
    """

    provider_id = "fcm"

    def __init__(
        self,
        project_id: str,
        access_token: str,
        *,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._project_id = project_id
        super().__init__(
            base_url=_BASE_URL,
            timeout=timeout,
            headers={"Authorization": f"Bearer {access_token}"},
            client=client,
        )

    @gateway_retry
    async def send(self, notification: Notification) -> GatewayResult:
        payload = {
            "message": {
                "token": notification.recipient,
                "notification": {"title": notification.subject or "", "body": notification.body},
                "data": {"notification_id": notification.id, **{k: str(v) for k, v in notification.metadata.items()}},
            }
        }
        resp = await self._client.post(f"/projects/{self._project_id}/messages:send", json=payload)
        rejected = self.rejection(resp)
        if rejected:
            return rejected
        # "projects/<project>/messages/<id>"
        name = str(resp.json().get("name", ""))
        message_id = name.rsplit("/", 1)[-1]
        logger.info("fcm_message_sent", message_id=message_id, notification_id=notification.id)
        return GatewayResult.accepted(message_id)
