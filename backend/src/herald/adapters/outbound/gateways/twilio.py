"""Twilio SMS gateway.

Uses the Programmable Messaging REST API.  Delivery is confirmed through
status callbacks posted to ``/webhooks/twilio``.
"""

from __future__ import annotations

import httpx
import structlog

from herald.adapters.outbound.gateways.http import HttpGateway, gateway_retry
from herald.domain.entities import Notification
from herald.ports.outbound import GatewayResult

logger = structlog.get_logger(__name__)

_BASE_URL = "https://api.twilio.com/2010-04-01"


class TwilioGateway(HttpGateway):
    provider_id = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        status_callback_url: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._account_sid = account_sid
        self._from = from_number
        self._status_callback = status_callback_url
        super().__init__(
            base_url=_BASE_URL,
            timeout=timeout,
            auth=(account_sid, auth_token),
            client=client,
        )

    @gateway_retry
    async def send(self, notification: Notification) -> GatewayResult:
        form = {"To": notification.recipient, "From": self._from, "Body": notification.body}
        if self._status_callback:
            form["StatusCallback"] = self._status_callback
        resp = await self._client.post(f"/Accounts/{self._account_sid}/Messages.json", data=form)
        rejected = self.rejection(resp)
        if rejected:
            return rejected
        sid = str(resp.json().get("sid", ""))
        logger.info("twilio_message_created", sid=sid, notification_id=notification.id)
        return GatewayResult.accepted(sid)
