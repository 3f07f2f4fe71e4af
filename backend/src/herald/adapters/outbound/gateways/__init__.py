"""Gateway adapters package.

Provides simulated and in-app gateways plus the production HTTP gateways
that implement the ``NotificationGateway`` interface.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from typing import Iterable

import orjson
import structlog

from herald.domain.entities import Notification
from herald.ports.outbound import AtomicStore, GatewayResult, NotificationGateway

logger = structlog.get_logger(__name__)


# ═══════════════════════════════════════════════════════════════
#  Simulated gateway
# ═══════════════════════════════════════════════════════════════
class SimulatedGateway(NotificationGateway):
    """Gateway that never leaves the process.

    Results are taken from ``script`` in order (a ``GatewayResult`` is
    returned, an exception is raised); once the script is exhausted every
    send is accepted, unless ``healthy`` was set to False.
    """

    def __init__(
        self,
        provider_id: str,
        *,
        script: Iterable[GatewayResult | Exception] = (),
        delay_s: float = 0.0,
    ) -> None:
        self.provider_id = provider_id
        self.delay_s = delay_s
        self.healthy = True
        self.sent: list[str] = []
        self._script: deque[GatewayResult | Exception] = deque(script)

    def push(self, *results: GatewayResult | Exception) -> None:
        self._script.extend(results)

    async def send(self, notification: Notification) -> GatewayResult:
        self.sent.append(notification.id)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self._script:
            outcome = self._script.popleft()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        if not self.healthy:
            return GatewayResult.rejected("SIMULATED_FAILURE", f"{self.provider_id} is marked unhealthy")
        message_id = f"SIM-{self.provider_id.upper()}-{uuid.uuid4().hex[:12]}"
        logger.debug("simulated_send", provider=self.provider_id, notification_id=notification.id)
        return GatewayResult.accepted(message_id)


# ═══════════════════════════════════════════════════════════════
#  In-app gateway
# ═══════════════════════════════════════════════════════════════
class InAppGateway(NotificationGateway):
    """Publishes in-app notifications on a per-user channel of the shared store."""

    def __init__(self, store: AtomicStore, *, channel_prefix: str = "inapp") -> None:
        self._store = store
        self._prefix = channel_prefix

    async def send(self, notification: Notification) -> GatewayResult:
        message_id = f"INAPP-{uuid.uuid4().hex}"
        payload = {
            "id": message_id,
            "notification_id": notification.id,
            "subject": notification.subject,
            "body": notification.body,
            "metadata": notification.metadata,
        }
        channel = f"{self._prefix}:{notification.tenant_id}:{notification.user_id}"
        await self._store.publish(channel, orjson.dumps(payload).decode())
        return GatewayResult.accepted(message_id)


# ── Re-export production adapters ─────────────────────────────
from herald.adapters.outbound.gateways.fcm import FcmGateway  # noqa: E402
from herald.adapters.outbound.gateways.mailgun import MailgunGateway  # noqa: E402
from herald.adapters.outbound.gateways.sendgrid import SendGridGateway  # noqa: E402
from herald.adapters.outbound.gateways.twilio import TwilioGateway  # noqa: E402
from herald.adapters.outbound.gateways.vonage import VonageGateway  # noqa: E402

__all__ = [
    "NotificationGateway",
    "SimulatedGateway",
    "InAppGateway",
    "TwilioGateway",
    "VonageGateway",
    "SendGridGateway",
    "MailgunGateway",
    "FcmGateway",
]
