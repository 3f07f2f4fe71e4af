"""Event consumers (handlers) for domain events.

Bridges the internal event bus to external subscribers via the shared
store's pub/sub channel.
"""

from __future__ import annotations

import orjson
import structlog

from herald.domain.events import DomainEvent, to_envelope
from herald.ports.outbound import AtomicStore

logger = structlog.get_logger(__name__)

EVENTS_CHANNEL = "herald.events"


class EnvelopeForwarder:
    """Wraps every outbound domain event in an envelope and publishes it."""

    def __init__(self, store: AtomicStore, *, source: str, channel: str = EVENTS_CHANNEL) -> None:
        self._store = store
        self._source = source
        self._channel = channel

    async def handle(self, event: DomainEvent) -> None:
        envelope = to_envelope(event, self._source)
        try:
            await self._store.publish(self._channel, orjson.dumps(envelope.to_dict()).decode())
            logger.debug("event_forwarded", event_type=envelope.type, event_id=envelope.id)
        except Exception as exc:
            logger.error("event_forward_failed", event_type=envelope.type, error=str(exc))
