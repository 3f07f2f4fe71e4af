"""Provider router — picks the gateway for a channel.

Each channel holds an ordered list of provider handles (primary first).
Providers whose breaker refuses the call are skipped; when nothing is left
the router fails fast with ``ProviderUnavailableError`` instead of blocking.
"""

from __future__ import annotations

from typing import AsyncIterator, Iterable, Mapping, Sequence

import structlog

from herald.domain.enums import Channel
from herald.domain.exceptions import ProviderUnavailableError
from herald.shared.providers.types import CircuitSnapshot, ProviderHandle

logger = structlog.get_logger(__name__)


class ProviderRouter:
    """Selects the first permitted provider from a channel's failover chain."""

    def __init__(self, routes: Mapping[Channel, Sequence[ProviderHandle]]) -> None:
        self._routes: dict[Channel, tuple[ProviderHandle, ...]] = {
            channel: tuple(sorted(handles, key=lambda h: h.config.priority))
            for channel, handles in routes.items()
        }

    @property
    def channels(self) -> tuple[Channel, ...]:
        return tuple(self._routes)

    def handles(self, channel: Channel) -> tuple[ProviderHandle, ...]:
        return self._routes.get(channel, ())

    def get(self, channel: Channel, provider_id: str) -> ProviderHandle | None:
        return next((h for h in self.handles(channel) if h.provider_id == provider_id), None)

    def find(self, provider_id: str) -> ProviderHandle | None:
        for handles in self._routes.values():
            for handle in handles:
                if handle.provider_id == provider_id:
                    return handle
        return None

    # ── Selection ────────────────────────────────────────────
    async def select_provider(
        self, channel: Channel, *, exclude: Iterable[str] = ()
    ) -> ProviderHandle:
        """Return the first provider whose breaker admits a call.

        Raises:
            ProviderUnavailableError: every provider is excluded or circuit-open.
        """
        async for handle in self.candidates(channel, exclude=exclude):
            return handle
        raise ProviderUnavailableError(channel.value, await self.retry_after(channel))

    async def candidates(
        self,
        channel: Channel,
        *,
        avoid: str | None = None,
        force: str | None = None,
        exclude: Iterable[str] = (),
    ) -> AsyncIterator[ProviderHandle]:
        """Yield permitted providers lazily in failover order.

        ``avoid`` moves a provider to the end of the chain; ``force`` restricts
        the chain to a single provider.  Breakers are consulted only when the
        previous candidate has been used up, so a half-open probe is claimed
        only by the call that will actually make it.
        """
        excluded = set(exclude)
        chain = list(self.handles(channel))
        if force is not None:
            chain = [h for h in chain if h.provider_id == force]
        elif avoid is not None:
            chain.sort(key=lambda h: h.provider_id == avoid)

        for handle in chain:
            if handle.provider_id in excluded:
                continue
            if not await handle.breaker.allow_request():
                logger.debug("provider_circuit_open", channel=channel.value, provider=handle.provider_id)
                continue
            yield handle

    async def record_outcome(self, handle: ProviderHandle, success: bool) -> None:
        if success:
            await handle.breaker.record_success()
        else:
            await handle.breaker.record_failure()

    # ── Observation ──────────────────────────────────────────
    async def retry_after(self, channel: Channel) -> float:
        """Seconds until the earliest breaker on ``channel`` will probe again."""
        waits = [await h.breaker.retry_after() for h in self.handles(channel)]
        return min(waits) if waits else 0.0

    async def snapshots(self) -> list[CircuitSnapshot]:
        return [
            await handle.breaker.snapshot()
            for handles in self._routes.values()
            for handle in handles
        ]
