"""Retry scheduler — backoff computation and per-attempt timeouts.

A *pure domain service*: the delay for a failed attempt is a function of the
attempt index and the policy that applies to the notification's
(service origin, channel).  No shared state beyond the read-only policy table.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Iterable, TypeVar

import structlog

from herald.domain.value_objects import WILDCARD, ConfigTable, RetryPolicy

logger = structlog.get_logger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_POLICY = RetryPolicy()

SEEDED_RETRY_POLICIES: tuple[RetryPolicy, ...] = (
    RetryPolicy(
        service_origin="orders",
        channel="push",
        max_attempts=3,
        base_delay_seconds=2.0,
        jitter_seconds=0.5,
        attempt_timeout_seconds=15.0,
    ),
    RetryPolicy(
        service_origin="auth",
        channel="sms",
        max_attempts=4,
        base_delay_seconds=3.0,
        jitter_seconds=0.5,
        attempt_timeout_seconds=20.0,
    ),
)


def compute_delay(attempt: int, policy: RetryPolicy, rng: random.Random | None = None) -> float:
    """Seconds to wait after the failed attempt with zero-based index ``attempt``.

    ``min(base * factor**attempt, max_backoff) + uniform(0, jitter)``
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    try:
        exponential = policy.base_delay_seconds * (policy.backoff_factor**attempt)
    except OverflowError:
        exponential = policy.max_backoff_seconds
    delay = min(exponential, policy.max_backoff_seconds)
    if policy.jitter_seconds > 0:
        delay += (rng or random).uniform(0.0, policy.jitter_seconds)
    return delay


class RetryPolicyTable:
    """Policy lookup keyed by (service origin, channel) with wildcard fallback."""

    def __init__(
        self,
        policies: Iterable[RetryPolicy] = SEEDED_RETRY_POLICIES,
        default: RetryPolicy = DEFAULT_RETRY_POLICY,
    ) -> None:
        self._table: ConfigTable[RetryPolicy] = ConfigTable(
            ((p.service_origin, p.channel), p) for p in policies if p.enabled
        )
        self._default = default

    @property
    def default(self) -> RetryPolicy:
        return self._default

    def lookup(self, service_origin: str, channel: str) -> RetryPolicy:
        policy = self._table.resolve(
            [
                (service_origin, channel),
                (service_origin, WILDCARD),
                (WILDCARD, channel),
                (WILDCARD, WILDCARD),
            ]
        )
        return policy or self._default


async def run_with_timeout(awaitable: Awaitable[T], timeout: float) -> T:
    """Await ``awaitable``, cancelling it after ``timeout`` seconds.

    Raises ``asyncio.TimeoutError`` once the call has been cancelled.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug("attempt_timed_out", timeout_s=timeout)
        raise
