"""Hierarchical token-bucket rate limiter.

Each admission is checked against three buckets, user → service → tenant.
Bucket state lives in the shared atomic store and every check-refill-consume
runs as one ``compare_and_update`` so concurrent callers on any instance can
never overdraw a bucket.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

import structlog

from herald.domain.enums import RateLimitLevel
from herald.domain.events import RateLimitOverrideUsed
from herald.domain.exceptions import AuthorisationError, RateLimitedError, ValidationError
from herald.domain.value_objects import (
    AdminOverride,
    ConfigTable,
    RateLimitDecision,
    RateLimitRule,
    lookup_keys,
)
from herald.ports.outbound import AtomicStore, EventBusPort
from herald.shared.observability.metrics import RATE_LIMIT_REJECTIONS

logger = structlog.get_logger(__name__)

_LEVEL_ORDER = (RateLimitLevel.USER, RateLimitLevel.SERVICE, RateLimitLevel.TENANT)

DEFAULT_RULES: Mapping[RateLimitLevel, RateLimitRule] = {
    RateLimitLevel.USER: RateLimitRule(RateLimitLevel.USER, max_requests=60, window_seconds=3600, burst=20),
    RateLimitLevel.SERVICE: RateLimitRule(RateLimitLevel.SERVICE, max_requests=1000, window_seconds=60, burst=200),
    RateLimitLevel.TENANT: RateLimitRule(RateLimitLevel.TENANT, max_requests=5000, window_seconds=60, burst=1000),
}


@dataclass(frozen=True, slots=True)
class AdmissionRequest:
    tenant_id: str
    user_id: str
    service_origin: str
    channel: str
    cost: int = 1


def bucket_key(level: RateLimitLevel, request: AdmissionRequest) -> str:
    if level == RateLimitLevel.USER:
        return f"rl:{request.tenant_id}:user:{request.user_id}:{request.channel}"
    if level == RateLimitLevel.SERVICE:
        return f"rl:{request.tenant_id}:service:{request.service_origin}:{request.channel}"
    return f"rl:{request.tenant_id}:tenant:{request.channel}"


def _refill(state: dict[str, Any] | None, rule: RateLimitRule, now: float) -> float:
    if state is None:
        return float(rule.burst)
    elapsed = max(0.0, now - state["ts"])
    return min(float(rule.burst), state["tokens"] + elapsed * rule.refill_per_second)


def _reset_at(tokens: float, needed: float, rule: RateLimitRule, now: float) -> float:
    """Epoch at which the bucket holds ``needed`` tokens."""
    rate = rule.refill_per_second
    if rate <= 0:
        return now + rule.window_seconds
    return now + max(0.0, needed - tokens) / rate


def _to_datetime(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


class RateLimiter:
    """Token buckets with continuous refill, evaluated hierarchically."""

    def __init__(
        self,
        store: AtomicStore,
        *,
        rules: Iterable[RateLimitRule] = (),
        defaults: Mapping[RateLimitLevel, RateLimitRule] | None = None,
        elevated_scope: str = "notifications:admin",
        event_bus: EventBusPort | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._table: ConfigTable[RateLimitRule] = ConfigTable(
            ((rule.level.value, *rule.scope_key), rule) for rule in rules
        )
        self._defaults = dict(DEFAULT_RULES)
        if defaults:
            self._defaults.update(defaults)
        self._elevated_scope = elevated_scope
        self._event_bus = event_bus
        self._clock = clock

    # ── Rule lookup ──────────────────────────────────────────
    def rule_for(self, level: RateLimitLevel, request: AdmissionRequest) -> RateLimitRule:
        candidates = [
            (level.value, *key)
            for key in lookup_keys(request.tenant_id, request.service_origin, request.channel)
        ]
        return self._table.resolve(candidates) or self._defaults[level]

    # ── Single bucket ────────────────────────────────────────
    async def check_and_consume(
        self, key: str, rule: RateLimitRule, cost: int = 1
    ) -> RateLimitDecision:
        """Atomically refill the bucket at ``key`` and take ``cost`` tokens if present."""
        now = self._clock()

        def consume(state: dict[str, Any] | None) -> tuple[dict[str, Any], tuple[bool, float, float]]:
            tokens = _refill(state, rule, now)
            if tokens >= cost:
                tokens -= cost
                return {"tokens": tokens, "ts": now}, (True, tokens, _reset_at(tokens, rule.burst, rule, now))
            return {"tokens": tokens, "ts": now}, (False, tokens, _reset_at(tokens, cost, rule, now))

        allowed, tokens, reset = await self._store.compare_and_update(
            key, consume, ttl_seconds=self._ttl(rule)
        )
        return RateLimitDecision(
            allowed=allowed,
            remaining=int(tokens),
            reset_at=_to_datetime(reset),
            limit=rule.max_requests,
            scope=rule.level.value,
        )

    async def refund(self, key: str, rule: RateLimitRule, cost: int = 1) -> None:
        now = self._clock()

        def give_back(state: dict[str, Any] | None) -> tuple[dict[str, Any], None]:
            tokens = min(float(rule.burst), _refill(state, rule, now) + cost)
            return {"tokens": tokens, "ts": now}, None

        await self._store.compare_and_update(key, give_back, ttl_seconds=self._ttl(rule))

    async def peek_bucket(self, key: str, rule: RateLimitRule) -> RateLimitDecision:
        now = self._clock()
        tokens = _refill(await self._store.get(key), rule, now)
        return RateLimitDecision(
            allowed=tokens >= 1,
            remaining=int(tokens),
            reset_at=_to_datetime(_reset_at(tokens, rule.burst, rule, now)),
            limit=rule.max_requests,
            scope=rule.level.value,
        )

    @staticmethod
    def _ttl(rule: RateLimitRule) -> float | None:
        rate = rule.refill_per_second
        if rate <= 0:
            return None
        return rule.burst / rate + rule.window_seconds

    # ── Hierarchical admission ───────────────────────────────
    async def check_admission(
        self,
        request: AdmissionRequest,
        override: AdminOverride | None = None,
    ) -> RateLimitDecision | None:
        """Consume one admission from the user, service and tenant buckets.

        Returns the decision of the most constrained scope (``None`` when
        every level is disabled).

        Raises:
            RateLimitedError: the first exhausted scope, after refunding tokens
                already taken from earlier scopes.
        """
        if override is not None:
            await self._apply_override(request, override)
            return await self.peek(request)

        consumed: list[tuple[str, RateLimitRule]] = []
        decisions: list[RateLimitDecision] = []
        for level in _LEVEL_ORDER:
            rule = self.rule_for(level, request)
            if not rule.enabled:
                continue
            key = bucket_key(level, request)
            decision = await self.check_and_consume(key, rule, request.cost)
            if not decision.allowed:
                for done_key, done_rule in consumed:
                    await self.refund(done_key, done_rule, request.cost)
                RATE_LIMIT_REJECTIONS.labels(scope=level.value).inc()
                retry_after = max(0.0, decision.reset_at.timestamp() - self._clock())
                logger.info(
                    "rate_limited",
                    scope=level.value,
                    tenant_id=request.tenant_id,
                    user_id=request.user_id,
                    service_origin=request.service_origin,
                    channel=request.channel,
                    retry_after_s=round(retry_after, 2),
                )
                raise RateLimitedError(
                    scope=level.value,
                    limit=rule.max_requests,
                    retry_after_seconds=retry_after,
                    reset_at=decision.reset_at,
                    remaining=decision.remaining,
                )
            consumed.append((key, rule))
            decisions.append(decision)

        return min(decisions, key=lambda d: d.remaining) if decisions else None

    async def peek(self, request: AdmissionRequest) -> RateLimitDecision | None:
        """Most constrained scope for ``request`` without consuming tokens."""
        decisions = [
            await self.peek_bucket(bucket_key(level, request), rule)
            for level in _LEVEL_ORDER
            if (rule := self.rule_for(level, request)).enabled
        ]
        return min(decisions, key=lambda d: d.remaining) if decisions else None

    async def _apply_override(self, request: AdmissionRequest, override: AdminOverride) -> None:
        if self._elevated_scope not in override.scopes:
            raise AuthorisationError("Rate-limit override requires the elevated scope")
        if not override.reason or not override.reason.strip():
            raise ValidationError("Rate-limit override requires a reason")
        logger.warning(
            "rate_limit_override",
            actor=override.actor,
            reason=override.reason,
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            service_origin=request.service_origin,
            channel=request.channel,
        )
        if self._event_bus is not None:
            await self._event_bus.publish(
                RateLimitOverrideUsed(
                    tenant_id=request.tenant_id,
                    user_id=request.user_id,
                    service_origin=request.service_origin,
                    actor=override.actor,
                    reason=override.reason,
                )
            )
