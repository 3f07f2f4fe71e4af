"""Tests for the hierarchical token-bucket rate limiter."""

from __future__ import annotations

import asyncio

import pytest

from herald.application.services.rate_limiter import AdmissionRequest, RateLimiter, bucket_key
from herald.domain.enums import RateLimitLevel
from herald.domain.exceptions import AuthorisationError, RateLimitedError, ValidationError
from herald.domain.value_objects import AdminOverride, RateLimitRule

USER = RateLimitLevel.USER
SERVICE = RateLimitLevel.SERVICE
TENANT = RateLimitLevel.TENANT


def _request(user: str = "u-1", channel: str = "sms") -> AdmissionRequest:
    return AdmissionRequest(tenant_id="acme", user_id=user, service_origin="auth", channel=channel)


def _defaults(user_burst: int = 3, service_burst: int = 100, tenant_burst: int = 100) -> dict:
    return {
        USER: RateLimitRule(USER, max_requests=3, window_seconds=3, burst=user_burst),
        SERVICE: RateLimitRule(SERVICE, max_requests=100, window_seconds=60, burst=service_burst),
        TENANT: RateLimitRule(TENANT, max_requests=100, window_seconds=60, burst=tenant_burst),
    }


# ═══════════════════════════════════════════════════════════════
#  Single bucket
# ═══════════════════════════════════════════════════════════════
class TestTokenBucket:
    @pytest.mark.asyncio
    async def test_consumes_until_empty_then_refills(self, store, clock) -> None:
        limiter = RateLimiter(store, clock=clock)
        rule = RateLimitRule(USER, max_requests=3, window_seconds=3, burst=3)

        remaining = [(await limiter.check_and_consume("k", rule)).remaining for _ in range(3)]
        assert remaining == [2, 1, 0]

        rejected = await limiter.check_and_consume("k", rule)
        assert rejected.allowed is False
        # One token per second refill
        assert rejected.reset_at.timestamp() == pytest.approx(clock.now + 1)

        clock.advance(1)
        assert (await limiter.check_and_consume("k", rule)).allowed is True

    @pytest.mark.asyncio
    async def test_refill_is_capped_at_burst(self, store, clock) -> None:
        limiter = RateLimiter(store, clock=clock)
        rule = RateLimitRule(USER, max_requests=3, window_seconds=3, burst=3)
        await limiter.check_and_consume("k", rule)
        clock.advance(3600)
        decision = await limiter.peek_bucket("k", rule)
        assert decision.remaining == 3

    @pytest.mark.asyncio
    async def test_zero_refill_bucket_never_recovers(self, store, clock) -> None:
        limiter = RateLimiter(store, clock=clock)
        rule = RateLimitRule(USER, max_requests=0, window_seconds=60, burst=1)
        assert (await limiter.check_and_consume("k", rule)).allowed is True
        clock.advance(10_000)
        assert (await limiter.check_and_consume("k", rule)).allowed is False

    @pytest.mark.asyncio
    async def test_concurrent_consumers_never_overdraw(self, store, clock) -> None:
        limiter = RateLimiter(store, clock=clock)
        rule = RateLimitRule(USER, max_requests=1, window_seconds=3600, burst=10)
        decisions = await asyncio.gather(*(limiter.check_and_consume("k", rule) for _ in range(50)))
        assert sum(d.allowed for d in decisions) == 10


# ═══════════════════════════════════════════════════════════════
#  Hierarchical admission
# ═══════════════════════════════════════════════════════════════
class TestAdmission:
    @pytest.mark.asyncio
    async def test_returns_most_constrained_scope(self, store, clock) -> None:
        limiter = RateLimiter(store, defaults=_defaults(), clock=clock)
        decision = await limiter.check_admission(_request())
        assert decision is not None
        assert decision.scope == "user"
        assert decision.remaining == 2

    @pytest.mark.asyncio
    async def test_user_exhaustion_raises_with_retry_after(self, store, clock) -> None:
        limiter = RateLimiter(store, defaults=_defaults(), clock=clock)
        for _ in range(3):
            await limiter.check_admission(_request())
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.check_admission(_request())
        assert exc_info.value.scope == "user"
        assert exc_info.value.retry_after == 1
        assert exc_info.value.code == "RATE_LIMITED"

    @pytest.mark.asyncio
    async def test_users_have_independent_buckets(self, store, clock) -> None:
        limiter = RateLimiter(store, defaults=_defaults(), clock=clock)
        for _ in range(3):
            await limiter.check_admission(_request("u-1"))
        assert await limiter.check_admission(_request("u-2")) is not None

    @pytest.mark.asyncio
    async def test_later_scope_rejection_refunds_earlier_scopes(self, store, clock) -> None:
        limiter = RateLimiter(store, defaults=_defaults(user_burst=5, service_burst=1), clock=clock)
        await limiter.check_admission(_request())
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.check_admission(_request("u-2"))
        assert exc_info.value.scope == "service"

        user_rule = limiter.rule_for(USER, _request("u-2"))
        user_bucket = await limiter.peek_bucket(bucket_key(USER, _request("u-2")), user_rule)
        assert user_bucket.remaining == 5

    @pytest.mark.asyncio
    async def test_specific_rule_beats_default(self, store, clock) -> None:
        rules = [RateLimitRule(USER, max_requests=1, window_seconds=60, burst=1, tenant_id="acme", channel="sms")]
        limiter = RateLimiter(store, rules=rules, defaults=_defaults(), clock=clock)
        await limiter.check_admission(_request(channel="sms"))
        with pytest.raises(RateLimitedError):
            await limiter.check_admission(_request(channel="sms"))
        # Email falls through to the default user rule
        assert await limiter.check_admission(_request(channel="email")) is not None

    @pytest.mark.asyncio
    async def test_disabled_rule_skips_level(self, store, clock) -> None:
        rules = [RateLimitRule(USER, max_requests=1, window_seconds=60, burst=1, enabled=False)]
        limiter = RateLimiter(store, rules=rules, defaults=_defaults(), clock=clock)
        for _ in range(10):
            decision = await limiter.check_admission(_request())
        assert decision is not None
        assert decision.scope in ("service", "tenant")

    @pytest.mark.asyncio
    async def test_peek_does_not_consume(self, store, clock) -> None:
        limiter = RateLimiter(store, defaults=_defaults(), clock=clock)
        for _ in range(5):
            await limiter.peek(_request())
        decision = await limiter.check_admission(_request())
        assert decision is not None
        assert decision.remaining == 2


# ═══════════════════════════════════════════════════════════════
#  Admin override
# ═══════════════════════════════════════════════════════════════
class TestOverride:
    @pytest.mark.asyncio
    async def test_override_bypasses_exhausted_bucket(self, store, clock, event_bus, recorder) -> None:
        limiter = RateLimiter(store, defaults=_defaults(), event_bus=event_bus, clock=clock)
        for _ in range(3):
            await limiter.check_admission(_request())
        override = AdminOverride("ops", "incident 42", frozenset({"notifications:admin"}))

        await limiter.check_admission(_request(), override=override)

        events = recorder.of_type("rate_limit.override_used")
        assert len(events) == 1
        assert events[0].actor == "ops"
        assert events[0].reason == "incident 42"

    @pytest.mark.asyncio
    async def test_override_requires_elevated_scope(self, store, clock) -> None:
        limiter = RateLimiter(store, defaults=_defaults(), clock=clock)
        with pytest.raises(AuthorisationError):
            await limiter.check_admission(_request(), override=AdminOverride("ops", "why", frozenset()))

    @pytest.mark.asyncio
    async def test_override_requires_reason(self, store, clock) -> None:
        limiter = RateLimiter(store, defaults=_defaults(), clock=clock)
        override = AdminOverride("ops", "  ", frozenset({"notifications:admin"}))
        with pytest.raises(ValidationError):
            await limiter.check_admission(_request(), override=override)
