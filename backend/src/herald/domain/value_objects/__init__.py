"""Domain value objects — immutable, self-validating types.

Value objects have *no identity*; two instances with equal fields are equal.
They enforce invariants at construction time so the rest of the domain can
trust their contents without re-checking.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, Iterable, Sequence, TypeVar

from herald.domain.enums import BillingEvent, Channel, RateLimitLevel

WILDCARD = "*"

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════
#  Scopes
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class CostScope:
    """Tenant and service origin a notification is billed to."""

    tenant_id: str
    service_origin: str

    @property
    def keys(self) -> tuple[str, str]:
        """Budget scope keys, tenant-wide first."""
        return (self.tenant_id, f"{self.tenant_id}/{self.service_origin}")


def lookup_keys(tenant_id: str, service_origin: str, channel: str) -> list[tuple[str, str, str]]:
    """Candidate (tenant, service, channel) keys, most specific first."""
    keys: list[tuple[str, str, str]] = []
    for tenant in (tenant_id, WILDCARD):
        for service, chan in (
            (service_origin, channel),
            (service_origin, WILDCARD),
            (WILDCARD, channel),
            (WILDCARD, WILDCARD),
        ):
            key = (tenant, service, chan)
            if key not in keys:
                keys.append(key)
    return keys


class ConfigTable(Generic[T]):
    """Read-only table of scoped entries resolved most-specific-first."""

    def __init__(self, entries: Iterable[tuple[tuple[str, ...], T]]) -> None:
        self._entries: dict[tuple[str, ...], T] = {}
        for key, entry in entries:
            self._entries.setdefault(key, entry)

    def resolve(self, candidates: Sequence[tuple[str, ...]]) -> T | None:
        for key in candidates:
            entry = self._entries.get(key)
            if entry is not None:
                return entry
        return None

    def __len__(self) -> int:
        return len(self._entries)


# ═══════════════════════════════════════════════════════════════
#  Rate limiting
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class RateLimitRule:
    """Token-bucket parameters for one level of the admission hierarchy."""

    level: RateLimitLevel
    max_requests: int
    window_seconds: float
    burst: int
    tenant_id: str = WILDCARD
    service_origin: str = WILDCARD
    channel: str = WILDCARD
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.max_requests < 0:
            raise ValueError("max_requests must be >= 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if self.burst < 1:
            raise ValueError("burst must be >= 1")

    @property
    def refill_per_second(self) -> float:
        return self.max_requests / self.window_seconds

    @property
    def scope_key(self) -> tuple[str, str, str]:
        return (self.tenant_id, self.service_origin, self.channel)


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int
    scope: str

    @property
    def reset_epoch(self) -> int:
        return int(self.reset_at.timestamp())


@dataclass(frozen=True, slots=True)
class AdminOverride:
    """Elevated bypass of rate limits; the reason is mandatory and logged."""

    actor: str
    reason: str
    scopes: frozenset[str] = field(default_factory=frozenset)


# ═══════════════════════════════════════════════════════════════
#  Budgets & costs
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class BudgetConfig:
    """Monthly spending cap for a tenant, or a tenant's service origin."""

    tenant_id: str
    monthly_cap_micros: int
    service_origin: str | None = None
    warn_pct: float = 80.0
    limit_pct: float = 100.0
    admin_override: bool = False

    def __post_init__(self) -> None:
        if self.monthly_cap_micros <= 0:
            raise ValueError("monthly_cap_micros must be > 0")
        if not 0 < self.warn_pct <= self.limit_pct:
            raise ValueError("warn_pct must be within (0, limit_pct]")

    @property
    def scope_key(self) -> str:
        if self.service_origin:
            return f"{self.tenant_id}/{self.service_origin}"
        return self.tenant_id


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    allowed: bool
    utilization_pct: float
    scope_key: str | None = None
    threshold: float | None = None


@dataclass(frozen=True, slots=True)
class ChannelCost:
    channel: Channel
    unit_cost_micros: int
    billable_on: BillingEvent = BillingEvent.SEND

    @property
    def is_free(self) -> bool:
        return self.unit_cost_micros <= 0


DEFAULT_CHANNEL_COSTS: tuple[ChannelCost, ...] = (
    ChannelCost(Channel.SMS, 7_900),
    ChannelCost(Channel.EMAIL, 95),
    ChannelCost(Channel.PUSH, 0),
    ChannelCost(Channel.IN_APP, 0),
)


# ═══════════════════════════════════════════════════════════════
#  Retry
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff parameters keyed by (service origin, channel)."""

    service_origin: str = WILDCARD
    channel: str = WILDCARD
    max_attempts: int = 6
    base_delay_seconds: float = 5.0
    backoff_factor: float = 2.0
    max_backoff_seconds: float = 300.0
    jitter_seconds: float = 1.0
    attempt_timeout_seconds: float = 30.0
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.jitter_seconds < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.attempt_timeout_seconds <= 0:
            raise ValueError("attempt_timeout_seconds must be > 0")
