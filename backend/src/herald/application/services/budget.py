"""Budget enforcer — monthly spend caps per tenant and per service origin.

Spend is derived from the append-only cost ledger for the current UTC
calendar month.  Threshold alerts are de-duplicated through a marker in the
shared store so that concurrent workers emit each alert exactly once.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

import structlog

from herald.domain.entities import CostRecord
from herald.domain.enums import Channel, Priority
from herald.domain.events import BudgetThresholdCrossed
from herald.domain.exceptions import BudgetExceededError
from herald.domain.value_objects import (
    DEFAULT_CHANNEL_COSTS,
    BudgetConfig,
    BudgetDecision,
    ChannelCost,
    CostScope,
)
from herald.ports.outbound import AtomicStore, CostLedger, EventBusPort
from herald.shared.observability.metrics import BUDGET_REJECTIONS

logger = structlog.get_logger(__name__)

# Alert markers outlive the month they belong to
_ALERT_MARKER_TTL_S = 40 * 24 * 3600


@dataclass(frozen=True, slots=True)
class ScopeUtilization:
    config: BudgetConfig
    spend_micros: int

    @property
    def utilization_pct(self) -> float:
        return self.spend_micros / self.config.monthly_cap_micros * 100.0

    @property
    def exhausted(self) -> bool:
        return self.utilization_pct >= self.config.limit_pct

    def to_dict(self) -> dict[str, Any]:
        return {
            "scope_key": self.config.scope_key,
            "spend_micros": self.spend_micros,
            "cap_micros": self.config.monthly_cap_micros,
            "utilization_pct": round(self.utilization_pct, 2),
            "warn_pct": self.config.warn_pct,
            "limit_pct": self.config.limit_pct,
        }


def month_start(moment: datetime) -> datetime:
    return datetime(moment.year, moment.month, 1, tzinfo=timezone.utc)


class BudgetEnforcer:
    """Checks and books per-scope spend against monthly caps."""

    def __init__(
        self,
        ledger: CostLedger,
        store: AtomicStore,
        *,
        budgets: Iterable[BudgetConfig] = (),
        costs: Iterable[ChannelCost] = DEFAULT_CHANNEL_COSTS,
        event_bus: EventBusPort | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._budgets: dict[str, BudgetConfig] = {b.scope_key: b for b in budgets}
        self._costs: dict[Channel, ChannelCost] = {c.channel: c for c in costs}
        self._event_bus = event_bus
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def cost_for(self, channel: Channel) -> ChannelCost:
        return self._costs.get(channel) or ChannelCost(channel, 0)

    def configs_for(self, scope: CostScope) -> list[BudgetConfig]:
        return [self._budgets[key] for key in scope.keys if key in self._budgets]

    # ── Queries ──────────────────────────────────────────────
    async def utilization(self, scope: CostScope) -> list[ScopeUtilization]:
        since = month_start(self._now())
        results: list[ScopeUtilization] = []
        for config in self.configs_for(scope):
            spend = await self._ledger.total_since(config.tenant_id, config.service_origin, since)
            results.append(ScopeUtilization(config, spend))
        return results

    async def tenant_utilization(self, tenant_id: str) -> list[ScopeUtilization]:
        since = month_start(self._now())
        results: list[ScopeUtilization] = []
        for config in self._budgets.values():
            if config.tenant_id != tenant_id:
                continue
            spend = await self._ledger.total_since(config.tenant_id, config.service_origin, since)
            results.append(ScopeUtilization(config, spend))
        return results

    # ── Admission ────────────────────────────────────────────
    async def check_budget(self, scope: CostScope, priority: Priority) -> BudgetDecision:
        """Admit or reject against every configured scope.

        Raises:
            BudgetExceededError: a scope is at/above its limit and the request
                is neither high priority nor covered by an admin override.
        """
        usages = await self.utilization(scope)
        if not usages:
            return BudgetDecision(allowed=True, utilization_pct=0.0)

        for usage in usages:
            await self._maybe_alert(usage)

        usages.sort(key=lambda u: u.utilization_pct, reverse=True)
        top = usages[0]
        for usage in usages:
            if not usage.exhausted:
                continue
            log = logger.bind(
                scope=usage.config.scope_key,
                utilization_pct=round(usage.utilization_pct, 2),
                priority=priority.value,
            )
            if priority.escalated:
                log.warning("budget_exceeded_priority_bypass")
                continue
            if usage.config.admin_override:
                log.warning("budget_exceeded_admin_override")
                continue
            BUDGET_REJECTIONS.inc()
            log.info("budget_exceeded")
            raise BudgetExceededError(usage.config.scope_key, usage.utilization_pct)

        threshold = None
        if top.utilization_pct >= top.config.limit_pct:
            threshold = top.config.limit_pct
        elif top.utilization_pct >= top.config.warn_pct:
            threshold = top.config.warn_pct
        return BudgetDecision(
            allowed=True,
            utilization_pct=top.utilization_pct,
            scope_key=top.config.scope_key,
            threshold=threshold,
        )

    # ── Booking ──────────────────────────────────────────────
    async def record_cost(
        self,
        scope: CostScope,
        channel: Channel,
        units: int = 1,
        *,
        provider: str | None = None,
        notification_id: str | None = None,
    ) -> CostRecord | None:
        """Append a ledger record; zero-cost channels are not booked."""
        cost = self.cost_for(channel)
        if cost.is_free or units <= 0:
            return None
        record = CostRecord(
            tenant_id=scope.tenant_id,
            service_origin=scope.service_origin,
            channel=channel,
            unit_cost_micros=cost.unit_cost_micros,
            units=units,
            provider=provider,
            notification_id=notification_id,
            occurred_at=self._now(),
        )
        await self._ledger.append(record)
        logger.debug(
            "cost_recorded",
            tenant_id=scope.tenant_id,
            service_origin=scope.service_origin,
            channel=channel.value,
            total_micros=record.total_micros,
            notification_id=notification_id,
        )
        for usage in await self.utilization(scope):
            await self._maybe_alert(usage)
        return record

    # ── Alerts ───────────────────────────────────────────────
    async def _maybe_alert(self, usage: ScopeUtilization) -> None:
        pct = usage.utilization_pct
        config = usage.config
        crossed = [t for t in (config.warn_pct, config.limit_pct) if pct >= t]
        if not crossed:
            return
        now = self._now()
        marker = f"budget:alerted:{config.scope_key}:{now:%Y-%m}"

        def claim(current: float | None) -> tuple[float, list[float]]:
            fresh = [t for t in crossed if current is None or t > current]
            return max(crossed + ([current] if current is not None else [])), fresh

        fresh = await self._store.compare_and_update(marker, claim, ttl_seconds=_ALERT_MARKER_TTL_S)
        for threshold in fresh:
            logger.warning(
                "budget_threshold_crossed",
                scope=config.scope_key,
                threshold_pct=threshold,
                utilization_pct=round(pct, 2),
            )
            if self._event_bus is None:
                continue
            await self._event_bus.publish(
                BudgetThresholdCrossed(
                    scope_key=config.scope_key,
                    threshold_pct=threshold,
                    utilization_pct=round(pct, 2),
                    spend_micros=usage.spend_micros,
                    cap_micros=config.monthly_cap_micros,
                )
            )
