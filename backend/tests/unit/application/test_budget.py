"""Tests for monthly budget enforcement and threshold alerts."""

from __future__ import annotations

import pytest

from herald.adapters.outbound.persistence.memory import InMemoryCostLedger
from herald.application.services.budget import BudgetEnforcer
from herald.domain.enums import BillingEvent, Channel, Priority
from herald.domain.exceptions import BudgetExceededError
from herald.domain.value_objects import BudgetConfig, ChannelCost, CostScope

SCOPE = CostScope("acme", "auth")
COSTS = (
    ChannelCost(Channel.SMS, 10_000),
    ChannelCost(Channel.EMAIL, 100, BillingEvent.DELIVERY),
    ChannelCost(Channel.PUSH, 0),
)


@pytest.fixture
def ledger() -> InMemoryCostLedger:
    return InMemoryCostLedger()


def _enforcer(ledger, store, clock, event_bus=None, **budget_kwargs) -> BudgetEnforcer:
    budget = BudgetConfig(tenant_id="acme", monthly_cap_micros=100_000, **budget_kwargs)
    return BudgetEnforcer(ledger, store, budgets=[budget], costs=COSTS, event_bus=event_bus, clock=clock)


async def _spend(enforcer: BudgetEnforcer, times: int) -> None:
    for _ in range(times):
        await enforcer.record_cost(SCOPE, Channel.SMS)


# ═══════════════════════════════════════════════════════════════
#  Booking
# ═══════════════════════════════════════════════════════════════
class TestRecordCost:
    @pytest.mark.asyncio
    async def test_books_unit_cost(self, ledger, store, clock) -> None:
        enforcer = _enforcer(ledger, store, clock)
        record = await enforcer.record_cost(SCOPE, Channel.SMS, provider="twilio", notification_id="n-1")
        assert record is not None
        assert record.total_micros == 10_000
        assert ledger.records[0].provider == "twilio"

    @pytest.mark.asyncio
    async def test_free_channel_is_not_booked(self, ledger, store, clock) -> None:
        enforcer = _enforcer(ledger, store, clock)
        assert await enforcer.record_cost(SCOPE, Channel.PUSH) is None
        assert ledger.records == []

    @pytest.mark.asyncio
    async def test_unconfigured_channel_costs_nothing(self, ledger, store, clock) -> None:
        enforcer = _enforcer(ledger, store, clock)
        assert enforcer.cost_for(Channel.IN_APP).is_free


# ═══════════════════════════════════════════════════════════════
#  Admission
# ═══════════════════════════════════════════════════════════════
class TestCheckBudget:
    @pytest.mark.asyncio
    async def test_unbudgeted_scope_is_allowed(self, ledger, store, clock) -> None:
        enforcer = BudgetEnforcer(ledger, store, costs=COSTS, clock=clock)
        decision = await enforcer.check_budget(SCOPE, Priority.LOW)
        assert decision.allowed
        assert decision.utilization_pct == 0.0

    @pytest.mark.asyncio
    async def test_warn_threshold_is_reported(self, ledger, store, clock) -> None:
        enforcer = _enforcer(ledger, store, clock)
        await _spend(enforcer, 8)
        decision = await enforcer.check_budget(SCOPE, Priority.NORMAL)
        assert decision.allowed
        assert decision.threshold == 80.0
        assert decision.scope_key == "acme"

    @pytest.mark.asyncio
    async def test_exhausted_budget_rejects_normal_priority(self, ledger, store, clock) -> None:
        enforcer = _enforcer(ledger, store, clock)
        await _spend(enforcer, 10)
        with pytest.raises(BudgetExceededError) as exc_info:
            await enforcer.check_budget(SCOPE, Priority.NORMAL)
        assert exc_info.value.scope == "acme"
        assert exc_info.value.code == "BUDGET_EXCEEDED"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("priority", [Priority.HIGH, Priority.URGENT])
    async def test_high_priority_bypasses_exhausted_budget(self, ledger, store, clock, priority) -> None:
        enforcer = _enforcer(ledger, store, clock)
        await _spend(enforcer, 10)
        decision = await enforcer.check_budget(SCOPE, priority)
        assert decision.allowed
        assert decision.threshold == 100.0

    @pytest.mark.asyncio
    async def test_admin_override_budget_keeps_admitting(self, ledger, store, clock) -> None:
        enforcer = _enforcer(ledger, store, clock, admin_override=True)
        await _spend(enforcer, 12)
        assert (await enforcer.check_budget(SCOPE, Priority.LOW)).allowed

    @pytest.mark.asyncio
    async def test_service_scope_budget_is_checked_too(self, ledger, store, clock) -> None:
        budgets = [
            BudgetConfig(tenant_id="acme", monthly_cap_micros=1_000_000),
            BudgetConfig(tenant_id="acme", service_origin="auth", monthly_cap_micros=20_000),
        ]
        enforcer = BudgetEnforcer(ledger, store, budgets=budgets, costs=COSTS, clock=clock)
        await _spend(enforcer, 2)
        with pytest.raises(BudgetExceededError) as exc_info:
            await enforcer.check_budget(SCOPE, Priority.NORMAL)
        assert exc_info.value.scope == "acme/auth"
        # Another service of the same tenant is unaffected
        assert (await enforcer.check_budget(CostScope("acme", "orders"), Priority.NORMAL)).allowed

    @pytest.mark.asyncio
    async def test_spend_resets_with_the_calendar_month(self, ledger, store, clock) -> None:
        enforcer = _enforcer(ledger, store, clock)
        await _spend(enforcer, 10)
        clock.advance(31 * 24 * 3600)
        assert (await enforcer.check_budget(SCOPE, Priority.NORMAL)).allowed


# ═══════════════════════════════════════════════════════════════
#  Alerts
# ═══════════════════════════════════════════════════════════════
class TestThresholdAlerts:
    @pytest.mark.asyncio
    async def test_each_threshold_alerts_once(self, ledger, store, clock, event_bus, recorder) -> None:
        enforcer = _enforcer(ledger, store, clock, event_bus=event_bus)
        await _spend(enforcer, 11)
        for _ in range(3):
            await enforcer.check_budget(SCOPE, Priority.HIGH)

        alerts = recorder.of_type("budget.threshold_crossed")
        assert [a.threshold_pct for a in alerts] == [80.0, 100.0]
        assert alerts[0].cap_micros == 100_000

    @pytest.mark.asyncio
    async def test_jump_past_both_thresholds_alerts_both(self, ledger, store, clock, event_bus, recorder) -> None:
        budget = BudgetConfig(tenant_id="acme", monthly_cap_micros=10_000)
        enforcer = BudgetEnforcer(ledger, store, budgets=[budget], costs=COSTS, event_bus=event_bus, clock=clock)
        await enforcer.record_cost(SCOPE, Channel.SMS)
        assert sorted(a.threshold_pct for a in recorder.of_type("budget.threshold_crossed")) == [80.0, 100.0]

    @pytest.mark.asyncio
    async def test_alerts_again_in_a_new_month(self, ledger, store, clock, event_bus, recorder) -> None:
        enforcer = _enforcer(ledger, store, clock, event_bus=event_bus)
        await _spend(enforcer, 8)
        clock.advance(31 * 24 * 3600)
        await _spend(enforcer, 8)
        assert len(recorder.of_type("budget.threshold_crossed")) == 2


class TestUtilization:
    @pytest.mark.asyncio
    async def test_tenant_utilization_lists_configured_scopes(self, ledger, store, clock) -> None:
        enforcer = _enforcer(ledger, store, clock)
        await _spend(enforcer, 5)
        [usage] = await enforcer.tenant_utilization("acme")
        assert usage.to_dict() == {
            "scope_key": "acme",
            "spend_micros": 50_000,
            "cap_micros": 100_000,
            "utilization_pct": 50.0,
            "warn_pct": 80.0,
            "limit_pct": 100.0,
        }
        assert await enforcer.tenant_utilization("other") == []
