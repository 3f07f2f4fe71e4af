"""Dependency injection container — wires adapters to ports.

``build_container`` assembles every adapter and service from ``Settings``
once per application; FastAPI's ``Depends()`` system then hands the
container's services to route handlers.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

import structlog
from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncEngine

from herald.adapters.outbound.event_bus import ALL_EVENTS, InProcessEventBus
from herald.adapters.outbound.gateways import (
    FcmGateway,
    InAppGateway,
    MailgunGateway,
    SendGridGateway,
    SimulatedGateway,
    TwilioGateway,
    VonageGateway,
)
from herald.adapters.outbound.persistence.database import (
    create_engine,
    create_session_factory,
    init_models,
)
from herald.adapters.outbound.persistence.memory import (
    InMemoryAuditLog,
    InMemoryCostLedger,
    InMemoryNotificationRepository,
)
from herald.adapters.outbound.persistence.repositories import (
    SQLAlchemyAuditLog,
    SQLAlchemyCostLedger,
    SQLAlchemyNotificationRepository,
)
from herald.adapters.outbound.queue import InMemoryDeliveryQueue, RedisDeliveryQueue
from herald.adapters.outbound.store import InMemoryAtomicStore, RedisAtomicStore
from herald.adapters.outbound.templates import DictTemplateRenderer
from herald.application.consumers import EnvelopeForwarder
from herald.application.queries import (
    GetAuditTrailHandler,
    GetBudgetUtilizationHandler,
    GetNotificationHandler,
    GetProviderStatusHandler,
    GetRateLimitStatusHandler,
)
from herald.application.services.budget import BudgetEnforcer
from herald.application.services.orchestrator import DeliveryOrchestrator
from herald.application.services.rate_limiter import RateLimiter
from herald.application.services.webhooks import WebhookIngest
from herald.application.worker import DeliveryWorker
from herald.config import Settings
from herald.domain.enums import BillingEvent, Channel, RateLimitLevel
from herald.domain.exceptions import ValidationError
from herald.domain.services.retry_scheduler import SEEDED_RETRY_POLICIES, RetryPolicyTable
from herald.domain.value_objects import (
    DEFAULT_CHANNEL_COSTS,
    BudgetConfig,
    ChannelCost,
    RateLimitRule,
    RetryPolicy,
)
from herald.ports.outbound import (
    AtomicStore,
    AuditLog,
    CostLedger,
    DeliveryQueue,
    NotificationGateway,
    NotificationRepository,
    TemplateRenderer,
)
from herald.shared.providers import (
    CircuitBreaker,
    FailoverDispatcher,
    ProviderConfig,
    ProviderHandle,
    ProviderRouter,
)

logger = structlog.get_logger(__name__)

ProviderRoutes = Mapping[Channel, Sequence[tuple[ProviderConfig, NotificationGateway]]]


# ═══════════════════════════════════════════════════════════════
#  Table parsing
# ═══════════════════════════════════════════════════════════════
def _parse(kind: str, build: Callable[[dict[str, Any]], Any], rows: Sequence[dict[str, Any]]) -> list[Any]:
    parsed = []
    for row in rows:
        try:
            parsed.append(build(dict(row)))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid {kind} entry {row!r}: {exc}") from exc
    return parsed


def rate_limit_rules(settings: Settings) -> list[RateLimitRule]:
    return _parse(
        "rate limit rule",
        lambda row: RateLimitRule(**{**row, "level": RateLimitLevel(row["level"])}),
        settings.rate_limit_rules,
    )


def rate_limit_defaults(settings: Settings) -> dict[RateLimitLevel, RateLimitRule]:
    return {
        level: RateLimitRule(
            level,
            max_requests=getattr(settings, f"rate_limit_{level.value}_max"),
            window_seconds=getattr(settings, f"rate_limit_{level.value}_window_seconds"),
            burst=getattr(settings, f"rate_limit_{level.value}_burst"),
        )
        for level in RateLimitLevel
    }


def budget_configs(settings: Settings) -> list[BudgetConfig]:
    return _parse("budget", lambda row: BudgetConfig(**row), settings.budgets)


def channel_costs(settings: Settings) -> list[ChannelCost]:
    costs = {c.channel: c for c in DEFAULT_CHANNEL_COSTS}
    overrides = _parse(
        "channel cost",
        lambda row: ChannelCost(
            channel=Channel(row["channel"]),
            unit_cost_micros=int(row["unit_cost_micros"]),
            billable_on=BillingEvent(row.get("billable_on", BillingEvent.SEND.value)),
        ),
        settings.channel_costs,
    )
    costs.update({c.channel: c for c in overrides})
    return list(costs.values())


def retry_policy_table(settings: Settings) -> RetryPolicyTable:
    default = RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        base_delay_seconds=settings.retry_base_delay_seconds,
        backoff_factor=settings.retry_backoff_factor,
        max_backoff_seconds=settings.retry_max_backoff_seconds,
        jitter_seconds=settings.retry_jitter_seconds,
        attempt_timeout_seconds=settings.retry_attempt_timeout_seconds,
    )
    seeded = list(SEEDED_RETRY_POLICIES) if settings.seed_retry_policies else []
    configured = _parse("retry policy", lambda row: RetryPolicy(**row), settings.retry_policies)
    # Configured entries replace seeded ones for the same (service, channel)
    keys = {(p.service_origin, p.channel) for p in configured}
    policies = [p for p in seeded if (p.service_origin, p.channel) not in keys] + configured
    return RetryPolicyTable(policies, default=default)


# ═══════════════════════════════════════════════════════════════
#  Gateways
# ═══════════════════════════════════════════════════════════════
def build_provider_routes(settings: Settings, store: AtomicStore) -> dict[Channel, list[tuple[ProviderConfig, NotificationGateway]]]:
    """Live gateways where credentials exist; simulated stand-ins elsewhere outside production."""
    timeout = settings.gateway_timeout_seconds
    callback = f"{settings.webhook_base_url.rstrip('/')}/api/v1/webhooks/twilio" if settings.webhook_base_url else None

    live: dict[str, Callable[[], NotificationGateway] | None] = {
        "twilio": (
            lambda: TwilioGateway(
                settings.twilio_account_sid,
                settings.twilio_auth_token,
                settings.twilio_from_number,
                status_callback_url=callback,
                timeout=timeout,
            )
        )
        if settings.twilio_account_sid and settings.twilio_auth_token
        else None,
        "vonage": (
            lambda: VonageGateway(
                settings.vonage_api_key,
                settings.vonage_api_secret,
                settings.vonage_from_number,
                timeout=timeout,
            )
        )
        if settings.vonage_api_key and settings.vonage_api_secret
        else None,
        "sendgrid": (
            lambda: SendGridGateway(settings.sendgrid_api_key, settings.sendgrid_from_email, timeout=timeout)
        )
        if settings.sendgrid_api_key
        else None,
        "mailgun": (
            lambda: MailgunGateway(
                settings.mailgun_api_key,
                settings.mailgun_domain,
                settings.mailgun_from_email,
                timeout=timeout,
            )
        )
        if settings.mailgun_api_key and settings.mailgun_domain
        else None,
        "fcm": (lambda: FcmGateway(settings.fcm_project_id, settings.fcm_access_token, timeout=timeout))
        if settings.fcm_project_id and settings.fcm_access_token
        else None,
    }
    catalog: list[tuple[Channel, str, int]] = [
        (Channel.SMS, "twilio", 10),
        (Channel.SMS, "vonage", 20),
        (Channel.EMAIL, "sendgrid", 10),
        (Channel.EMAIL, "mailgun", 20),
        (Channel.PUSH, "fcm", 10),
    ]

    routes: dict[Channel, list[tuple[ProviderConfig, NotificationGateway]]] = {}
    for channel, provider_id, priority in catalog:
        factory = live[provider_id]
        if factory is not None:
            gateway, confirms = factory(), True
        elif settings.simulate_missing_gateways:
            gateway, confirms = SimulatedGateway(provider_id), False
        else:
            logger.warning("gateway_not_configured", provider=provider_id, channel=channel.value)
            continue
        config = ProviderConfig(
            provider_id=provider_id,
            channel=channel,
            priority=priority,
            timeout_s=timeout,
            cb_failure_threshold=settings.circuit_breaker_failure_threshold,
            cb_break_s=settings.circuit_breaker_break_seconds,
            confirms_delivery=confirms,
        )
        routes.setdefault(channel, []).append((config, gateway))

    routes[Channel.IN_APP] = [
        (
            ProviderConfig(
                provider_id="inapp",
                channel=Channel.IN_APP,
                timeout_s=timeout,
                cb_failure_threshold=settings.circuit_breaker_failure_threshold,
                cb_break_s=settings.circuit_breaker_break_seconds,
            ),
            InAppGateway(store),
        )
    ]
    return routes


# ═══════════════════════════════════════════════════════════════
#  Container
# ═══════════════════════════════════════════════════════════════
@dataclass
class Container:
    settings: Settings
    store: AtomicStore
    queue: DeliveryQueue
    event_bus: InProcessEventBus
    repository: NotificationRepository
    cost_ledger: CostLedger
    audit_log: AuditLog
    renderer: TemplateRenderer
    rate_limiter: RateLimiter
    budget: BudgetEnforcer
    router: ProviderRouter
    dispatcher: FailoverDispatcher
    retry_policies: RetryPolicyTable
    orchestrator: DeliveryOrchestrator
    webhooks: WebhookIngest
    worker: DeliveryWorker
    engine: AsyncEngine | None = None
    gateways: list[NotificationGateway] = field(default_factory=list)

    # ── Query handlers ───────────────────────────────────────
    @property
    def notification_query(self) -> GetNotificationHandler:
        return GetNotificationHandler(self.repository)

    @property
    def provider_status_query(self) -> GetProviderStatusHandler:
        return GetProviderStatusHandler(self.router)

    @property
    def budget_query(self) -> GetBudgetUtilizationHandler:
        return GetBudgetUtilizationHandler(self.budget)

    @property
    def rate_limit_query(self) -> GetRateLimitStatusHandler:
        return GetRateLimitStatusHandler(self.rate_limiter)

    @property
    def audit_query(self) -> GetAuditTrailHandler:
        return GetAuditTrailHandler(self.audit_log)

    def wire_consumers(self) -> None:
        forwarder = EnvelopeForwarder(self.store, source=self.settings.app_name, channel=self.settings.events_channel)
        self.event_bus.subscribe(ALL_EVENTS, forwarder.handle)

    async def startup(self) -> None:
        if self.engine is not None:
            await init_models(self.engine)
        if self.settings.worker_enabled:
            await self.worker.start()

    async def shutdown(self) -> None:
        await self.worker.stop()
        for gateway in self.gateways:
            try:
                await gateway.close()
            except Exception as exc:
                logger.warning("gateway_close_failed", error=str(exc))
        await self.store.close()
        if self.engine is not None:
            await self.engine.dispose()


def build_container(
    settings: Settings,
    *,
    clock: Callable[[], float] = time.time,
    providers: ProviderRoutes | None = None,
    renderer: TemplateRenderer | None = None,
    rng: random.Random | None = None,
) -> Container:
    """Assemble every adapter and service for ``settings``.

    ``providers`` replaces the gateway catalog built from credentials.
    """
    event_bus = InProcessEventBus()

    store: AtomicStore
    queue: DeliveryQueue
    if settings.state_backend == "redis":
        redis_store = RedisAtomicStore(
            settings.redis_url,
            settings.redis_max_connections,
            key_prefix=settings.redis_key_prefix,
        )
        store = redis_store
        queue = RedisDeliveryQueue(redis_store.client, key_prefix=f"{settings.redis_key_prefix}queue")
    else:
        store = InMemoryAtomicStore(clock)
        queue = InMemoryDeliveryQueue()

    engine: AsyncEngine | None = None
    repository: NotificationRepository
    cost_ledger: CostLedger
    audit_log: AuditLog
    if settings.persistence_backend == "sql":
        engine = create_engine(settings)
        session_factory = create_session_factory(engine)
        repository = SQLAlchemyNotificationRepository(session_factory)
        cost_ledger = SQLAlchemyCostLedger(session_factory)
        audit_log = SQLAlchemyAuditLog(session_factory)
    else:
        repository = InMemoryNotificationRepository()
        cost_ledger = InMemoryCostLedger()
        audit_log = InMemoryAuditLog()

    rate_limiter = RateLimiter(
        store,
        rules=rate_limit_rules(settings),
        defaults=rate_limit_defaults(settings),
        elevated_scope=settings.elevated_scope,
        event_bus=event_bus,
        clock=clock,
    )
    budget = BudgetEnforcer(
        cost_ledger,
        store,
        budgets=budget_configs(settings),
        costs=channel_costs(settings),
        event_bus=event_bus,
        clock=clock,
    )

    route_specs = providers if providers is not None else build_provider_routes(settings, store)
    routes: dict[Channel, list[ProviderHandle]] = {}
    gateways: list[NotificationGateway] = []
    for channel, entries in route_specs.items():
        for config, gateway in entries:
            breaker = CircuitBreaker(
                channel.value,
                config.provider_id,
                store,
                failure_threshold=config.cb_failure_threshold,
                break_seconds=config.cb_break_s,
                clock=clock,
                event_bus=event_bus,
            )
            routes.setdefault(channel, []).append(ProviderHandle(config, gateway, breaker))
            gateways.append(gateway)
    router = ProviderRouter(routes)
    dispatcher = FailoverDispatcher(router, clock=clock)
    retry_policies = retry_policy_table(settings)
    template_renderer = renderer or DictTemplateRenderer()

    orchestrator = DeliveryOrchestrator(
        repository=repository,
        queue=queue,
        rate_limiter=rate_limiter,
        budget=budget,
        dispatcher=dispatcher,
        retry_policies=retry_policies,
        renderer=template_renderer,
        event_bus=event_bus,
        audit_log=audit_log,
        callback_store=store,
        sync_timeout_s=settings.sync_timeout_seconds,
        batch_max_items=settings.batch_max_items,
        batch_concurrency=settings.batch_concurrency,
        stall_grace_s=settings.stall_grace_seconds,
        parked_callback_ttl_s=settings.parked_callback_ttl_seconds,
        clock=clock,
        rng=rng,
    )
    worker = DeliveryWorker(
        orchestrator,
        queue,
        concurrency=settings.worker_concurrency,
        poll_interval=settings.worker_poll_interval_seconds,
        claim_batch=settings.worker_claim_batch,
        sweep_interval=settings.worker_sweep_interval_seconds,
        clock=clock,
    )

    container = Container(
        settings=settings,
        store=store,
        queue=queue,
        event_bus=event_bus,
        repository=repository,
        cost_ledger=cost_ledger,
        audit_log=audit_log,
        renderer=template_renderer,
        rate_limiter=rate_limiter,
        budget=budget,
        router=router,
        dispatcher=dispatcher,
        retry_policies=retry_policies,
        orchestrator=orchestrator,
        webhooks=WebhookIngest(settings.webhook_secrets, orchestrator.reconcile),
        worker=worker,
        engine=engine,
        gateways=gateways,
    )
    container.wire_consumers()
    logger.info(
        "container_built",
        state_backend=settings.state_backend,
        persistence_backend=settings.persistence_backend,
        providers={c.value: [h.provider_id for h in hs] for c, hs in routes.items()},
    )
    return container


# ═══════════════════════════════════════════════════════════════
#  FastAPI dependencies
# ═══════════════════════════════════════════════════════════════
def get_container(request: Request) -> Container:
    return request.app.state.container


def get_orchestrator(container: Container = Depends(get_container)) -> DeliveryOrchestrator:
    return container.orchestrator


@dataclass(frozen=True)
class CallerScope:
    tenant_id: str
    service_origin: str


async def get_caller(
    x_tenant_id: str = Header(..., alias="X-Tenant-ID", min_length=1),
    x_service_origin: str = Header(..., alias="X-Service-Origin", min_length=1),
) -> CallerScope:
    """Tenant and service origin, asserted by the authenticating edge."""
    return CallerScope(x_tenant_id, x_service_origin)
