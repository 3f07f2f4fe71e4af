"""Concrete repository implementations using SQLAlchemy.

These adapters implement the outbound port interfaces, translating between
domain entities and ORM models.  Each operation runs in its own short
transaction opened from the session factory, so one repository instance is
safe to share between request handlers and the delivery worker.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from herald.domain.entities import AuditRecord, CostRecord, Notification, ProviderAttempt
from herald.domain.enums import (
    AttemptOutcome,
    Channel,
    DeliveryStatus,
    NotificationStatus,
    Priority,
)
from herald.domain.exceptions import ConcurrencyConflictError
from herald.ports.outbound import AuditLog, CostLedger, NotificationRepository

from .models import (
    AuditRecordModel,
    CostRecordModel,
    NotificationModel,
    ProviderAttemptModel,
)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Converters ───────────────────────────────────────────────
def _notification_values(n: Notification) -> dict:
    return dict(
        tenant_id=n.tenant_id,
        user_id=n.user_id,
        service_origin=n.service_origin,
        channel=n.channel.value,
        priority=n.priority.value,
        status=n.status.value,
        recipient=n.recipient,
        subject=n.subject,
        body=n.body,
        locale=n.locale,
        template_key=n.template_key,
        scheduled_for=n.scheduled_for,
        attempt_count=n.attempt_count,
        extra_attempts=n.extra_attempts,
        correlation_id=n.correlation_id,
        idempotency_key=n.idempotency_key,
        admitted=n.admitted,
        cancel_requested=n.cancel_requested,
        forced_provider=n.forced_provider,
        next_attempt_at=n.next_attempt_at,
        error_code=n.error_code,
        error_message=n.error_message,
        meta=dict(n.metadata),
        created_at=n.created_at,
        updated_at=n.updated_at,
        sent_at=n.sent_at,
        delivered_at=n.delivered_at,
    )


def _attempt_to_model(notification_id: str, position: int, a: ProviderAttempt) -> ProviderAttemptModel:
    return ProviderAttemptModel(
        id=a.id,
        notification_id=notification_id,
        position=position,
        provider=a.provider,
        attempt_number=a.attempt_number,
        outcome=a.outcome.value,
        provider_message_id=a.provider_message_id,
        delivery_status=a.delivery_status.value if a.delivery_status else None,
        error_code=a.error_code,
        error_message=a.error_message,
        created_at=a.created_at,
        updated_at=a.updated_at,
    )


def _model_to_attempt(m: ProviderAttemptModel) -> ProviderAttempt:
    return ProviderAttempt(
        id=m.id,
        provider=m.provider,
        attempt_number=m.attempt_number,
        outcome=AttemptOutcome(m.outcome),
        provider_message_id=m.provider_message_id,
        delivery_status=DeliveryStatus(m.delivery_status) if m.delivery_status else None,
        error_code=m.error_code,
        error_message=m.error_message,
        created_at=_aware(m.created_at),
        updated_at=_aware(m.updated_at),
    )


def _model_to_notification(m: NotificationModel, attempts: list[ProviderAttemptModel]) -> Notification:
    return Notification(
        id=m.id,
        tenant_id=m.tenant_id,
        user_id=m.user_id,
        service_origin=m.service_origin,
        channel=Channel(m.channel),
        recipient=m.recipient,
        priority=Priority(m.priority),
        status=NotificationStatus(m.status),
        subject=m.subject,
        body=m.body,
        locale=m.locale,
        template_key=m.template_key,
        scheduled_for=_aware(m.scheduled_for),
        attempts=[_model_to_attempt(a) for a in attempts],
        attempt_count=m.attempt_count,
        extra_attempts=m.extra_attempts,
        correlation_id=m.correlation_id,
        idempotency_key=m.idempotency_key,
        admitted=m.admitted,
        cancel_requested=m.cancel_requested,
        forced_provider=m.forced_provider,
        next_attempt_at=_aware(m.next_attempt_at),
        error_code=m.error_code,
        error_message=m.error_message,
        metadata=dict(m.meta or {}),
        version=m.version,
        created_at=_aware(m.created_at),
        updated_at=_aware(m.updated_at),
        sent_at=_aware(m.sent_at),
        delivered_at=_aware(m.delivered_at),
    )


# ═══════════════════════════════════════════════════════════════
#  SQLAlchemy Notification Repository
# ═══════════════════════════════════════════════════════════════
class SQLAlchemyNotificationRepository(NotificationRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, notification: Notification) -> None:
        async with self._session_factory() as session, session.begin():
            session.add(
                NotificationModel(
                    id=notification.id,
                    version=notification.version,
                    **_notification_values(notification),
                )
            )
            for position, attempt in enumerate(notification.attempts):
                session.add(_attempt_to_model(notification.id, position, attempt))

    async def get(self, notification_id: str) -> Notification | None:
        async with self._session_factory() as session:
            model = await session.get(NotificationModel, notification_id)
            if model is None:
                return None
            return await self._hydrate(session, model)

    async def save(self, notification: Notification) -> None:
        async with self._session_factory() as session, session.begin():
            stmt = (
                update(NotificationModel)
                .where(
                    NotificationModel.id == notification.id,
                    NotificationModel.version == notification.version,
                )
                .values(version=notification.version + 1, **_notification_values(notification))
            )
            result = await session.execute(stmt)
            if result.rowcount == 0:
                raise ConcurrencyConflictError(notification.id, notification.version)
            for position, attempt in enumerate(notification.attempts):
                await session.merge(_attempt_to_model(notification.id, position, attempt))
        notification.version += 1

    async def get_by_provider_message_id(self, provider_message_id: str) -> Notification | None:
        async with self._session_factory() as session:
            stmt = (
                select(NotificationModel)
                .join(ProviderAttemptModel, ProviderAttemptModel.notification_id == NotificationModel.id)
                .where(ProviderAttemptModel.provider_message_id == provider_message_id)
                .limit(1)
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return await self._hydrate(session, model) if model else None

    async def get_by_idempotency_key(self, tenant_id: str, idempotency_key: str) -> Notification | None:
        async with self._session_factory() as session:
            stmt = select(NotificationModel).where(
                NotificationModel.tenant_id == tenant_id,
                NotificationModel.idempotency_key == idempotency_key,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            return await self._hydrate(session, model) if model else None

    async def list_stalled(self, updated_before: datetime, limit: int = 100) -> list[Notification]:
        async with self._session_factory() as session:
            stmt = (
                select(NotificationModel)
                .where(
                    NotificationModel.status == NotificationStatus.SENDING.value,
                    NotificationModel.updated_at < updated_before,
                )
                .order_by(NotificationModel.updated_at)
                .limit(limit)
            )
            models = list((await session.execute(stmt)).scalars())
            return [await self._hydrate(session, model) for model in models]

    @staticmethod
    async def _hydrate(session: AsyncSession, model: NotificationModel) -> Notification:
        stmt = (
            select(ProviderAttemptModel)
            .where(ProviderAttemptModel.notification_id == model.id)
            .order_by(ProviderAttemptModel.position)
        )
        attempts = list((await session.execute(stmt)).scalars())
        return _model_to_notification(model, attempts)


# ═══════════════════════════════════════════════════════════════
#  SQLAlchemy Cost Ledger
# ═══════════════════════════════════════════════════════════════
class SQLAlchemyCostLedger(CostLedger):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, record: CostRecord) -> None:
        async with self._session_factory() as session, session.begin():
            session.add(
                CostRecordModel(
                    id=record.id,
                    tenant_id=record.tenant_id,
                    service_origin=record.service_origin,
                    channel=record.channel.value,
                    provider=record.provider,
                    notification_id=record.notification_id,
                    unit_cost_micros=record.unit_cost_micros,
                    units=record.units,
                    total_micros=record.total_micros,
                    occurred_at=record.occurred_at,
                )
            )

    async def total_since(self, tenant_id: str, service_origin: str | None, since: datetime) -> int:
        stmt = select(func.coalesce(func.sum(CostRecordModel.total_micros), 0)).where(
            CostRecordModel.tenant_id == tenant_id,
            CostRecordModel.occurred_at >= since,
        )
        if service_origin is not None:
            stmt = stmt.where(CostRecordModel.service_origin == service_origin)
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())


# ═══════════════════════════════════════════════════════════════
#  SQLAlchemy Audit Log
# ═══════════════════════════════════════════════════════════════
class SQLAlchemyAuditLog(AuditLog):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, record: AuditRecord) -> None:
        async with self._session_factory() as session, session.begin():
            session.add(
                AuditRecordModel(
                    id=record.id,
                    actor=record.actor,
                    action=record.action,
                    target_id=record.target_id,
                    reason=record.reason,
                    details=dict(record.details),
                    occurred_at=record.occurred_at,
                )
            )

    async def list_for(self, target_id: str) -> list[AuditRecord]:
        stmt = (
            select(AuditRecordModel)
            .where(AuditRecordModel.target_id == target_id)
            .order_by(AuditRecordModel.occurred_at)
        )
        async with self._session_factory() as session:
            return [
                AuditRecord(
                    id=r.id,
                    actor=r.actor,
                    action=r.action,
                    target_id=r.target_id,
                    reason=r.reason,
                    details=dict(r.details or {}),
                    occurred_at=_aware(r.occurred_at),
                )
                for r in (await session.execute(stmt)).scalars()
            ]
