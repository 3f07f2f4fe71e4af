"""Tests for the SQLAlchemy and in-memory repositories."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from herald.adapters.outbound.persistence.database import (
    create_engine,
    create_session_factory,
    init_models,
)
from herald.adapters.outbound.persistence.memory import InMemoryNotificationRepository
from herald.adapters.outbound.persistence.repositories import (
    SQLAlchemyAuditLog,
    SQLAlchemyCostLedger,
    SQLAlchemyNotificationRepository,
)
from herald.config import get_settings
from herald.domain.entities import AuditRecord, CostRecord, Notification
from herald.domain.enums import AttemptOutcome, Channel, DeliveryStatus, NotificationStatus
from herald.domain.exceptions import ConcurrencyConflictError

JAN = datetime(2026, 1, 15, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine(get_settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/herald.db"))
    await init_models(engine)
    yield create_session_factory(engine)
    await engine.dispose()


def _notification(**kwargs) -> Notification:
    values = dict(
        tenant_id="acme",
        user_id="u-1",
        service_origin="auth",
        channel=Channel.SMS,
        recipient="+15550001111",
        body="Your code is 123456",
        metadata={"campaign": "login"},
    )
    values.update(kwargs)
    return Notification(**values)


# ═══════════════════════════════════════════════════════════════
#  Notifications
# ═══════════════════════════════════════════════════════════════
class TestSQLAlchemyNotificationRepository:
    @pytest.mark.asyncio
    async def test_add_then_get(self, session_factory) -> None:
        repo = SQLAlchemyNotificationRepository(session_factory)
        notification = _notification(scheduled_for=JAN)
        await repo.add(notification)

        loaded = await repo.get(notification.id)
        assert loaded.status == NotificationStatus.QUEUED
        assert loaded.metadata == {"campaign": "login"}
        assert loaded.scheduled_for == JAN
        assert await repo.get("missing") is None

    @pytest.mark.asyncio
    async def test_save_bumps_version_and_keeps_attempts(self, session_factory) -> None:
        repo = SQLAlchemyNotificationRepository(session_factory)
        notification = _notification()
        await repo.add(notification)

        notification.start_sending()
        notification.record_attempt("twilio").fail("HTTP_500")
        notification.record_attempt("vonage").succeed("V-1")
        notification.mark_sent()
        await repo.save(notification)
        assert notification.version == 1

        loaded = await repo.get(notification.id)
        assert loaded.version == 1
        assert loaded.status == NotificationStatus.SENT
        assert [(a.provider, a.outcome) for a in loaded.attempts] == [
            ("twilio", AttemptOutcome.FAILED),
            ("vonage", AttemptOutcome.SUCCEEDED),
        ]

    @pytest.mark.asyncio
    async def test_stale_save_conflicts(self, session_factory) -> None:
        repo = SQLAlchemyNotificationRepository(session_factory)
        notification = _notification()
        await repo.add(notification)

        first = await repo.get(notification.id)
        second = await repo.get(notification.id)
        first.cancel("user opted out")
        await repo.save(first)

        second.start_sending()
        with pytest.raises(ConcurrencyConflictError):
            await repo.save(second)
        assert (await repo.get(notification.id)).status == NotificationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_lookup_by_provider_message_id(self, session_factory) -> None:
        repo = SQLAlchemyNotificationRepository(session_factory)
        notification = _notification()
        await repo.add(notification)
        notification.start_sending()
        attempt = notification.record_attempt("twilio")
        attempt.succeed("SM42")
        attempt.apply_delivery_status(DeliveryStatus.SENT)
        await repo.save(notification)

        found = await repo.get_by_provider_message_id("SM42")
        assert found.id == notification.id
        assert found.attempts[0].delivery_status == DeliveryStatus.SENT
        assert await repo.get_by_provider_message_id("SM0") is None

    @pytest.mark.asyncio
    async def test_lookup_by_idempotency_key_is_tenant_scoped(self, session_factory) -> None:
        repo = SQLAlchemyNotificationRepository(session_factory)
        notification = _notification(idempotency_key="otp-1")
        await repo.add(notification)

        assert (await repo.get_by_idempotency_key("acme", "otp-1")).id == notification.id
        assert await repo.get_by_idempotency_key("other", "otp-1") is None

    @pytest.mark.asyncio
    async def test_list_stalled_only_returns_old_sending_rows(self, session_factory) -> None:
        repo = SQLAlchemyNotificationRepository(session_factory)
        stalled, fresh, queued = _notification(), _notification(), _notification()
        for notification in (stalled, fresh, queued):
            await repo.add(notification)
        stalled.start_sending(JAN)
        stalled.record_attempt("twilio", at=JAN)
        fresh.start_sending(JAN + timedelta(minutes=5))
        await repo.save(stalled)
        await repo.save(fresh)

        found = await repo.list_stalled(JAN + timedelta(minutes=1))
        assert [n.id for n in found] == [stalled.id]
        assert found[0].attempts[0].outcome == AttemptOutcome.PENDING
        assert [n.id for n in await repo.list_stalled(JAN + timedelta(minutes=10), limit=1)] == [stalled.id]


# ═══════════════════════════════════════════════════════════════
#  Cost ledger & audit log
# ═══════════════════════════════════════════════════════════════
class TestSQLAlchemyCostLedger:
    @pytest.mark.asyncio
    async def test_sums_by_scope_and_period(self, session_factory) -> None:
        ledger = SQLAlchemyCostLedger(session_factory)
        await ledger.append(CostRecord("acme", "auth", Channel.SMS, 7_900, occurred_at=JAN))
        await ledger.append(CostRecord("acme", "orders", Channel.EMAIL, 95, units=2, occurred_at=JAN))
        await ledger.append(CostRecord("acme", "auth", Channel.SMS, 7_900, occurred_at=JAN - timedelta(days=30)))
        await ledger.append(CostRecord("globex", "auth", Channel.SMS, 7_900, occurred_at=JAN))

        month_start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert await ledger.total_since("acme", None, month_start) == 7_900 + 190
        assert await ledger.total_since("acme", "auth", month_start) == 7_900
        assert await ledger.total_since("initech", None, month_start) == 0


class TestSQLAlchemyAuditLog:
    @pytest.mark.asyncio
    async def test_lists_records_for_target(self, session_factory) -> None:
        log = SQLAlchemyAuditLog(session_factory)
        await log.append(
            AuditRecord("ops", "notification.admin_retry", "n-1", "carrier fixed", {"force_provider": None}, occurred_at=JAN)
        )
        await log.append(AuditRecord("ops", "provider.circuit_reset", "cb:sms:twilio", "probe ok", occurred_at=JAN))

        [record] = await log.list_for("n-1")
        assert record.action == "notification.admin_retry"
        assert record.details == {"force_provider": None}
        assert record.occurred_at == JAN


# ═══════════════════════════════════════════════════════════════
#  In-memory repository
# ═══════════════════════════════════════════════════════════════
class TestInMemoryNotificationRepository:
    @pytest.mark.asyncio
    async def test_returns_copies(self) -> None:
        repo = InMemoryNotificationRepository()
        notification = _notification()
        await repo.add(notification)

        loaded = await repo.get(notification.id)
        loaded.body = "changed"
        assert (await repo.get(notification.id)).body == "Your code is 123456"

    @pytest.mark.asyncio
    async def test_stale_save_conflicts(self) -> None:
        repo = InMemoryNotificationRepository()
        notification = _notification()
        await repo.add(notification)
        first = await repo.get(notification.id)
        second = await repo.get(notification.id)
        await repo.save(first)
        with pytest.raises(ConcurrencyConflictError):
            await repo.save(second)

    @pytest.mark.asyncio
    async def test_list_stalled_oldest_first(self) -> None:
        repo = InMemoryNotificationRepository()
        older, newer, sent = _notification(), _notification(), _notification()
        for notification in (older, newer, sent):
            await repo.add(notification)
        newer.start_sending(JAN + timedelta(seconds=30))
        older.start_sending(JAN)
        sent.start_sending(JAN)
        sent.mark_sent(JAN)
        for notification in (older, newer, sent):
            await repo.save(notification)

        found = await repo.list_stalled(JAN + timedelta(minutes=1))
        assert [n.id for n in found] == [older.id, newer.id]
        assert [n.id for n in await repo.list_stalled(JAN + timedelta(seconds=10))] == [older.id]
