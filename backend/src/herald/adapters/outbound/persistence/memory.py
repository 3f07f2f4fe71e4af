"""In-memory repository implementations.

Used by the test suite and by single-process deployments that run without a
database.  Entities are deep-copied on the way in and out so callers never
share mutable state with the store, mirroring what a real database gives.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime

from herald.domain.entities import AuditRecord, CostRecord, Notification
from herald.domain.enums import NotificationStatus
from herald.domain.exceptions import ConcurrencyConflictError, ValidationError
from herald.ports.outbound import AuditLog, CostLedger, NotificationRepository


class InMemoryNotificationRepository(NotificationRepository):
    def __init__(self) -> None:
        self._items: dict[str, Notification] = {}
        self._lock = asyncio.Lock()

    async def add(self, notification: Notification) -> None:
        async with self._lock:
            if notification.id in self._items:
                raise ValidationError(f"Notification {notification.id!r} already exists")
            if notification.idempotency_key and self._find_idempotent(
                notification.tenant_id, notification.idempotency_key
            ):
                raise ValidationError(
                    f"Idempotency key {notification.idempotency_key!r} already used"
                )
            self._items[notification.id] = copy.deepcopy(notification)

    async def get(self, notification_id: str) -> Notification | None:
        stored = self._items.get(notification_id)
        return copy.deepcopy(stored) if stored else None

    async def save(self, notification: Notification) -> None:
        async with self._lock:
            stored = self._items.get(notification.id)
            if stored is None or stored.version != notification.version:
                raise ConcurrencyConflictError(notification.id, notification.version)
            notification.version += 1
            self._items[notification.id] = copy.deepcopy(notification)

    async def get_by_provider_message_id(self, provider_message_id: str) -> Notification | None:
        for stored in self._items.values():
            if stored.find_attempt(provider_message_id) is not None:
                return copy.deepcopy(stored)
        return None

    async def get_by_idempotency_key(self, tenant_id: str, idempotency_key: str) -> Notification | None:
        stored = self._find_idempotent(tenant_id, idempotency_key)
        return copy.deepcopy(stored) if stored else None

    async def list_stalled(self, updated_before: datetime, limit: int = 100) -> list[Notification]:
        stalled = [
            n for n in self._items.values()
            if n.status == NotificationStatus.SENDING and n.updated_at < updated_before
        ]
        stalled.sort(key=lambda n: n.updated_at)
        return [copy.deepcopy(n) for n in stalled[:limit]]

    def _find_idempotent(self, tenant_id: str, idempotency_key: str) -> Notification | None:
        for stored in self._items.values():
            if stored.tenant_id == tenant_id and stored.idempotency_key == idempotency_key:
                return stored
        return None

    def __len__(self) -> int:
        return len(self._items)


class InMemoryCostLedger(CostLedger):
    def __init__(self) -> None:
        self.records: list[CostRecord] = []

    async def append(self, record: CostRecord) -> None:
        self.records.append(record)

    async def total_since(self, tenant_id: str, service_origin: str | None, since: datetime) -> int:
        return sum(
            r.total_micros
            for r in self.records
            if r.tenant_id == tenant_id
            and (service_origin is None or r.service_origin == service_origin)
            and r.occurred_at >= since
        )


class InMemoryAuditLog(AuditLog):
    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    async def append(self, record: AuditRecord) -> None:
        self.records.append(record)

    async def list_for(self, target_id: str) -> list[AuditRecord]:
        return [r for r in self.records if r.target_id == target_id]
