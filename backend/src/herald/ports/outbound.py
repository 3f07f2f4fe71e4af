"""Outbound ports — interfaces that infrastructure adapters must implement.

These are the *driven* ports in hexagonal architecture.  The domain and
application layers depend only on these abstractions, never on concrete
implementations (Redis, database drivers, HTTP clients, etc.).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, TypeVar

from herald.domain.entities import AuditRecord, CostRecord, Notification
from herald.domain.events import DomainEvent

R = TypeVar("R")

# fn(current) -> (new value or None to delete, result handed back to the caller)
UpdateFn = Callable[[Any], "tuple[Any, R]"]


# ═══════════════════════════════════════════════════════════════
#  Shared atomic store
# ═══════════════════════════════════════════════════════════════
class AtomicStore(ABC):
    """Key-value store shared by every instance, with atomic read-modify-write.

    Values are JSON-compatible structures.  ``compare_and_update`` applies a
    pure function to the current value as one indivisible operation; the
    function may be invoked more than once when a concurrent writer wins.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None: ...

    @abstractmethod
    async def compare_and_update(
        self,
        key: str,
        fn: UpdateFn[R],
        *,
        ttl_seconds: float | None = None,
    ) -> R: ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    @abstractmethod
    async def publish(self, channel: str, message: str) -> None: ...

    @abstractmethod
    async def health_check(self) -> bool: ...

    @abstractmethod
    async def close(self) -> None: ...


# ═══════════════════════════════════════════════════════════════
#  Delivery queue
# ═══════════════════════════════════════════════════════════════
class DeliveryQueue(ABC):
    """Time-ordered queue of notification ids awaiting an attempt."""

    @abstractmethod
    async def enqueue(self, notification_id: str, eligible_at: float, priority: int = 1) -> None:
        """Schedule (or reschedule) ``notification_id`` at epoch ``eligible_at``."""
        ...

    @abstractmethod
    async def claim_due(self, now: float, limit: int = 10) -> list[str]:
        """Atomically remove and return up to ``limit`` due ids."""
        ...

    @abstractmethod
    async def remove(self, notification_id: str) -> bool: ...

    @abstractmethod
    async def size(self) -> int: ...


# ═══════════════════════════════════════════════════════════════
#  Repository ports
# ═══════════════════════════════════════════════════════════════
class NotificationRepository(ABC):
    """Persistence for notifications and their provider attempts."""

    @abstractmethod
    async def add(self, notification: Notification) -> None: ...

    @abstractmethod
    async def get(self, notification_id: str) -> Notification | None: ...

    @abstractmethod
    async def save(self, notification: Notification) -> None:
        """Persist if the stored version equals ``notification.version``.

        Bumps the version on success; raises ``ConcurrencyConflictError``
        otherwise.
        """
        ...

    @abstractmethod
    async def get_by_provider_message_id(self, provider_message_id: str) -> Notification | None: ...

    @abstractmethod
    async def get_by_idempotency_key(self, tenant_id: str, idempotency_key: str) -> Notification | None: ...

    @abstractmethod
    async def list_stalled(self, updated_before: datetime, limit: int = 100) -> list[Notification]:
        """Notifications still `sending` whose last change is older than ``updated_before``."""
        ...


class CostLedger(ABC):
    """Append-only cost records."""

    @abstractmethod
    async def append(self, record: CostRecord) -> None: ...

    @abstractmethod
    async def total_since(self, tenant_id: str, service_origin: str | None, since: datetime) -> int:
        """Sum of ``total_micros`` for the scope since ``since``."""
        ...


class AuditLog(ABC):
    @abstractmethod
    async def append(self, record: AuditRecord) -> None: ...

    @abstractmethod
    async def list_for(self, target_id: str) -> list[AuditRecord]: ...


# ═══════════════════════════════════════════════════════════════
#  Gateway port
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class GatewayResult:
    success: bool
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def accepted(cls, provider_message_id: str) -> GatewayResult:
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def rejected(cls, error_code: str, error_message: str | None = None) -> GatewayResult:
        return cls(success=False, error_code=error_code, error_message=error_message)


class NotificationGateway(ABC):
    """Capability interface implemented once per third-party provider."""

    @abstractmethod
    async def send(self, notification: Notification) -> GatewayResult: ...

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════
#  Template port
# ═══════════════════════════════════════════════════════════════
class TemplateRenderer(ABC):
    @abstractmethod
    async def render(
        self, key: str, variables: Mapping[str, Any], locale: str = "en"
    ) -> tuple[str | None, str]:
        """Return ``(subject, body)``; raise ``TemplateRenderError`` on failure."""
        ...


# ═══════════════════════════════════════════════════════════════
#  Event bus port
# ═══════════════════════════════════════════════════════════════
class EventBusPort(ABC):
    """Publish/subscribe for domain events."""

    @abstractmethod
    async def publish(self, event: DomainEvent) -> None: ...

    @abstractmethod
    def subscribe(
        self,
        event_type: str,
        handler: Any,
    ) -> None: ...
