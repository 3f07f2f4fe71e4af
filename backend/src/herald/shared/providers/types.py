"""Core types for the provider resilience framework."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from herald.domain.enums import Channel, CircuitState

if TYPE_CHECKING:
    from herald.ports.outbound import NotificationGateway
    from herald.shared.providers.circuit_breaker import CircuitBreaker


@dataclass(frozen=True)
class ProviderConfig:
    """Static configuration for a single gateway on a single channel.

    Attributes:
        provider_id:  Unique identifier (e.g. "twilio", "sendgrid").
        channel:      Channel served by this gateway.
        priority:     Lower = tried earlier in the failover chain.
        timeout_s:    Upper bound for one call to this gateway.
        cb_failure_threshold: Consecutive failures before the circuit opens.
        cb_break_s:   Seconds an open circuit waits before a half-open probe.
        confirms_delivery: Gateway reports delivery via webhook; when False an
                      accepted send is already final.
        metadata:     Arbitrary extra config (sender id, base URL, etc.).
    """

    provider_id: str
    channel: Channel
    priority: int = 10
    timeout_s: float = 10.0
    cb_failure_threshold: int = 5
    cb_break_s: float = 60.0
    confirms_delivery: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderHandle:
    """A configured gateway together with its breaker."""

    config: ProviderConfig
    gateway: NotificationGateway
    breaker: CircuitBreaker

    @property
    def provider_id(self) -> str:
        return self.config.provider_id

    @property
    def channel(self) -> Channel:
        return self.config.channel


@dataclass(frozen=True)
class CircuitSnapshot:
    """Read-only view of a breaker's shared state."""

    channel: str
    provider_id: str
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    opened_at: float | None = None
    probe_started_at: float | None = None
    retry_after_s: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "provider": self.provider_id,
            "state": self.state.value,
            "failures": self.failures,
            "opened_at": self.opened_at,
            "probe_started_at": self.probe_started_at,
            "retry_after_s": round(self.retry_after_s, 3),
        }
