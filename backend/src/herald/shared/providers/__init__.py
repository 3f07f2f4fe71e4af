"""Provider resilience framework.

Provides per-channel failover, shared circuit breaking, and single-attempt
dispatch across notification gateways.
"""

from herald.shared.providers.types import (
    CircuitSnapshot,
    ProviderConfig,
    ProviderHandle,
)
from herald.shared.providers.circuit_breaker import CircuitBreaker
from herald.shared.providers.router import ProviderRouter
from herald.shared.providers.failover import DispatchResult, FailoverDispatcher

__all__ = [
    "CircuitBreaker",
    "CircuitSnapshot",
    "DispatchResult",
    "FailoverDispatcher",
    "ProviderConfig",
    "ProviderHandle",
    "ProviderRouter",
]
