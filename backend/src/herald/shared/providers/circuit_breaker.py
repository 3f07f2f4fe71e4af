"""Circuit breaker — prevents cascading failures by isolating unhealthy providers.

State machine:
    CLOSED  → (N consecutive failures) → OPEN
    OPEN    → (break duration expires) → HALF_OPEN   (one probe claimed)
    HALF_OPEN → (probe succeeds)       → CLOSED
    HALF_OPEN → (probe fails)          → OPEN

State lives in the shared atomic store so every instance serving a channel
sees the same breaker.  An absent key means CLOSED with no failures.
"""

from __future__ import annotations

import time
from typing import Any, Callable

import structlog

from herald.domain.enums import CircuitState
from herald.domain.events import CircuitStateChanged
from herald.ports.outbound import AtomicStore, EventBusPort
from herald.shared.observability.metrics import CIRCUIT_TRANSITIONS
from herald.shared.providers.types import CircuitSnapshot

logger = structlog.get_logger(__name__)

_Transition = tuple[CircuitState, CircuitState, int] | None


def _closed() -> dict[str, Any]:
    return {
        "state": CircuitState.CLOSED.value,
        "failures": 0,
        "opened_at": None,
        "probe_started_at": None,
    }


class CircuitBreaker:
    """Per-(channel, provider) breaker with a single half-open probe."""

    def __init__(
        self,
        channel: str,
        provider_id: str,
        store: AtomicStore,
        *,
        failure_threshold: int = 5,
        break_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
        event_bus: EventBusPort | None = None,
    ) -> None:
        self._channel = channel
        self._provider_id = provider_id
        self._store = store
        self._failure_threshold = failure_threshold
        self._break = break_seconds
        self._clock = clock
        self._event_bus = event_bus
        self._key = f"cb:{channel}:{provider_id}"

    @property
    def key(self) -> str:
        return self._key

    @property
    def break_seconds(self) -> float:
        return self._break

    # ── Gate ─────────────────────────────────────────────────
    async def allow_request(self) -> bool:
        """True if a call may go to this provider now.

        In HALF_OPEN only the caller that claims the probe gets True; a probe
        older than the break duration is treated as lost and re-claimable.
        """
        current = await self._store.get(self._key)
        if current is None or current["state"] == CircuitState.CLOSED.value:
            return True

        now = self._clock()

        def claim(state: dict[str, Any] | None) -> tuple[dict[str, Any] | None, tuple[bool, _Transition]]:
            if state is None or state["state"] == CircuitState.CLOSED.value:
                return state, (True, None)
            if state["state"] == CircuitState.OPEN.value:
                if now - state["opened_at"] < self._break:
                    return state, (False, None)
                claimed = {**state, "state": CircuitState.HALF_OPEN.value, "probe_started_at": now}
                return claimed, (True, (CircuitState.OPEN, CircuitState.HALF_OPEN, state["failures"]))
            probe = state.get("probe_started_at")
            if probe is not None and now - probe < self._break:
                return state, (False, None)
            return {**state, "probe_started_at": now}, (True, None)

        allowed, transition = await self._store.compare_and_update(self._key, claim)
        await self._announce(transition)
        if allowed and transition is not None:
            logger.info("circuit_breaker_half_open", channel=self._channel, provider=self._provider_id)
        return allowed

    # ── Outcomes ─────────────────────────────────────────────
    async def record_success(self) -> None:
        """Record a successful call — resets the circuit."""
        current = await self._store.get(self._key)
        if current is None:
            return

        def close(state: dict[str, Any] | None) -> tuple[None, _Transition]:
            if state is None or state["state"] == CircuitState.CLOSED.value:
                return None, None
            return None, (CircuitState(state["state"]), CircuitState.CLOSED, 0)

        transition = await self._store.compare_and_update(self._key, close)
        if transition is not None:
            logger.info(
                "circuit_breaker_closed",
                channel=self._channel,
                provider=self._provider_id,
                previous_state=transition[0].value,
            )
        await self._announce(transition)

    async def record_failure(self) -> None:
        """Record a failed call — may trip the circuit."""
        now = self._clock()

        def fail(state: dict[str, Any] | None) -> tuple[dict[str, Any], _Transition]:
            state = dict(state or _closed())
            state["failures"] = state.get("failures", 0) + 1
            previous = CircuitState(state["state"])
            if previous == CircuitState.HALF_OPEN:
                # Probe failed, restart the break timer
                state.update(state=CircuitState.OPEN.value, opened_at=now, probe_started_at=None)
                return state, (previous, CircuitState.OPEN, state["failures"])
            if previous == CircuitState.CLOSED and state["failures"] >= self._failure_threshold:
                state.update(state=CircuitState.OPEN.value, opened_at=now, probe_started_at=None)
                return state, (previous, CircuitState.OPEN, state["failures"])
            return state, None

        transition = await self._store.compare_and_update(self._key, fail)
        if transition is not None:
            event = "circuit_breaker_reopened" if transition[0] == CircuitState.HALF_OPEN else "circuit_breaker_opened"
            logger.warning(
                event,
                channel=self._channel,
                provider=self._provider_id,
                failures=transition[2],
                break_s=self._break,
            )
        await self._announce(transition)

    async def reset(self, actor: str = "system", reason: str = "") -> None:
        """Force-reset the circuit to CLOSED (admin override)."""
        await self._store.delete(self._key)
        logger.warning(
            "circuit_breaker_force_reset",
            channel=self._channel,
            provider=self._provider_id,
            actor=actor,
            reason=reason,
        )

    # ── Observation ──────────────────────────────────────────
    async def snapshot(self) -> CircuitSnapshot:
        current = await self._store.get(self._key) or _closed()
        return CircuitSnapshot(
            channel=self._channel,
            provider_id=self._provider_id,
            state=CircuitState(current["state"]),
            failures=current.get("failures", 0),
            opened_at=current.get("opened_at"),
            probe_started_at=current.get("probe_started_at"),
            retry_after_s=self._seconds_until_probe(current),
        )

    async def state(self) -> CircuitState:
        return (await self.snapshot()).state

    async def retry_after(self) -> float:
        """Seconds until this breaker will admit a probe (0 when closed)."""
        current = await self._store.get(self._key)
        return self._seconds_until_probe(current) if current else 0.0

    def _seconds_until_probe(self, state: dict[str, Any]) -> float:
        now = self._clock()
        if state["state"] == CircuitState.OPEN.value:
            return max(0.0, self._break - (now - state["opened_at"]))
        if state["state"] == CircuitState.HALF_OPEN.value and state.get("probe_started_at") is not None:
            return max(0.0, self._break - (now - state["probe_started_at"]))
        return 0.0

    async def _announce(self, transition: _Transition) -> None:
        if transition is None:
            return
        previous, new_state, failures = transition
        CIRCUIT_TRANSITIONS.labels(
            channel=self._channel, provider=self._provider_id, state=new_state.value
        ).inc()
        if self._event_bus is not None:
            await self._event_bus.publish(
                CircuitStateChanged(
                    channel=self._channel,
                    provider=self._provider_id,
                    previous_state=previous.value,
                    state=new_state.value,
                    failures=failures,
                )
            )
