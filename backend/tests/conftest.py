"""Shared test fixtures."""

from __future__ import annotations

import random

import pytest

from herald.adapters.outbound.event_bus import ALL_EVENTS, InProcessEventBus
from herald.adapters.outbound.store import InMemoryAtomicStore
from herald.domain.entities import Notification
from herald.domain.enums import Channel, Priority
from herald.domain.events import DomainEvent

START = 1_767_225_600.0  # 2026-01-01T00:00:00Z


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[DomainEvent]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryAtomicStore:
    return InMemoryAtomicStore(clock)


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def event_bus(recorder: EventRecorder) -> InProcessEventBus:
    bus = InProcessEventBus()
    bus.subscribe(ALL_EVENTS, recorder)
    return bus


@pytest.fixture
def rng() -> random.Random:
    return random.Random(7)


@pytest.fixture
def sample_notification() -> Notification:
    return Notification(
        tenant_id="acme",
        user_id="u-1",
        service_origin="auth",
        channel=Channel.SMS,
        recipient="+15550001111",
        priority=Priority.NORMAL,
        body="Your code is 123456",
    )
