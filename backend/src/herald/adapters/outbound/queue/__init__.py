"""Delivery queue adapters implementing DeliveryQueue.

Notifications leave active memory while they wait for their next attempt;
the queue only holds ids scored by the epoch at which they become eligible.
"""

from __future__ import annotations

import asyncio
from typing import Dict

import redis.asyncio as redis
import structlog

from herald.ports.outbound import DeliveryQueue

logger = structlog.get_logger(__name__)

_PRIORITY_LEVELS = (3, 2, 1, 0)


class InMemoryDeliveryQueue(DeliveryQueue):
    """Single-process queue guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._entries: Dict[str, tuple[float, int]] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, notification_id: str, eligible_at: float, priority: int = 1) -> None:
        async with self._lock:
            self._entries[notification_id] = (eligible_at, priority)

    async def claim_due(self, now: float, limit: int = 10) -> list[str]:
        async with self._lock:
            due = [
                (-priority, eligible_at, nid)
                for nid, (eligible_at, priority) in self._entries.items()
                if eligible_at <= now
            ]
            due.sort()
            claimed = [nid for _, _, nid in due[:limit]]
            for nid in claimed:
                del self._entries[nid]
            return claimed

    async def remove(self, notification_id: str) -> bool:
        async with self._lock:
            return self._entries.pop(notification_id, None) is not None

    async def size(self) -> int:
        return len(self._entries)

    async def eligible_at(self, notification_id: str) -> float | None:
        entry = self._entries.get(notification_id)
        return entry[0] if entry else None


# Pops due members across the priority sets, highest priority first
_CLAIM_SCRIPT = """
local claimed = {}
local limit = tonumber(ARGV[2])
for _, key in ipairs(KEYS) do
    if #claimed >= limit then break end
    local ids = redis.call('ZRANGEBYSCORE', key, '-inf', ARGV[1], 'LIMIT', 0, limit - #claimed)
    for _, id in ipairs(ids) do
        redis.call('ZREM', key, id)
        table.insert(claimed, id)
    end
end
return claimed
"""


class RedisDeliveryQueue(DeliveryQueue):
    """Sorted sets (one per priority) scored by eligible epoch."""

    def __init__(self, client: redis.Redis, *, key_prefix: str = "herald:queue") -> None:
        self._client = client
        self._keys = [f"{key_prefix}:p{level}" for level in _PRIORITY_LEVELS]
        self._claim = self._client.register_script(_CLAIM_SCRIPT)

    def _key_for(self, priority: int) -> str:
        level = min(max(priority, 0), _PRIORITY_LEVELS[0])
        return self._keys[_PRIORITY_LEVELS.index(level)]

    async def enqueue(self, notification_id: str, eligible_at: float, priority: int = 1) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            for key in self._keys:
                pipe.zrem(key, notification_id)
            pipe.zadd(self._key_for(priority), {notification_id: eligible_at})
            await pipe.execute()

    async def claim_due(self, now: float, limit: int = 10) -> list[str]:
        raw = await self._claim(keys=self._keys, args=[now, limit])
        return [item.decode() if isinstance(item, bytes) else item for item in raw]

    async def remove(self, notification_id: str) -> bool:
        async with self._client.pipeline(transaction=True) as pipe:
            for key in self._keys:
                pipe.zrem(key, notification_id)
            removed = await pipe.execute()
        return any(removed)

    async def size(self) -> int:
        async with self._client.pipeline(transaction=False) as pipe:
            for key in self._keys:
                pipe.zcard(key)
            counts = await pipe.execute()
        return sum(counts)
