"""Shared atomic store adapters implementing AtomicStore.

Holds token buckets, circuit-breaker state and alert markers.  The in-memory
variant serves single-node deployments and tests; the Redis variant makes the
same state visible to every instance.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict

import orjson
import redis.asyncio as redis
import structlog
from redis.exceptions import WatchError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random,
)

from herald.ports.outbound import AtomicStore, R, UpdateFn

logger = structlog.get_logger(__name__)

# Optimistic transactions lose to a concurrent writer now and then; replay them
_watch_retry = retry(
    stop=stop_after_attempt(25),
    wait=wait_random(min=0, max=0.02),
    retry=retry_if_exception_type(WatchError),
    before_sleep=before_sleep_log(logging.getLogger(__name__), logging.DEBUG),
    reraise=True,
)


class InMemoryAtomicStore(AtomicStore):
    """Lock-guarded dict with per-key expiry for a single process."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._data: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self.published: list[tuple[str, str]] = []
        logger.info("store_initialized_memory")

    def _evict_if_expired(self, key: str) -> None:
        expires = self._expiry.get(key)
        if expires is not None and expires <= self._clock():
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            self._evict_if_expired(key)
            return self._data.get(key)

    async def compare_and_update(
        self,
        key: str,
        fn: UpdateFn[R],
        *,
        ttl_seconds: float | None = None,
    ) -> R:
        async with self._lock:
            self._evict_if_expired(key)
            new_value, result = fn(self._data.get(key))
            if new_value is None:
                self._data.pop(key, None)
                self._expiry.pop(key, None)
            else:
                self._data[key] = new_value
                if ttl_seconds:
                    self._expiry[key] = self._clock() + ttl_seconds
                else:
                    self._expiry.pop(key, None)
            return result

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    async def publish(self, channel: str, message: str) -> None:
        # No cross-process fan-out; kept for inspection
        self.published.append((channel, message))
        logger.debug("mem_store_publish", channel=channel)

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class RedisAtomicStore(AtomicStore):
    """Async Redis store using WATCH/MULTI/EXEC for read-modify-write."""

    def __init__(self, url: str, max_connections: int = 50, *, key_prefix: str = "herald:") -> None:
        self._prefix = key_prefix
        self._pool = redis.ConnectionPool.from_url(url, max_connections=max_connections)
        self._client = redis.Redis(connection_pool=self._pool)
        logger.info("store_initialized_redis")

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(self._key(key))
        return orjson.loads(raw) if raw is not None else None

    @_watch_retry
    async def compare_and_update(
        self,
        key: str,
        fn: UpdateFn[R],
        *,
        ttl_seconds: float | None = None,
    ) -> R:
        full_key = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            await pipe.watch(full_key)
            raw = await pipe.get(full_key)
            current = orjson.loads(raw) if raw is not None else None
            new_value, result = fn(current)
            pipe.multi()
            if new_value is None:
                pipe.delete(full_key)
            elif ttl_seconds:
                pipe.set(full_key, orjson.dumps(new_value), px=max(1, int(ttl_seconds * 1000)))
            else:
                pipe.set(full_key, orjson.dumps(new_value))
            await pipe.execute()
            return result

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def publish(self, channel: str, message: str) -> None:
        try:
            await self._client.publish(channel, message)
        except redis.RedisError as exc:
            logger.error("redis_publish_error", channel=channel, error=str(exc))

    @property
    def client(self) -> redis.Redis:
        return self._client

    async def close(self) -> None:
        await self._client.aclose()
        await self._pool.aclose()

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except redis.RedisError:
            return False
