"""
Key-Value Store Backends

The gate keeps all cross-request state (pending logins, sessions) in a
key-value store with per-key TTL, so that the redirect to the identity
provider and the callback may land on different instances.

Backends:
    - MemoryKeyValueStore: in-process dict guarded by an asyncio.Lock.
      Single instance only (development, tests).
    - RedisKeyValueStore: redis.asyncio client, shared across instances.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from authgate.config import Settings
from authgate.errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyValueStore(ABC):
    """Async string-to-string store with optional per-key TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the value for `key`, or None if absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store `value` under `key`, expiring after `ttl_seconds` if given."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove `key`. Deleting a missing key is not an error."""

    async def get_and_delete(self, key: str) -> Optional[str]:
        """
        Read and remove `key` in one logical step.

        This fallback is NOT atomic: two concurrent callers can both read the
        value before either delete lands. Backends that can do better must
        override it.
        """
        value = await self.get(key)
        if value is not None:
            await self.delete(key)
        return value

    async def close(self) -> None:
        """Release backend resources."""


# ============================================================================
# In-Memory Backend
# ============================================================================

class MemoryKeyValueStore(KeyValueStore):
    """
    In-memory TTL store.

    Thread-safe implementation using asyncio.Lock. Expired entries are
    dropped lazily when touched and swept by a write at most once per
    `sweep_interval_seconds`.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_seconds: float = 60.0,
    ):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock
        self._sweep_interval_seconds = sweep_interval_seconds
        self._last_sweep = clock()

    def _is_expired(self, expires_at: Optional[float], now: float) -> bool:
        return expires_at is not None and now >= expires_at

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval_seconds:
            return
        self._last_sweep = now
        expired_keys = [
            key for key, (_, expires_at) in self._data.items()
            if self._is_expired(expires_at, now)
        ]
        for key in expired_keys:
            del self._data[key]
        if expired_keys:
            logger.debug(f"Swept {len(expired_keys)} expired keys")

    def _live_value(self, key: str, now: float) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._is_expired(expires_at, now):
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live_value(key, self._clock())

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        async with self._lock:
            now = self._clock()
            self._sweep(now)
            expires_at = now + ttl_seconds if ttl_seconds else None
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def get_and_delete(self, key: str) -> Optional[str]:
        async with self._lock:
            value = self._live_value(key, self._clock())
            self._data.pop(key, None)
            return value

    def __len__(self) -> int:
        return len(self._data)


# ============================================================================
# Redis Backend
# ============================================================================

class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store.

    TTL uses SET EX; get_and_delete uses GETDEL, which is atomic on the
    server (Redis >= 6.2). Redis errors surface as StoreUnavailable.
    """

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float) -> "RedisKeyValueStore":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise StoreUnavailable(f"Redis GET failed: {e}") from e

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self._client.set(key, value, ex=ttl_seconds or None)
        except RedisError as e:
            raise StoreUnavailable(f"Redis SET failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as e:
            raise StoreUnavailable(f"Redis DEL failed: {e}") from e

    async def get_and_delete(self, key: str) -> Optional[str]:
        try:
            return await self._client.getdel(key)
        except RedisError as e:
            raise StoreUnavailable(f"Redis GETDEL failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


# ============================================================================
# Helpers
# ============================================================================

async def bounded(coro: Awaitable[T], timeout_seconds: float, operation: str, shield: bool = False) -> T:
    """
    Await a store operation with a deadline.

    With `shield=True` the operation keeps running if the caller is cancelled
    or times out, so an abandoned request still completes its write.

    Raises:
        StoreUnavailable: On timeout.
    """
    task = asyncio.ensure_future(coro)
    if shield:
        task.add_done_callback(lambda t: _report_detached_failure(t, operation))
    try:
        return await asyncio.wait_for(asyncio.shield(task) if shield else task, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        logger.error(f"Key-value store {operation} timed out after {timeout_seconds}s")
        raise StoreUnavailable(f"Key-value store {operation} timed out") from e


def _report_detached_failure(task: "asyncio.Future", operation: str) -> None:
    # A shielded write may outlive its caller; its exception must still be retrieved.
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Detached key-value store {operation} finished with error: {error}")


def build_kv_store(settings: Settings) -> KeyValueStore:
    """Create the backend selected by KV_BACKEND."""
    if settings.KV_BACKEND == "redis":
        logger.info("Using Redis key-value store")
        return RedisKeyValueStore.from_url(settings.REDIS_URL, settings.KV_TIMEOUT_SECONDS)

    logger.warning("Using in-memory key-value store; state is not shared between instances")
    return MemoryKeyValueStore()
