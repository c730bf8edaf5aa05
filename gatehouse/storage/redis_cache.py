from __future__ import annotations

import hashlib
import json
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from gatehouse.storage.errors import StoreUnavailable

# Sliding-window admission: drop members at or before now - window, count the
# rest, and record this request only when it is admitted. Scores are epoch
# seconds; the retry hint is returned as a string to keep its fraction.
_SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry = window
  if oldest[2] then
    retry = tonumber(oldest[2]) + window - now
  end
  return {0, count, tostring(retry)}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, math.ceil(window * 1000))
return {1, count + 1, '0'}
"""

_SCAN_BATCH = 500


@contextmanager
def _redis_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise StoreUnavailable(f"redis {operation} failed: {exc}", backend="redis") from exc


def rate_key(name: str, key: str) -> str:
    """Collision-resistant key for one rate-limit policy and subject."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    return f"rate:{name}:{digest}"


def _decode(raw: Optional[str]) -> Optional[Any]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Corrupted cache entry - treat as cache miss
        return None


def _window_result(result: List[Any]) -> Tuple[bool, int, float]:
    allowed, count, retry_after = result
    return bool(int(allowed)), int(count), max(0.0, float(retry_after))


class RedisCache:
    """Thin Redis wrapper for identity caching and rate-limit windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(_SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_json(self, key: str) -> Optional[Any]:
        with _redis_errors("get"):
            return _decode(await self.client.get(key))

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        with _redis_errors("set"):
            await self.client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _redis_errors("delete"):
            return int(await self.client.delete(*keys))

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern`` using SCAN, never KEYS."""
        removed = 0
        batch: list[str] = []
        with _redis_errors("delete_pattern"):
            async for key in self.client.scan_iter(match=pattern, count=_SCAN_BATCH):
                batch.append(key)
                if len(batch) >= _SCAN_BATCH:
                    removed += int(await self.client.delete(*batch))
                    batch = []
            if batch:
                removed += int(await self.client.delete(*batch))
        return removed

    async def sliding_window_admit(
        self, name: str, key: str, limit: int, window_seconds: float, now: float
    ) -> Tuple[bool, int, float]:
        """Atomically admit or reject one request in a sliding window.

        Returns ``(allowed, count_in_window, retry_after_seconds)``.
        """
        with _redis_errors("sliding_window"):
            result = await self._sliding_window(
                keys=[rate_key(name, key)],
                args=[now, window_seconds, limit, f"{now}:{uuid.uuid4().hex}"],
            )
        return _window_result(result)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self._sync_client.register_script(_SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def get_json(self, key: str) -> Optional[Any]:
        with _redis_errors("get"):
            return _decode(self._sync_client.get(key))

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        with _redis_errors("set"):
            self._sync_client.set(key, json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _redis_errors("delete"):
            return int(self._sync_client.delete(*keys))

    async def delete_pattern(self, pattern: str) -> int:
        with _redis_errors("delete_pattern"):
            keys = list(self._sync_client.scan_iter(match=pattern, count=_SCAN_BATCH))
            removed = 0
            for start in range(0, len(keys), _SCAN_BATCH):
                removed += int(self._sync_client.delete(*keys[start:start + _SCAN_BATCH]))
        return removed

    async def sliding_window_admit(
        self, name: str, key: str, limit: int, window_seconds: float, now: float
    ) -> Tuple[bool, int, float]:
        with _redis_errors("sliding_window"):
            result = self._sliding_window(
                keys=[rate_key(name, key)],
                args=[now, window_seconds, limit, f"{now}:{uuid.uuid4().hex}"],
            )
        return _window_result(result)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
