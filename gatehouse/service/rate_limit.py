from __future__ import annotations

import asyncio
import math
import threading
import zlib
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.clock import Clock, SystemClock
from gatehouse.service.errors import RateLimitedError, ServiceUnavailableError
from gatehouse.storage.errors import StoreUnavailable

logger = get_logger(__name__)

POLICIES = ("global", "auth", "password_reset", "heavy", "search")


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    retry_after: float = 0.0


@dataclass
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    windows: Dict[str, Deque[float]] = field(default_factory=dict)


def subject_key(subject_id: str) -> str:
    return f"user:{subject_id}"


def address_key(address: Optional[str]) -> str:
    return f"ip:{address or 'unknown'}"


class RateLimiter:
    """Sliding-window admission control for one operation class.

    Each key keeps the timestamps of its admitted requests inside the
    trailing window. A request is admitted only while fewer than ``limit``
    timestamps remain after pruning; rejected requests are not recorded.

    Without a shared cache the windows live in process memory, split
    across ``shards`` lock-protected maps. With a cache that offers
    ``sliding_window_admit`` (Redis) the decision is made atomically there
    and any cache failure denies the request.
    """

    def __init__(
        self,
        name: str,
        limit: int,
        window_seconds: float,
        *,
        clock: Optional[Clock] = None,
        cache: Any = None,
        purge_threshold: int = 10000,
        shards: int = 16,
        cache_timeout: float = 2.0,
    ) -> None:
        if limit <= 0:
            raise ValueError("rate limit must be positive")
        if window_seconds <= 0:
            raise ValueError("rate limit window must be positive")
        self.name = name
        self.limit = limit
        self.window_seconds = float(window_seconds)
        self.clock = clock or SystemClock()
        self.cache = cache if hasattr(cache, "sliding_window_admit") else None
        self.cache_timeout = cache_timeout
        self.purge_threshold = purge_threshold
        self._shards = [_Shard() for _ in range(max(1, shards))]
        # Purge trigger per shard so the total stays near purge_threshold
        self._shard_threshold = max(1, purge_threshold // len(self._shards))

    def _shard_for(self, key: str) -> _Shard:
        return self._shards[zlib.crc32(key.encode()) % len(self._shards)]

    def check(self, key: str, now: Optional[float] = None) -> RateDecision:
        """Admit or reject against the in-process windows."""
        now = self.clock.time() if now is None else now
        cutoff = now - self.window_seconds
        shard = self._shard_for(key)
        with shard.lock:
            timestamps = shard.windows.get(key)
            if timestamps is None:
                timestamps = deque()
                shard.windows[key] = timestamps
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()
            if len(timestamps) >= self.limit:
                retry_after = timestamps[0] + self.window_seconds - now
                decision = RateDecision(False, 0, max(0.0, retry_after))
            else:
                timestamps.append(now)
                decision = RateDecision(True, self.limit - len(timestamps))
            if len(shard.windows) > self._shard_threshold:
                self._purge_shard(shard, cutoff)
        return decision

    @staticmethod
    def _purge_shard(shard: _Shard, cutoff: float) -> int:
        # Caller holds shard.lock
        stale = [k for k, ts in shard.windows.items() if not ts or ts[-1] <= cutoff]
        for key in stale:
            del shard.windows[key]
        return len(stale)

    def purge(self, now: Optional[float] = None) -> int:
        """Drop keys whose whole window has aged out. Returns keys removed."""
        now = self.clock.time() if now is None else now
        cutoff = now - self.window_seconds
        removed = 0
        for shard in self._shards:
            with shard.lock:
                removed += self._purge_shard(shard, cutoff)
        if removed:
            logger.debug("rate_limit_purged", policy=self.name, removed=removed)
        return removed

    def tracked_keys(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.windows)
        return total

    async def _check_shared(self, key: str, now: float) -> RateDecision:
        try:
            allowed, count, retry_after = await asyncio.wait_for(
                self.cache.sliding_window_admit(
                    self.name, key, self.limit, self.window_seconds, now
                ),
                timeout=self.cache_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("rate_limit_backend_timeout", policy=self.name)
            raise ServiceUnavailableError(
                "rate limit backend timed out", detail={"policy": self.name}
            )
        except StoreUnavailable as exc:
            logger.error("rate_limit_backend_failed", policy=self.name, error=exc.message)
            raise ServiceUnavailableError(
                "rate limit backend unavailable", detail={"policy": self.name}
            ) from exc
        return RateDecision(allowed, max(0, self.limit - count), retry_after)

    async def admit(self, key: str, now: Optional[float] = None) -> RateDecision:
        """Record one request for ``key`` or raise ``RateLimitedError``."""
        now = self.clock.time() if now is None else now
        if self.cache is not None:
            decision = await self._check_shared(key, now)
        else:
            decision = self.check(key, now)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                policy=self.name,
                key=key,
                retry_after=decision.retry_after,
            )
            raise RateLimitedError(
                "too many requests, please try again later",
                detail={
                    "policy": self.name,
                    "limit": self.limit,
                    "window_seconds": self.window_seconds,
                    "retry_after": max(1, math.ceil(decision.retry_after)),
                },
            )
        return decision


def build_limiters(
    settings: Settings, clock: Optional[Clock] = None, cache: Any = None
) -> Dict[str, RateLimiter]:
    """One limiter per named policy, all sharing the clock and cache."""
    limiters: Dict[str, RateLimiter] = {}
    for name in POLICIES:
        limiters[name] = RateLimiter(
            name,
            getattr(settings, f"rate_limit_{name}_max"),
            getattr(settings, f"rate_limit_{name}_window_seconds"),
            clock=clock,
            cache=cache,
            purge_threshold=settings.rate_limit_purge_threshold,
            cache_timeout=settings.cache_timeout_seconds,
        )
    return limiters
