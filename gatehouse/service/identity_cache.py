from __future__ import annotations

import asyncio
import fnmatch
import inspect
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from gatehouse.logging import get_logger
from gatehouse.service.events import DomainEvent, EventBus, EventType
from gatehouse.storage.errors import StoreUnavailable

logger = get_logger(__name__)

LISTING_PATTERN = "users:*"

INVALIDATING_EVENTS = (
    EventType.USER_REGISTERED,
    EventType.USER_UPDATED,
    EventType.USER_DELETED,
    EventType.USER_DEACTIVATED,
    EventType.USER_RESTORED,
    EventType.USER_PASSWORD_CHANGED,
    EventType.USER_LOGGED_OUT,
)

Loader = Callable[[], Union[Any, Awaitable[Any]]]


def identity_key(user_id: str) -> str:
    return f"user:{user_id}"


def listing_key(params: Optional[Dict[str, Any]] = None) -> str:
    return "users:list:" + json.dumps(params or {}, sort_keys=True, default=str)


class IdentityCache:
    """Read-through cache for identity lookups, evicted by mutation events.

    Entries are eventually consistent with the record store: a value can be
    stale for at most its TTL, or until the mutation event that touched it
    has been dispatched, whichever comes first. Readers that race a write
    may see the old value inside that window.

    Concurrent misses on one key share a single loader call in this
    process. A value loaded while its key was invalidated is handed to the
    waiting callers but not written back.
    """

    def __init__(
        self,
        store: Any,
        *,
        prefix: str = "app:",
        ttl_seconds: int = 300,
        timeout: float = 2.0,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds
        self.timeout = timeout
        self._inflight: Dict[str, asyncio.Future] = {}
        self._dirty: Set[str] = set()
        self._bus: Optional[EventBus] = None
        self.loads = 0

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def _read(self, key: str) -> Optional[Any]:
        try:
            return await asyncio.wait_for(
                self.store.get_json(self._key(key)), timeout=self.timeout
            )
        except (StoreUnavailable, asyncio.TimeoutError) as exc:
            logger.warning("identity_cache_read_failed", key=key, error=str(exc))
            return None

    async def _write(self, key: str, value: Any, ttl: int) -> None:
        try:
            await asyncio.wait_for(
                self.store.set_json(self._key(key), value, ttl), timeout=self.timeout
            )
        except (StoreUnavailable, asyncio.TimeoutError) as exc:
            logger.warning("identity_cache_write_failed", key=key, error=str(exc))

    async def _discard(self, key: str) -> None:
        try:
            await asyncio.wait_for(self.store.delete(self._key(key)), timeout=self.timeout)
        except (StoreUnavailable, asyncio.TimeoutError) as exc:
            logger.warning("identity_cache_discard_failed", key=key, error=str(exc))

    async def get(self, key: str, loader: Loader, ttl: Optional[int] = None) -> Any:
        """Return the cached value for ``key``, loading it on a miss.

        ``None`` results are returned but never cached. Loader errors
        propagate to every caller waiting on that load.
        """
        cached = await self._read(key)
        if cached is not None:
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        self._dirty.discard(key)
        try:
            self.loads += 1
            value = loader()
            if inspect.isawaitable(value):
                value = await value
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved; the exception is re-raised to this caller below
            future.exception()
            raise
        else:
            if value is not None and key not in self._dirty:
                await self._write(key, value, ttl or self.ttl_seconds)
                if key in self._dirty:
                    # Evicted while the write was in flight
                    await self._discard(key)
            future.set_result(value)
            return value
        finally:
            self._inflight.pop(key, None)
            self._dirty.discard(key)

    async def invalidate(self, key: str) -> int:
        if key in self._inflight:
            self._dirty.add(key)
        return await self.store.delete(self._key(key))

    async def invalidate_pattern(self, pattern: str) -> int:
        for key in self._inflight:
            if fnmatch.fnmatchcase(key, pattern):
                self._dirty.add(key)
        return await self.store.delete_pattern(self._key(pattern))

    async def on_mutation_event(self, event: DomainEvent) -> None:
        """Evict the identity entry, its sub-keys and every listing."""
        user_id = event.payload.get("user_id")
        removed = 0
        if user_id:
            removed += await self.invalidate(identity_key(user_id))
            removed += await self.invalidate_pattern(f"{identity_key(user_id)}:*")
        removed += await self.invalidate_pattern(LISTING_PATTERN)
        logger.debug(
            "identity_cache_evicted",
            event_type=event.type,
            user_id=user_id,
            removed=removed,
        )

    def attach(self, bus: EventBus) -> None:
        if self._bus is bus:
            return
        if self._bus is not None:
            self.detach()
        for event_type in INVALIDATING_EVENTS:
            bus.subscribe(event_type, self.on_mutation_event)
        self._bus = bus

    def detach(self) -> None:
        if self._bus is None:
            return
        for event_type in INVALIDATING_EVENTS:
            self._bus.unsubscribe(event_type, self.on_mutation_event)
        self._bus = None
