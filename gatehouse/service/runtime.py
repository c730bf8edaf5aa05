from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse

from gatehouse.config import Settings, get_settings
from gatehouse.logging import get_logger
from gatehouse.service.accounts import AccountService
from gatehouse.service.authorization import AuthorizationPolicy
from gatehouse.service.clock import Clock, SystemClock
from gatehouse.service.events import EventBus
from gatehouse.service.identity_cache import IdentityCache
from gatehouse.service.rate_limit import RateLimiter, build_limiters
from gatehouse.service.tokens import TokenService
from gatehouse.storage.memory import MemoryStore
from gatehouse.storage.memory_cache import MemoryCacheStore
from gatehouse.storage.postgres import PostgresStore
from gatehouse.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the shared service instances for the FastAPI app.

    Any collaborator may be passed in; the rest are built from settings.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        store: Any = None,
        cache: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        self.bus = EventBus(
            self.clock,
            queue_size=self.settings.event_queue_size,
            history_size=self.settings.event_history_size,
        )
        self.tokens = TokenService(
            self.store,
            self.settings,
            self.clock,
            store_timeout=self.settings.store_timeout_seconds,
        )
        self.policy = AuthorizationPolicy()
        self.limiters: Dict[str, RateLimiter] = build_limiters(
            self.settings, self.clock, self.cache
        )
        self.identity_cache = IdentityCache(
            self.cache,
            prefix=self.settings.cache_key_prefix,
            ttl_seconds=self.settings.identity_cache_ttl_seconds,
            timeout=self.settings.cache_timeout_seconds,
        )
        self.identity_cache.attach(self.bus)
        self.accounts = AccountService(
            self.store,
            self.tokens,
            self.policy,
            self.identity_cache,
            self.bus,
            self.clock,
            store_timeout=self.settings.store_timeout_seconds,
        )
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            rate_policies=sorted(self.limiters),
        )

    def _build_store(self) -> Any:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> Any:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.cache_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.cache_timeout_seconds,
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for shared rate limits and the identity cache; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; rate limits and the "
                "identity cache are process-local only."
            ),
            mode=fallback_mode,
        )
        return MemoryCacheStore(self.clock, max_entries=self.settings.memory_cache_max_entries)

    async def start(self) -> None:
        await self.bus.start()

    async def stop(self) -> None:
        await self.bus.stop()
        self.identity_cache.detach()
        if hasattr(self.cache, "close"):
            await self.cache.close()
        if hasattr(self.store, "close"):
            self.store.close()
        logger.info("runtime_stopped")

