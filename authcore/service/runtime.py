from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.events import MemoryEventPublisher, RedisEventPublisher
from authcore.storage.memory import MemorySessionCache, MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import (
    RedisSessionCache,
    create_redis_client,
    verify_connection,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Store, session cache, publisher and auth service built from settings.

    Nothing here is a process-wide singleton; the app and each test construct
    their own instance and close it when done.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        timeout = self.settings.storage_timeout_seconds

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Any = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, timeout_seconds=timeout)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.redis_client: Any = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                verify_connection(self.settings.redis_url, socket_timeout=timeout)
                self.redis_client = create_redis_client(
                    self.settings.redis_url, socket_timeout=timeout
                )
            except Exception as exc:
                redis_error = exc
                self.redis_client = None

        if self.redis_client is not None:
            self.cache: Any = RedisSessionCache(self.redis_client, operation_timeout=timeout)
            self.publisher: Any = RedisEventPublisher(
                self.redis_client, exchange=self.settings.event_exchange, timeout=timeout
            )
        else:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for refresh-token sessions and event delivery; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and events "
                    "are in-memory only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemorySessionCache(clock=clock)
            self.publisher = MemoryEventPublisher()

        self.auth = AuthService(
            self.store,
            self.cache,
            self.publisher,
            self.settings,
            clock=clock,
        )
        logger.info(
            "runtime_init_completed",
            cache_type="redis" if self.redis_client is not None else "memory",
        )

    async def close(self) -> None:
        if self.redis_client is not None:
            # Cache and publisher share the client; closing it once is enough
            await self.redis_client.aclose()
        else:
            await self.cache.close()
            await self.publisher.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")
