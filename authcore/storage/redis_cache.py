from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authcore.logging import get_logger
from authcore.storage.errors import CacheUnavailable

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_OPERATION_TIMEOUT = 5.0


def create_redis_client(
    redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
) -> aioredis.Redis:
    """Async client shared by the session cache and the event publisher."""
    return aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


def verify_connection(redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT) -> None:
    """Assert Redis connectivity before enabling dependent features."""
    # Sync client; no event loop is bound during startup checks
    sync_client = Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )
    try:
        sync_client.ping()
    finally:
        sync_client.close()


class RedisSessionCache:
    """Single refresh-token slot per user, backed by Redis ``SET ... EX``."""

    KEY_PREFIX = "auth:refresh_token:"

    def __init__(
        self,
        client: Any,
        *,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ) -> None:
        self.client = client
        self.operation_timeout = operation_timeout

    def _key(self, user_id: str) -> str:
        return f"{self.KEY_PREFIX}{user_id}"

    async def _guard(self, op: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError) as exc:
            logger.warning(
                "session_cache_unavailable",
                op=op,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CacheUnavailable("session cache unavailable", {"op": op}) from exc

    async def put(self, user_id: str, refresh_token: str, ttl_seconds: int) -> None:
        await self._guard(
            "put",
            self.client.set(self._key(user_id), refresh_token, ex=max(1, int(ttl_seconds))),
        )

    async def get(self, user_id: str) -> Optional[str]:
        return await self._guard("get", self.client.get(self._key(user_id)))

    async def delete(self, user_id: str) -> None:
        await self._guard("delete", self.client.delete(self._key(user_id)))

    async def close(self) -> None:
        """Close the Redis connection pool. Call when shutting down."""
        await self.client.aclose()
