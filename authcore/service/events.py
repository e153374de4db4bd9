from __future__ import annotations

import asyncio
import json
import threading
from typing import Any, List, Optional, Protocol

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from authcore.logging import get_logger
from authcore.storage.models import AuthEvent

logger = get_logger(__name__)

USER_CREATED = "user.created"
USER_LOGIN = "user.login"
USER_LOGOUT = "user.logout"
USER_UPDATED = "user.updated"
USER_PASSWORD_CHANGED = "user.password_changed"
USER_PASSWORD_RESET = "user.password_reset"
USER_PASSWORD_RESET_REQUESTED = "user.password_reset_requested"
USER_DEACTIVATED = "user.deactivated"


class PublishError(Exception):
    """Raised when an event could not be handed to the transport."""


class EventPublisher(Protocol):
    async def publish(self, event: AuthEvent) -> None: ...

    async def close(self) -> None: ...


class RedisEventPublisher:
    """Publishes events on Redis pub/sub, one channel per event type.

    Channels are named ``<exchange>:<event type>`` so subscribers can pattern
    match (``PSUBSCRIBE user.events:*``) the way topic-exchange consumers bind.
    """

    def __init__(self, client: Any, *, exchange: str = "user.events", timeout: float = 5.0) -> None:
        self.client = client
        self.exchange = exchange
        self.timeout = timeout

    def channel(self, event_type: str) -> str:
        return f"{self.exchange}:{event_type}"

    async def publish(self, event: AuthEvent) -> None:
        body = json.dumps(event.to_message(), separators=(",", ":"))
        try:
            await asyncio.wait_for(
                self.client.publish(self.channel(event.type), body), timeout=self.timeout
            )
        except (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError) as exc:
            raise PublishError(f"failed to publish {event.type}") from exc

    async def close(self) -> None:
        await self.client.aclose()


class MemoryEventPublisher:
    """Collects published events in a list; used in tests and dev fallback."""

    def __init__(self) -> None:
        self.events: List[AuthEvent] = []
        self.fail_with: Optional[Exception] = None
        self._lock = threading.Lock()

    async def publish(self, event: AuthEvent) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[AuthEvent]:
        with self._lock:
            return [event for event in self.events if event.type == event_type]

    def types(self) -> List[str]:
        with self._lock:
            return [event.type for event in self.events]

    async def close(self) -> None:
        return None
