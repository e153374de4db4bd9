from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from authcore.storage.errors import ConstraintViolation, RecordNotFound, StaleWrite
from authcore.storage.models import USER_FIELDS, User, normalize_email, utcnow


def _check_fields(changes: Mapping[str, Any]) -> None:
    unknown = set(changes) - USER_FIELDS
    if unknown:
        raise ValueError(f"unknown user fields: {sorted(unknown)}")
    if "id" in changes:
        raise ValueError("user id is immutable")


class MemoryStore:
    """In-process credential store for tests and local development.

    Records are copied on the way in and out so callers never hold a live
    reference; every mutation happens under one re-entrant lock, which gives
    ``update(..., expected=...)`` the same compare-and-set behaviour as the
    conditional UPDATE in :class:`~authcore.storage.postgres.PostgresStore`.
    """

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def create(self, user: User) -> User:
        with self._data_lock:
            email = normalize_email(user.email)
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            stored = replace(user, email=email)
            self.users[stored.id] = stored
            self._email_index[email] = stored.id
            return replace(stored)

    def find_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(normalize_email(email))
            user = self.users.get(user_id) if user_id else None
            return replace(user) if user else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def find_by_reset_token(self, token: str, now: datetime) -> Optional[User]:
        if not token:
            return None
        with self._data_lock:
            for user in self.users.values():
                if (
                    user.password_reset_token == token
                    and user.password_reset_expiry is not None
                    and now < user.password_reset_expiry
                ):
                    return replace(user)
            return None

    def update(
        self,
        user_id: str,
        changes: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> User:
        _check_fields(changes)
        if expected:
            _check_fields(expected)
        with self._data_lock:
            current = self.users.get(user_id)
            if current is None:
                raise RecordNotFound("user not found", {"user_id": user_id})
            if expected:
                mismatched = [
                    name for name, value in expected.items()
                    if getattr(current, name) != value
                ]
                if mismatched:
                    raise StaleWrite(
                        "user changed concurrently", {"user_id": user_id, "fields": mismatched}
                    )
            values = dict(changes)
            if "email" in values:
                values["email"] = normalize_email(values["email"])
                owner = self._email_index.get(values["email"])
                if owner is not None and owner != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            values["updated_at"] = utcnow()
            updated = replace(current, **values)
            if updated.email != current.email:
                self._email_index.pop(current.email, None)
                self._email_index[updated.email] = user_id
            self.users[user_id] = updated
            return replace(updated)


class MemorySessionCache:
    """Expiring user -> refresh token map used when Redis is not configured.

    Entries are evaluated lazily against ``clock`` on read, so tests can move
    time forward without sleeping.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or utcnow
        self._entries: Dict[str, tuple[str, datetime]] = {}
        self._state_lock = threading.Lock()

    async def put(self, user_id: str, refresh_token: str, ttl_seconds: int) -> None:
        expires_at = self._clock() + timedelta(seconds=max(1, int(ttl_seconds)))
        with self._state_lock:
            self._entries[user_id] = (refresh_token, expires_at)

    async def get(self, user_id: str) -> Optional[str]:
        with self._state_lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            token, expires_at = entry
            if expires_at <= self._clock():
                self._entries.pop(user_id, None)
                return None
            return token

    async def delete(self, user_id: str) -> None:
        with self._state_lock:
            self._entries.pop(user_id, None)

    async def close(self) -> None:
        with self._state_lock:
            self._entries.clear()
