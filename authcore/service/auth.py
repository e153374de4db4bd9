from __future__ import annotations

import contextlib
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Protocol

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service import events
from authcore.service.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    ConflictError,
    IncorrectPasswordError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    NotFoundError,
    TransientError,
)
from authcore.service.events import EventPublisher
from authcore.service.lockout import LockoutPolicy
from authcore.service.passwords import PasswordHasher
from authcore.service.tokens import ACCESS, REFRESH, TokenError, TokenIssuer
from authcore.storage.errors import (
    CacheUnavailable,
    ConstraintViolation,
    RecordNotFound,
    StaleWrite,
    StoreUnavailable,
)
from authcore.storage.models import (
    ROLE_ADMIN,
    ROLE_CUSTOMER,
    ROLES,
    AuthEvent,
    User,
    utcnow,
)

logger = get_logger(__name__)

# Attempts at the failed-login compare-and-set before giving up as transient
_LOCKOUT_WRITE_ATTEMPTS = 5


class CredentialStore(Protocol):
    def create(self, user: User) -> User: ...

    def find_by_email(self, email: str) -> Optional[User]: ...

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def find_by_reset_token(self, token: str, now: datetime) -> Optional[User]: ...

    def update(
        self,
        user_id: str,
        changes: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> User: ...


class SessionCache(Protocol):
    async def put(self, user_id: str, refresh_token: str, ttl_seconds: int) -> None: ...

    async def get(self, user_id: str) -> Optional[str]: ...

    async def delete(self, user_id: str) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class AuthResult:
    user: Dict[str, Any]
    access_token: str
    refresh_token: str


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


class AuthService:
    """Registration, login, token refresh and password flows.

    Collaborators are injected. Store calls are synchronous, cache and
    publisher calls are awaited; either kind of transport failure surfaces as
    :class:`TransientError`. Events are best-effort: a publish failure is
    logged and never fails the operation that produced it.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: SessionCache,
        publisher: EventPublisher,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        tokens: Optional[TokenIssuer] = None,
        lockout: Optional[LockoutPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.publisher = publisher
        self.settings = settings
        self._clock = clock or utcnow
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.tokens = tokens or TokenIssuer(settings, clock=self._clock)
        self.lockout = lockout or LockoutPolicy.from_settings(settings)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    @contextlib.contextmanager
    def _storage_guard(self, op: str) -> Iterator[None]:
        try:
            yield
        except (StoreUnavailable, CacheUnavailable) as exc:
            self.logger.warning(
                "auth_dependency_unavailable",
                op=op,
                error_type=type(exc).__name__,
                error=exc.message,
            )
            raise TransientError() from exc

    @property
    def _refresh_ttl_seconds(self) -> int:
        return int(self.tokens.refresh_ttl.total_seconds())

    async def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        event = AuthEvent(type=event_type, data=data, timestamp=self._now())
        try:
            await self.publisher.publish(event)
        except Exception as exc:
            # Events are fire-and-forget; the operation already succeeded
            self.logger.warning(
                "event_publish_failed",
                event_type=event_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _start_session(self, user: User) -> tuple[str, str]:
        access_token = self.tokens.issue_access_token(user)
        refresh_token = self.tokens.issue_refresh_token(user)
        with self._storage_guard("session_put"):
            await self.cache.put(user.id, refresh_token, self._refresh_ttl_seconds)
        return access_token, refresh_token

    async def _end_session(self, user_id: str) -> None:
        with self._storage_guard("session_delete"):
            await self.cache.delete(user_id)

    def _require_user(self, user_id: str) -> User:
        with self._storage_guard("find_by_id"):
            user = self.store.find_by_id(user_id)
        if user is None:
            raise NotFoundError()
        return user

    def _update(self, user_id: str, changes: Mapping[str, Any], **kwargs: Any) -> User:
        with self._storage_guard("update"):
            try:
                return self.store.update(user_id, changes, **kwargs)
            except RecordNotFound as exc:
                raise NotFoundError() from exc

    async def register(
        self,
        email: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        role: Optional[str] = None,
    ) -> AuthResult:
        role = role or ROLE_CUSTOMER
        if role not in ROLES:
            raise ValueError(f"unknown role: {role}")
        with self._storage_guard("find_by_email"):
            existing = self.store.find_by_email(email)
        if existing is not None:
            raise ConflictError()

        user = User.new(
            email,
            self.hasher.hash(password),
            first_name=first_name,
            last_name=last_name,
            role=role,
        )
        with self._storage_guard("create"):
            try:
                user = self.store.create(user)
            except ConstraintViolation as exc:
                # Lost a registration race for the same email
                raise ConflictError() from exc

        access_token, refresh_token = await self._start_session(user)
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        await self._emit(
            events.USER_CREATED,
            {
                "userId": user.id,
                "email": user.email,
                "firstName": user.first_name,
                "lastName": user.last_name,
                "role": user.role,
            },
        )
        return AuthResult(user.to_public(), access_token, refresh_token)

    async def login(self, email: str, password: str) -> AuthResult:
        with self._storage_guard("find_by_email"):
            user = self.store.find_by_email(email)
        if user is None:
            # Same argon2 cost as a real account
            self.hasher.verify_dummy(password)
            self.logger.info("login_failed", reason="unknown_email", email_hash=_email_hash(email))
            raise InvalidCredentialsError()
        if self.lockout.is_locked(user, self._now()):
            self.logger.info("login_rejected_locked", user_id=user.id)
            raise AccountLockedError()
        if not user.is_active:
            raise AccountDeactivatedError()

        if not self.hasher.verify(user.password_hash, password):
            await self._record_failed_login(user)
            raise InvalidCredentialsError()

        now = self._now()
        changes = {**self.lockout.register_success(), "last_login": now}
        try:
            # Conditional on the hash just verified; a concurrent password
            # change or reset wins over this login
            user = self._update(
                user.id,
                changes,
                expected={"password_hash": user.password_hash, "is_active": True},
            )
        except (StaleWrite, NotFoundError) as exc:
            self.logger.info("login_failed", reason="credentials_changed", user_id=user.id)
            raise InvalidCredentialsError() from exc
        access_token, refresh_token = await self._start_session(user)
        self.logger.info("login_succeeded", user_id=user.id)
        await self._emit(
            events.USER_LOGIN,
            {"userId": user.id, "email": user.email, "loginAt": now.isoformat()},
        )
        return AuthResult(user.to_public(), access_token, refresh_token)

    async def _record_failed_login(self, user: User) -> None:
        """Apply the failure transition with compare-and-set.

        Concurrent failures for the same account each re-read and retry, so no
        increment is lost and the lock is set exactly once.
        """
        current: Optional[User] = user
        for _ in range(_LOCKOUT_WRITE_ATTEMPTS):
            if current is None:
                return
            now = self._now()
            changes = self.lockout.register_failure(current, now)
            try:
                with self._storage_guard("record_failure"):
                    updated = self.store.update(
                        current.id,
                        changes,
                        expected={
                            "failed_login_count": current.failed_login_count,
                            "locked_until": current.locked_until,
                        },
                    )
            except StaleWrite:
                with self._storage_guard("find_by_id"):
                    current = self.store.find_by_id(user.id)
                continue
            except RecordNotFound:
                return
            self.logger.info(
                "login_failed",
                reason="bad_password",
                user_id=updated.id,
                failed_login_count=updated.failed_login_count,
            )
            if "locked_until" in changes and changes["locked_until"] is not None:
                self.logger.warning(
                    "account_locked",
                    user_id=updated.id,
                    locked_until=updated.locked_until.isoformat(),
                )
            return
        self.logger.error("lockout_update_contended", user_id=user.id)
        raise TransientError()

    async def refresh_access_token(self, refresh_token: str) -> str:
        try:
            claims = self.tokens.verify(refresh_token, REFRESH)
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=type(exc).__name__)
            raise InvalidRefreshTokenError() from exc

        with self._storage_guard("session_get"):
            stored = await self.cache.get(claims.sub)
        if stored is None or not secrets.compare_digest(stored, refresh_token):
            self.logger.info("refresh_rejected", reason="session_mismatch", user_id=claims.sub)
            raise InvalidRefreshTokenError()

        with self._storage_guard("find_by_id"):
            user = self.store.find_by_id(claims.sub)
        if user is None or not user.is_active:
            raise InvalidRefreshTokenError()
        return self.tokens.issue_access_token(user)

    async def logout(self, user_id: str) -> None:
        await self._end_session(user_id)
        self.logger.info("logout", user_id=user_id)
        await self._emit(
            events.USER_LOGOUT,
            {"userId": user_id, "logoutAt": self._now().isoformat()},
        )

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self._require_user(user_id)
        if not self.hasher.verify(user.password_hash, current_password):
            raise IncorrectPasswordError()
        # Conditional on the hash just verified
        try:
            self._update(
                user.id,
                {"password_hash": self.hasher.hash(new_password)},
                expected={"password_hash": user.password_hash},
            )
        except StaleWrite as exc:
            raise IncorrectPasswordError() from exc
        await self._end_session(user.id)
        self.logger.info("password_changed", user_id=user.id)
        await self._emit(
            events.USER_PASSWORD_CHANGED,
            {"userId": user.id, "changedAt": self._now().isoformat()},
        )

    async def request_password_reset(self, email: str) -> None:
        """Store a reset token for ``email`` if such a user exists.

        The outcome is identical for known and unknown addresses so the
        endpoint cannot be used to enumerate accounts.
        """
        with self._storage_guard("find_by_email"):
            user = self.store.find_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_email", email_hash=_email_hash(email))
            return

        token = secrets.token_hex(32)
        expires_at = self._now() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        try:
            self._update(
                user.id,
                {"password_reset_token": token, "password_reset_expiry": expires_at},
            )
        except NotFoundError:
            return
        self.logger.info("password_reset_requested", user_id=user.id)
        await self._emit(
            events.USER_PASSWORD_RESET_REQUESTED,
            {
                "userId": user.id,
                "email": user.email,
                "resetToken": token,
                "expiresAt": expires_at.isoformat(),
            },
        )

    async def reset_password(self, token: str, new_password: str) -> None:
        with self._storage_guard("find_by_reset_token"):
            user = self.store.find_by_reset_token(token, self._now())
        if user is None:
            self.logger.info("password_reset_invalid_token")
            raise InvalidOrExpiredTokenError()

        try:
            self._update(
                user.id,
                {
                    "password_hash": self.hasher.hash(new_password),
                    "password_reset_token": None,
                    "password_reset_expiry": None,
                },
                expected={"password_reset_token": token},
            )
        except (StaleWrite, NotFoundError) as exc:
            # Another reset consumed the token between lookup and write
            raise InvalidOrExpiredTokenError() from exc
        await self._end_session(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)
        await self._emit(
            events.USER_PASSWORD_RESET,
            {"userId": user.id, "resetAt": self._now().isoformat()},
        )

    async def verify_access_token(self, token: str) -> Dict[str, Any]:
        try:
            claims = self.tokens.verify(token, ACCESS)
        except TokenError as exc:
            raise InvalidTokenError() from exc
        return claims.identity()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise InvalidTokenError("missing bearer token")
        try:
            claims = self.tokens.verify(token, ACCESS)
        except TokenError as exc:
            raise InvalidTokenError() from exc
        with self._storage_guard("find_by_id"):
            user = self.store.find_by_id(claims.sub)
        if user is None or not user.is_active:
            raise InvalidTokenError("user not found or inactive")
        return AuthContext(user_id=user.id, email=user.email, role=user.role)

    @staticmethod
    def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        return token.strip() or None

    async def get_profile(self, user_id: str) -> Dict[str, Any]:
        return self._require_user(user_id).to_public()

    async def update_profile(
        self,
        user_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        if first_name is not None:
            changes["first_name"] = first_name
        if last_name is not None:
            changes["last_name"] = last_name
        if not changes:
            return self._require_user(user_id).to_public()
        user = self._update(user_id, changes)
        await self._emit(events.USER_UPDATED, {"userId": user.id, "changes": changes})
        return user.to_public()

    async def deactivate_user(self, user_id: str) -> Dict[str, Any]:
        user = self._update(user_id, {"is_active": False})
        await self._end_session(user.id)
        self.logger.info("user_deactivated", user_id=user.id)
        await self._emit(
            events.USER_DEACTIVATED,
            {"userId": user.id, "deactivatedAt": self._now().isoformat()},
        )
        return user.to_public()
