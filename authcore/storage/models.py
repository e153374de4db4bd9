from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROLE_CUSTOMER = "customer"
ROLE_ADMIN = "admin"
ROLES = frozenset({ROLE_CUSTOMER, ROLE_ADMIN})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# Fields that never leave the service boundary
_PRIVATE_FIELDS = frozenset(
    {
        "password_hash",
        "password_reset_token",
        "password_reset_expiry",
        "failed_login_count",
        "locked_until",
    }
)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    role: str = ROLE_CUSTOMER
    is_active: bool = True
    email_verified: bool = False
    last_login: Optional[datetime] = None
    failed_login_count: int = 0
    locked_until: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expiry: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        role: str = ROLE_CUSTOMER,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            role=role,
            created_at=now,
            updated_at=now,
        )

    def to_public(self) -> Dict[str, Any]:
        """Representation safe to hand to callers outside the service."""
        data: Dict[str, Any] = {}
        for f in fields(self):
            if f.name in _PRIVATE_FIELDS:
                continue
            value = getattr(self, f.name)
            data[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return data


USER_FIELDS = frozenset(f.name for f in fields(User))


@dataclass
class AuthEvent:
    """Outbound notification describing a user state change."""

    type: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "correlationId": self.correlation_id,
        }
