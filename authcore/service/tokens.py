from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.storage.models import User, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = frozenset({ACCESS, REFRESH})


class TokenError(Exception):
    """Base class for token verification failures."""


class TokenExpiredError(TokenError):
    """Signature is valid but ``exp`` has passed."""


class TokenInvalidError(TokenError):
    """Malformed, tampered, foreign or wrong-kind token."""


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    email: str
    token_type: str
    iat: int
    exp: int
    jti: str
    role: Optional[str] = None

    def identity(self) -> dict[str, Any]:
        data: dict[str, Any] = {"user_id": self.sub, "email": self.email}
        if self.role is not None:
            data["role"] = self.role
        return data


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """HS256 access and refresh tokens.

    Each kind is signed with its own secret and carries a ``token_type``
    claim; ``verify`` checks both.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or utcnow
        self._secrets = {
            ACCESS: settings.jwt_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self._ttls = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(minutes=settings.refresh_token_ttl_minutes),
        }

    @property
    def refresh_ttl(self) -> timedelta:
        return self._ttls[REFRESH]

    def issue_access_token(self, user: User) -> str:
        return self._issue(user, ACCESS, role=user.role)

    def issue_refresh_token(self, user: User) -> str:
        return self._issue(user, REFRESH)

    def _issue(self, user: User, kind: str, *, role: Optional[str] = None) -> str:
        now = self._clock()
        payload: dict[str, Any] = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "token_type": kind,
            # jti keeps two tokens minted in the same second distinct
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttls[kind]).timestamp()),
        }
        if role is not None:
            payload["role"] = role
        return self._encode_jwt(payload, self._secrets[kind])

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return _encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def verify(self, token: str, kind: str) -> TokenClaims:
        if kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {kind}")
        if not token or not isinstance(token, str):
            raise TokenInvalidError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("malformed token") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise TokenInvalidError("malformed header") from None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenInvalidError("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", self._secrets[kind])
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalidError("bad signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed payload") from None
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed payload")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("wrong issuer")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise TokenInvalidError("wrong audience")
        if payload.get("token_type") != kind:
            raise TokenInvalidError("wrong token kind")

        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
            sub = str(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("missing claims") from None
        if exp <= self._clock().timestamp():
            raise TokenExpiredError("token expired")

        return TokenClaims(
            sub=sub,
            email=str(payload.get("email", "")),
            token_type=kind,
            iat=iat,
            exp=exp,
            jti=str(payload.get("jti", "")),
            role=payload.get("role"),
        )
