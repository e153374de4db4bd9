"""Tests for access/refresh token issuance and verification."""

import base64
import json

import pytest

from authcore.service.tokens import (
    ACCESS,
    REFRESH,
    TokenExpiredError,
    TokenInvalidError,
    TokenIssuer,
)
from authcore.storage.models import User


@pytest.fixture
def issuer(settings, clock):
    return TokenIssuer(settings, clock=clock)


@pytest.fixture
def user():
    return User.new("alice@example.com", "hash", role="admin")


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


def _claims(token: str) -> dict:
    payload = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))


class TestIssue:
    def test_access_token_claims(self, issuer, user, clock):
        claims = _claims(issuer.issue_access_token(user))

        assert claims["sub"] == user.id
        assert claims["email"] == "alice@example.com"
        assert claims["role"] == "admin"
        assert claims["token_type"] == "access"
        assert claims["iat"] == int(clock().timestamp())
        assert claims["exp"] - claims["iat"] == 15 * 60
        assert claims["jti"]

    def test_refresh_token_claims(self, issuer, user):
        claims = _claims(issuer.issue_refresh_token(user))

        assert claims["token_type"] == "refresh"
        assert "role" not in claims
        assert claims["exp"] - claims["iat"] == 7 * 24 * 60 * 60

    def test_tokens_minted_together_are_distinct(self, issuer, user):
        assert issuer.issue_refresh_token(user) != issuer.issue_refresh_token(user)


class TestVerify:
    def test_round_trip(self, issuer, user):
        claims = issuer.verify(issuer.issue_access_token(user), ACCESS)

        assert claims.user_id == user.id
        assert claims.identity() == {
            "user_id": user.id,
            "email": "alice@example.com",
            "role": "admin",
        }

    def test_expired_token(self, issuer, user, clock):
        token = issuer.issue_access_token(user)
        clock.advance(minutes=15)

        with pytest.raises(TokenExpiredError):
            issuer.verify(token, ACCESS)

    def test_refresh_token_rejected_as_access(self, issuer, user):
        with pytest.raises(TokenInvalidError):
            issuer.verify(issuer.issue_refresh_token(user), ACCESS)

    def test_access_token_rejected_as_refresh(self, issuer, user):
        with pytest.raises(TokenInvalidError):
            issuer.verify(issuer.issue_access_token(user), REFRESH)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b", "a.b.c.d", "!!.??.##"])
    def test_malformed_tokens(self, issuer, token):
        with pytest.raises(TokenInvalidError):
            issuer.verify(token, ACCESS)

    def test_tampered_payload(self, issuer, user):
        header, _, signature = issuer.issue_access_token(user).split(".")
        forged = _segment({**_claims(issuer.issue_access_token(user)), "role": "root"})

        with pytest.raises(TokenInvalidError):
            issuer.verify(f"{header}.{forged}.{signature}", ACCESS)

    def test_alg_none_rejected(self, issuer, user):
        _, payload, _ = issuer.issue_access_token(user).split(".")
        header = _segment({"alg": "none", "typ": "JWT"})

        with pytest.raises(TokenInvalidError):
            issuer.verify(f"{header}.{payload}.", ACCESS)

    def test_foreign_issuer_rejected(self, settings, user, clock):
        other = TokenIssuer(settings.model_copy(update={"jwt_issuer": "someone-else"}), clock=clock)
        token = other.issue_access_token(user)

        with pytest.raises(TokenInvalidError):
            TokenIssuer(settings, clock=clock).verify(token, ACCESS)

    def test_unknown_kind_is_a_programming_error(self, issuer, user):
        with pytest.raises(ValueError):
            issuer.verify(issuer.issue_access_token(user), "id")
