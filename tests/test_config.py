import pytest
from pydantic import ValidationError

from authcore.config import Settings, get_settings


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
    monkeypatch.setenv("EVENT_EXCHANGE", "  shop.user.events ")

    settings = Settings.from_env()

    assert settings.lockout_threshold == 3
    assert settings.access_token_ttl_minutes == 5
    assert settings.event_exchange == "shop.user.events"


def test_get_settings_is_cached():
    first = get_settings()
    assert get_settings() is first


def test_secrets_required_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False, jwt_secret=None, jwt_refresh_secret=None)


def test_test_mode_generates_distinct_secrets():
    settings = Settings(test_mode=True, jwt_secret=None, jwt_refresh_secret=None)

    assert settings.jwt_secret
    assert settings.jwt_refresh_secret
    assert settings.jwt_secret != settings.jwt_refresh_secret


def test_access_and_refresh_secrets_must_differ():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="same-secret-value", jwt_refresh_secret="same-secret-value")


def test_rejects_empty_exchange():
    with pytest.raises(ValidationError):
        Settings(test_mode=True, event_exchange="   ")


def test_rejects_non_positive_lockout_threshold():
    with pytest.raises(ValidationError):
        Settings(test_mode=True, lockout_threshold=0)
