from dataclasses import replace
from datetime import timedelta

import pytest

from authcore.service.lockout import LockoutPolicy
from authcore.storage.models import User


@pytest.fixture
def policy():
    return LockoutPolicy(threshold=5, duration=timedelta(hours=2))


@pytest.fixture
def user():
    return User.new("alice@example.com", "hash")


def test_unlocked_by_default(policy, user, clock):
    assert not policy.is_locked(user, clock())


def test_failures_below_threshold_only_count(policy, user, clock):
    for expected in range(1, 5):
        changes = policy.register_failure(user, clock())
        assert changes == {"failed_login_count": expected}
        user = replace(user, **changes)
    assert not policy.is_locked(user, clock())


def test_threshold_failure_sets_lock(policy, user, clock):
    user = replace(user, failed_login_count=4)

    changes = policy.register_failure(user, clock())

    assert changes["failed_login_count"] == 5
    assert changes["locked_until"] == clock() + timedelta(hours=2)
    assert policy.is_locked(replace(user, **changes), clock())


def test_lock_expires_lazily(policy, user, clock):
    locked = replace(user, failed_login_count=5, locked_until=clock() + timedelta(hours=2))

    assert policy.is_locked(locked, clock() + timedelta(hours=1, minutes=59))
    assert not policy.is_locked(locked, clock() + timedelta(hours=2))


def test_failure_after_expired_lock_restarts_count(policy, user, clock):
    locked = replace(user, failed_login_count=5, locked_until=clock() - timedelta(seconds=1))

    assert policy.register_failure(locked, clock()) == {
        "failed_login_count": 1,
        "locked_until": None,
    }


def test_failure_while_locked_does_not_extend_lock(policy, user, clock):
    until = clock() + timedelta(hours=1)
    locked = replace(user, failed_login_count=5, locked_until=until)

    changes = policy.register_failure(locked, clock())

    assert changes == {"failed_login_count": 6}


def test_success_clears_state(policy):
    assert policy.register_success() == {"failed_login_count": 0, "locked_until": None}


def test_from_settings(settings):
    policy = LockoutPolicy.from_settings(settings)

    assert policy.threshold == 5
    assert policy.duration == timedelta(minutes=120)


@pytest.mark.parametrize("threshold,duration", [(0, timedelta(hours=1)), (3, timedelta(0))])
def test_rejects_invalid_configuration(threshold, duration):
    with pytest.raises(ValueError):
        LockoutPolicy(threshold=threshold, duration=duration)
