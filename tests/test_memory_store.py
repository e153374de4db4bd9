"""Unit tests for the in-memory credential store and session cache."""

from datetime import timedelta

import pytest

from authcore.storage.errors import ConstraintViolation, RecordNotFound, StaleWrite
from authcore.storage.models import User


def _user(email="alice@example.com", password_hash="hash"):
    return User.new(email, password_hash, first_name="Alice", last_name="Smith")


class TestMemoryStore:
    def test_find_by_email_is_case_insensitive(self, store):
        created = store.create(_user("Alice@Example.com"))

        assert created.email == "alice@example.com"
        assert store.find_by_email("ALICE@example.COM").id == created.id
        assert store.find_by_email("bob@example.com") is None

    def test_duplicate_email_rejected(self, store):
        store.create(_user("alice@example.com"))

        with pytest.raises(ConstraintViolation):
            store.create(_user("ALICE@example.com"))

    def test_returned_records_are_copies(self, store):
        created = store.create(_user())
        created.first_name = "Mallory"

        assert store.find_by_id(created.id).first_name == "Alice"

    def test_update_merges_and_bumps_updated_at(self, store):
        created = store.create(_user())

        updated = store.update(created.id, {"first_name": "Alicia"})

        assert updated.first_name == "Alicia"
        assert updated.last_name == "Smith"
        assert updated.updated_at >= created.updated_at

    def test_update_missing_user_raises(self, store):
        with pytest.raises(RecordNotFound):
            store.update("missing", {"first_name": "x"})

    def test_update_rejects_unknown_and_id_fields(self, store):
        created = store.create(_user())

        with pytest.raises(ValueError):
            store.update(created.id, {"nickname": "al"})
        with pytest.raises(ValueError):
            store.update(created.id, {"id": "other"})

    def test_conditional_update_rejects_stale_expectation(self, store):
        created = store.create(_user())
        store.update(created.id, {"failed_login_count": 1})

        with pytest.raises(StaleWrite):
            store.update(
                created.id,
                {"failed_login_count": 1},
                expected={"failed_login_count": 0},
            )
        assert store.find_by_id(created.id).failed_login_count == 1

    def test_conditional_update_applies_when_expectation_holds(self, store):
        created = store.create(_user())

        updated = store.update(
            created.id,
            {"failed_login_count": 1},
            expected={"failed_login_count": 0, "locked_until": None},
        )

        assert updated.failed_login_count == 1

    def test_email_change_keeps_uniqueness(self, store):
        alice = store.create(_user("alice@example.com"))
        store.create(_user("bob@example.com"))

        with pytest.raises(ConstraintViolation):
            store.update(alice.id, {"email": "BOB@example.com"})

        store.update(alice.id, {"email": "alice2@example.com"})
        assert store.find_by_email("alice@example.com") is None
        assert store.find_by_email("alice2@example.com").id == alice.id

    def test_find_by_reset_token_honours_expiry(self, store, clock):
        created = store.create(_user())
        store.update(
            created.id,
            {
                "password_reset_token": "abc123",
                "password_reset_expiry": clock() + timedelta(hours=1),
            },
        )

        assert store.find_by_reset_token("abc123", clock()).id == created.id
        assert store.find_by_reset_token("other", clock()) is None
        assert store.find_by_reset_token("abc123", clock() + timedelta(hours=1)) is None
        assert store.find_by_reset_token("", clock()) is None


class TestMemorySessionCache:
    async def test_put_get_delete(self, cache):
        await cache.put("user-1", "token-a", 60)
        assert await cache.get("user-1") == "token-a"

        await cache.delete("user-1")
        assert await cache.get("user-1") is None
        # Deleting again is a no-op
        await cache.delete("user-1")

    async def test_put_overwrites_previous_token(self, cache):
        await cache.put("user-1", "token-a", 60)
        await cache.put("user-1", "token-b", 60)

        assert await cache.get("user-1") == "token-b"

    async def test_entries_expire_with_clock(self, cache, clock):
        await cache.put("user-1", "token-a", 60)

        clock.advance(seconds=59)
        assert await cache.get("user-1") == "token-a"
        clock.advance(seconds=1)
        assert await cache.get("user-1") is None
