import contextlib
from datetime import datetime, timezone

import psycopg
import pytest
from psycopg import errors

from authcore.logging import get_logger
from authcore.storage.errors import (
    ConstraintViolation,
    RecordNotFound,
    StaleWrite,
    StoreUnavailable,
)
from authcore.storage.models import User
from authcore.storage.postgres import PostgresStore, _row_to_user


class FakeCursor:
    def __init__(self, row):
        self.row = row

    def fetchone(self):
        return self.row


class FakeConnection:
    """Replays scripted results; an Exception result is raised instead."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def execute(self, query, params=None):
        self.calls.append((query, params))
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return FakeCursor(result)


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store(results) -> tuple[PostgresStore, FakeConnection]:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = FakeConnection(results)
    store.pool = FakePool(conn)
    store.logger = get_logger("test")
    return store, conn


def _row(**overrides):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": "user-1",
        "email": "alice@example.com",
        "password_hash": "hash",
        "first_name": "Alice",
        "last_name": "Smith",
        "role": "customer",
        "is_active": True,
        "email_verified": False,
        "last_login": None,
        "failed_login_count": 0,
        "locked_until": None,
        "password_reset_token": None,
        "password_reset_expiry": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def test_row_to_user_maps_columns():
    user = _row_to_user(_row(failed_login_count=3))

    assert isinstance(user, User)
    assert user.id == "user-1"
    assert user.failed_login_count == 3


def test_find_by_email_normalizes_input():
    store, conn = _store([_row()])

    user = store.find_by_email("  Alice@Example.COM ")

    assert user.email == "alice@example.com"
    assert conn.calls[0][1] == ("alice@example.com",)


def test_unique_violation_maps_to_constraint_violation():
    store, _ = _store([errors.UniqueViolation("duplicate key")])

    with pytest.raises(ConstraintViolation):
        store.create(User.new("alice@example.com", "hash"))


def test_operational_error_maps_to_store_unavailable():
    store, _ = _store([psycopg.OperationalError("connection refused")])

    with pytest.raises(StoreUnavailable):
        store.find_by_id("user-1")


def test_update_returns_updated_row():
    store, conn = _store([_row(first_name="Alicia")])

    user = store.update("user-1", {"first_name": "Alicia"})

    assert user.first_name == "Alicia"
    params = conn.calls[0][1]
    # SET first_name, updated_at; then WHERE id
    assert params[0] == "Alicia"
    assert params[-1] == "user-1"


def test_conditional_update_reports_stale_write():
    store, conn = _store([None, (1,)])

    with pytest.raises(StaleWrite):
        store.update(
            "user-1",
            {"failed_login_count": 1},
            expected={"failed_login_count": 0, "locked_until": None},
        )
    # None expectations become IS NULL and add no parameter
    assert conn.calls[0][1][-2:] == ["user-1", 0]


def test_update_missing_row_reports_not_found():
    store, _ = _store([None, None])

    with pytest.raises(RecordNotFound):
        store.update("missing", {"first_name": "x"})


def test_update_rejects_unknown_fields():
    store, conn = _store([])

    with pytest.raises(ValueError):
        store.update("user-1", {"nickname": "al"})
    assert conn.calls == []
