from __future__ import annotations

import contextlib
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterator, Mapping, Optional

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.errors import (
    ConstraintViolation,
    RecordNotFound,
    StaleWrite,
    StoreUnavailable,
)
from authcore.storage.models import USER_FIELDS, User, normalize_email, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'customer' CHECK (role IN ('customer', 'admin')),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        last_login TIMESTAMPTZ,
        failed_login_count INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_count >= 0),
        locked_until TIMESTAMPTZ,
        password_reset_token TEXT,
        password_reset_expiry TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_user_email_lower_idx ON auth_user (lower(email))",
    """
    CREATE INDEX IF NOT EXISTS auth_user_reset_token_idx ON auth_user (password_reset_token)
    WHERE password_reset_token IS NOT NULL
    """,
)

# INSERT column order
_COLUMNS = tuple(sorted(USER_FIELDS))


def _row_to_user(row: Mapping[str, Any]) -> User:
    values = {name: row[name] for name in _COLUMNS if name in row}
    values["id"] = str(values["id"])
    return User(**values)


class PostgresStore:
    """Postgres-backed credential store.

    Every call borrows a pooled connection; the pool context commits on a clean
    exit and rolls back on error. Pool acquisition and statements are both
    bounded by ``timeout_seconds`` and surface as :class:`StoreUnavailable`.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 2,
        max_size: int = 10,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
            open=True,
        )
        if ensure_schema:
            self.ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        except psycopg.OperationalError as exc:
            # PoolTimeout and QueryCanceled are both OperationalError subclasses
            self.logger.warning(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable("credential store unavailable") from exc

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def create(self, user: User) -> User:
        stored = replace(user, email=normalize_email(user.email))
        query = sql.SQL("INSERT INTO auth_user ({}) VALUES ({})").format(
            sql.SQL(", ").join(sql.Identifier(name) for name in _COLUMNS),
            sql.SQL(", ").join(sql.Placeholder() for _ in _COLUMNS),
        )
        with self._connect() as conn:
            conn.execute(query, tuple(getattr(stored, name) for name in _COLUMNS))
        return stored

    def find_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return _row_to_user(row) if row else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def find_by_reset_token(self, token: str, now: datetime) -> Optional[User]:
        if not token:
            return None
        # Token match and expiry are evaluated in one statement
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_user
                WHERE password_reset_token = %s AND password_reset_expiry > %s
                """,
                (token, now),
            ).fetchone()
        return _row_to_user(row) if row else None

    def update(
        self,
        user_id: str,
        changes: Mapping[str, Any],
        *,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> User:
        values = dict(changes)
        unknown = (set(values) | set(expected or {})) - USER_FIELDS
        if unknown:
            raise ValueError(f"unknown user fields: {sorted(unknown)}")
        if "id" in values:
            raise ValueError("user id is immutable")
        if "email" in values:
            values["email"] = normalize_email(values["email"])
        values["updated_at"] = utcnow()

        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in values
        ]
        params: list[Any] = list(values.values())
        conditions = [sql.SQL("id = %s")]
        params.append(user_id)
        for name, value in (expected or {}).items():
            if value is None:
                conditions.append(sql.SQL("{} IS NULL").format(sql.Identifier(name)))
            else:
                conditions.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
                params.append(value)
        query = sql.SQL("UPDATE auth_user SET {} WHERE {} RETURNING *").format(
            sql.SQL(", ").join(assignments),
            sql.SQL(" AND ").join(conditions),
        )
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
            if row is None:
                exists = conn.execute(
                    "SELECT 1 FROM auth_user WHERE id = %s", (user_id,)
                ).fetchone()
        if row is not None:
            return _row_to_user(row)
        if exists is None:
            raise RecordNotFound("user not found", {"user_id": user_id})
        raise StaleWrite("user changed concurrently", {"user_id": user_id})
