from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from taskhub.logging import get_logger
from taskhub.storage.errors import ConstraintViolation, StoreUnavailable
from taskhub.storage.memory import _UPDATABLE_FIELDS
from taskhub.storage.models import CREDENTIALS_PROVIDER, User, utcnow

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL DEFAULT '',
    password_hash TEXT,
    provider TEXT,
    provider_id TEXT,
    avatar TEXT NOT NULL DEFAULT '',
    bio TEXT NOT NULL DEFAULT '',
    email_verified BOOLEAN NOT NULL DEFAULT false,
    last_login TIMESTAMPTZ,
    login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (login_attempts >= 0),
    lock_until TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CHECK (password_hash IS NOT NULL OR provider IS DISTINCT FROM 'credentials')
);
CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email));
"""


class PostgresStore:
    """Postgres-backed account store.

    Each mutation is a single statement, so lockout increments and provider
    attachment stay atomic across processes without application-level locks.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": True},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("account store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    @staticmethod
    def _row_to_user(row: Optional[dict]) -> Optional[User]:
        if not row:
            return None
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            password_hash=row.get("password_hash"),
            provider=row.get("provider"),
            provider_id=row.get("provider_id"),
            avatar=row.get("avatar") or "",
            bio=row.get("bio") or "",
            email_verified=bool(row.get("email_verified", False)),
            last_login=row.get("last_login"),
            login_attempts=int(row.get("login_attempts") or 0),
            lock_until=row.get("lock_until"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        first_name: str,
        last_name: str = "",
        password_hash: Optional[str] = None,
        provider: Optional[str] = CREDENTIALS_PROVIDER,
        provider_id: Optional[str] = None,
        avatar: str = "",
        email_verified: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, password_hash,
                                          provider, provider_id, avatar, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        first_name,
                        last_name,
                        password_hash,
                        provider,
                        provider_id,
                        avatar or "",
                        email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s",
                (email.strip().lower(),),
            ).fetchone()
        return self._row_to_user(row)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        names = sorted(fields)
        assignments = ", ".join(f"{name} = %s" for name in names)
        params = [fields[name] for name in names] + [user_id]
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._row_to_user(row)

    def attach_provider(
        self,
        user_id: str,
        provider: str,
        provider_id: str,
        *,
        avatar: Optional[str] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET provider = %s,
                    provider_id = %s,
                    avatar = CASE WHEN avatar = '' THEN %s ELSE avatar END,
                    updated_at = now()
                WHERE id = %s AND provider IS NULL
                RETURNING *
                """,
                (provider, provider_id, avatar or "", user_id),
            ).fetchone()
        if row:
            return self._row_to_user(row)
        # Already linked (or missing): report current state unchanged
        return self.get_user(user_id)

    def increment_login_attempts(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN 1
                        ELSE login_attempts + 1
                    END,
                    lock_until = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN NULL
                        WHEN lock_until IS NULL AND login_attempts + 1 >= %(max_attempts)s
                            THEN %(lock_until)s
                        ELSE lock_until
                    END,
                    updated_at = %(now)s
                WHERE id = %(user_id)s
                RETURNING *
                """,
                {
                    "now": now,
                    "max_attempts": max_attempts,
                    "lock_until": now + lock_duration,
                    "user_id": user_id,
                },
            ).fetchone()
        return self._row_to_user(row)

    def reset_login_attempts(
        self, user_id: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = 0, lock_until = NULL, last_login = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, now, user_id),
            ).fetchone()
        return self._row_to_user(row)

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def close(self) -> None:
        self.pool.close()
