from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, StoreUnavailable
from gatehouse.storage.models import (
    ANY_REFRESH_TOKEN,
    Role,
    IdentityRecord,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        password_changed_at TIMESTAMPTZ,
        refresh_token TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed identity store.

    Connectivity failures surface as ``StoreUnavailable`` so callers can deny
    rather than guess.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _execute(self, sql: str, params: tuple = (), *, fetch: str = "one") -> Any:
        """Run one statement in its own transaction, mapping outages.

        ``fetch`` selects the result: ``"one"`` row, ``"all"`` rows or the
        ``"rowcount"``.
        """
        try:
            with self._connect() as conn:
                cur = conn.execute(sql, params)
                if fetch == "all":
                    return cur.fetchall()
                if fetch == "rowcount":
                    return cur.rowcount
                return cur.fetchone()
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable(str(exc), backend="postgres") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> IdentityRecord:
        now = datetime.now(timezone.utc)
        return IdentityRecord(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            role=row.get("role", Role.USER.value),
            is_active=row.get("is_active", True),
            password_changed_at=row.get("password_changed_at"),
            refresh_token=row.get("refresh_token"),
            created_at=row.get("created_at") or now,
            updated_at=row.get("updated_at") or now,
        )

    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        role: str = Role.USER.value,
        is_active: bool = True,
        at: Optional[datetime] = None,
    ) -> IdentityRecord:
        user_id = str(uuid.uuid4())
        now = at or datetime.now(timezone.utc)
        try:
            row = self._execute(
                """
                INSERT INTO app_user (id, email, name, role, is_active, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (user_id, email, name, role, is_active, now, now),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def load_identity(self, user_id: str) -> Optional[IdentityRecord]:
        row = self._execute(
            "SELECT * FROM app_user WHERE id = %s", (user_id,)
        )
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[IdentityRecord]:
        row = self._execute(
            "SELECT * FROM app_user WHERE email = %s", (email,)
        )
        return self._row_to_user(row) if row else None

    def list_users(
        self, *, include_inactive: bool = False, limit: int = 100
    ) -> List[IdentityRecord]:
        if include_inactive:
            rows = self._execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s",
                (limit,),
                fetch="all",
            )
        else:
            rows = self._execute(
                "SELECT * FROM app_user WHERE is_active ORDER BY created_at DESC LIMIT %s",
                (limit,),
                fetch="all",
            )
        return [self._row_to_user(row) for row in rows]

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        name: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Optional[IdentityRecord]:
        try:
            row = self._execute(
                """
                UPDATE app_user
                SET email = COALESCE(%s, email),
                    name = COALESCE(%s, name),
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (email, name, at or datetime.now(timezone.utc), user_id),
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    def update_user_role(
        self, user_id: str, role: str, *, at: Optional[datetime] = None
    ) -> Optional[IdentityRecord]:
        row = self._execute(
            "UPDATE app_user SET role = %s, updated_at = %s WHERE id = %s RETURNING *",
            (role, at or datetime.now(timezone.utc), user_id),
        )
        return self._row_to_user(row) if row else None

    def set_active(
        self, user_id: str, is_active: bool, *, at: Optional[datetime] = None
    ) -> Optional[IdentityRecord]:
        row = self._execute(
            """
            UPDATE app_user
            SET is_active = %s,
                refresh_token = CASE WHEN %s THEN refresh_token ELSE NULL END,
                updated_at = %s
            WHERE id = %s
            RETURNING *
            """,
            (is_active, is_active, at or datetime.now(timezone.utc), user_id),
        )
        return self._row_to_user(row) if row else None

    def mark_password_changed(
        self, user_id: str, changed_at: datetime
    ) -> Optional[IdentityRecord]:
        row = self._execute(
            """
            UPDATE app_user
            SET password_changed_at = %s, refresh_token = NULL, updated_at = %s
            WHERE id = %s
            RETURNING *
            """,
            (changed_at, changed_at, user_id),
        )
        return self._row_to_user(row) if row else None

    def compare_and_set_refresh_token(
        self, user_id: str, expected: Any, new_token: Optional[str]
    ) -> bool:
        """Compare-and-set the refresh token in a single UPDATE."""
        if expected is ANY_REFRESH_TOKEN:
            result = self._execute(
                "UPDATE app_user SET refresh_token = %s WHERE id = %s",
                (new_token, user_id),
                fetch="rowcount",
            )
        else:
            result = self._execute(
                """
                UPDATE app_user SET refresh_token = %s
                WHERE id = %s AND refresh_token IS NOT DISTINCT FROM %s
                """,
                (new_token, user_id, expected),
                fetch="rowcount",
            )
        return result > 0

    def clear_refresh_token(self, user_id: str) -> bool:
        return self.compare_and_set_refresh_token(user_id, ANY_REFRESH_TOKEN, None)

    def delete_user(self, user_id: str) -> bool:
        result = self._execute(
            "DELETE FROM app_user WHERE id = %s", (user_id,), fetch="rowcount"
        )
        return result > 0

    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        at: Optional[datetime] = None,
    ) -> None:
        try:
            self._execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    last_updated_at = EXCLUDED.last_updated_at
                """,
                (user_id, password_hash, password_algo, at or datetime.now(timezone.utc)),
                fetch="rowcount",
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        row = self._execute(
            "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
            (user_id,),
        )
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def close(self) -> None:
        self.pool.close()
