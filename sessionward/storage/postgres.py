from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import timezone
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from sessionward.logging import get_logger
from sessionward.storage.errors import ConstraintViolation, StoreUnavailable
from sessionward.storage.models import Identity, normalize_login_key

_HANDLE_INDEX = "app_user_handle_lower_key"
_EMAIL_INDEX = "app_user_email_lower_key"

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        handle TEXT NOT NULL,
        email TEXT NOT NULL,
        fullname TEXT NOT NULL,
        avatar_url TEXT,
        cover_image_url TEXT,
        password_hash TEXT NOT NULL,
        refresh_token TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    f"CREATE UNIQUE INDEX IF NOT EXISTS {_HANDLE_INDEX} ON app_user (lower(handle))",
    f"CREATE UNIQUE INDEX IF NOT EXISTS {_EMAIL_INDEX} ON app_user (lower(email))",
)


def _is_uuid(value: str) -> bool:
    # Ids are UUIDs; anything else cannot name a record
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed credential store.

    Rotation relies on a single conditional UPDATE so concurrent refreshes of
    the same identity are serialized by the row lock Postgres takes.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            open=False,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )

    # lifecycle
    def connect(self) -> None:
        try:
            self.pool.open(wait=True, timeout=self.timeout_seconds)
        except (PoolTimeout, psycopg.OperationalError) as exc:
            self.logger.error("credential_store_connect_failed", error=str(exc))
            raise StoreUnavailable(
                f"unable to reach Postgres: {exc}", operation="connect"
            ) from exc
        self._ensure_schema()
        self.logger.info("credential_store_connected", backend="postgres")

    def close(self) -> None:
        self.pool.close()
        self.logger.info("credential_store_closed", backend="postgres")

    @contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.warning("credential_store_pool_timeout", operation=operation)
            raise StoreUnavailable(
                f"{operation} could not obtain a connection within {self.timeout_seconds}s",
                operation=operation,
            ) from exc
        except psycopg.OperationalError as exc:
            # Includes QueryCanceled raised by statement_timeout
            self.logger.warning(
                "credential_store_operational_error", operation=operation, error=str(exc)
            )
            raise StoreUnavailable(f"{operation} failed: {exc}", operation=operation) from exc

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table and its case-insensitive unique indexes."""

        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _row_to_identity(row: Dict[str, Any]) -> Identity:
        created_at = row["created_at"]
        updated_at = row.get("updated_at") or created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return Identity(
            id=str(row["id"]),
            handle=row["handle"],
            email=row["email"],
            fullname=row.get("fullname") or "",
            password_hash=row["password_hash"],
            avatar_url=row.get("avatar_url"),
            cover_image_url=row.get("cover_image_url"),
            refresh_token=row.get("refresh_token"),
            created_at=created_at,
            updated_at=updated_at,
        )

    # reads
    def find_by_handle_or_email(self, value: str) -> Optional[Identity]:
        key = normalize_login_key(value)
        if not key:
            return None
        with self._connect("find_by_handle_or_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(handle) = %s OR lower(email) = %s LIMIT 1",
                (key, key),
            ).fetchone()
        if not row:
            return None
        return self._row_to_identity(row)

    def find_by_id(self, user_id: str) -> Optional[Identity]:
        if not _is_uuid(user_id):
            return None
        with self._connect("find_by_id") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_identity(row)

    # writes
    def create(
        self,
        handle: str,
        email: str,
        fullname: str,
        password_hash: str,
        *,
        avatar_url: Optional[str] = None,
        cover_image_url: Optional[str] = None,
    ) -> Identity:
        identity = Identity.new(
            handle,
            email,
            fullname,
            password_hash,
            avatar_url=avatar_url,
            cover_image_url=cover_image_url,
        )
        try:
            with self._connect("create") as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (
                        id, handle, email, fullname, avatar_url, cover_image_url,
                        password_hash, refresh_token, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, NULL, %s, %s)
                    """,
                    (
                        identity.id,
                        identity.handle,
                        identity.email,
                        identity.fullname,
                        identity.avatar_url,
                        identity.cover_image_url,
                        identity.password_hash,
                        identity.created_at,
                        identity.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "handle" if constraint == _HANDLE_INDEX else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return identity

    def set_refresh_token(self, user_id: str, token: Optional[str]) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect("set_refresh_token") as conn:
            cur = conn.execute(
                "UPDATE app_user SET refresh_token = %s, updated_at = now() WHERE id = %s",
                (token, user_id),
            )
            return cur.rowcount == 1

    def compare_and_set_refresh_token(
        self, user_id: str, expected: Optional[str], token: Optional[str]
    ) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect("compare_and_set_refresh_token") as conn:
            cur = conn.execute(
                """
                UPDATE app_user
                SET refresh_token = %s, updated_at = now()
                WHERE id = %s AND refresh_token IS NOT DISTINCT FROM %s
                """,
                (token, user_id, expected),
            )
            return cur.rowcount == 1

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect("set_password_hash") as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return cur.rowcount == 1


__all__ = ["PostgresStore"]
