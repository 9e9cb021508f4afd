from __future__ import annotations

import threading
from typing import List, Optional

from psycopg import Error as PsycopgError
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from chatrelay.logging import get_logger
from chatrelay.storage.errors import ConstraintViolation, StorageError
from chatrelay.storage.models import MirroredUser


class PostgresMirrorStore:
    """Relational mirror of user accounts kept for legacy readers.

    The ``users`` table is created on first use so the service can start
    before the mirror database is reachable.
    """

    kind = "postgres"

    def __init__(
        self, conninfo: str, *, min_size: int = 1, max_size: int = 5, timeout: float = 5.0
    ) -> None:
        self.conninfo = conninfo
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.conninfo,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def _connect(self):
        return self.pool.connection()

    def _fail(self, operation: str, exc: Exception) -> StorageError:
        self.logger.error(
            "mirror_operation_failed",
            operation=operation,
            error_type=type(exc).__name__,
        )
        return StorageError(f"mirror {operation} failed", store="mirror", operation=operation)

    def _ensure_users_table(self) -> None:
        """Create the ``users`` table if it is missing."""

        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id SERIAL PRIMARY KEY,
                        name TEXT NOT NULL,
                        email TEXT NOT NULL UNIQUE,
                        password TEXT NOT NULL,
                        created_at TIMESTAMP NOT NULL DEFAULT now()
                    )
                    """
                )
            self._schema_ready = True

    @staticmethod
    def _to_record(row: dict) -> MirroredUser:
        return MirroredUser(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            password_hash=row["password"],
            created_at=row.get("created_at"),
        )

    def get_user_by_email(self, email: str) -> Optional[MirroredUser]:
        try:
            self._ensure_users_table()
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, name, email, password, created_at FROM users "
                    "WHERE lower(email) = lower(%s)",
                    (email,),
                ).fetchone()
        except (PsycopgError, PoolTimeout) as exc:
            raise self._fail("find", exc) from exc
        return self._to_record(row) if row else None

    def insert_user(self, record: MirroredUser) -> MirroredUser:
        try:
            self._ensure_users_table()
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (name, email, password)
                    VALUES (%s, %s, %s)
                    RETURNING id, name, email, password, created_at
                    """,
                    (record.name, record.email, record.password_hash),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        except (PsycopgError, PoolTimeout) as exc:
            raise self._fail("insert", exc) from exc
        return self._to_record(row)

    def list_users(self, limit: int = 100) -> List[MirroredUser]:
        try:
            self._ensure_users_table()
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT id, name, email, password, created_at FROM users ORDER BY id LIMIT %s",
                    (limit,),
                ).fetchall()
        except (PsycopgError, PoolTimeout) as exc:
            raise self._fail("list", exc) from exc
        return [self._to_record(row) for row in rows]

    def verify_connection(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except (PsycopgError, PoolTimeout) as exc:
            raise self._fail("ping", exc) from exc

    def close(self) -> None:
        self.pool.close()
