from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authcore.logging import get_logger
from authcore.storage.common import normalize_email
from authcore.storage.errors import ConstraintViolation, StorageUnavailable
from authcore.storage.models import ROLE_ADMIN, Account, RecoveryCode, RefreshSession

# advisory lock id held while deciding whether a new account is the first one
FIRST_ACCOUNT_LOCK_KEY = 0x61757468

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        two_factor_secret TEXT,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        lockout_until TIMESTAMPTZ,
        email_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
        email_confirmation_token_hash TEXT,
        email_confirmation_expires_at TIMESTAMPTZ,
        password_reset_token_hash TEXT,
        password_reset_expires_at TIMESTAMPTZ,
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_refresh_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        replaced_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_refresh_session_account_idx ON auth_refresh_session (account_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_recovery_code (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_recovery_code_account_idx ON auth_recovery_code (account_id)",
)

_ACCOUNT_COLUMNS = (
    "id",
    "email",
    "name",
    "password_hash",
    "role",
    "two_factor_secret",
    "two_factor_enabled",
    "failed_login_attempts",
    "lockout_until",
    "email_confirmed",
    "email_confirmation_token_hash",
    "email_confirmation_expires_at",
    "password_reset_token_hash",
    "password_reset_expires_at",
    "version",
    "created_at",
    "updated_at",
)

# Columns an update may touch; id, created_at and version are managed here
_MUTABLE_ACCOUNT_COLUMNS = tuple(
    c for c in _ACCOUNT_COLUMNS if c not in {"id", "created_at", "version"}
)


def _account_from_row(row: dict[str, Any]) -> Account:
    return Account(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name"),
        password_hash=row["password_hash"],
        role=row.get("role") or "user",
        two_factor_secret=row.get("two_factor_secret"),
        two_factor_enabled=bool(row.get("two_factor_enabled", False)),
        failed_login_attempts=int(row.get("failed_login_attempts") or 0),
        lockout_until=row.get("lockout_until"),
        email_confirmed=bool(row.get("email_confirmed", False)),
        email_confirmation_token_hash=row.get("email_confirmation_token_hash"),
        email_confirmation_expires_at=row.get("email_confirmation_expires_at"),
        password_reset_token_hash=row.get("password_reset_token_hash"),
        password_reset_expires_at=row.get("password_reset_expires_at"),
        version=int(row.get("version") or 1),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _session_from_row(row: dict[str, Any]) -> RefreshSession:
    return RefreshSession(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        token_hash=row["token_hash"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        revoked=bool(row.get("revoked", False)),
        revoked_at=row.get("revoked_at"),
        replaced_by=row.get("replaced_by"),
    )


def _recovery_code_from_row(row: dict[str, Any]) -> RecoveryCode:
    return RecoveryCode(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        code_hash=row["code_hash"],
        used=bool(row.get("used", False)),
        used_at=row.get("used_at"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed account, refresh session and recovery code store."""

    def __init__(
        self, dsn: str, *, min_size: int = 1, max_size: int = 10, timeout: float = 10.0
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        """Yield a pooled connection, translating infrastructure faults."""

        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("unique constraint violated", {"error": str(exc)})
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("referenced row missing", {"error": str(exc)})
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StorageUnavailable("connection pool exhausted") from exc
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_operational_error", error=str(exc))
            raise StorageUnavailable("database unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # accounts
    def create_account(
        self, account: Account, *, promote_if_first: bool = False
    ) -> Account:
        email = normalize_email(account.email)
        with self._connect() as conn, conn.transaction():
            if promote_if_first:
                # concurrent first registrations queue here until the winner commits
                conn.execute("SELECT pg_advisory_xact_lock(%s)", (FIRST_ACCOUNT_LOCK_KEY,))
            row = conn.execute(
                """
                INSERT INTO auth_account (
                    id, email, name, password_hash, role, two_factor_secret,
                    two_factor_enabled, failed_login_attempts, lockout_until,
                    email_confirmed, email_confirmation_token_hash,
                    email_confirmation_expires_at, password_reset_token_hash,
                    password_reset_expires_at, version, created_at, updated_at
                )
                VALUES (
                    %s, %s, %s, %s,
                    CASE WHEN %s AND NOT EXISTS (SELECT 1 FROM auth_account)
                         THEN %s ELSE %s END,
                    %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s
                )
                RETURNING *
                """,
                (
                    account.id,
                    email,
                    account.name,
                    account.password_hash,
                    promote_if_first,
                    ROLE_ADMIN,
                    account.role,
                    account.two_factor_secret,
                    account.two_factor_enabled,
                    account.failed_login_attempts,
                    account.lockout_until,
                    account.email_confirmed,
                    account.email_confirmation_token_hash,
                    account.email_confirmation_expires_at,
                    account.password_reset_token_hash,
                    account.password_reset_expires_at,
                    account.version,
                    account.created_at,
                    account.updated_at,
                ),
            ).fetchone()
        return _account_from_row(row)

    def _get_account_where(self, column: str, value: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM auth_account WHERE {column} = %s", (value,)
            ).fetchone()
        if not row:
            return None
        return _account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._get_account_where("id", account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._get_account_where("email", normalize_email(email))

    def get_account_by_confirmation_token(
        self, token_hash: str
    ) -> Optional[Account]:
        return self._get_account_where("email_confirmation_token_hash", token_hash)

    def get_account_by_reset_token(self, token_hash: str) -> Optional[Account]:
        return self._get_account_where("password_reset_token_hash", token_hash)

    def update_account(
        self, account: Account, expected_version: int
    ) -> Optional[Account]:
        assignments = ", ".join(f"{column} = %s" for column in _MUTABLE_ACCOUNT_COLUMNS)
        values = [
            normalize_email(account.email)
            if column == "email"
            else getattr(account, column)
            for column in _MUTABLE_ACCOUNT_COLUMNS
        ]
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE auth_account
                SET {assignments}, version = version + 1
                WHERE id = %s AND version = %s
                RETURNING *
                """,
                (*values, account.id, expected_version),
            ).fetchone()
        if not row:
            return None
        return _account_from_row(row)

    # refresh sessions
    @staticmethod
    def _insert_session(conn: Any, session: RefreshSession) -> None:
        conn.execute(
            """
            INSERT INTO auth_refresh_session (
                id, account_id, token_hash, created_at, expires_at,
                revoked, revoked_at, replaced_by
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.account_id,
                session.token_hash,
                session.created_at,
                session.expires_at,
                session.revoked,
                session.revoked_at,
                session.replaced_by,
            ),
        )

    def create_refresh_session(self, session: RefreshSession) -> RefreshSession:
        with self._connect() as conn:
            self._insert_session(conn, session)
        return session

    def get_refresh_session(self, token_hash: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_refresh_session WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return _session_from_row(row)

    def rotate_refresh_session(
        self, old_token_hash: str, successor: RefreshSession, now: datetime
    ) -> Optional[RefreshSession]:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT * FROM auth_refresh_session WHERE token_hash = %s FOR UPDATE",
                    (old_token_hash,),
                ).fetchone()
                if not row:
                    return None
                current = _session_from_row(row)
                if not current.is_active(now) or current.account_id != successor.account_id:
                    return None
                self._insert_session(conn, successor)
                conn.execute(
                    """
                    UPDATE auth_refresh_session
                    SET revoked = TRUE, revoked_at = %s, replaced_by = %s
                    WHERE id = %s
                    """,
                    (now, successor.id, current.id),
                )
        return successor

    def revoke_refresh_session(self, token_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_refresh_session
                SET revoked = TRUE, revoked_at = %s
                WHERE token_hash = %s AND revoked = FALSE
                """,
                (now, token_hash),
            )
            return result.rowcount == 1

    def revoke_account_sessions(self, account_id: str, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_refresh_session
                SET revoked = TRUE, revoked_at = %s
                WHERE account_id = %s AND revoked = FALSE
                """,
                (now, account_id),
            )
            return result.rowcount

    # recovery codes
    def replace_recovery_codes(
        self, account_id: str, codes: List[RecoveryCode]
    ) -> None:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "DELETE FROM auth_recovery_code WHERE account_id = %s", (account_id,)
                )
                for code in codes:
                    conn.execute(
                        """
                        INSERT INTO auth_recovery_code (id, account_id, code_hash, used, used_at, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        """,
                        (
                            code.id,
                            account_id,
                            code.code_hash,
                            code.used,
                            code.used_at,
                            code.created_at,
                        ),
                    )

    def list_unused_recovery_codes(self, account_id: str) -> List[RecoveryCode]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_recovery_code
                WHERE account_id = %s AND used = FALSE
                ORDER BY created_at
                """,
                (account_id,),
            ).fetchall()
        return [_recovery_code_from_row(row) for row in rows]

    def mark_recovery_code_used(self, code_id: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_recovery_code
                SET used = TRUE, used_at = %s
                WHERE id = %s AND used = FALSE
                """,
                (used_at, code_id),
            )
            return result.rowcount == 1

    def delete_recovery_codes(self, account_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_recovery_code WHERE account_id = %s", (account_id,)
            )
            return result.rowcount
