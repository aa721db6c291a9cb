from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from identifier.logging import get_logger
from identifier.service.errors import StoreError
from identifier.storage.errors import ConstraintViolation, RecordNotFound
from identifier.storage.models import (
    Identity,
    IdentityStatus,
    LoginAttempt,
    PasswordResetToken,
    RefreshToken,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS identities (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL UNIQUE,
        email VARCHAR(255) NOT NULL UNIQUE,
        password_hash VARCHAR(255) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'unverified',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id UUID PRIMARY KEY,
        identity_id UUID NOT NULL REFERENCES identities(id) ON DELETE CASCADE,
        token_hash VARCHAR(64) NOT NULL UNIQUE,
        device_info VARCHAR(255),
        ip_address VARCHAR(45),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_identity_id ON refresh_tokens (identity_id)",
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_expires_at ON refresh_tokens (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS login_attempts (
        id UUID PRIMARY KEY,
        identity_id UUID,
        email VARCHAR(255) NOT NULL,
        ip_address VARCHAR(45),
        success BOOLEAN NOT NULL DEFAULT FALSE,
        attempted_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_login_attempts_identity_id ON login_attempts (identity_id, attempted_at)",
    "CREATE INDEX IF NOT EXISTS idx_login_attempts_email ON login_attempts (email)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_tokens (
        id UUID PRIMARY KEY,
        identity_id UUID NOT NULL REFERENCES identities(id) ON DELETE CASCADE,
        token_hash VARCHAR(64) NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_password_reset_tokens_expires_at ON password_reset_tokens (expires_at)",
)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _row_to_identity(row: dict) -> Identity:
    return Identity(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        status=IdentityStatus(row.get("status") or IdentityStatus.UNVERIFIED),
        email_verified=bool(row.get("email_verified")),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_refresh_token(row: dict) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        identity_id=str(row["identity_id"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        device_info=row.get("device_info"),
        ip_address=row.get("ip_address"),
        created_at=row["created_at"],
        revoked_at=row.get("revoked_at"),
    )


def _row_to_attempt(row: dict) -> LoginAttempt:
    return LoginAttempt(
        id=str(row["id"]),
        email=row["email"],
        success=bool(row["success"]),
        identity_id=_str_or_none(row.get("identity_id")),
        ip_address=row.get("ip_address"),
        attempted_at=row["attempted_at"],
    )


def _row_to_reset_token(row: dict) -> PasswordResetToken:
    return PasswordResetToken(
        id=str(row["id"]),
        identity_id=str(row["identity_id"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        used_at=row.get("used_at"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential store, attempt ledger and token store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
            field = "email" if constraint and "email" in constraint else "unique"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("referenced identity missing", {"field": "identity_id"}) from exc
        except psycopg.Error as exc:
            self.logger.error("postgres_error", error_type=type(exc).__name__, error=str(exc))
            raise StoreError("storage failure") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # identities
    def _find_identity(self, column: str, value: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM identities WHERE {column} = %s", (value,)
            ).fetchone()
        return _row_to_identity(row) if row else None

    def find_by_email(self, email: str) -> Optional[Identity]:
        return self._find_identity("email", email)

    def find_by_external_user_id(self, user_id: str) -> Optional[Identity]:
        return self._find_identity("user_id", user_id)

    def find_by_internal_id(self, identity_id: str) -> Optional[Identity]:
        return self._find_identity("id", identity_id)

    def create(self, identity: Identity) -> Identity:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO identities
                    (id, user_id, email, password_hash, status, email_verified, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    identity.id,
                    identity.user_id,
                    identity.email,
                    identity.password_hash,
                    IdentityStatus(identity.status).value,
                    identity.email_verified,
                    identity.created_at,
                    identity.updated_at,
                ),
            ).fetchone()
        return _row_to_identity(row)

    def _update_identity(self, identity_id: str, assignment: str, params: tuple) -> Identity:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE identities SET {assignment}, updated_at = now() WHERE id = %s RETURNING *",
                params + (identity_id,),
            ).fetchone()
        if not row:
            raise RecordNotFound("identity", identity_id)
        return _row_to_identity(row)

    def update_status(self, identity_id: str, status: IdentityStatus) -> Identity:
        return self._update_identity(identity_id, "status = %s", (IdentityStatus(status).value,))

    def update_password_hash(self, identity_id: str, password_hash: str) -> Identity:
        return self._update_identity(identity_id, "password_hash = %s", (password_hash,))

    def mark_email_verified(self, identity_id: str) -> Identity:
        return self._update_identity(identity_id, "email_verified = %s", (True,))

    def delete(self, identity_id: str) -> None:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM identities WHERE id = %s", (identity_id,))
            deleted = cur.rowcount
        if not deleted:
            raise RecordNotFound("identity", identity_id)

    # login attempts
    def record(self, attempt: LoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempts (id, identity_id, email, ip_address, success, attempted_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.identity_id,
                    attempt.email,
                    attempt.ip_address,
                    attempt.success,
                    attempt.attempted_at,
                ),
            )

    def count_recent_failures(self, identity_id: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS failures FROM login_attempts
                WHERE identity_id = %s AND success = FALSE AND attempted_at >= %s
                """,
                (identity_id, since),
            ).fetchone()
        return int(row["failures"]) if row else 0

    def list_recent(self, identity_id: str, limit: int = 20) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_attempts WHERE identity_id = %s
                ORDER BY attempted_at DESC LIMIT %s
                """,
                (identity_id, limit),
            ).fetchall()
        return [_row_to_attempt(row) for row in rows]

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO refresh_tokens
                    (id, identity_id, token_hash, device_info, ip_address, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    token.id,
                    token.identity_id,
                    token.token_hash,
                    token.device_info,
                    token.ip_address,
                    token.expires_at,
                    token.created_at,
                ),
            ).fetchone()
        return _row_to_refresh_token(row)

    def find_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _row_to_refresh_token(row) if row else None

    def revoke_refresh_token(self, token_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE refresh_tokens SET revoked_at = now() WHERE id = %s AND revoked_at IS NULL",
                (token_id,),
            )

    def revoke_all_refresh_tokens_for(self, identity_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = now()
                WHERE identity_id = %s AND revoked_at IS NULL AND expires_at > now()
                """,
                (identity_id,),
            )
            return cur.rowcount or 0

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_tokens WHERE expires_at <= %s", (now,))
            return cur.rowcount or 0

    # password reset tokens
    def create_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO password_reset_tokens (id, identity_id, token_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (token.id, token.identity_id, token.token_hash, token.expires_at, token.created_at),
            ).fetchone()
        return _row_to_reset_token(row)

    def find_reset_token_by_hash(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _row_to_reset_token(row) if row else None

    def _reset_token_exists(self, conn: Any, token_id: str) -> bool:
        row = conn.execute("SELECT 1 FROM password_reset_tokens WHERE id = %s", (token_id,)).fetchone()
        return row is not None

    def mark_reset_token_used(self, token_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_tokens SET used_at = now()
                WHERE id = %s AND used_at IS NULL
                RETURNING id
                """,
                (token_id,),
            ).fetchone()
            if row:
                return True
            if not self._reset_token_exists(conn, token_id):
                raise RecordNotFound("password reset token", token_id)
            return False

    def apply_password_reset(self, token_id: str, password_hash: str) -> Optional[Identity]:
        with self._connect() as conn:
            # row lock serializes concurrent resets holding the same token
            token_row = conn.execute(
                """
                SELECT identity_id FROM password_reset_tokens
                WHERE id = %s AND used_at IS NULL AND expires_at > now()
                FOR UPDATE
                """,
                (token_id,),
            ).fetchone()
            if not token_row:
                if not self._reset_token_exists(conn, token_id):
                    raise RecordNotFound("password reset token", token_id)
                return None
            row = conn.execute(
                "UPDATE identities SET password_hash = %s, updated_at = now() WHERE id = %s RETURNING *",
                (password_hash, token_row["identity_id"]),
            ).fetchone()
            if not row:
                raise RecordNotFound("identity", str(token_row["identity_id"]))
            conn.execute(
                "UPDATE password_reset_tokens SET used_at = now() WHERE id = %s",
                (token_id,),
            )
        return _row_to_identity(row)

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM password_reset_tokens WHERE expires_at <= %s", (now,))
            return cur.rowcount or 0
