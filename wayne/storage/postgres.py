from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from wayne.logging import get_logger
from wayne.storage.errors import ConstraintViolation
from wayne.storage.models import (
    KeyEnvelope,
    RefreshToken,
    StorjBucket,
    User,
    utcnow,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT users_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_tokens_token_hash_idx ON refresh_tokens (token_hash)",
    "CREATE INDEX IF NOT EXISTS refresh_tokens_user_id_idx ON refresh_tokens (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_tokens_expires_at_idx ON refresh_tokens (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS key_envelopes (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        version INTEGER NOT NULL,
        password_salt BYTEA NOT NULL,
        mkek_nonce BYTEA NOT NULL,
        mkek_payload BYTEA NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT key_envelopes_user_id_key UNIQUE (user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS storj_buckets (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        bucket_name TEXT NOT NULL,
        access_key_id_encrypted BYTEA NOT NULL,
        secret_access_key_encrypted BYTEA NOT NULL,
        endpoint TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT storj_buckets_user_id_key UNIQUE (user_id)
    )
    """,
)


def create_pool(dsn: str, *, min_size: int = 2, max_size: int = 10) -> ConnectionPool:
    """Build the process-wide connection pool handed to ``PostgresStore``."""
    return ConnectionPool(
        dsn,
        min_size=min_size,
        max_size=max_size,
        kwargs={"row_factory": dict_row, "autocommit": False},
    )


def _constraint_name(exc: errors.UniqueViolation) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    return getattr(diag, "constraint_name", None) if diag else None


class PostgresStore:
    """Postgres-backed store; every statement checks out a pooled connection."""

    def __init__(self, pool: ConnectionPool, *, ensure_schema: bool = True) -> None:
        self.pool = pool
        self.logger = get_logger(__name__)
        if ensure_schema:
            self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_token(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_envelope(row: Dict[str, Any]) -> KeyEnvelope:
        return KeyEnvelope(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            version=int(row["version"]),
            password_salt=bytes(row["password_salt"]),
            mkek_nonce=bytes(row["mkek_nonce"]),
            mkek_payload=bytes(row["mkek_payload"]),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_bucket(row: Dict[str, Any]) -> StorjBucket:
        return StorjBucket(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            bucket_name=row["bucket_name"],
            access_key_id_encrypted=bytes(row["access_key_id_encrypted"]),
            secret_access_key_encrypted=bytes(row["secret_access_key_encrypted"]),
            endpoint=row["endpoint"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # -- users ---------------------------------------------------------------

    def create_user(self, email: str, password_hash: str) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, password_hash)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), email, password_hash),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email already exists",
                {"field": "email"},
                constraint=_constraint_name(exc) or "users_email_key",
            ) from exc
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users SET password_hash = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    # -- refresh tokens ------------------------------------------------------

    def create_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, token_hash, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, token_hash, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found", {"user_id": user_id}, constraint="user_id_fkey"
            ) from exc
        return self._row_to_refresh_token(row)

    def get_refresh_token(
        self, token_hash: str, *, now: Optional[datetime] = None
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM refresh_tokens
                WHERE token_hash = %s AND expires_at > %s
                LIMIT 1
                """,
                (token_hash, now or utcnow()),
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_tokens WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_refresh_token(row) for row in rows]

    def delete_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            )
            return cur.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    def delete_expired_refresh_tokens(self, *, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount

    # -- key envelopes -------------------------------------------------------

    def upsert_key_envelope(
        self,
        user_id: str,
        *,
        version: int,
        password_salt: bytes,
        mkek_nonce: bytes,
        mkek_payload: bytes,
    ) -> KeyEnvelope:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO key_envelopes
                        (id, user_id, version, password_salt, mkek_nonce, mkek_payload)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET version = EXCLUDED.version,
                        password_salt = EXCLUDED.password_salt,
                        mkek_nonce = EXCLUDED.mkek_nonce,
                        mkek_payload = EXCLUDED.mkek_payload,
                        updated_at = now()
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        version,
                        bytes(password_salt),
                        bytes(mkek_nonce),
                        bytes(mkek_payload),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found", {"user_id": user_id}, constraint="user_id_fkey"
            ) from exc
        return self._row_to_envelope(row)

    def get_key_envelope(self, envelope_id: str) -> Optional[KeyEnvelope]:
        try:
            uuid.UUID(str(envelope_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM key_envelopes WHERE id = %s", (envelope_id,)
            ).fetchone()
        return self._row_to_envelope(row) if row else None

    def get_key_envelope_for_user(self, user_id: str) -> Optional[KeyEnvelope]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM key_envelopes WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_envelope(row) if row else None

    # -- storj buckets -------------------------------------------------------

    def create_storj_bucket(
        self,
        user_id: str,
        *,
        bucket_name: str,
        access_key_id_encrypted: bytes,
        secret_access_key_encrypted: bytes,
        endpoint: str,
    ) -> StorjBucket:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO storj_buckets
                        (id, user_id, bucket_name, access_key_id_encrypted,
                         secret_access_key_encrypted, endpoint)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        user_id,
                        bucket_name,
                        bytes(access_key_id_encrypted),
                        bytes(secret_access_key_encrypted),
                        endpoint,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "storj bucket already exists for user",
                {"user_id": user_id},
                constraint=_constraint_name(exc) or "storj_buckets_user_id_key",
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user not found", {"user_id": user_id}, constraint="user_id_fkey"
            ) from exc
        return self._row_to_bucket(row)

    def get_storj_bucket_for_user(self, user_id: str) -> Optional[StorjBucket]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM storj_buckets WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_bucket(row) if row else None


__all__ = ["PostgresStore", "SCHEMA_STATEMENTS", "create_pool"]
