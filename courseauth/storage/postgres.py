from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from courseauth.logging import get_logger
from courseauth.storage.errors import ConstraintViolation
from courseauth.storage.models import RoleRecord, Token, TokenType, User


_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_role (
        name TEXT PRIMARY KEY,
        permissions TEXT[] NOT NULL DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        roles TEXT[] NOT NULL DEFAULT '{USER}',
        enabled BOOLEAN NOT NULL DEFAULT FALSE,
        locked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_user_email_key ON auth_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL,
        token_type TEXT NOT NULL,
        user_id UUID NOT NULL REFERENCES auth_user(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ,
        expired BOOLEAN NOT NULL DEFAULT FALSE,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        validated_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_user_idx ON auth_token (user_id)",
    # Used or retired activation codes release their value for reuse
    "ALTER TABLE auth_token DROP CONSTRAINT IF EXISTS auth_token_token_key",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS auth_token_session_value_key
    ON auth_token (token) WHERE token_type <> 'ACTIVATION'
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS auth_token_live_code_key
    ON auth_token (token)
    WHERE token_type = 'ACTIVATION' AND validated_at IS NULL AND NOT expired
    """,
)


class PostgresStore:
    """Postgres-backed user, role and token store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        # Connection bound by an open transaction() on this thread
        self._local = threading.local()
        self.ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return
        with self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        """Run the enclosed store calls on one connection inside one transaction."""
        if getattr(self._local, "conn", None) is not None:
            yield self
            return
        with self.pool.connection() as conn, conn.transaction():
            self._local.conn = conn
            try:
                yield self
            finally:
                self._local.conn = None

    def ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("auth_schema_ready")

    def close(self) -> None:
        self.pool.close()

    # rows --------------------------------------------------------------------
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            roles=list(row.get("roles") or []),
            enabled=bool(row.get("enabled", False)),
            locked=bool(row.get("locked", False)),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> Token:
        return Token(
            id=str(row["id"]),
            token=row["token"],
            token_type=TokenType(row["token_type"]),
            user_id=str(row["user_id"]),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            expires_at=row.get("expires_at"),
            expired=bool(row.get("expired", False)),
            revoked=bool(row.get("revoked", False)),
            validated_at=row.get("validated_at"),
        )

    # users
    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_user (id, email, password_hash, first_name, last_name, roles, enabled, locked, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.password_hash,
                        user.first_name,
                        user.last_name,
                        list(user.roles),
                        user.enabled,
                        user.locked,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return user

    def save_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_user (id, email, password_hash, first_name, last_name, roles, enabled, locked, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                    SET email = EXCLUDED.email,
                        password_hash = EXCLUDED.password_hash,
                        first_name = EXCLUDED.first_name,
                        last_name = EXCLUDED.last_name,
                        roles = EXCLUDED.roles,
                        enabled = EXCLUDED.enabled,
                        locked = EXCLUDED.locked
                    """,
                    (
                        user.id,
                        user.email,
                        user.password_hash,
                        user.first_name,
                        user.last_name,
                        list(user.roles),
                        user.enabled,
                        user.locked,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def lock_user(self, user_id: str) -> Optional[User]:
        """Row-lock a user for the rest of the current transaction.

        Concurrent logins, refreshes and confirmations for the same user
        queue here, so each one sees the token set the previous one left.
        """
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_user ORDER BY created_at"
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    # roles
    def get_role(self, name: str) -> Optional[RoleRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT name, permissions FROM auth_role WHERE name = %s",
                (name.upper(),),
            ).fetchone()
        if not row:
            return None
        return RoleRecord(name=row["name"], permissions=list(row["permissions"] or []))

    def save_role(self, role: RoleRecord) -> RoleRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_role (name, permissions)
                VALUES (%s, %s)
                ON CONFLICT (name) DO UPDATE SET permissions = EXCLUDED.permissions
                """,
                (role.name.upper(), list(role.permissions)),
            )
        return role

    def delete_role(self, name: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_role WHERE name = %s", (name.upper(),))
        return bool(cur.rowcount)

    # tokens
    def _upsert_token(self, conn: Any, token: Token) -> None:
        conn.execute(
            """
            INSERT INTO auth_token (id, token, token_type, user_id, created_at, expires_at, expired, revoked, validated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE
            SET expires_at = EXCLUDED.expires_at,
                expired = EXCLUDED.expired,
                revoked = EXCLUDED.revoked,
                validated_at = EXCLUDED.validated_at
            """,
            (
                token.id,
                token.token,
                token.token_type.value,
                token.user_id,
                token.created_at,
                token.expires_at,
                token.expired,
                token.revoked,
                token.validated_at,
            ),
        )

    def save_token(self, token: Token) -> Token:
        try:
            with self._connect() as conn:
                self._upsert_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("token value already exists", field="token")
        return token

    def save_tokens(self, tokens: Iterable[Token]) -> None:
        try:
            with self._connect() as conn:
                for token in tokens:
                    self._upsert_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("token value already exists", field="token")

    def get_token(self, value: str) -> Optional[Token]:
        # A recycled code value may match retired rows; the live holder wins
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_token WHERE token = %s
                ORDER BY (token_type <> 'ACTIVATION' OR (validated_at IS NULL AND NOT expired)) DESC,
                         created_at DESC
                LIMIT 1
                """,
                (value,),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def list_tokens(self, user_id: str) -> List[Token]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def list_valid_tokens(
        self,
        user_id: str,
        token_types: Sequence[TokenType] = (TokenType.BEARER, TokenType.REFRESH),
        *,
        now: Optional[datetime] = None,
    ) -> List[Token]:
        now = now or datetime.now(timezone.utc)
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_token
                WHERE user_id = %s AND token_type = ANY(%s)
                ORDER BY created_at
                """,
                (user_id, [t.value for t in token_types]),
            ).fetchall()
        # Validity differs per token type; evaluate it on the model
        tokens = [self._token_from_row(row) for row in rows]
        return [t for t in tokens if t.is_valid(now)]
