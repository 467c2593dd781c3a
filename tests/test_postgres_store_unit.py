import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from courseauth.logging import get_logger
from courseauth.storage.errors import ConstraintViolation
from courseauth.storage.models import Token, TokenType, User
from courseauth.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, rows=None, fail_with=None):
        self.rows = rows or []
        self.fail_with = fail_with
        self.statements = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.fail_with is not None:
            raise self.fail_with
        return FakeCursor(self.rows, rowcount=len(self.rows))

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.checkouts = 0

    @contextmanager
    def connection(self):
        self.checkouts += 1
        yield self.conn


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://stub"
    store.logger = get_logger(__name__)
    store.pool = FakePool(conn)
    store._local = threading.local()
    return store


def _user():
    return User.new("ada@example.com", "hash", "Ada", "Lovelace")


def test_unique_violation_on_user_becomes_constraint_violation():
    store = _store(FakeConnection(fail_with=errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user(_user())
    assert exc_info.value.field == "email"


def test_unique_violation_on_token_becomes_constraint_violation():
    store = _store(FakeConnection(fail_with=errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation) as exc_info:
        store.save_token(Token.new("123456", TokenType.ACTIVATION, "u1"))
    assert exc_info.value.field == "token"


def test_transaction_reuses_one_connection():
    conn = FakeConnection()
    store = _store(conn)
    user = _user()

    with store.transaction():
        store.create_user(user)
        store.save_token(Token.new("jwt", TokenType.BEARER, user.id))
        with store.transaction():
            store.save_user(user)

    assert store.pool.checkouts == 1
    assert conn.transactions == 1
    assert len(conn.statements) == 3
    assert store._local.conn is None


def test_calls_outside_transaction_check_out_per_call():
    conn = FakeConnection()
    store = _store(conn)
    store.get_user("missing")
    store.get_token("missing")
    assert store.pool.checkouts == 2
    assert conn.transactions == 0


def test_email_lookup_is_case_insensitive_query():
    conn = FakeConnection()
    store = _store(conn)
    assert store.get_user_by_email("Ada@Example.com") is None
    sql, params = conn.statements[-1]
    assert "lower(email) = lower(%s)" in sql
    assert params == ("Ada@Example.com",)


def test_list_valid_tokens_filters_rows_on_model():
    now = datetime(2030, 1, 1, tzinfo=timezone.utc)
    base = {
        "user_id": "00000000-0000-0000-0000-000000000001",
        "created_at": now,
        "expired": False,
        "revoked": False,
        "validated_at": None,
    }
    rows = [
        {**base, "id": "1", "token": "live", "token_type": "BEARER", "expires_at": now + timedelta(hours=1)},
        {**base, "id": "2", "token": "lapsed", "token_type": "BEARER", "expires_at": now - timedelta(hours=1)},
        {**base, "id": "3", "token": "revoked", "token_type": "REFRESH", "expires_at": None, "revoked": True},
    ]
    conn = FakeConnection(rows=rows)
    store = _store(conn)

    valid = store.list_valid_tokens(base["user_id"], now=now)

    assert [t.token for t in valid] == ["live"]
    assert valid[0].token_type is TokenType.BEARER
    _, params = conn.statements[-1]
    assert params[1] == ["BEARER", "REFRESH"]


def test_ensure_schema_runs_every_statement():
    conn = FakeConnection()
    store = _store(conn)
    store.ensure_schema()
    executed = " ".join(sql for sql, _ in conn.statements)
    assert "CREATE TABLE IF NOT EXISTS auth_role" in executed
    assert "CREATE TABLE IF NOT EXISTS auth_user" in executed
    assert "CREATE TABLE IF NOT EXISTS auth_token" in executed
    assert "auth_user_email_key" in executed
    assert "auth_token_session_value_key" in executed
    assert "auth_token_live_code_key" in executed
    assert "DROP CONSTRAINT IF EXISTS auth_token_token_key" in executed


def test_lock_user_selects_for_update_on_transaction_connection():
    user = _user()
    row = {
        "id": user.id,
        "email": user.email,
        "password_hash": "hash",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "roles": ["USER"],
        "enabled": True,
        "locked": False,
        "created_at": datetime(2030, 1, 1, tzinfo=timezone.utc),
    }
    conn = FakeConnection(rows=[row])
    store = _store(conn)

    with store.transaction():
        locked = store.lock_user(user.id)
        store.save_user(locked)

    assert store.pool.checkouts == 1
    sql, params = conn.statements[0]
    assert sql.endswith("FOR UPDATE")
    assert params == (user.id,)
    assert locked.email == "ada@example.com"
    assert locked.roles == ["USER"]


def test_lock_user_missing_returns_none():
    store = _store(FakeConnection())
    assert store.lock_user("missing") is None


def test_get_token_prefers_the_live_holder_of_a_value():
    conn = FakeConnection()
    store = _store(conn)
    store.get_token("123456")
    sql, params = conn.statements[-1]
    assert "ORDER BY (token_type <> 'ACTIVATION' OR (validated_at IS NULL AND NOT expired)) DESC" in sql
    assert sql.endswith("LIMIT 1")
    assert params == ("123456",)
