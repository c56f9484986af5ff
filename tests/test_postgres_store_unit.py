"""Unit tests for PostgresStore SQL paths with a stubbed connection pool."""

import contextlib
from datetime import timedelta

import pytest
from psycopg import errors

from orgidp.storage.errors import ConstraintViolation
from orgidp.storage.models import OAuthRefreshToken, utcnow
from orgidp.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, rowcount=0, row=None, rows=None):
        self.rowcount = rowcount
        self._row = row
        self._rows = rows or []

    def fetchone(self):
        return self._row

    def fetchall(self):
        return self._rows


class FakeConnection:
    def __init__(self, results=None, raise_on=None):
        self.statements = []
        self._results = list(results or [])
        self._raise_on = raise_on
        self.transactions = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self._raise_on and self._raise_on in sql:
            raise errors.UniqueViolation()
        return self._results.pop(0) if self._results else FakeResult()

    @contextlib.contextmanager
    def transaction(self):
        try:
            yield
        except BaseException:
            self.transactions.append("rollback")
            raise
        self.transactions.append("commit")


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    return store


def _refresh_row(**overrides):
    now = utcnow()
    row = {
        "id": "rt-1",
        "token_hash": "hash-1",
        "family_id": "fam-1",
        "client_id": "c1",
        "user_id": "user-1",
        "organization_id": None,
        "scope": "profile",
        "user_agent_hash": "ua",
        "ip_hash": "ip",
        "expires_at": now + timedelta(days=30),
        "revoked": False,
        "used_at": None,
        "replaced_by": None,
        "created_at": now,
    }
    row.update(overrides)
    return row


class TestRefreshTransaction:
    def test_mark_used_is_conditional_update(self):
        conn = FakeConnection(results=[FakeResult(), FakeResult(rowcount=1)])
        store = _store(conn)
        successor = OAuthRefreshToken(**{**_refresh_row(id="rt-2", token_hash="hash-2")})
        with store.refresh_transaction() as tx:
            tx.create_refresh_token(successor)
            assert tx.mark_refresh_token_used("hash-1", "rt-2", utcnow())

        insert_sql, _ = conn.statements[0]
        update_sql, params = conn.statements[1]
        assert insert_sql.startswith("INSERT INTO oauth_refresh_token")
        assert "used_at IS NULL" in update_sql
        assert "revoked = FALSE" in update_sql
        assert params[1:] == ("rt-2", "hash-1")
        assert conn.transactions == ["commit"]

    def test_lost_race_reports_false(self):
        conn = FakeConnection(results=[FakeResult(rowcount=0)])
        store = _store(conn)
        with store.refresh_transaction() as tx:
            assert not tx.mark_refresh_token_used("hash-1", "rt-2", utcnow())

    def test_exception_rolls_back(self):
        conn = FakeConnection()
        store = _store(conn)
        with pytest.raises(RuntimeError):
            with store.refresh_transaction():
                raise RuntimeError("cancelled")
        assert conn.transactions == ["rollback"]

    def test_duplicate_token_maps_to_constraint_violation(self):
        conn = FakeConnection(raise_on="INSERT INTO oauth_refresh_token")
        store = _store(conn)
        with pytest.raises(ConstraintViolation):
            store.create_refresh_token(OAuthRefreshToken(**_refresh_row()))


class TestCodesAndTokens:
    def test_consume_is_single_conditional_update(self):
        now = utcnow()
        row = {
            "id": "code-1",
            "code_hash": "h",
            "client_id": "c1",
            "user_id": "user-1",
            "organization_id": None,
            "redirect_uri": "https://app/cb",
            "scope": "profile",
            "code_challenge": "x",
            "code_challenge_method": "S256",
            "expires_at": now + timedelta(minutes=10),
            "used": True,
            "created_at": now,
        }
        conn = FakeConnection(results=[FakeResult(row=row)])
        code = _store(conn).consume_authorization_code("h", "c1", "https://app/cb", now=now)
        assert code.used is True
        sql, params = conn.statements[0]
        assert sql.startswith("UPDATE authorization_code SET used = TRUE")
        assert "used = FALSE" in sql and "RETURNING *" in sql
        assert params == ("h", now, "c1", "https://app/cb")

    def test_consume_miss_returns_none(self):
        conn = FakeConnection(results=[FakeResult(row=None)])
        assert _store(conn).consume_authorization_code("h", "c1", "https://app/cb") is None

    def test_get_refresh_token_maps_row(self):
        conn = FakeConnection(results=[FakeResult(row=_refresh_row(revoked=True))])
        token = _store(conn).get_refresh_token("hash-1")
        assert token.family_id == "fam-1"
        assert token.revoked is True

    def test_revoke_family_returns_rowcount(self):
        conn = FakeConnection(results=[FakeResult(rowcount=3)])
        assert _store(conn).revoke_refresh_family("fam-1") == 3
        sql, params = conn.statements[0]
        assert "WHERE family_id = %s" in sql
        assert params == ("fam-1",)

    def test_revoke_for_user_and_org(self):
        conn = FakeConnection(results=[FakeResult(rowcount=2)])
        assert _store(conn).revoke_refresh_tokens_for(user_id="u", organization_id="o") == 2
        sql, params = conn.statements[0]
        assert "user_id = %s AND organization_id = %s" in sql
        assert params == ("u", "o")

    def test_revoke_for_requires_a_filter(self):
        with pytest.raises(ValueError):
            _store(FakeConnection()).revoke_refresh_tokens_for()

    def test_delete_user_sessions_scoped_to_org(self):
        conn = FakeConnection(results=[FakeResult(rowcount=1)])
        assert _store(conn).delete_user_sessions("u", organization_id="o") == 1
        sql, params = conn.statements[0]
        assert sql == "DELETE FROM user_session WHERE user_id = %s AND organization_id = %s"
        assert params == ("u", "o")

    def test_delete_expired_refresh_tokens(self):
        conn = FakeConnection(results=[FakeResult(rowcount=4)])
        cutoff = utcnow()
        assert _store(conn).delete_expired_refresh_tokens(cutoff) == 4
        sql, params = conn.statements[0]
        assert sql == "DELETE FROM oauth_refresh_token WHERE expires_at <= %s"
        assert params == (cutoff,)
