import time
from contextlib import contextmanager
from datetime import timedelta
from types import SimpleNamespace

import pytest
from psycopg import errors

from tenantauth.storage.errors import ConstraintViolation, DeadlineExceeded, RotationConflict
from tenantauth.storage.models import RefreshToken, utcnow
from tenantauth.storage.postgres import REQUIRED_TABLES, PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Scripted connection: each ``execute`` pops the next response."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.statements = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(*responses):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.name = "test"
    store.conn = FakeConnection(responses)
    store.pool = FakePool(store.conn)
    return store


def _row(**overrides):
    now = utcnow()
    row = {
        "id": "r-old",
        "tenant_id": "t1",
        "client_id": "c1",
        "subject_id": "u1",
        "token_hash": "h-old",
        "scope": ["openid", "profile"],
        "issued_at": now,
        "expires_at": now + timedelta(hours=1),
        "revoked_at": None,
        "parent_id": None,
    }
    row.update(overrides)
    return row


def _new_token():
    return RefreshToken.new(
        tenant_id="t1",
        client_id="c1",
        subject_id="u1",
        token_hash="h-new",
        scope=["openid"],
        ttl_seconds=3600,
    )


class TestRotate:
    def test_rotation_locks_revokes_and_inserts(self):
        store = _store(FakeCursor([_row()]), FakeCursor(), FakeCursor())
        child = store.rotate_refresh_token("h-old", _new_token())

        assert child.parent_id == "r-old"
        assert store.conn.transactions == 1
        select, update, insert = store.conn.statements
        assert select[0].endswith("FOR UPDATE")
        assert update[0].startswith("UPDATE refresh_token SET revoked_at")
        assert update[1][1] == "r-old"
        assert insert[0].startswith("INSERT INTO refresh_token")
        assert insert[1][-1] == "r-old"

    def test_revoked_parent_conflicts_without_writes(self):
        store = _store(FakeCursor([_row(revoked_at=utcnow())]))
        with pytest.raises(RotationConflict) as excinfo:
            store.rotate_refresh_token("h-old", _new_token())
        assert excinfo.value.token.id == "r-old"
        assert len(store.conn.statements) == 1

    def test_missing_or_expired_parent_conflicts(self):
        with pytest.raises(RotationConflict):
            _store(FakeCursor([])).rotate_refresh_token("h-old", _new_token())
        expired = _row(expires_at=utcnow() - timedelta(seconds=5))
        with pytest.raises(RotationConflict):
            _store(FakeCursor([expired])).rotate_refresh_token("h-old", _new_token())

    def test_hash_collision_maps_to_constraint_violation(self):
        store = _store(FakeCursor([_row()]), FakeCursor(), errors.UniqueViolation("duplicate"))
        with pytest.raises(ConstraintViolation):
            store.rotate_refresh_token("h-old", _new_token())


class TestQueries:
    def test_naive_timestamps_become_utc(self):
        naive = _row(issued_at=utcnow().replace(tzinfo=None))
        token = _store(FakeCursor([naive])).get_refresh_token_by_hash("h-old")
        assert token.issued_at.tzinfo is not None

    def test_revoke_all_scopes_by_client(self):
        store = _store(FakeCursor(rowcount=3), FakeCursor(rowcount=-1))
        assert store.revoke_all_refresh_tokens("u1", "c1") == 3
        assert store.conn.statements[0][1] == ("u1", "c1")
        assert store.revoke_all_refresh_tokens("u1") == 0
        assert store.conn.statements[1][1] == ("u1",)

    def test_create_user_duplicate_email(self):
        store = _store(errors.UniqueViolation("duplicate"))
        with pytest.raises(ConstraintViolation):
            store.create_user("alice@example.com", tenant_id="t1")

    def test_has_child(self):
        store = _store(FakeCursor([{"present": 1}]), FakeCursor([]))
        assert store.has_child_refresh_token("r-old") is True
        assert store.has_child_refresh_token("r-new") is False


class TestDeadline:
    def test_remaining_budget_becomes_statement_timeout(self):
        store = _store(FakeCursor(), FakeCursor([_row()]), FakeCursor(), FakeCursor())
        store.rotate_refresh_token("h-old", _new_token(), deadline=time.monotonic() + 2)

        set_timeout, select, _update, _insert = store.conn.statements
        assert set_timeout[0] == "SELECT set_config('statement_timeout', %s, true)"
        assert 0 < int(set_timeout[1][0]) <= 2000
        assert select[0].endswith("FOR UPDATE")

    def test_passed_deadline_issues_no_statements(self):
        store = _store()
        with pytest.raises(DeadlineExceeded):
            store.rotate_refresh_token("h-old", _new_token(), deadline=time.monotonic() - 1)
        with pytest.raises(DeadlineExceeded):
            store.create_refresh_token(_new_token(), deadline=time.monotonic() - 1)
        assert store.conn.statements == []

    def test_cancelled_statement_is_deadline_exceeded(self):
        store = _store(FakeCursor(), errors.QueryCanceled("canceling statement due to statement timeout"))
        with pytest.raises(DeadlineExceeded):
            store.create_refresh_token(_new_token(), deadline=time.monotonic() + 2)

    def test_deadline_passing_during_insert_rolls_back(self, monkeypatch):
        store = _store(FakeCursor(), FakeCursor())
        clock = iter([100.0, 102.0])
        monkeypatch.setattr("tenantauth.storage.errors.time", SimpleNamespace(monotonic=lambda: next(clock)))
        with pytest.raises(DeadlineExceeded):
            store.create_refresh_token(_new_token(), deadline=101.0)
        # the insert ran, then the check before COMMIT raised inside the transaction
        assert len(store.conn.statements) == 2


def test_schema_verification_lists_missing_tables():
    responses = [FakeCursor([{"oid": "x"}]) for _ in REQUIRED_TABLES]
    responses[REQUIRED_TABLES.index("refresh_token")] = FakeCursor([{"oid": None}])
    store = _store(*responses)
    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()
    assert "refresh_token" in str(excinfo.value)
    assert "scripts/schema.sql" in str(excinfo.value)
