from contextlib import contextmanager
from datetime import datetime, timezone

import pytest
from psycopg import errors

from vidtube.storage.errors import ConstraintViolation
from vidtube.storage.models import ToggleKind
from vidtube.storage.postgres import PostgresStore


class RaisingConnection:
    def __init__(self, exc):
        self.exc = exc

    def execute(self, *args, **kwargs):
        raise self.exc


class DummyPool:
    def __init__(self, conn=None):
        self.conn = conn

    @contextmanager
    def connection(self):
        if self.conn is None:
            raise AssertionError("database access should be stubbed in unit tests")
        yield self.conn


def _store(conn=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool(conn)
    return store


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_user_from_row_defaults():
    user = PostgresStore._user_from_row(
        {
            "id": "u1",
            "handle": "alice",
            "email": "alice@example.com",
            "fullname": None,
            "watch_history": None,
            "created_at": NOW,
            "updated_at": NOW,
        }
    )
    assert user.fullname == ""
    assert user.watch_history == []
    assert user.refresh_token is None


def test_toggle_from_row_parses_kind():
    record = PostgresStore._toggle_from_row(
        {
            "id": "t1",
            "kind": "like:video",
            "actor_key": "u1",
            "target_id": "v1",
            "created_at": NOW,
        }
    )
    assert record.kind is ToggleKind.LIKE_VIDEO


def test_unique_violation_on_toggle_maps_to_constraint_violation():
    store = _store(RaisingConnection(errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation) as exc_info:
        store.insert_toggle(ToggleKind.VIEW, "ip:10.0.0.1", "v1")
    assert exc_info.value.detail == {"kind": "view", "target_id": "v1"}


def test_unique_violation_on_user_maps_to_constraint_violation():
    store = _store(RaisingConnection(errors.UniqueViolation("duplicate key")))
    with pytest.raises(ConstraintViolation):
        store.create_user("alice", "alice@example.com", "hash")


def test_other_database_errors_propagate():
    store = _store(RaisingConnection(errors.OperationalError("connection lost")))
    with pytest.raises(errors.OperationalError):
        store.insert_toggle(ToggleKind.LIKE_VIDEO, "u1", "v1")


def test_toggle_filter_builds_clauses():
    store = _store()
    where, params = store._toggle_filter(ToggleKind.SUBSCRIPTION, None, "c1")
    assert where == "kind = %s AND target_id = %s"
    assert params == ["subscription", "c1"]


class _Result:
    def __init__(self, row):
        self.row = row

    def fetchone(self):
        return self.row


class ScriptedConnection:
    """Replays one outcome per statement and records how the block ended."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.statements = []
        self.committed = False
        self.rolled_back = False

    def execute(self, sql, params=None):
        self.statements.append(" ".join(sql.split()))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return _Result(outcome)


class TransactionalPool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        try:
            yield self.conn
        except Exception:
            self.conn.rolled_back = True
            raise
        self.conn.committed = True


def _transactional_store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = TransactionalPool(conn)
    return store


def test_record_view_runs_in_one_transaction():
    conn = ScriptedConnection([{"id": "t1"}, {"views": 4}, None])
    store = _transactional_store(conn)

    assert store.record_view("user:u1", "v1", viewer_id="u1") == 4
    assert conn.committed is True
    assert conn.statements[0].startswith("INSERT INTO toggle_record")
    assert "ON CONFLICT (kind, actor_key, target_id) DO NOTHING" in conn.statements[0]
    assert conn.statements[1].startswith("UPDATE video SET views = views + 1")
    assert conn.statements[2].startswith("UPDATE app_user SET watch_history")


def test_record_view_rolls_back_view_record_when_counter_update_fails():
    conn = ScriptedConnection([{"id": "t1"}, errors.OperationalError("connection lost")])
    store = _transactional_store(conn)

    with pytest.raises(errors.OperationalError):
        store.record_view("ip:10.0.0.1", "v1")
    assert conn.rolled_back is True
    assert conn.committed is False


def test_record_view_repeat_skips_counter():
    conn = ScriptedConnection([None])
    store = _transactional_store(conn)

    assert store.record_view("ip:10.0.0.1", "v1") is None
    assert len(conn.statements) == 1
