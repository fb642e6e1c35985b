from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from tokenforge.storage.errors import ConstraintViolation
from tokenforge.storage.models import AuditAction
from tokenforge.storage.postgres import PostgresStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class DummyCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class DummyConnection:
    def __init__(self, responses):
        self.responses = list(responses)
        self.executed = []

    def execute(self, query, params=None):
        self.executed.append((" ".join(query.split()), params))
        response = self.responses.pop(0) if self.responses else DummyCursor()
        if isinstance(response, Exception):
            raise response
        return response

    @contextmanager
    def transaction(self):
        yield


class DummyPool:
    def __init__(self, *responses):
        self.conn = DummyConnection(responses)

    @contextmanager
    def connection(self):
        yield self.conn


def _store(*responses) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool(*responses)
    store.dsn = "postgresql://unit"
    return store


def _user_row(**overrides):
    row = {
        "id": "3f0c",
        "email": "pg@example.com",
        "username": "pg",
        "roles": ["user"],
        "is_active": True,
        "email_verified": False,
        "mfa_enabled": False,
        "failed_login_attempts": 0,
        "locked_until": None,
        "last_login_at": None,
        "last_login_ip": None,
        "sessions_revoked_at": None,
        "created_at": NOW,
        "updated_at": None,
    }
    row.update(overrides)
    return row


def test_row_to_user_defaults():
    user = PostgresStore._row_to_user(_user_row(roles=None, failed_login_attempts=None))
    assert user.roles == ["user"]
    assert user.failed_login_attempts == 0
    assert user.updated_at == NOW


def test_row_to_audit_event_parses_text_detail():
    row = {
        "id": "a1",
        "action": "LOGIN",
        "user_id": "u1",
        "detail": '{"session_id": "s1"}',
        "created_at": NOW,
    }
    event = PostgresStore._row_to_audit_event(row)
    assert event.action == AuditAction.LOGIN
    assert event.detail == {"session_id": "s1"}

    row["detail"] = "not-json"
    assert PostgresStore._row_to_audit_event(row).detail == {"raw": "not-json"}


def test_create_user_maps_unique_violation_to_email():
    store = _store(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("pg@example.com", "pg")
    assert exc.value.detail == {"field": "email"}


class _UsernameClash(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="app_user_username_key")


def test_create_user_maps_username_constraint():
    store = _store(_UsernameClash("duplicate key"))
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("pg@example.com", "pg")
    assert exc.value.detail == {"field": "username"}


def test_record_failed_login_is_single_statement():
    until = NOW + timedelta(minutes=30)
    store = _store(DummyCursor([_user_row(failed_login_attempts=5, locked_until=until)]))
    user = store.record_failed_login("3f0c", max_attempts=5, lockout_until=until)
    assert user.locked_until == until
    query, params = store.pool.conn.executed[0]
    assert "failed_login_attempts = failed_login_attempts + 1" in query
    assert params == (5, until, "3f0c")


def test_revoke_session_filters_owner():
    store = _store(DummyCursor([]))
    assert store.revoke_session_if_active(
        "refresh", reason="logout", revoked_at=NOW, user_id="u1"
    ) is None
    query, params = store.pool.conn.executed[0]
    assert query.endswith("AND user_id = %s RETURNING *")
    assert params == (NOW, "logout", "refresh", "u1")


def test_revoke_user_sessions_sets_watermark():
    store = _store(DummyCursor(rowcount=3), DummyCursor())
    assert store.revoke_user_sessions("u1", reason="logout_all", revoked_at=NOW) == 3
    watermark_query, params = store.pool.conn.executed[1]
    assert "sessions_revoked_at" in watermark_query
    assert params == (NOW, "u1")


def test_list_audit_events_builds_filters():
    store = _store(DummyCursor([]))
    store.list_audit_events(user_id="u1", action=AuditAction.LOGOUT, limit=5)
    query, params = store.pool.conn.executed[0]
    assert "WHERE user_id = %s AND action = %s" in query
    assert params == ("u1", "LOGOUT", 5)


def test_update_user_profile_sets_only_given_columns():
    store = _store(DummyCursor([_user_row(username="renamed", updated_at=NOW)]))
    user = store.update_user_profile("3f0c", at=NOW, username="renamed")
    assert user.username == "renamed"
    query, params = store.pool.conn.executed[0]
    assert "SET username = %s, updated_at = %s WHERE id = %s" in query
    assert params == ("renamed", NOW, "3f0c")


def test_update_user_profile_maps_username_constraint():
    store = _store(_UsernameClash("duplicate key"))
    with pytest.raises(ConstraintViolation) as exc:
        store.update_user_profile("3f0c", at=NOW, username="taken")
    assert exc.value.detail == {"field": "username"}
