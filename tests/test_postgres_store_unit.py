"""PostgresStore behaviour against a recording fake pool."""

from contextlib import contextmanager
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from psycopg import OperationalError, errors

from tonotes.storage.common import SecretCipher
from tonotes.storage.errors import ConstraintViolation, StoreUnavailable
from tonotes.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        if self.pool.raises is not None:
            raise self.pool.raises
        return self.pool.results.pop(0) if self.pool.results else FakeCursor()


class FakePool:
    def __init__(self):
        self.statements = []
        self.results = []
        self.raises = None

    @contextmanager
    def connection(self):
        yield FakeConnection(self)


class UsernameTaken(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="app_user_username_key")


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def store(pool):
    instance = PostgresStore.__new__(PostgresStore)
    instance.dsn = "postgresql://unused"
    instance.logger = SimpleNamespace(error=lambda *a, **k: None)
    instance.pool = pool
    instance._cipher = SecretCipher("unit-test-key")
    return instance


def test_create_user_maps_username_conflict(store, pool):
    pool.raises = UsernameTaken("duplicate key")
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("erin", "erin@example.com", "h")
    assert exc.value.message == "username already exists"
    assert exc.value.detail == {"field": "username"}


def test_update_email_maps_conflict(store, pool):
    pool.raises = errors.UniqueViolation("duplicate key")
    with pytest.raises(ConstraintViolation) as exc:
        store.update_user_email("u1", "taken@example.com", datetime.now(timezone.utc))
    assert exc.value.message == "email already exists"


def test_operational_error_is_unavailable(store, pool):
    pool.raises = OperationalError("connection refused")
    with pytest.raises(StoreUnavailable):
        store.get_user("u1")


def test_insert_session_for_missing_user(store, pool):
    from tonotes.storage.models import Session

    pool.raises = errors.ForeignKeyViolation("fk")
    with pytest.raises(ConstraintViolation):
        store.insert_session(Session.new("missing"))


def test_remove_recovery_code_is_single_statement(store, pool):
    pool.results = [FakeCursor(rows=[{"remaining": 9}])]
    assert store.remove_recovery_code("u1", "hash") == 9
    sql, params = pool.statements[-1]
    assert sql.startswith("UPDATE app_user SET recovery_codes = array_remove")
    assert "ANY(recovery_codes)" in sql
    assert params == ("hash", "u1", "hash")


def test_remove_recovery_code_already_spent(store, pool):
    pool.results = [FakeCursor(rows=[])]
    assert store.remove_recovery_code("u1", "hash") is None


def test_lookup_by_username_ignores_case(store, pool):
    store.get_user_by_username("Erin")
    sql, params = pool.statements[-1]
    assert "lower(username) = lower(%s)" in sql
    assert params == ("Erin",)


def test_user_row_decrypts_secret(store, pool):
    encrypted = store._cipher.encrypt("JBSWY3DPEHPK3PXP")
    pool.results = [
        FakeCursor(
            rows=[
                {
                    "id": "u1",
                    "username": "erin",
                    "email": "erin@example.com",
                    "password_hash": "h",
                    "created_at": datetime(2024, 1, 1),
                    "two_factor_enabled": True,
                    "two_factor_secret": encrypted,
                    "recovery_codes": ["a"],
                }
            ]
        )
    ]
    user = store.get_user("u1")
    assert user.two_factor_secret == "JBSWY3DPEHPK3PXP"
    assert user.created_at.tzinfo is timezone.utc
    assert user.recovery_codes == ["a"]


def test_deactivate_all_except_current(store, pool):
    pool.results = [FakeCursor(rowcount=3)]
    assert store.deactivate_user_sessions("u1", "keep") == 3
    sql, params = pool.statements[-1]
    assert "IS DISTINCT FROM %s" in sql
    assert params == ("u1", "keep")
