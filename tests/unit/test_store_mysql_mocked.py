"""Unit tests for SessionStore against a mocked MySQL connection.

The MySQL-only paths (isolation override, ``FOR UPDATE``, the duplicate-key
race and ``GET_LOCK`` advisory locks) are exercised with MagicMock
engine/connection objects so no database server is required.  Statements
are inspected as SQLAlchemy constructs or compiled with the MySQL dialect.
"""
from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy import Delete, Insert, Select, TextClause
from sqlalchemy.dialects import mysql
from sqlalchemy.exc import IntegrityError, OperationalError

from sql_session_store.config import LockingMode, StoreConfig
from sql_session_store.errors import LockTimeoutError, SessionStoreError
from sql_session_store.store import SessionStore

_NOW = 1_000.0
_FUTURE = 5_000


# ---------------------------------------------------------------------------
# Helpers — a scripted stand-in for a MySQL connection
# ---------------------------------------------------------------------------


def _context_manager(mock: MagicMock) -> MagicMock:
    mock.__enter__.return_value = mock
    mock.__exit__.return_value = False
    return mock


class FakeMySQL:
    """Engine/connection pair whose ``execute`` replays scripted results."""

    def __init__(
        self,
        rows: list[Any] | None = None,
        lock_results: list[Any] | None = None,
    ) -> None:
        self.engine = MagicMock()
        self.engine.dialect.name = "mysql"
        self.conn = MagicMock()
        self.conn.dialect.name = "mysql"
        self.conn.dialect.get_isolation_level_values.return_value = [
            "SERIALIZABLE",
            "READ UNCOMMITTED",
            "READ COMMITTED",
            "REPEATABLE READ",
        ]
        self.engine.connect.return_value = self.conn

        self.transaction = _context_manager(MagicMock())
        self.transaction.is_active = True
        self.conn.begin.return_value = self.transaction
        self.savepoint = _context_manager(MagicMock())
        self.conn.begin_nested.return_value = self.savepoint

        self.rows = list(rows or [])
        self.lock_results = list(lock_results or [])
        self.insert_error: Exception | None = None
        self.statements: list[Any] = []
        self.acquired: list[tuple[str, float]] = []
        self.released: list[str] = []
        self.conn.execute.side_effect = self._execute

    def _execute(self, statement: Any, params: dict[str, Any] | None = None) -> MagicMock:
        self.statements.append(statement)
        result = MagicMock()
        if isinstance(statement, TextClause):
            if "GET_LOCK" in statement.text:
                self.acquired.append((params["name"], params["timeout"]))
                result.scalar.return_value = self.lock_results.pop(0) if self.lock_results else 1
            elif "RELEASE_LOCK" in statement.text:
                self.released.append(params["name"])
        elif isinstance(statement, Select):
            result.first.return_value = self.rows.pop(0) if self.rows else None
        elif isinstance(statement, Insert) and self.insert_error is not None:
            raise self.insert_error
        return result

    def of_type(self, kind: type) -> list[Any]:
        return [s for s in self.statements if isinstance(s, kind)]


def _compile(statement: Any) -> str:
    return str(statement.compile(dialect=mysql.dialect()))


def _store(fake: FakeMySQL, **overrides: Any) -> SessionStore:
    config = StoreConfig(url="mysql+pymysql://u:p@db/app", **overrides)
    return SessionStore(fake.engine, config, clock=lambda: _NOW)


# ---------------------------------------------------------------------------
# Transactional strategy
# ---------------------------------------------------------------------------


class TestTransactionalOnMySQL:
    def test_isolation_override_precedes_begin(self) -> None:
        fake = FakeMySQL(rows=[(_FUTURE, b"data")])
        store = _store(fake)
        store.read("s1")
        names = [c[0] for c in fake.conn.method_calls]
        assert names.index("execution_options") < names.index("begin")
        fake.conn.execution_options.assert_called_once_with(isolation_level="READ COMMITTED")

    def test_read_uses_locking_select(self) -> None:
        fake = FakeMySQL(rows=[(_FUTURE, b"data")])
        store = _store(fake)
        assert store.read("s1") == b"data"
        assert "FOR UPDATE" in _compile(fake.of_type(Select)[0])

    def test_locking_select_filters_by_id(self) -> None:
        fake = FakeMySQL(rows=[(_FUTURE, b"data")])
        store = _store(fake)
        store.read("s1")
        compiled = fake.of_type(Select)[0].compile(dialect=mysql.dialect())
        assert "WHERE sessions.sid = %s" in str(compiled)
        assert str(compiled).endswith("FOR UPDATE")
        assert list(compiled.params.values()) == ["s1"]

    def test_holds_no_named_locks(self) -> None:
        fake = FakeMySQL(rows=[(_FUTURE, b"data")])
        store = _store(fake)
        store.read("s1")
        assert store.held_locks == 0
        assert fake.acquired == []

    def test_new_id_inserts_placeholder_in_savepoint(self) -> None:
        fake = FakeMySQL(rows=[None])
        store = _store(fake)
        assert store.read("new") == b""
        fake.conn.begin_nested.assert_called_once()
        placeholder = fake.of_type(Insert)[0]
        params = placeholder.compile(dialect=mysql.dialect()).params
        assert params == {"sid": "new", "expiry": int(_NOW) + 1440, "data": b""}

    def test_duplicate_key_returns_winner_data(self) -> None:
        fake = FakeMySQL(rows=[None, (_FUTURE, b"winner")])
        fake.insert_error = IntegrityError("INSERT", {}, Exception("1062 Duplicate entry"))
        store = _store(fake)

        assert store.read("abc") == b"winner"
        assert store.in_transaction
        fake.transaction.rollback.assert_not_called()

        store.close()
        fake.transaction.commit.assert_called_once()

    def test_duplicate_key_with_nothing_visible_returns_empty(self) -> None:
        fake = FakeMySQL(rows=[None, None])
        fake.insert_error = IntegrityError("INSERT", {}, Exception("1062 Duplicate entry"))
        store = _store(fake)
        assert store.read("abc") == b""
        assert len(fake.of_type(Select)) == 2

    def test_other_insert_error_rolls_back_and_propagates(self) -> None:
        fake = FakeMySQL(rows=[None])
        fake.insert_error = OperationalError("INSERT", {}, Exception("server has gone away"))
        store = _store(fake)
        with pytest.raises(OperationalError):
            store.read("abc")
        fake.transaction.rollback.assert_called_once()
        assert not store.in_transaction

    def test_write_error_rolls_back_open_transaction(self) -> None:
        fake = FakeMySQL(rows=[(_FUTURE, b"old")])
        store = _store(fake)
        store.read("s1")
        fake.insert_error = OperationalError("INSERT", {}, Exception("lock wait timeout"))
        with pytest.raises(OperationalError):
            store.write("s1", b"new")
        fake.transaction.rollback.assert_called_once()
        assert not store.in_transaction

    def test_write_upserts_with_fresh_expiry(self) -> None:
        fake = FakeMySQL()
        store = _store(fake, max_lifetime=60)
        store.write("s1", b"payload")
        upsert = fake.of_type(Insert)[0]
        sql = _compile(upsert)
        assert "ON DUPLICATE KEY UPDATE" in sql
        assert upsert.compile(dialect=mysql.dialect()).params["expiry"] == int(_NOW) + 60

    def test_commit_failure_invalidates_connection(self) -> None:
        fake = FakeMySQL(rows=[(_FUTURE, b"data")])
        fake.transaction.commit.side_effect = OperationalError("COMMIT", {}, Exception("lost"))
        store = _store(fake)
        store.read("s1")
        with pytest.raises(OperationalError):
            store.close()
        fake.conn.invalidate.assert_called_once()
        fake.conn.close.assert_called_once()
        assert store.closed

    def test_connect_failure_propagates_unmodified(self) -> None:
        fake = FakeMySQL()
        fake.engine.connect.side_effect = OperationalError("connect", {}, Exception("refused"))
        with pytest.raises(OperationalError):
            _store(fake)

    def test_custom_column_names_used(self) -> None:
        fake = FakeMySQL(rows=[(_FUTURE, b"data")])
        store = _store(fake, table="php_sessions", columns={"id": "sess_id", "expiry": "exp", "data": "payload"})
        store.read("s1")
        sql = _compile(fake.of_type(Select)[0])
        assert "php_sessions.sess_id" in sql
        assert "php_sessions.exp" in sql


# ---------------------------------------------------------------------------
# Advisory strategy
# ---------------------------------------------------------------------------


class TestAdvisoryOnMySQL:
    def _advisory(self, fake: FakeMySQL) -> SessionStore:
        return _store(fake, locking=LockingMode.ADVISORY, lock_prefix="sess_")

    def test_read_acquires_named_lock_with_wait_budget(self) -> None:
        fake = FakeMySQL()
        store = self._advisory(fake)
        assert store.read("a") == b""
        assert fake.acquired == [("sess_a", 50.0)]
        assert store.held_locks == 1
        assert not store.in_transaction

    def test_read_does_not_insert_placeholder(self) -> None:
        fake = FakeMySQL()
        store = self._advisory(fake)
        store.read("a")
        assert fake.of_type(Insert) == []
        fake.conn.begin_nested.assert_not_called()
        fake.conn.execution_options.assert_not_called()

    def test_read_is_plain_select(self) -> None:
        fake = FakeMySQL(rows=[(_FUTURE, b"data")])
        store = self._advisory(fake)
        assert store.read("a") == b"data"
        assert "FOR UPDATE" not in _compile(fake.of_type(Select)[0])

    def test_multiple_reads_released_in_order_at_close(self) -> None:
        fake = FakeMySQL()
        store = self._advisory(fake)
        for sid in ("a", "b", "c"):
            store.read(sid)
        assert fake.released == []
        store.close()
        assert fake.released == ["sess_a", "sess_b", "sess_c"]
        assert store.held_locks == 0

    def test_lock_timeout_raises_distinct_error(self) -> None:
        fake = FakeMySQL(lock_results=[0])
        store = self._advisory(fake)
        with pytest.raises(LockTimeoutError) as info:
            store.read("busy")
        assert info.value.session_id == "busy"
        assert info.value.timeout == 50.0
        assert store.held_locks == 0
        assert fake.of_type(Select) == []

    def test_lock_server_error_is_not_a_timeout(self) -> None:
        fake = FakeMySQL(lock_results=[None])
        store = self._advisory(fake)
        with pytest.raises(SessionStoreError) as info:
            store.read("a")
        assert not isinstance(info.value, LockTimeoutError)

    def test_write_upserts_for_missing_row(self) -> None:
        fake = FakeMySQL()
        store = self._advisory(fake)
        store.read("a")
        store.write("a", b"v")
        assert "ON DUPLICATE KEY UPDATE" in _compile(fake.of_type(Insert)[0])

    def test_gc_sweep_runs_after_release(self) -> None:
        fake = FakeMySQL()
        store = self._advisory(fake)
        store.read("a")
        store.gc(1440)
        store.close()
        release_index = next(
            i for i, s in enumerate(fake.statements)
            if isinstance(s, TextClause) and "RELEASE_LOCK" in s.text
        )
        delete_index = next(i for i, s in enumerate(fake.statements) if isinstance(s, Delete))
        assert release_index < delete_index
        assert not store.gc_pending

    def test_abort_releases_locks(self) -> None:
        fake = FakeMySQL()
        store = self._advisory(fake)
        store.read("a")
        store.read("b")
        store.abort()
        assert fake.released == ["sess_a", "sess_b"]
        fake.conn.close.assert_called_once()

    def test_different_ids_use_different_locks(self) -> None:
        fake = FakeMySQL()
        store = self._advisory(fake)
        store.read("one")
        store.read("two")
        assert [name for name, _ in fake.acquired] == ["sess_one", "sess_two"]
