"""Session store backed by a relational table.

``SessionStore`` implements the host lifecycle contract
(:class:`~sql_session_store.handler.SessionHandler`) for one request cycle.
It checks a single connection out of the engine when constructed and
returns it when the cycle ends; nothing is cached between cycles.

Classes
-------
- SessionStore  — per-cycle session handler
"""
from __future__ import annotations

import logging
import time
from types import TracebackType
from typing import Any, Callable

from sqlalchemy import MetaData, Row, Select, delete, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql.expression import Executable

from sql_session_store.config import StoreConfig
from sql_session_store.errors import SessionClosedError, UnsupportedDialectError
from sql_session_store.expiry import ExpiryPolicy
from sql_session_store.gc import GarbageCollector
from sql_session_store.handler import SessionHandler
from sql_session_store.locking import LockingStrategy, make_locking_strategy
from sql_session_store.schema import UPSERT_DIALECTS, build_session_table, upsert_statement

logger = logging.getLogger(__name__)


class SessionStore(SessionHandler):
    """Reads and writes session records under a locking strategy.

    Construct one store per request cycle.  The host then calls
    ``open``, any number of ``read`` calls, at most one ``write`` and
    finally ``close``; ``destroy`` and ``gc`` may be called in between.
    Once closed the store rejects every further operation.

    Parameters
    ----------
    engine:
        Engine to check the cycle's connection out of.
    config:
        Store settings.  Defaults to ``StoreConfig()``.
    metadata:
        MetaData to register the session table on.  A private one is used
        when omitted.
    strategy:
        Locking strategy override.  Built from ``config.locking`` when
        omitted.
    clock:
        Callable returning the current Unix time.

    Raises
    ------
    UnsupportedDialectError
        If the engine's dialect cannot run the strategy or the upsert.
    """

    def __init__(
        self,
        engine: Engine,
        config: StoreConfig | None = None,
        *,
        metadata: MetaData | None = None,
        strategy: LockingStrategy | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or StoreConfig()
        self._table = build_session_table(metadata or MetaData(), self._config)
        self._lock = strategy or make_locking_strategy(self._config)
        self._expiry = ExpiryPolicy(self._config.max_lifetime, clock)
        self._gc = GarbageCollector(self._table, self._config.columns.expiry)

        dialect = engine.dialect.name
        if dialect not in UPSERT_DIALECTS:
            raise UnsupportedDialectError(dialect, "upsert")
        if not self._lock.supports(dialect):
            raise UnsupportedDialectError(dialect, type(self._lock).__name__)

        self._connection = engine.connect()
        self._gc_pending = False
        self._closed = False

    @classmethod
    def from_config(cls, config: StoreConfig, engine: Engine | None = None) -> SessionStore:
        """Build a store for ``config``, creating an engine if none is given."""
        return cls(engine if engine is not None else config.create_engine(), config)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> str:
        return "closed" if self._closed else "opened"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_transaction(self) -> bool:
        return self._lock.in_transaction

    @property
    def gc_pending(self) -> bool:
        return self._gc_pending

    @property
    def held_locks(self) -> int:
        """Advisory locks acquired this cycle and not yet released."""
        return self._lock.held

    @property
    def strategy(self) -> LockingStrategy:
        return self._lock

    @property
    def expiry(self) -> ExpiryPolicy:
        return self._expiry

    # ------------------------------------------------------------------
    # SessionHandler interface
    # ------------------------------------------------------------------

    def open(self, save_path: str = "", name: str = "") -> bool:
        """No-op; the connection was acquired at construction."""
        self._ensure_open("open")
        return True

    def read(self, session_id: str) -> bytes:
        """Enter the critical section for ``session_id`` and return its payload.

        Returns ``b""`` when no row exists or the row has expired.  An
        expired row is left in place for the garbage collector.  Under a
        strategy that requires it, a placeholder row is inserted for an
        unseen id so that concurrent readers block on it.
        """
        self._ensure_open("read")
        statement = self._lock.lock_read(self._select_row(session_id))
        try:
            self._lock.acquire(self._connection, session_id)
            row = self._fetch_one(statement)
            if row is None:
                if self._lock.creates_placeholder:
                    return self._insert_placeholder(session_id, statement)
                return b""
            return self._payload(session_id, row)
        except SQLAlchemyError:
            self._lock.rollback()
            raise

    def write(self, session_id: str, data: bytes) -> bool:
        """Insert or update the record with a freshly computed expiry."""
        self._ensure_open("write")
        statement = upsert_statement(
            self._connection.dialect,
            self._table,
            self._config,
            session_id,
            self._expiry.expiry_at(),
            data,
        )
        try:
            self._execute(statement)
        except SQLAlchemyError:
            self._lock.rollback()
            raise
        return True

    def close(self) -> bool:
        """Commit or release the cycle's locks, then run a requested sweep.

        The connection is returned to the pool even when this fails; a
        connection whose cleanup failed is invalidated instead of reused.
        """
        self._ensure_open("close")
        self._closed = True
        try:
            self._lock.release(self._connection)
            if self._gc_pending:
                self._gc_pending = False
                self._gc.sweep(self._connection, self._expiry.now())
        except SQLAlchemyError:
            self._discard_connection()
            raise
        finally:
            self._connection.close()
        return True

    def destroy(self, session_id: str) -> bool:
        """Delete the record for ``session_id``.

        Inside an open session transaction the delete becomes visible at
        ``close()``.
        """
        self._ensure_open("destroy")
        cols = self._config.columns
        statement = delete(self._table).where(self._table.c[cols.id] == session_id)
        try:
            self._execute(statement)
        except SQLAlchemyError:
            self._lock.rollback()
            raise
        logger.debug("SessionStore: destroyed %r", session_id)
        return True

    def gc(self, max_lifetime: int) -> bool:
        """Flag a sweep of expired records for the next ``close()``."""
        self._ensure_open("gc")
        self._gc_pending = True
        return True

    # ------------------------------------------------------------------
    # Failure path
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """End the cycle without committing.

        Rolls back an open transaction, releases held named locks, drops a
        pending sweep and returns the connection.  Calling it on a closed
        store does nothing.
        """
        if self._closed:
            return
        self._closed = True
        self._gc_pending = False
        if self._lock.in_transaction:
            logger.warning("SessionStore: aborting cycle with an open transaction")
        try:
            self._lock.abort(self._connection)
        except SQLAlchemyError:
            self._discard_connection()
            raise
        finally:
            self._connection.close()

    def __enter__(self) -> SessionStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            self.abort()
        elif not self._closed:
            self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_open(self, operation: str) -> None:
        if self._closed:
            raise SessionClosedError(operation)

    def _discard_connection(self) -> None:
        # Closing the DBAPI connection ends its transaction and frees any
        # named locks it still holds on the server.
        self._connection.invalidate()
        self._lock.reset()

    def _select_row(self, session_id: str) -> Select:
        cols = self._config.columns
        table = self._table
        return select(table.c[cols.expiry], table.c[cols.data]).where(
            table.c[cols.id] == session_id
        )

    def _fetch_one(self, statement: Select) -> Row[Any] | None:
        if self._lock.in_transaction:
            return self._connection.execute(statement).first()
        with self._connection.begin():
            return self._connection.execute(statement).first()

    def _execute(self, statement: Executable) -> None:
        if self._lock.in_transaction:
            self._connection.execute(statement)
            return
        with self._connection.begin():
            self._connection.execute(statement)

    def _payload(self, session_id: str, row: Row[Any]) -> bytes:
        expiry, data = row
        if self._expiry.is_expired(expiry):
            logger.debug("SessionStore: session %r expired at %d", session_id, expiry)
            return b""
        return bytes(data)

    def _insert_placeholder(self, session_id: str, statement: Select) -> bytes:
        """Register ``session_id`` so later readers block on its row.

        A duplicate key means a concurrent cycle inserted the row first; its
        committed payload is read back instead.  The insert runs in a
        savepoint so the session transaction survives the conflict.
        """
        cols = self._config.columns
        placeholder = insert(self._table).values(
            {cols.id: session_id, cols.expiry: self._expiry.expiry_at(), cols.data: b""}
        )
        try:
            with self._connection.begin_nested():
                self._connection.execute(placeholder)
        except IntegrityError:
            logger.warning(
                "SessionStore: session %r was created concurrently; using the stored row",
                session_id,
            )
            row = self._connection.execute(statement).first()
            return b"" if row is None else self._payload(session_id, row)
        logger.debug("SessionStore: registered new session %r", session_id)
        return b""

    def __repr__(self) -> str:
        return (
            f"SessionStore(table={self._table.name!r}, strategy={self._lock!r}, "
            f"state={self.state!r})"
        )
