"""Locking strategies that serialize concurrent cycles for one session id.

Two variants are provided and a store uses exactly one of them for its
whole cycle:

- ``TransactionalLock`` opens a transaction at the READ COMMITTED level and
  relies on a locking read (``SELECT ... FOR UPDATE``) to hold the row
  until ``close()`` commits.  Exclusive reads of a missing row do not
  block, so the store inserts a placeholder row for new ids while this
  strategy is active.
- ``AdvisoryLock`` takes a named server-side lock (MySQL ``GET_LOCK``)
  keyed by the session id, with a bounded wait.  It holds no row locks and
  keeps no transaction open; pending releases are queued and drained in
  acquisition order.

Classes
-------
- LockingStrategy    — abstract base
- TransactionalLock  — row lock through a long-lived transaction
- AdvisoryLock       — named lock independent of any row

Functions
---------
- make_locking_strategy  — build the strategy selected by a StoreConfig
- advisory_lock_name     — derive a MySQL-safe lock name
"""
from __future__ import annotations

import hashlib
import logging
from abc import ABC, abstractmethod
from collections import deque
from functools import partial
from typing import Callable, ClassVar

from sqlalchemy import Select, text
from sqlalchemy.engine import Connection, RootTransaction

from sql_session_store.config import LockingMode, StoreConfig
from sql_session_store.errors import LockTimeoutError, SessionStoreError

logger = logging.getLogger(__name__)

# MySQL rejects lock names longer than 64 characters.
_MAX_LOCK_NAME_LENGTH: int = 64

_GET_LOCK_SQL = text("SELECT GET_LOCK(:name, :timeout)")
_RELEASE_LOCK_SQL = text("DO RELEASE_LOCK(:name)")


def advisory_lock_name(prefix: str, session_id: str) -> str:
    """Return the lock name for ``session_id``.

    Names over MySQL's limit are replaced by their SHA-1 hex digest.
    """
    name = f"{prefix}{session_id}"
    if len(name) > _MAX_LOCK_NAME_LENGTH:
        name = hashlib.sha1(name.encode("utf-8")).hexdigest()
    return name


class LockingStrategy(ABC):
    """Critical-section protocol used by the session store.

    ``acquire`` starts the critical section for one session id,
    ``lock_read`` adapts the row lookup, ``release`` ends every critical
    section opened during the cycle on the success path and ``abort`` ends
    them on the failure path.
    """

    #: Whether the store must insert a placeholder row for unseen ids.
    creates_placeholder: ClassVar[bool] = False

    #: Dialect names this strategy can run on; ``None`` means any.
    dialects: ClassVar[frozenset[str] | None] = None

    def supports(self, dialect_name: str) -> bool:
        """Return True if this strategy can run on ``dialect_name``."""
        return self.dialects is None or dialect_name in self.dialects

    @property
    def in_transaction(self) -> bool:
        """True while a strategy-owned transaction is open."""
        return False

    @property
    def held(self) -> int:
        """Number of named locks awaiting release."""
        return 0

    @abstractmethod
    def acquire(self, connection: Connection, session_id: str) -> None:
        """Enter the critical section for ``session_id``."""

    @abstractmethod
    def lock_read(self, statement: Select) -> Select:
        """Return ``statement`` adapted for reading inside the critical section."""

    @abstractmethod
    def release(self, connection: Connection) -> None:
        """Leave every critical section entered during the cycle."""

    @abstractmethod
    def abort(self, connection: Connection) -> None:
        """Leave every critical section, discarding uncommitted work."""

    def rollback(self) -> None:
        """Roll back a strategy-owned transaction, if one is open."""

    @abstractmethod
    def reset(self) -> None:
        """Forget held locks without issuing statements.

        Used once the connection has been invalidated, which releases
        everything on the server side.
        """


class TransactionalLock(LockingStrategy):
    """Pessimistic row locking through a transaction.

    Parameters
    ----------
    isolation_level:
        Level applied to the connection before the transaction begins.
        REPEATABLE READ, the MySQL default, lets two sessions that both read
        before writing deadlock on each other's gap locks.  ``None`` keeps
        the connection default, as does a level the dialect does not offer
        (SQLite has no READ COMMITTED).
    """

    creates_placeholder = True

    def __init__(self, isolation_level: str | None = "READ COMMITTED") -> None:
        self.isolation_level = isolation_level
        self._transaction: RootTransaction | None = None

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None and self._transaction.is_active

    def acquire(self, connection: Connection, session_id: str) -> None:
        """Begin the session transaction unless one is already open.

        Repeated reads within one cycle share the same transaction.
        """
        if self.in_transaction:
            return
        level = self._applicable_level(connection)
        if level is not None:
            connection.execution_options(isolation_level=level)
        self._transaction = connection.begin()
        logger.debug(
            "TransactionalLock: began transaction for %r (isolation=%s)",
            session_id,
            level or "default",
        )

    def _applicable_level(self, connection: Connection) -> str | None:
        if self.isolation_level is None:
            return None
        supported = connection.dialect.get_isolation_level_values(
            connection.connection.dbapi_connection
        )
        if self.isolation_level not in supported:
            logger.debug(
                "TransactionalLock: %s not available on %s, keeping the default level",
                self.isolation_level,
                connection.dialect.name,
            )
            return None
        return self.isolation_level

    def lock_read(self, statement: Select) -> Select:
        return statement.with_for_update()

    def release(self, connection: Connection) -> None:
        """Commit the session transaction, releasing its row locks."""
        if self._transaction is None:
            return
        transaction, self._transaction = self._transaction, None
        if transaction.is_active:
            transaction.commit()
            logger.debug("TransactionalLock: committed")

    def abort(self, connection: Connection) -> None:
        self.rollback()

    def rollback(self) -> None:
        if self._transaction is None:
            return
        transaction, self._transaction = self._transaction, None
        if transaction.is_active:
            transaction.rollback()
            logger.debug("TransactionalLock: rolled back")

    def reset(self) -> None:
        self._transaction = None

    def __repr__(self) -> str:
        return f"TransactionalLock(isolation_level={self.isolation_level!r})"


class AdvisoryLock(LockingStrategy):
    """Named server-side mutex keyed by session id.

    Parameters
    ----------
    timeout:
        Seconds to wait for the lock before raising
        :class:`~sql_session_store.errors.LockTimeoutError`.
    prefix:
        String prepended to the session id to form the lock name.
    """

    dialects = frozenset({"mysql", "mariadb"})

    def __init__(self, timeout: float = 50.0, prefix: str = "") -> None:
        self.timeout = timeout
        self.prefix = prefix
        self._pending: deque[Callable[[], None]] = deque()

    @property
    def held(self) -> int:
        """Number of acquired locks awaiting release."""
        return len(self._pending)

    def acquire(self, connection: Connection, session_id: str) -> None:
        """Take the named lock for ``session_id`` and queue its release.

        Raises
        ------
        LockTimeoutError
            If the lock is not granted within :attr:`timeout` seconds.
        SessionStoreError
            If the server reports an error while acquiring the lock.
        """
        name = advisory_lock_name(self.prefix, session_id)
        with connection.begin():
            granted = connection.execute(
                _GET_LOCK_SQL, {"name": name, "timeout": self.timeout}
            ).scalar()
        if granted is None:
            raise SessionStoreError(f"Server error while acquiring lock {name!r}.")
        if not granted:
            raise LockTimeoutError(session_id, self.timeout)
        self._pending.append(partial(self._release_one, connection, name))
        logger.debug("AdvisoryLock: acquired %r", name)

    def lock_read(self, statement: Select) -> Select:
        return statement

    def release(self, connection: Connection) -> None:
        """Release every held lock in the order it was acquired."""
        while self._pending:
            release_one = self._pending.popleft()
            release_one()

    def abort(self, connection: Connection) -> None:
        self.release(connection)

    def reset(self) -> None:
        self._pending.clear()

    @staticmethod
    def _release_one(connection: Connection, name: str) -> None:
        with connection.begin():
            connection.execute(_RELEASE_LOCK_SQL, {"name": name})
        logger.debug("AdvisoryLock: released %r", name)

    def __repr__(self) -> str:
        return f"AdvisoryLock(timeout={self.timeout!r}, held={self.held})"


def make_locking_strategy(config: StoreConfig) -> LockingStrategy:
    """Return a fresh strategy instance for ``config.locking``."""
    if config.locking is LockingMode.ADVISORY:
        return AdvisoryLock(timeout=config.lock_timeout, prefix=config.lock_prefix)
    return TransactionalLock(isolation_level=config.isolation_level)
