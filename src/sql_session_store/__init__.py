"""sql-session-store — Relational session storage with per-session locking.

Public API
----------
The stable public surface is everything exported from this module.
Anything inside submodules not re-exported here is considered private
and may change without notice.

Example
-------
>>> import sql_session_store
>>> sql_session_store.__version__
'0.1.0'
"""
from __future__ import annotations

# Configuration and errors
from sql_session_store.config import ColumnNames, LockingMode, StoreConfig
from sql_session_store.errors import (
    ConfigurationError,
    LockTimeoutError,
    SessionClosedError,
    SessionStoreError,
    UnsupportedDialectError,
)

# Building blocks
from sql_session_store.expiry import ExpiryPolicy
from sql_session_store.gc import GarbageCollector
from sql_session_store.locking import (
    AdvisoryLock,
    LockingStrategy,
    TransactionalLock,
    make_locking_strategy,
)
from sql_session_store.schema import build_session_table, upsert_statement

# Session handling
from sql_session_store.handler import SessionHandler
from sql_session_store.store import SessionStore

__version__: str = "0.1.0"

__all__ = [
    "__version__",
    # Configuration
    "ColumnNames",
    "LockingMode",
    "StoreConfig",
    # Errors
    "ConfigurationError",
    "LockTimeoutError",
    "SessionClosedError",
    "SessionStoreError",
    "UnsupportedDialectError",
    # Building blocks
    "AdvisoryLock",
    "ExpiryPolicy",
    "GarbageCollector",
    "LockingStrategy",
    "TransactionalLock",
    "build_session_table",
    "make_locking_strategy",
    "upsert_statement",
    # Session handling
    "SessionHandler",
    "SessionStore",
]
