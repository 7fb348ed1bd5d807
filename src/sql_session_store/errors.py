"""Exception hierarchy for sql-session-store.

Driver-level failures (connectivity, SQL errors) are never wrapped; they
propagate as the ``sqlalchemy.exc`` types raised by the engine.  The
classes below cover conditions this package detects itself.

Classes
-------
- SessionStoreError        — base class for all package errors
- LockTimeoutError         — advisory lock not granted within its wait budget
- SessionClosedError       — operation attempted after ``close()``
- ConfigurationError       — invalid settings
- UnsupportedDialectError  — database dialect cannot provide a feature
"""
from __future__ import annotations


class SessionStoreError(RuntimeError):
    """Base class for errors raised by sql-session-store."""


class LockTimeoutError(SessionStoreError):
    """Raised when a named lock is not granted within its wait budget.

    The session must be treated as unavailable for the current cycle.
    """

    def __init__(self, session_id: str, timeout: float) -> None:
        self.session_id = session_id
        self.timeout = timeout
        super().__init__(
            f"Could not acquire lock for session {session_id!r} within {timeout}s."
        )


class SessionClosedError(SessionStoreError):
    """Raised when a lifecycle operation is called on a closed store."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Cannot {operation}: the session store is closed.")


class ConfigurationError(SessionStoreError, ValueError):
    """Raised for invalid or inconsistent store settings."""


class UnsupportedDialectError(ConfigurationError):
    """Raised when the configured database cannot provide a required feature."""

    def __init__(self, dialect: str, feature: str) -> None:
        self.dialect = dialect
        self.feature = feature
        super().__init__(f"Dialect {dialect!r} does not support {feature}.")
