"""Deferred removal of expired session records."""
from __future__ import annotations

import logging

from sqlalchemy import Table, delete
from sqlalchemy.engine import Connection

logger = logging.getLogger(__name__)


class GarbageCollector:
    """Deletes every record whose expiry lies before a reference time.

    Only rows that are already logically expired are touched, so a sweep
    never races with a live read or write of a valid session.

    Parameters
    ----------
    table:
        The session table.
    expiry_column:
        Name of the expiry column on ``table``.
    """

    def __init__(self, table: Table, expiry_column: str) -> None:
        self._table = table
        self._expiry = table.c[expiry_column]

    def sweep(self, connection: Connection, now: int) -> None:
        """Delete records with ``expiry < now`` in a transaction of their own."""
        with connection.begin():
            result = connection.execute(delete(self._table).where(self._expiry < now))
        logger.debug("GarbageCollector: removed %d expired session(s)", result.rowcount)

    def __repr__(self) -> str:
        return f"GarbageCollector(table={self._table.name!r})"
