"""Table definition and dialect-specific statements.

Table and column names come from :class:`~sql_session_store.config.StoreConfig`;
every statement is built with SQLAlchemy Core so values are always bound
parameters.

Functions
---------
- build_session_table  — describe the session table on a MetaData
- upsert_statement     — insert-or-update for the connected dialect
"""
from __future__ import annotations

from sqlalchemy import BigInteger, Column, LargeBinary, MetaData, String, Table
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import Dialect
from sqlalchemy.sql.dml import Insert

from sql_session_store.config import StoreConfig
from sql_session_store.errors import UnsupportedDialectError

UPSERT_DIALECTS: frozenset[str] = frozenset({"mysql", "mariadb", "postgresql", "sqlite"})


def build_session_table(metadata: MetaData, config: StoreConfig) -> Table:
    """Return the session :class:`~sqlalchemy.Table` registered on ``metadata``.

    Reuses the existing definition when ``metadata`` already holds a table
    of the configured name.
    """
    if config.table in metadata.tables:
        return metadata.tables[config.table]
    cols = config.columns
    return Table(
        config.table,
        metadata,
        Column(cols.id, String(128), primary_key=True),
        Column(cols.expiry, BigInteger, nullable=False, index=True),
        Column(cols.data, LargeBinary, nullable=False),
    )


def upsert_statement(
    dialect: Dialect,
    table: Table,
    config: StoreConfig,
    session_id: str,
    expiry: int,
    data: bytes,
) -> Insert:
    """Build an insert that updates ``expiry`` and ``data`` on a key conflict.

    Raises
    ------
    UnsupportedDialectError
        If the dialect has no native upsert.
    """
    cols = config.columns
    values = {cols.id: session_id, cols.expiry: expiry, cols.data: data}
    updates = {cols.expiry: expiry, cols.data: data}

    if dialect.name in ("mysql", "mariadb"):
        return mysql.insert(table).values(values).on_duplicate_key_update(updates)
    if dialect.name == "postgresql":
        return postgresql.insert(table).values(values).on_conflict_do_update(
            index_elements=[table.c[cols.id]], set_=updates
        )
    if dialect.name == "sqlite":
        return sqlite.insert(table).values(values).on_conflict_do_update(
            index_elements=[table.c[cols.id]], set_=updates
        )
    raise UnsupportedDialectError(dialect.name, "upsert")
