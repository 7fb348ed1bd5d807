"""Shared fixtures: SQLite-backed engines for store tests.

The pysqlite driver manages transactions itself, which breaks SAVEPOINT
handling.  Engines built here disable that behaviour and emit
``BEGIN IMMEDIATE`` whenever SQLAlchemy begins a transaction, so a second
cycle blocks on the database write lock the way a locking read blocks on
a row lock.
"""
from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import Engine

from sql_session_store.config import StoreConfig
from sql_session_store.schema import build_session_table


class FakeClock:
    """Manually advanced clock for expiry tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_sqlite_engine(db_path: Path) -> Engine:
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


@pytest.fixture()
def store_config() -> StoreConfig:
    return StoreConfig(max_lifetime=1440)


@pytest.fixture()
def engine(tmp_path: Path, store_config: StoreConfig) -> Iterator[Engine]:
    eng = make_sqlite_engine(tmp_path / "sessions.db")
    metadata = MetaData()
    build_session_table(metadata, store_config)
    metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
