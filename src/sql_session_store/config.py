"""Store configuration.

``StoreConfig`` is a Pydantic model so settings loaded from YAML files or
plain mappings are validated before any connection is made.

Classes
-------
- LockingMode  — transactional (row lock) or advisory (named lock)
- ColumnNames  — overridable column identifiers
- StoreConfig  — full configuration surface
"""
from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from sql_session_store.errors import ConfigurationError

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(value: str) -> str:
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"{value!r} is not a valid SQL identifier")
    return value


class LockingMode(str, Enum):
    """How a store serializes concurrent cycles for the same session id."""

    TRANSACTIONAL = "transactional"
    ADVISORY = "advisory"


class ColumnNames(BaseModel):
    """Column identifiers of the session table."""

    id: str = "sid"
    expiry: str = "expiry"
    data: str = "data"

    @field_validator("id", "expiry", "data")
    @classmethod
    def _valid_identifier(cls, value: str) -> str:
        return _check_identifier(value)


class StoreConfig(BaseModel):
    """Settings for a :class:`~sql_session_store.store.SessionStore`.

    Parameters
    ----------
    url:
        SQLAlchemy database URL, e.g. ``mysql+pymysql://user:pw@host/db``.
        Credentials travel inside the URL.
    table:
        Name of the session table.
    columns:
        Column name overrides.
    locking:
        Locking strategy used by every store built from this config.
    max_lifetime:
        Session lifetime in seconds.  Expiry is recomputed from it on every
        write and on placeholder inserts.
    lock_timeout:
        Wait budget, in seconds, for advisory lock acquisition.
    lock_prefix:
        String prepended to the session id to form the advisory lock name.
    isolation_level:
        Isolation level applied to the session transaction in transactional
        mode.  ``None`` keeps the connection's default.
    engine_options:
        Extra keyword arguments for :func:`sqlalchemy.create_engine`.
    """

    url: str = "sqlite:///sessions.db"
    table: str = "sessions"
    columns: ColumnNames = Field(default_factory=ColumnNames)
    locking: LockingMode = LockingMode.TRANSACTIONAL
    max_lifetime: int = Field(default=1440, gt=0)
    lock_timeout: float = Field(default=50.0, gt=0)
    lock_prefix: str = ""
    isolation_level: str | None = "READ COMMITTED"
    engine_options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("table")
    @classmethod
    def _valid_table(cls, value: str) -> str:
        return _check_identifier(value)

    @field_validator("isolation_level")
    @classmethod
    def _normalise_isolation(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return " ".join(value.upper().replace("_", " ").split())

    # ------------------------------------------------------------------
    # Loaders
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> StoreConfig:
        """Build a config from a plain mapping.

        Raises
        ------
        ConfigurationError
            If the mapping fails validation.
        """
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid store configuration: {exc}") from exc

    @classmethod
    def from_yaml(cls, path: str | Path) -> StoreConfig:
        """Load a config from a YAML file.

        An empty file yields the defaults.
        """
        raw = Path(path).read_text(encoding="utf-8")
        data = yaml.safe_load(raw) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Expected a mapping at the top of {str(path)!r}, got {type(data).__name__}."
            )
        return cls.from_mapping(data)

    # ------------------------------------------------------------------
    # Engine
    # ------------------------------------------------------------------

    def create_engine(self) -> Engine:
        """Return a new SQLAlchemy engine for :attr:`url`."""
        return create_engine(self.url, **self.engine_options)
