"""Abstract base class for host-driven session handlers.

A host runtime drives one handler instance per request cycle through six
operations, always in the order::

    open -> read* -> write? -> close

with ``destroy`` and ``gc`` permitted at any point between ``open`` and
``close``.  Payloads are opaque bytes and an empty payload means "no prior
session".

Classes
-------
- SessionHandler  — the six-operation lifecycle contract
"""
from __future__ import annotations

from abc import ABC, abstractmethod


class SessionHandler(ABC):
    """Lifecycle contract a session host expects from its storage handler."""

    @abstractmethod
    def open(self, save_path: str = "", name: str = "") -> bool:
        """Prepare for a cycle.

        Parameters
        ----------
        save_path:
            Storage location hint from the host.  May be ignored.
        name:
            Session namespace name from the host.  May be ignored.
        """

    @abstractmethod
    def read(self, session_id: str) -> bytes:
        """Return the payload for ``session_id``, or ``b""`` if absent or expired."""

    @abstractmethod
    def write(self, session_id: str, data: bytes) -> bool:
        """Persist ``data`` under ``session_id`` with a fresh expiry."""

    @abstractmethod
    def close(self) -> bool:
        """End the cycle, releasing everything acquired since ``open``."""

    @abstractmethod
    def destroy(self, session_id: str) -> bool:
        """Delete the record for ``session_id``."""

    @abstractmethod
    def gc(self, max_lifetime: int) -> bool:
        """Request removal of expired records."""
