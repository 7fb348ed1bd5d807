"""Expiry timestamps for session records."""
from __future__ import annotations

import time
from typing import Callable


class ExpiryPolicy:
    """Computes and checks absolute expiry timestamps.

    A record is logically expired once the current time is strictly
    greater than its stored expiry.

    Parameters
    ----------
    lifetime:
        Session lifetime in seconds.
    clock:
        Callable returning the current Unix time.  Defaults to
        :func:`time.time`.
    """

    def __init__(self, lifetime: int, clock: Callable[[], float] = time.time) -> None:
        if lifetime <= 0:
            raise ValueError(f"lifetime must be positive, got {lifetime!r}")
        self.lifetime = lifetime
        self._clock = clock

    def now(self) -> int:
        """Return the current time as whole Unix seconds."""
        return int(self._clock())

    def expiry_at(self, now: int | None = None) -> int:
        """Return the expiry for a record written at ``now``."""
        return (self.now() if now is None else now) + self.lifetime

    def is_expired(self, expiry: int, now: int | None = None) -> bool:
        """Return True if ``expiry`` lies strictly in the past."""
        return (self.now() if now is None else now) > expiry

    def __repr__(self) -> str:
        return f"ExpiryPolicy(lifetime={self.lifetime!r})"
