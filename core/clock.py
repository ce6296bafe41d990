"""
Registrar - Clock Abstraction

Timestamps and idempotency expiry read time through an injected clock
rather than a global, so tests can freeze and advance time.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of the current UTC time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """
    Deterministic clock for tests.

    Time only moves when advance() or set() is called.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2024, 8, 26, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(
        self,
        delta: Optional[timedelta] = None,
        *,
        seconds: float = 0.0,
    ) -> datetime:
        """Move time forward and return the new instant."""
        self._now = self._now + (delta or timedelta()) + timedelta(seconds=seconds)
        return self._now

    def set(self, instant: datetime) -> None:
        self._now = instant
