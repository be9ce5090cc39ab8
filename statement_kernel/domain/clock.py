"""
Injectable time source for statement generation.

``generated_date`` on a statement document, ``collection_timestamp`` on an
event collection and the template cache expiry all read ``Clock.now()``.
Engines never read time at all.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Returns timezone-aware UTC datetimes."""

    @abstractmethod
    def now(self) -> datetime: ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Frozen at ``start`` until moved with ``advance``; used for cache TTL tests."""

    def __init__(self, start: datetime | None = None):
        self._current = start or datetime(2024, 7, 1, 8, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float = 1) -> None:
        self._current += timedelta(seconds=seconds)
