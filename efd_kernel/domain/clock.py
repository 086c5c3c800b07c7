"""
Injectable time source.

The invocation time budget, claim leases and job timestamps all read a
``Clock`` passed in by the caller; nothing in the pipeline calls
``datetime.now()`` directly.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        ``now_utc()`` returns a timezone-aware UTC ``datetime``.
    """

    @abstractmethod
    def now_utc(self) -> datetime:
        ...

    def elapsed_seconds(self, since: datetime) -> float:
        return (self.now_utc() - since).total_seconds()

    def after(self, seconds: float) -> datetime:
        """The instant ``seconds`` from now, e.g. a claim lease expiry."""
        return self.now_utc() + timedelta(seconds=seconds)


class SystemClock(Clock):
    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock that only moves when told to.

    ``advance()`` moves it explicitly.  With ``auto_advance`` every read
    moves it by that many seconds afterwards, so a wall-clock budget runs out
    after a known number of reads.
    """

    def __init__(self, start: datetime | None = None, auto_advance: float = 0.0):
        self._current = (start or DEFAULT_TEST_TIME).astimezone(timezone.utc)
        self._auto_advance = timedelta(seconds=auto_advance)

    def now_utc(self) -> datetime:
        current = self._current
        self._current += self._auto_advance
        return current

    def advance(self, seconds: float = 1) -> None:
        self._current += timedelta(seconds=seconds)
