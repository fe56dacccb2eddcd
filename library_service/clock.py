"""
Injectable time source.

Timestamps are naive UTC, which is what the DateTime columns store.
"""
from datetime import datetime, timedelta, timezone


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """
    Test clock: returns the same instant until advanced.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._now = fixed_time or datetime(2024, 1, 1, 12, 0, 0)

    def now(self) -> datetime:
        return self._now

    def set_time(self, when: datetime) -> None:
        self._now = when

    def advance(self, seconds: float = 1) -> None:
        self._now = self._now + timedelta(seconds=seconds)
