"""
Test helpers: fixed clock and fixed instants.
"""
from datetime import datetime, timedelta, timezone

SITE = "trendsinusa"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def at(hour: int, minute: int, second: int = 0, day: int = 19) -> datetime:
    """Aware UTC instant on 2026-10-<day> (the 19th is a Monday)."""
    return datetime(2026, 10, day, hour, minute, second, tzinfo=timezone.utc)
