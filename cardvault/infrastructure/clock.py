"""Clocks and the sweep throttle.

Time is injected everywhere a decision depends on it so that expiry and
throttling can be exercised deterministically.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current UTC time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to. Used by tests and simulations."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> datetime:
        """Move the clock forward.

        Args:
            **kwargs: Keyword arguments accepted by ``timedelta``.

        Returns:
            The new current time.
        """
        self._now += timedelta(**kwargs)
        return self._now


class SweepThrottle:
    """Process-local lease limiting how often the expiry sweep runs.

    Each instance hands out at most one lease per interval. Deployments
    with several processes each hold their own throttle; their sweeps
    overlap harmlessly because a sweep only touches rows that still match
    its predicate.
    """

    def __init__(self, clock: Clock, interval_seconds: float) -> None:
        self.clock = clock
        self.interval = timedelta(seconds=interval_seconds)
        self._last_acquired: datetime | None = None

    def try_acquire(self) -> bool:
        """Take the lease if the interval has elapsed.

        There is no await between the check and the update, so concurrent
        coroutines on one event loop cannot both acquire it.

        Returns:
            True if the caller should sweep now.
        """
        now = self.clock.now()
        if self._last_acquired is not None and now - self._last_acquired < self.interval:
            return False
        self._last_acquired = now
        return True

    def reset(self) -> None:
        """Forget the last lease so the next call acquires immediately."""
        self._last_acquired = None


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to a naive timestamp read back from the database."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
