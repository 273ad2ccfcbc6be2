"""
Time sources.

All expiry checks are lazy: they compare the clock at the moment of the
operation against stored unix timestamps. There are no background timers.
"""

import threading
import time


class SystemClock:
    """Wall clock in whole unix seconds."""

    def now(self) -> int:
        return int(time.time())

    def __call__(self) -> int:
        return self.now()


class ManualClock:
    """
    Clock that only moves when told to.

    Used by tests and by the CLI demo to fast-forward through auctions.
    """

    def __init__(self, start: int = 1_700_000_000):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            return self._now

    def __call__(self) -> int:
        return self.now()

    def advance(self, seconds: int) -> int:
        """Move forward by ``seconds`` and return the new time."""
        if seconds < 0:
            raise ValueError("Clock cannot move backwards")
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, timestamp: int) -> None:
        with self._lock:
            if timestamp < self._now:
                raise ValueError("Clock cannot move backwards")
            self._now = timestamp
