"""Timestamps used as ordering keys."""

import threading
from datetime import datetime, timedelta, timezone

_TICK = timedelta(microseconds=1)


class MonotonicClock:
    """UTC clock whose readings strictly increase within the process.

    Message timestamps double as pagination cursors, so two messages must never
    share one; readings that would collide are pushed forward by a microsecond.
    """

    def __init__(self):
        self._last: datetime | None = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(timezone.utc)
            if self._last is not None and current <= self._last:
                current = self._last + _TICK
            self._last = current
            return current

    def sequence(self, count: int) -> list[datetime]:
        """Reserve ``count`` strictly increasing timestamps."""
        return [self.now() for _ in range(count)]


clock = MonotonicClock()
