from __future__ import annotations

import time
from collections.abc import Callable


class HeartbeatTimer:
    def __init__(self, interval_seconds: float | None, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._last_activity = clock()

    @property
    def interval_seconds(self) -> float | None:
        return self._interval_seconds

    @property
    def last_activity(self) -> float:
        return self._last_activity

    def touch(self) -> None:
        self._last_activity = self._clock()

    def idle_seconds(self) -> float:
        return self._clock() - self._last_activity

    def due(self) -> bool:
        if self._interval_seconds is None:
            return False
        return self.idle_seconds() >= self._interval_seconds
