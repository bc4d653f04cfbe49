"""Time-gated, length-adaptive UI publish throttle.

The publish interval widens as the combined answer + thinking length
grows, capping how often expensive UI diffing runs on long generations.
Breakpoints are configuration; only the monotonic widening matters.
"""

from __future__ import annotations

import time
from typing import Callable

from polychat.config import ThrottleSpec


class PublishThrottle:
    """Decide whether a streaming snapshot should be published now.

    Parameters
    ----------
    spec:
        Base interval and ``(length_threshold, interval)`` breakpoints.
    clock:
        Monotonic clock returning seconds (injectable for tests).
    """

    def __init__(
        self,
        spec: ThrottleSpec | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._spec = spec or ThrottleSpec()
        self._clock = clock
        self.interval = self._spec.base_interval
        self.last_publish_time = self._clock()

    def reset(self) -> None:
        self.interval = self._spec.base_interval
        self.last_publish_time = self._clock()

    def interval_for(self, length: int) -> float:
        """Return the publish interval for a given accumulated text length."""
        interval = self._spec.base_interval
        for threshold, value in self._spec.breakpoints:
            if length > threshold:
                interval = max(interval, value)
        return interval

    def should_publish(self, length: int) -> bool:
        """Widen the interval for *length*; return True and stamp if due."""
        # Never narrows within one stream
        self.interval = max(self.interval, self.interval_for(length))
        now = self._clock()
        if now - self.last_publish_time >= self.interval:
            self.last_publish_time = now
            return True
        return False
