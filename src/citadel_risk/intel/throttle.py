# PRD: Intel Module - Connector Rate Limiting & Retry Policy
# Reference: docs/ARCHITECTURE.md, Section: Feed Connector
#
# RateLimiter: enforces a minimum interval between syncs of one
# connector. A second call inside the interval sleeps for the remainder.
# The slot is reserved under the lock, the sleep happens outside it.
#
# RetryPolicy: exponential backoff, delay = retry_delay * 2**attempt.

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional


class RateLimiter:
    """Minimum-interval limiter on a monotonic clock.

    Args:
        min_interval: Seconds that must separate two acquisitions.
        clock: Monotonic time source (injectable for tests).
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last: Optional[float] = None

    def remaining(self) -> float:
        """Seconds until the next acquisition would proceed without waiting."""
        with self._lock:
            if self._last is None:
                return 0.0
            return max(0.0, self._last + self.min_interval - self._clock())

    def acquire(self) -> float:
        """Block until the interval since the last acquisition has elapsed.

        Returns:
            Seconds slept (0.0 when no wait was needed).
        """
        with self._lock:
            now = self._clock()
            wait = 0.0
            if self._last is not None:
                wait = max(0.0, self._last + self.min_interval - now)
            self._last = now + wait
        if wait > 0:
            self._sleep(wait)
        return wait

    def reset(self) -> None:
        with self._lock:
            self._last = None


@dataclass
class RetryPolicy:
    """Exponential backoff schedule for transient HTTP failures.

    ``retries`` is the number of attempts after the first one.
    """

    retries: int = 3
    base_delay: float = 1.0

    @property
    def total_attempts(self) -> int:
        return self.retries + 1

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        return self.base_delay * (2 ** attempt)
