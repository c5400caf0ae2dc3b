"""Failure counter that disables a flaky device for a while."""

import time
from collections.abc import Callable


class CircuitBreaker:
    """
    Counts consecutive failures of one device.

    After ``failure_threshold`` consecutive failures the breaker opens and
    ``allow()`` returns False until ``disable_window`` seconds have elapsed. The
    first attempt after the window is a trial read: success closes the breaker, failure
    opens it for another window.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        disable_window: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.disable_window = disable_window
        self._clock = clock
        self.consecutive_failures = 0
        self.disabled_until: float | None = None
        self.tripped = False

    def allow(self) -> bool:
        if self.disabled_until is None:
            return True
        return self._clock() >= self.disabled_until

    def record_success(self) -> bool:
        """Reset the breaker. Returns True if it had tripped."""
        was_tripped = self.tripped
        self.consecutive_failures = 0
        self.disabled_until = None
        self.tripped = False
        return was_tripped

    def record_failure(self) -> bool:
        """Count a failure. Returns True only on the failure that trips the breaker."""
        self.consecutive_failures += 1
        if self.consecutive_failures < self.failure_threshold:
            return False
        self.disabled_until = self._clock() + self.disable_window
        if self.tripped:
            return False
        self.tripped = True
        return True
