"""
Fixed-window rate limiter.

Owned by the application (app.state.rate_limiter) rather than living as
module state, so each app instance and each test gets its own windows.
"""
import threading
import time
from typing import Callable, Dict, Tuple


class RateLimiter:
    """Allows `max_calls` per key within each `window_seconds` window."""

    def __init__(self, max_calls: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        """Record a call for `key` and report whether it is within the limit."""
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            if count >= self.max_calls:
                return False
            self._windows[key] = (started, count + 1)
            return True

    def retry_after(self, key: str) -> float:
        """Seconds until the current window for `key` resets."""
        with self._lock:
            window = self._windows.get(key)
        if window is None:
            return 0.0
        return max(0.0, self.window_seconds - (self._clock() - window[0]))

    def reset(self) -> None:
        """Forget every window."""
        with self._lock:
            self._windows.clear()
