import threading
import time
from typing import Callable, Dict, List


class SlidingWindowRateLimiter:
    """In-memory per-key limiter: at most `max_requests` per `window_seconds`."""

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        window_start = now - self.window_seconds

        with self._lock:
            recent = [ts for ts in self._requests.get(key, []) if ts > window_start]
            if len(recent) >= self.max_requests:
                self._requests[key] = recent
                return False

            recent.append(now)
            self._requests[key] = recent
            return True

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()
