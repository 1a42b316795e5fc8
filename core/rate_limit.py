import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict


class RateLimiter:
    """Sliding-window limiter keyed by client identifier (usually the remote IP)."""

    def __init__(self, max_requests: int, window_s: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max(max_requests, 1)
        self.window_s = window_s
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)

    def check(self, identifier: str) -> bool:
        now = self.clock()
        hits = self._hits[identifier]
        while hits and now - hits[0] >= self.window_s:
            hits.popleft()
        if len(hits) >= self.max_requests:
            return False
        hits.append(now)
        return True

    def retry_after(self, identifier: str) -> float:
        hits = self._hits.get(identifier)
        if not hits:
            return 0.0
        return max(0.0, self.window_s - (self.clock() - hits[0]))

    def cleanup(self):
        now = self.clock()
        stale = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self.window_s]
        for key in stale:
            del self._hits[key]

    def reset(self):
        self._hits.clear()
