"""
BlindJoin Rate and Connection Limiting

Per-source sliding window over accepted messages, and a hard cap on
concurrent connections per source.

Both tables are shared across connection tasks and worker threads.
"""

from __future__ import annotations
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict

from blindjoin.constants import (
    RATE_LIMIT_MAX_CONNECTIONS,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_SEC,
)
from blindjoin.errors import ConnectionLimitError, RateLimitError


@dataclass
class SourceWindow:
    """Accepted message timestamps for a single source."""
    source: str
    timestamps: Deque[float] = field(default_factory=deque)

    def evict(self, now: float, window: float):
        """Drop timestamps that left the window."""
        while self.timestamps and self.timestamps[0] <= now - window:
            self.timestamps.popleft()

    def retry_after(self, now: float, window: float) -> int:
        """Seconds until the oldest entry leaves the window, in [1, window]."""
        remaining = self.timestamps[0] + window - now
        return max(1, min(int(window), math.ceil(remaining)))


class SlidingWindowRateLimiter:
    """
    Sliding window limiter keyed by source address.

    Thread-safe for concurrent access.
    """

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_sec: float = RATE_LIMIT_WINDOW_SEC,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_requests = max_requests
        self.window_sec = window_sec
        self._clock = clock
        self._windows: Dict[str, SourceWindow] = {}
        self._lock = threading.Lock()

    def check(self, source: str) -> None:
        """
        Record one message from source.

        Raises:
            RateLimitError: window full; nothing is recorded
        """
        now = self._clock()
        with self._lock:
            window = self._windows.get(source)
            if window is None:
                window = self._windows[source] = SourceWindow(source=source)

            window.evict(now, self.window_sec)

            if len(window.timestamps) >= self.max_requests:
                raise RateLimitError(window.retry_after(now, self.window_sec))

            window.timestamps.append(now)

    def remaining(self, source: str) -> int:
        """Messages still allowed in the current window."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(source)
            if window is None:
                return self.max_requests
            window.evict(now, self.window_sec)
            return max(0, self.max_requests - len(window.timestamps))

    def prune(self) -> int:
        """Forget sources with no recent messages. Returns number removed."""
        now = self._clock()
        with self._lock:
            idle = []
            for source, window in self._windows.items():
                window.evict(now, self.window_sec)
                if not window.timestamps:
                    idle.append(source)
            for source in idle:
                del self._windows[source]
            return len(idle)

    def clear(self):
        """Clear all tracked state."""
        with self._lock:
            self._windows.clear()

    def get_stats(self) -> dict:
        """Get limiter statistics."""
        with self._lock:
            return {
                "tracked_sources": len(self._windows),
                "window_sec": self.window_sec,
                "max_requests": self.max_requests,
                "recent_messages": sum(len(w.timestamps) for w in self._windows.values()),
            }


class ConnectionLimiter:
    """
    Concurrent connection counter keyed by source address.

    try_acquire is an atomic check-and-increment.
    """

    def __init__(self, max_connections: int = RATE_LIMIT_MAX_CONNECTIONS):
        self.max_connections = max_connections
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._refused = 0

    def try_acquire(self, source: str) -> bool:
        """Take a connection slot. False when source is at its cap."""
        with self._lock:
            count = self._counts.get(source, 0)
            if count >= self.max_connections:
                self._refused += 1
                return False
            self._counts[source] = count + 1
            return True

    def acquire(self, source: str) -> None:
        """
        Raises:
            ConnectionLimitError: source is at its cap
        """
        if not self.try_acquire(source):
            raise ConnectionLimitError(source, self.max_connections)

    def release(self, source: str):
        """Give back a slot taken by acquire."""
        with self._lock:
            count = self._counts.get(source, 0)
            if count <= 1:
                self._counts.pop(source, None)
            else:
                self._counts[source] = count - 1

    def count(self, source: str) -> int:
        with self._lock:
            return self._counts.get(source, 0)

    def clear(self):
        """Clear all tracked state."""
        with self._lock:
            self._counts.clear()
            self._refused = 0

    def get_stats(self) -> dict:
        """Get limiter statistics."""
        with self._lock:
            return {
                "sources": len(self._counts),
                "open_connections": sum(self._counts.values()),
                "max_per_source": self.max_connections,
                "refused": self._refused,
            }
