"""Per-user request budget for aggregator reads."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Tuple

from trader_insights.core.brokers.errors import RateLimitError


class RequestRateLimiter:
    """Fixed-window counter keyed by aggregator user id."""

    def __init__(
        self,
        max_requests: int = 5,
        window: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._windows: Dict[str, Tuple[int, datetime]] = {}
        self._lock = threading.Lock()

    def _current(self, user_id: str) -> Tuple[int, datetime]:
        now = self._clock()
        count, reset_at = self._windows.get(user_id, (0, now + self.window))
        if now >= reset_at:
            count, reset_at = 0, now + self.window
        return count, reset_at

    def remaining(self, user_id: str) -> int:
        with self._lock:
            count, _ = self._current(user_id)
            return max(0, self.max_requests - count)

    def acquire(self, user_id: str) -> None:
        """Count one request, or raise RateLimitError if the window is full."""
        with self._lock:
            count, reset_at = self._current(user_id)
            if count >= self.max_requests:
                raise RateLimitError(reset_at)
            self._windows[user_id] = (count + 1, reset_at)
