"""
Local admission control.

A sliding 60-second window of request timestamps plus a gauge of jobs in
flight. Nothing here talks to the server.
"""

import time
from collections import deque
from typing import Callable

WINDOW_MS = 60_000


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """
    Sliding-window limiter.

    Args:
        max_requests_per_minute: Ceiling of admitted requests per window.
        clock: Millisecond clock, injectable for tests.
    """

    def __init__(
        self,
        max_requests_per_minute: int = 60,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        self.max_requests_per_minute = max_requests_per_minute
        self._clock = clock
        self._timestamps: deque[float] = deque()
        self._concurrent_jobs = 0

    def _prune(self, now: float) -> None:
        horizon = now - WINDOW_MS
        while self._timestamps and self._timestamps[0] <= horizon:
            self._timestamps.popleft()

    def can_admit(self) -> bool:
        self._prune(self._clock())
        return len(self._timestamps) < self.max_requests_per_minute

    def record(self) -> None:
        self._timestamps.append(self._clock())

    def retry_after(self) -> float:
        """Milliseconds until the oldest request leaves the window."""
        if not self._timestamps:
            return 0.0
        elapsed = self._clock() - self._timestamps[0]
        return max(WINDOW_MS - elapsed, 0.0)

    @property
    def window_size(self) -> int:
        return len(self._timestamps)

    # ─── Concurrent jobs gauge ───────────────────────────────────────

    def job_started(self) -> int:
        self._concurrent_jobs += 1
        return self._concurrent_jobs

    def job_finished(self) -> int:
        self._concurrent_jobs = max(self._concurrent_jobs - 1, 0)
        return self._concurrent_jobs

    @property
    def concurrent_jobs(self) -> int:
        return self._concurrent_jobs
