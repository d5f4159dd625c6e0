"""
Local request metrics.

Counts request outcomes, keeps the last 1000 response times for a rolling
average, and sums execution time. Optionally logs a snapshot on an interval.
"""

import asyncio
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional

from sandbox_sdk.logger import get_logger

logger = get_logger(__name__)

MAX_RESPONSE_SAMPLES = 1000


@dataclass(frozen=True)
class MetricsSnapshot:
    total_requests: int
    successful_requests: int
    failed_requests: int
    average_response_time: float
    total_execution_time: float
    active_sandboxes: int
    last_updated: datetime

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_updated"] = self.last_updated.isoformat()
        return data


class MetricsCollector:
    def __init__(self, max_samples: int = MAX_RESPONSE_SAMPLES):
        self._response_times: deque[float] = deque(maxlen=max_samples)
        self._reporter: Optional[asyncio.Task] = None
        self.reset()

    def reset(self) -> None:
        """Zero every counter and drop the response-time samples."""
        self._total = 0
        self._success = 0
        self._failed = 0
        self._average = 0.0
        self._execution_total = 0.0
        self._active_sandboxes = 0
        self._response_times.clear()

    def record_request(self, success: bool, duration_ms: float) -> None:
        self._total += 1
        if success:
            self._success += 1
        else:
            self._failed += 1
        self._response_times.append(duration_ms)
        self._average = sum(self._response_times) / len(self._response_times)

    def record_execution(self, duration_ms: float) -> None:
        self._execution_total += duration_ms

    def update_active_sandboxes(self, count: int) -> None:
        self._active_sandboxes = count

    @property
    def sample_count(self) -> int:
        return len(self._response_times)

    def snapshot(self) -> MetricsSnapshot:
        return MetricsSnapshot(
            total_requests=self._total,
            successful_requests=self._success,
            failed_requests=self._failed,
            average_response_time=self._average,
            total_execution_time=self._execution_total,
            active_sandboxes=self._active_sandboxes,
            last_updated=datetime.now(),
        )

    # ─── Periodic reporting ──────────────────────────────────────────

    def start_reporting(self, interval_ms: int) -> None:
        """Log a snapshot every ``interval_ms`` until ``stop_reporting``."""
        if self._reporter and not self._reporter.done():
            return
        self._reporter = asyncio.create_task(self._report_loop(interval_ms / 1000))
        logger.debug(f"Metrics reporting every {interval_ms}ms")

    async def stop_reporting(self) -> None:
        if self._reporter:
            self._reporter.cancel()
            try:
                await self._reporter
            except asyncio.CancelledError:
                pass
            self._reporter = None

    async def _report_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            logger.debug(f"[Metrics] {self.snapshot().to_dict()}")
