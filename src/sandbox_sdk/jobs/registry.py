"""
Bookkeeping for in-flight jobs.

``ListenerRegistry`` tracks every handler attached to the transport so a
disconnect can detach them all at once. ``PendingJobs`` indexes the waiters
themselves by correlation id so a disconnect can also fail them; detaching a
handler alone would leave its waiter hanging.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Iterator

from sandbox_sdk.logger import get_logger

if TYPE_CHECKING:
    from sandbox_sdk.connection.base import Transport

logger = get_logger(__name__)

Handler = Callable[[Any], None]


class ListenerRegistry:
    """Tracks handlers attached to a transport, grouped by event name."""

    def __init__(self, transport: "Transport"):
        self._transport = transport
        self._listeners: dict[str, set[Handler]] = {}

    def track(self, event: str, handler: Handler) -> None:
        handlers = self._listeners.setdefault(event, set())
        if handler in handlers:
            return
        handlers.add(handler)
        self._transport.on(event, handler)

    def untrack(self, event: str, handler: Handler) -> None:
        handlers = self._listeners.get(event)
        if handlers is None or handler not in handlers:
            return
        handlers.discard(handler)
        self._transport.off(event, handler)
        if not handlers:
            del self._listeners[event]

    @contextmanager
    def listening(self, event: str, handler: Handler) -> Iterator[None]:
        """Keep ``handler`` attached for the duration of the block."""
        self.track(event, handler)
        try:
            yield
        finally:
            self.untrack(event, handler)

    def teardown_all(self) -> int:
        """Detach every tracked handler. Returns how many were removed."""
        removed = 0
        for event, handlers in self._listeners.items():
            for handler in handlers:
                self._transport.off(event, handler)
                removed += 1
        self._listeners.clear()
        if removed:
            logger.debug(f"Tore down {removed} listener(s)")
        return removed

    def count(self, event: str | None = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, ()))
        return sum(len(h) for h in self._listeners.values())

    def events(self) -> list[str]:
        return list(self._listeners)


@dataclass
class Job:
    """One submitted operation, alive until it settles."""

    job_id: str
    event: str
    payload: Any
    deadline: float
    submitted_at: float = field(default_factory=time.monotonic)


@dataclass
class _PendingEntry:
    job: Job
    abort: Callable[[BaseException], None]


class PendingJobs:
    """Correlation id -> waiter, used to fail every waiter on disconnect."""

    def __init__(self):
        self._entries: dict[str, _PendingEntry] = {}

    @contextmanager
    def track(
        self, job: Job, abort: Callable[[BaseException], None]
    ) -> Iterator[Job]:
        if job.job_id in self._entries:
            raise ValueError(f"Duplicate job id: {job.job_id}")
        self._entries[job.job_id] = _PendingEntry(job, abort)
        try:
            yield job
        finally:
            self._entries.pop(job.job_id, None)

    def fail_all(self, make_error: Callable[[], BaseException]) -> int:
        """
        Abort every pending job.

        Args:
            make_error: Builds the exception handed to each waiter.

        Returns:
            How many jobs were failed.
        """
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            entry.abort(make_error())
        if entries:
            logger.warning(f"Failed {len(entries)} pending job(s) on disconnect")
        return len(entries)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, job_id: str) -> Job | None:
        entry = self._entries.get(job_id)
        return entry.job if entry else None
