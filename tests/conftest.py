"""Shared pytest fixtures: an in-memory transport and connected managers."""

import asyncio
import json
from typing import Any, Callable, Optional

import pytest
import pytest_asyncio

from sandbox_sdk.connection.base import Transport
from sandbox_sdk.connection.manager import ConnectionManager


class FakeTransport(Transport):
    """
    In-memory transport.

    ``responder`` (if set) is scheduled with ``(event, args)`` after every
    emit so tests can script server replies.
    """

    def __init__(self, fail_opens: int = 0):
        super().__init__()
        self.fail_opens = fail_opens
        self.open_calls = 0
        self.close_calls = 0
        self.emitted: list[tuple[str, tuple]] = []
        self.responder: Optional[Callable[[str, tuple], None]] = None
        self._dropped: asyncio.Event | None = None

    async def open(self) -> None:
        self.open_calls += 1
        if self.open_calls <= self.fail_opens:
            raise ConnectionError("connection refused")
        self._dropped = asyncio.Event()
        self.session_id = f"fake-{self.open_calls}"

    async def emit(self, event: str, *args: Any) -> None:
        # Round-trip through JSON like the real socket would.
        json.dumps(args)
        self.emitted.append((event, args))
        if self.responder is not None:
            asyncio.get_running_loop().call_soon(self.responder, event, args)

    async def listen(self) -> None:
        assert self._dropped is not None
        await self._dropped.wait()
        raise ConnectionError("transport dropped")

    async def close(self) -> None:
        self.close_calls += 1
        self.session_id = None

    # ─── Test helpers ────────────────────────────────────────────────

    def deliver(self, event: str, data: Any) -> None:
        self.dispatch(event, data)

    def drop(self) -> None:
        if self._dropped is not None:
            self._dropped.set()

    def job_ids(self, event: str | None = None) -> list[str]:
        return [args[0] for ev, args in self.emitted if event is None or ev == event]


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def manager(transport):
    return ConnectionManager(
        transport, max_retries=2, retry_delay_ms=1, reconnect_delay_max_ms=5
    )


@pytest_asyncio.fixture
async def connection(manager):
    """A manager that has completed its first connect."""
    await manager.connect(timeout_ms=1000)
    yield manager
    await manager.close()
