"""
Connection supervision.

The ConnectionManager owns the transport and keeps it connected:

    Disconnected -> Connecting -> Connected -> Disconnected -> ...
    Connecting   -> Failed        (reconnect attempts exhausted)
    any          -> Closed        (close() called by the caller)

On every disconnect the tracked listeners are detached and every pending
job is failed with CONNECTION_LOST.
"""

import asyncio
from enum import Enum
from typing import Any, Optional

from sandbox_sdk.connection.base import Transport
from sandbox_sdk.errors import SandboxSDKError
from sandbox_sdk.jobs.registry import ListenerRegistry, PendingJobs
from sandbox_sdk.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONNECT_TIMEOUT_MS = 10_000


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class ConnectionManager:
    """
    Supervises a transport with bounded, capped-backoff reconnection.

    Args:
        transport: The duplex channel to supervise.
        max_retries: Consecutive failed attempts allowed before giving up.
        retry_delay_ms: Base reconnect delay, doubled per failed attempt.
        reconnect_delay_max_ms: Cap for the reconnect delay.
    """

    def __init__(
        self,
        transport: Transport,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        reconnect_delay_max_ms: int = 5000,
    ):
        self.transport = transport
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.reconnect_delay_max_ms = reconnect_delay_max_ms

        self.listeners = ListenerRegistry(transport)
        self.pending = PendingJobs()

        self._state = ConnectionState.DISCONNECTED
        self._task: Optional[asyncio.Task] = None
        self._waiters: set[asyncio.Future] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_ready(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug(f"Connection state {self._state.value} -> {state.value}")
        self._state = state

        if state is ConnectionState.CONNECTED:
            for waiter in self._waiters:
                if not waiter.done():
                    waiter.set_result(None)
        elif state in (ConnectionState.FAILED, ConnectionState.CLOSED):
            for waiter in self._waiters:
                if not waiter.done():
                    waiter.set_exception(
                        SandboxSDKError.connection(f"Connection {state.value}")
                    )

    def backoff_ms(self, attempt: int) -> int:
        """Delay before reconnect attempt number ``attempt`` (1-based)."""
        delay = self.retry_delay_ms * (2 ** max(attempt - 1, 0))
        return min(delay, self.reconnect_delay_max_ms)

    # ─── Lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        """Start the supervisor task if it is not already running."""
        if self._state is ConnectionState.CLOSED:
            raise SandboxSDKError.connection("Connection has been closed")
        if self.started:
            return
        if self._state is ConnectionState.FAILED:
            self._set_state(ConnectionState.DISCONNECTED)
        self._task = asyncio.create_task(self._supervise())

    async def connect(self, timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS) -> None:
        """Start supervising and wait until the first connect succeeds."""
        self.start()
        await self.wait_for_connection(timeout_ms)

    async def wait_for_connection(
        self, timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS
    ) -> None:
        """
        Wait for the next transition to Connected.

        Raises:
            SandboxSDKError: TIMEOUT if not connected within ``timeout_ms``,
                CONNECTION if the manager failed or was closed.
        """
        if self.is_ready():
            return
        if self._state in (ConnectionState.FAILED, ConnectionState.CLOSED):
            raise SandboxSDKError.connection(f"Connection {self._state.value}")

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.add(waiter)
        try:
            await asyncio.wait_for(waiter, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise SandboxSDKError.timeout(
                f"Connection timeout after {timeout_ms}ms. "
                "Check API key and server URL."
            ) from None
        finally:
            self._waiters.discard(waiter)

    async def close(self) -> None:
        """Shut down for good: stop reconnecting and fail whatever is pending."""
        if self._state is ConnectionState.CLOSED:
            return
        self._set_state(ConnectionState.CLOSED)

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self.listeners.teardown_all()
        self.pending.fail_all(
            lambda: SandboxSDKError.connection_lost("Connection closed by client")
        )
        await self.transport.close()
        logger.info("Connection closed")

    # ─── Sending ─────────────────────────────────────────────────────

    async def emit(self, event: str, *args: Any) -> None:
        if not self.is_ready():
            raise SandboxSDKError.connection()
        try:
            await self.transport.emit(event, *args)
        except (ConnectionError, OSError) as e:
            raise SandboxSDKError.connection(f"Emit failed: {e}") from e

    # ─── Supervisor ──────────────────────────────────────────────────

    async def _supervise(self) -> None:
        failures = 0
        while True:
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self.transport.open()
            except (ConnectionError, OSError) as e:
                failures += 1
                logger.error(f"Connection Error: {e}")
                if failures > self.max_retries:
                    logger.error(
                        f"Giving up after {failures} failed connection attempt(s)"
                    )
                    self._set_state(ConnectionState.FAILED)
                    return
                delay = self.backoff_ms(failures)
                logger.warning(
                    f"Reconnecting in {delay}ms "
                    f"(attempt {failures}/{self.max_retries})"
                )
                await asyncio.sleep(delay / 1000)
                continue

            failures = 0
            self._set_state(ConnectionState.CONNECTED)
            logger.info(f"Connected: {self.transport.session_id}")

            try:
                await self.transport.listen()
                reason = "closed by server"
            except (ConnectionError, OSError) as e:
                reason = str(e)
            except Exception as e:
                logger.error(f"Read loop crashed: {e!r}")
                reason = f"read loop crashed: {e!r}"

            self._handle_disconnect(reason)
            await self.transport.close()
            await asyncio.sleep(self.retry_delay_ms / 1000)

    def _handle_disconnect(self, reason: str) -> None:
        self._set_state(ConnectionState.DISCONNECTED)
        logger.warning(f"Disconnected: {reason}")
        self.listeners.teardown_all()
        self.pending.fail_all(
            lambda: SandboxSDKError.connection_lost(f"Connection lost: {reason}")
        )
