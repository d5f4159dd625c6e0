"""
Unit tests for connection supervision.
"""

import asyncio

import pytest

from sandbox_sdk.connection.manager import ConnectionManager, ConnectionState
from sandbox_sdk.errors import ErrorKind, SandboxSDKError
from sandbox_sdk.jobs.registry import Job

from conftest import FakeTransport, wait_until


def make_manager(transport, **kwargs):
    kwargs.setdefault("max_retries", 2)
    kwargs.setdefault("retry_delay_ms", 1)
    kwargs.setdefault("reconnect_delay_max_ms", 5)
    return ConnectionManager(transport, **kwargs)


class TestBackoff:
    def test_doubles_and_caps(self):
        manager = ConnectionManager(
            FakeTransport(), retry_delay_ms=1000, reconnect_delay_max_ms=5000
        )
        assert [manager.backoff_ms(n) for n in (1, 2, 3, 4, 5)] == [
            1000,
            2000,
            4000,
            5000,
            5000,
        ]


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_transitions_to_connected(self, manager, transport):
        assert manager.state is ConnectionState.DISCONNECTED

        await manager.connect(timeout_ms=1000)

        assert manager.is_ready()
        assert manager.state is ConnectionState.CONNECTED
        assert transport.open_calls == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_wait_returns_immediately_when_connected(self, connection):
        await connection.wait_for_connection(timeout_ms=1)

    @pytest.mark.asyncio
    async def test_wait_times_out(self, manager):
        with pytest.raises(SandboxSDKError) as exc_info:
            await manager.wait_for_connection(timeout_ms=20)

        assert exc_info.value.kind is ErrorKind.TIMEOUT
        assert "Connection timeout after 20ms" in str(exc_info.value)
        assert not manager._waiters

    @pytest.mark.asyncio
    async def test_retries_then_connects(self):
        transport = FakeTransport(fail_opens=2)
        manager = make_manager(transport)

        await manager.connect(timeout_ms=1000)

        assert transport.open_calls == 3
        assert manager.is_ready()
        await manager.close()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        transport = FakeTransport(fail_opens=10)
        manager = make_manager(transport, max_retries=2)

        with pytest.raises(SandboxSDKError) as exc_info:
            await manager.connect(timeout_ms=1000)

        assert exc_info.value.kind is ErrorKind.CONNECTION
        assert manager.state is ConnectionState.FAILED
        assert transport.open_calls == 3

    @pytest.mark.asyncio
    async def test_wait_after_failure_fails_fast(self):
        manager = make_manager(FakeTransport(fail_opens=10), max_retries=0)
        with pytest.raises(SandboxSDKError):
            await manager.connect(timeout_ms=1000)

        with pytest.raises(SandboxSDKError) as exc_info:
            await manager.wait_for_connection(timeout_ms=1000)
        assert exc_info.value.kind is ErrorKind.CONNECTION

    @pytest.mark.asyncio
    async def test_start_after_failure_retries(self):
        transport = FakeTransport(fail_opens=1)
        manager = make_manager(transport, max_retries=0)
        with pytest.raises(SandboxSDKError):
            await manager.connect(timeout_ms=1000)

        await manager.connect(timeout_ms=1000)
        assert manager.is_ready()
        await manager.close()


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_tears_down_and_reconnects(self, connection, transport):
        connection.listeners.track("job:result", lambda _: None)
        connection.listeners.track("job:output", lambda _: None)

        transport.drop()
        await wait_until(lambda: transport.open_calls == 2 and connection.is_ready())

        assert connection.listeners.count() == 0
        assert transport.handler_count() == 0
        assert transport.close_calls >= 1

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending_jobs(self, connection, transport):
        failures = []

        job = Job(job_id="j1", event="job:file", payload={}, deadline=0)
        with connection.pending.track(job, failures.append):
            transport.drop()
            await wait_until(lambda: failures)

        assert failures[0].kind is ErrorKind.CONNECTION_LOST

    @pytest.mark.asyncio
    async def test_crashed_read_loop_is_treated_as_disconnect(self):
        class CrashingTransport(FakeTransport):
            async def listen(self):
                if self.open_calls == 1:
                    await asyncio.sleep(0.01)
                    raise UnicodeDecodeError("utf-8", b"{\x80}", 1, 2, "invalid start byte")
                await super().listen()

        transport = CrashingTransport()
        manager = make_manager(transport)
        await manager.connect(timeout_ms=1000)
        failures = []

        with manager.pending.track(Job("j1", "job:file", {}, 0), failures.append):
            await wait_until(lambda: transport.open_calls == 2 and manager.is_ready())

        assert failures[0].kind is ErrorKind.CONNECTION_LOST
        assert "read loop crashed" in failures[0].message
        assert manager.started
        await manager.close()

    @pytest.mark.asyncio
    async def test_emit_when_disconnected(self, manager):
        with pytest.raises(SandboxSDKError) as exc_info:
            await manager.emit("job:file", "id", {})
        assert exc_info.value.kind is ErrorKind.CONNECTION


class TestClose:
    @pytest.mark.asyncio
    async def test_close_is_terminal(self, manager, transport):
        await manager.connect(timeout_ms=1000)
        failures = []

        with manager.pending.track(Job("j", "e", None, 0), failures.append):
            await manager.close()

        assert manager.state is ConnectionState.CLOSED
        assert failures and failures[0].kind is ErrorKind.CONNECTION_LOST
        assert transport.close_calls == 1

        with pytest.raises(SandboxSDKError):
            manager.start()
        await manager.close()
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_close_wakes_waiters(self, manager):
        waiter = asyncio.create_task(manager.wait_for_connection(timeout_ms=5000))
        await asyncio.sleep(0)

        await manager.close()

        with pytest.raises(SandboxSDKError) as exc_info:
            await waiter
        assert exc_info.value.kind is ErrorKind.CONNECTION
