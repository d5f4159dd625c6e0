"""
Tests for the SandboxSDK facade against a scripted in-memory server.
"""

import asyncio
import json

import pytest
import pytest_asyncio

from sandbox_sdk import SandboxSDK
from sandbox_sdk.client import RunCodeOptions
from sandbox_sdk.connection.manager import ConnectionState
from sandbox_sdk.errors import ErrorKind, SandboxSDKError
from sandbox_sdk.models import SandboxStatus, SocketEvent

from conftest import wait_until

SANDBOX = {
    "id": "sbx-1",
    "templateId": "python",
    "templateConfig": {
        "name": "Python",
        "language": "python",
        "version": "3.11",
        "dockerImage": "python:3.11-slim",
    },
    "status": "ready",
}


class FakeServer:
    """Answers emitted jobs the way the sandbox service does."""

    def __init__(self, transport):
        self.transport = transport
        transport.responder = self.handle

    def reply(self, job_id, output=None, success=True, error=None):
        self.transport.deliver(
            SocketEvent.RESULT.value,
            {"jobId": job_id, "success": success, "output": output, "error": error},
        )

    def line(self, job_id, **fields):
        self.transport.deliver(
            SocketEvent.OUTPUT.value, {"jobId": job_id, "line": json.dumps(fields)}
        )

    def end(self, job_id, exit_code=0):
        self.transport.deliver(
            SocketEvent.STREAM_END.value, {"jobId": job_id, "exitCode": exit_code}
        )

    def handle(self, event, args):
        job_id, payload = args
        if event == "sandbox:create":
            self.reply(job_id, SANDBOX)
        elif event == "sandbox:status":
            self.reply(job_id, {"status": "running"})
        elif event in ("sandbox:delete", "context:delete"):
            self.reply(job_id, True)
        elif event == "template:list":
            self.reply(
                job_id,
                {
                    "templates": [{"id": "python", "config": SANDBOX["templateConfig"]}],
                    "total": 1,
                    "page": payload["page"],
                    "pageSize": payload["pageSize"],
                },
            )
        elif event in ("template:get", "template:create"):
            self.reply(
                job_id,
                {"id": payload.get("templateId", "custom"), "config": SANDBOX["templateConfig"]},
            )
        elif event == "job:file":
            self.reply(job_id, {"read": "print(1)\n", "write": "ok", "delete": True}[payload["op"]])
        elif event == "file:list":
            self.reply(job_id, {"files": [{"path": "main.py", "size": 9}], "directory": payload["dirPath"]})
        elif event == "context:create":
            self.reply(
                job_id,
                {
                    "id": "ctx-1",
                    "sandboxId": payload["sandboxId"],
                    "language": payload["language"],
                    "cwd": payload["cwd"],
                },
            )
        elif event == "job:execute":
            self.execute(job_id, payload["code"])
        elif event == "job:terminal":
            for text in ("hel", "lo"):
                self.transport.deliver(
                    SocketEvent.STREAM.value, {"jobId": job_id, "chunk": text}
                )
            self.end(job_id)

    def execute(self, job_id, code):
        if code == "hang":
            return
        if code == "garbage":
            self.transport.deliver(
                SocketEvent.OUTPUT.value, {"jobId": job_id, "line": "not json"}
            )
            return
        if code == "raise":
            self.line(job_id, type="error", name="ZeroDivisionError", value="division by zero")
            return
        self.line(job_id, type="stdout", text="hi")
        self.line(job_id, type="result", text="2", is_main_result=True)
        self.end(job_id)


def make_sdk(transport, **options):
    return SandboxSDK(
        api_key="test-key",
        server_url="ws://test",
        transport=transport,
        max_retries=1,
        retry_delay_ms=1,
        reconnect_delay_max_ms=5,
        **options,
    )


@pytest.fixture
def server(transport):
    return FakeServer(transport)


@pytest_asyncio.fixture
async def sdk(transport, server):
    client = make_sdk(transport)
    await client.connect()
    yield client
    await client.disconnect()


@pytest_asyncio.fixture
async def sandbox_id(sdk):
    created = await sdk.create_sandbox({"templateId": "python"})
    return created.sandbox.id


class TestConstruction:
    def test_invalid_api_key(self, transport):
        with pytest.raises(SandboxSDKError) as exc_info:
            SandboxSDK(api_key="", transport=transport)
        assert exc_info.value.kind is ErrorKind.INVALID_CONFIG

    @pytest.mark.asyncio
    async def test_context_manager_connects_and_closes(self, transport, server):
        async with make_sdk(transport) as client:
            assert client.is_ready()
            assert client.connection_state is ConnectionState.CONNECTED
        assert client.connection_state is ConnectionState.CLOSED
        assert transport.close_calls >= 1

    @pytest.mark.asyncio
    async def test_operations_connect_lazily(self, transport, server):
        client = make_sdk(transport)
        try:
            created = await client.create_sandbox({"templateId": "python"})
            assert created.sandbox.id == "sbx-1"
        finally:
            await client.disconnect()


class TestSandboxes:
    @pytest.mark.asyncio
    async def test_create_caches_and_returns_credentials(self, sdk, transport):
        created = await sdk.create_sandbox({"templateId": "python", "name": "demo"})

        assert created.sandbox.template_config.language == "python"
        assert created.credentials.api_key == "test-key"
        assert [s.id for s in sdk.list_sandboxes()] == ["sbx-1"]

        event, args = transport.emitted[0]
        assert event == "sandbox:create"
        assert args[1]["templateId"] == "python"
        assert args[1]["name"] == "demo"

        metrics = sdk.get_metrics()
        assert metrics.total_requests == 1
        assert metrics.successful_requests == 1
        assert metrics.active_sandboxes == 1

    @pytest.mark.asyncio
    async def test_create_rejects_bad_options(self, sdk, transport):
        with pytest.raises(SandboxSDKError) as exc_info:
            await sdk.create_sandbox({"name": "no template"})
        assert exc_info.value.kind is ErrorKind.INVALID_CONFIG
        assert transport.emitted == []

    @pytest.mark.asyncio
    async def test_status_updates_cache(self, sdk, sandbox_id):
        status = await sdk.get_sandbox_status(sandbox_id)
        assert status is SandboxStatus.RUNNING
        assert sdk.list_sandboxes()[0].status is SandboxStatus.RUNNING

    @pytest.mark.asyncio
    async def test_status_of_unknown_sandbox(self, sdk, transport):
        with pytest.raises(SandboxSDKError) as exc_info:
            await sdk.get_sandbox_status("nope")
        assert exc_info.value.kind is ErrorKind.NOT_FOUND
        assert transport.emitted == []

    @pytest.mark.asyncio
    async def test_delete_drops_sandbox_and_contexts(self, sdk, sandbox_id):
        await sdk.create_code_context({"sandboxId": sandbox_id})
        assert len(sdk.list_code_contexts(sandbox_id)) == 1

        await sdk.delete_sandbox(sandbox_id)

        assert sdk.list_sandboxes() == []
        assert sdk.list_code_contexts(sandbox_id) == []
        assert sdk.get_metrics().active_sandboxes == 0


class TestTemplates:
    @pytest.mark.asyncio
    async def test_get_templates_pages(self, sdk, transport):
        listing = await sdk.get_templates(page=2, page_size=5)
        assert listing.total == 1
        assert listing.page == 2
        assert listing.page_size == 5
        assert listing.templates[0].config.docker_image == "python:3.11-slim"
        assert transport.emitted[0][1][1] == {"page": 2, "pageSize": 5}

    @pytest.mark.asyncio
    async def test_get_and_create_template(self, sdk, transport):
        template = await sdk.get_template("python")
        assert template.id == "python"
        assert transport.emitted[-1][1][1] == {"templateId": "python"}

        created = await sdk.create_template(SANDBOX["templateConfig"])
        assert created.config.name == "Python"
        payload = transport.emitted[-1][1][1]
        assert payload["dockerImage"] == "python:3.11-slim"

    @pytest.mark.asyncio
    async def test_create_template_rejects_incomplete_config(self, sdk, transport):
        with pytest.raises(SandboxSDKError) as exc_info:
            await sdk.create_template({"name": "x"})
        assert exc_info.value.kind is ErrorKind.INVALID_CONFIG
        assert transport.emitted == []


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_second_request_is_rejected_without_emitting(self, transport, server):
        client = make_sdk(transport, rate_limit_per_minute=1)
        await client.connect()
        try:
            await client.create_sandbox({"templateId": "python"})

            with pytest.raises(SandboxSDKError) as exc_info:
                await client.create_sandbox({"templateId": "python"})

            assert exc_info.value.kind is ErrorKind.RATE_LIMITED
            assert 0 < exc_info.value.retry_after_ms <= 60_000
            assert len(transport.emitted) == 1
        finally:
            await client.disconnect()


class TestRunCode:
    @pytest.mark.asyncio
    async def test_streams_output_and_collects_result(self, sdk, sandbox_id, transport):
        seen = []
        result = await sdk.run_code(
            sandbox_id,
            "print('hi'); 1 + 1",
            RunCodeOptions(on_stdout=lambda msg: seen.append(msg.line), envs={"A": "1"}),
        )

        assert seen == ["hi"]
        assert result.execution.logs.stdout == ["hi"]
        assert result.execution.text == "2"
        assert result.execution.error is None
        assert result.metadata.sandbox_id == sandbox_id
        assert result.metadata.exit_code == 0
        assert result.metadata.duration_ms >= 0

        event, args = transport.emitted[-1]
        assert event == "job:execute"
        assert args[1]["language"] == "python"
        assert args[1]["envVars"] == {"A": "1"}
        assert "contextId" not in args[1]

        metrics = sdk.get_metrics()
        assert metrics.total_requests == 2
        assert metrics.total_execution_time >= 0
        assert sdk.rate_limiter.concurrent_jobs == 0

    @pytest.mark.asyncio
    async def test_code_error_is_returned_not_raised(self, sdk, sandbox_id):
        errors = []
        result = await sdk.run_code(
            sandbox_id, "raise", RunCodeOptions(on_error=errors.append)
        )
        assert result.execution.error.name == "ZeroDivisionError"
        assert errors == [result.execution.error]

    @pytest.mark.asyncio
    async def test_unknown_sandbox(self, sdk, transport):
        with pytest.raises(SandboxSDKError) as exc_info:
            await sdk.run_code("missing", "1")
        assert exc_info.value.kind is ErrorKind.NOT_FOUND
        assert exc_info.value.message == "Sandbox missing not found"
        assert transport.emitted == []

    @pytest.mark.asyncio
    async def test_unknown_context(self, sdk, sandbox_id):
        with pytest.raises(SandboxSDKError) as exc_info:
            await sdk.run_code(sandbox_id, "1", RunCodeOptions(context_id="ctx-x"))
        assert exc_info.value.kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_context_id_is_forwarded(self, sdk, sandbox_id, transport):
        context = await sdk.create_code_context({"sandboxId": sandbox_id})
        await sdk.run_code(sandbox_id, "1", RunCodeOptions(context_id=context.id))
        assert transport.emitted[-1][1][1]["contextId"] == "ctx-1"

    @pytest.mark.asyncio
    async def test_timeout(self, sdk, sandbox_id):
        with pytest.raises(SandboxSDKError) as exc_info:
            await sdk.run_code(sandbox_id, "hang", RunCodeOptions(timeout_ms=20))
        assert exc_info.value.kind is ErrorKind.TIMEOUT
        assert sdk.get_metrics().failed_requests == 1
        assert sdk.connection.listeners.count() == 0

    @pytest.mark.asyncio
    async def test_disconnect_fails_running_code(self, sdk, sandbox_id, transport):
        task = asyncio.create_task(sdk.run_code(sandbox_id, "hang"))
        await wait_until(lambda: len(sdk.connection.pending) == 1)

        transport.drop()

        with pytest.raises(SandboxSDKError) as exc_info:
            await task
        assert exc_info.value.kind is ErrorKind.CONNECTION_LOST
        assert sdk.rate_limiter.concurrent_jobs == 0


class TestTerminal:
    @pytest.mark.asyncio
    async def test_collects_chunks(self, sdk, sandbox_id, transport):
        seen = []
        output = await sdk.run_terminal(
            sandbox_id, "echo hello", RunCodeOptions(on_stdout=lambda m: seen.append(m.line))
        )
        assert output == "hello"
        assert seen == ["hel", "lo"]
        assert transport.emitted[-1][0] == "job:terminal"
        assert transport.emitted[-1][1][1] == {"command": "echo hello", "sandboxId": sandbox_id}


class TestFiles:
    @pytest.mark.asyncio
    async def test_read_write_delete(self, sdk, sandbox_id, transport):
        target = {"sandboxId": sandbox_id, "path": "main.py"}

        assert await sdk.write_file(target, "print(1)\n") == "ok"
        assert await sdk.read_file(target) == "print(1)\n"
        await sdk.delete_file(target)

        ops = [args[1]["op"] for event, args in transport.emitted if event == "job:file"]
        assert ops == ["write", "read", "delete"]
        write_payload = next(
            args[1] for event, args in transport.emitted if event == "job:file"
        )
        assert write_payload["content"] == "print(1)\n"
        assert write_payload["createParents"] is True

    @pytest.mark.asyncio
    async def test_list_files(self, sdk, sandbox_id):
        listing = await sdk.list_files(sandbox_id, "/workspace")
        assert listing.directory == "/workspace"
        assert listing.files[0].path == "main.py"
        assert listing.files[0].size == 9

    @pytest.mark.asyncio
    async def test_unknown_sandbox(self, sdk):
        with pytest.raises(SandboxSDKError) as exc_info:
            await sdk.read_file({"sandboxId": "nope", "path": "a"})
        assert exc_info.value.kind is ErrorKind.NOT_FOUND


class TestContexts:
    @pytest.mark.asyncio
    async def test_create_uses_template_language(self, sdk, sandbox_id, transport):
        context = await sdk.create_code_context({"sandboxId": sandbox_id})

        assert context.language == "python"
        assert context.cwd == "/workspace"
        assert transport.emitted[-1][1][1]["language"] == "python"

    @pytest.mark.asyncio
    async def test_delete_removes_from_cache(self, sdk, sandbox_id):
        context = await sdk.create_code_context({"sandboxId": sandbox_id, "cwd": "/tmp"})
        assert context.cwd == "/tmp"

        await sdk.delete_code_context(context.id)
        assert sdk.list_code_contexts(sandbox_id) == []


class TestBatch:
    @pytest.mark.asyncio
    async def test_failures_are_reported_per_job(self, sdk, sandbox_id):
        results = await sdk.execute_batch(
            sandbox_id,
            [
                {"id": "ok", "code": "1 + 1"},
                {"id": "bad", "code": "garbage"},
                {"id": "raises", "code": "raise"},
            ],
        )

        assert [r.job_id for r in results] == ["ok", "bad", "raises"]
        assert results[0].success and results[0].execution.text == "2"
        assert not results[1].success
        assert "Malformed output line" in results[1].error
        assert results[2].success
        assert results[2].execution.error.name == "ZeroDivisionError"

    @pytest.mark.asyncio
    async def test_unknown_sandbox(self, sdk):
        with pytest.raises(SandboxSDKError):
            await sdk.execute_batch("nope", [{"id": "a", "code": "1"}])


class TestMetrics:
    @pytest.mark.asyncio
    async def test_reset_keeps_active_sandboxes(self, sdk, sandbox_id):
        sdk.reset_metrics()
        metrics = sdk.get_metrics()
        assert metrics.total_requests == 0
        assert metrics.active_sandboxes == 1
