"""
SandboxSDK: the public client.

Usage:
    from sandbox_sdk import SandboxSDK

    async with SandboxSDK(api_key="...", server_url="ws://localhost:3000") as sdk:
        created = await sdk.create_sandbox({"templateId": "python-3-11"})
        result = await sdk.run_code(created.sandbox.id, "print('Hello!')")
        print(result.execution.logs.stdout)
"""

import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from sandbox_sdk.config import SandboxSDKConfig
from sandbox_sdk.connection.base import Transport
from sandbox_sdk.connection.manager import ConnectionManager, ConnectionState
from sandbox_sdk.connection.websocket import WebSocketTransport
from sandbox_sdk.errors import SandboxSDKError
from sandbox_sdk.execution import (
    BatchExecutionResult,
    Execution,
    ExecutionError,
    ExecutionMetadata,
    ExecutionResult,
    OutputMessage,
    Result,
)
from sandbox_sdk.jobs.correlator import JobCorrelator
from sandbox_sdk.jobs.streaming import MaybeAwaitable, StreamCallbacks, StreamingJobCorrelator
from sandbox_sdk.limits import RateLimiter
from sandbox_sdk.logger import get_logger, setup_logging
from sandbox_sdk.metrics import MetricsCollector, MetricsSnapshot
from sandbox_sdk.models import (
    BatchExecutionJob,
    CodeContext,
    CreateContextOptions,
    CreateSandboxOptions,
    FileListResponse,
    FileOperationOptions,
    SandboxConfig,
    SandboxCreationResponse,
    SandboxCredentials,
    SandboxStatus,
    SandboxStatusReply,
    SandboxTemplate,
    SocketEvent,
    TemplateConfig,
    TemplateListResponse,
)

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


@dataclass
class RunCodeOptions:
    on_stdout: Optional[Callable[[OutputMessage], MaybeAwaitable]] = None
    on_stderr: Optional[Callable[[OutputMessage], MaybeAwaitable]] = None
    on_result: Optional[Callable[[Result], MaybeAwaitable]] = None
    on_error: Optional[Callable[[ExecutionError], MaybeAwaitable]] = None
    envs: dict[str, str] | None = None
    context_id: str | None = None
    timeout_ms: int | None = None
    request_timeout_ms: int | None = None

    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks(
            on_stdout=self.on_stdout,
            on_stderr=self.on_stderr,
            on_result=self.on_result,
            on_error=self.on_error,
        )


def _coerce(model: type[M], value: M | dict[str, Any]) -> M:
    """Accept either a model instance or a plain dict of its fields."""
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise SandboxSDKError.invalid_config(
            f"Invalid {model.__name__}: {e.errors()[0].get('msg', 'invalid')}"
        ) from e


def _parse(model: type[M], output: Any) -> M:
    """Validate a server reply."""
    try:
        return model.model_validate(output)
    except ValidationError as e:
        raise SandboxSDKError.protocol(
            f"Unexpected {model.__name__} reply from server", errors=e.errors()
        ) from e


class SandboxSDK:
    """
    Client for a remote sandbox service.

    Args:
        config: A ready ``SandboxSDKConfig``. Alternatively pass its fields
            as keyword arguments.
        transport: Override the WebSocket transport (tests use a fake).
        **options: Config fields, merged over ``config`` when both are given.

    Raises:
        SandboxSDKError: INVALID_CONFIG if the options do not validate.
    """

    def __init__(
        self,
        config: SandboxSDKConfig | None = None,
        *,
        transport: Transport | None = None,
        **options: Any,
    ):
        if config is None:
            config = SandboxSDKConfig.create(**options)
        elif options:
            config = SandboxSDKConfig.create(**{**config.model_dump(), **options})
        self.config = config

        if config.enable_logging:
            setup_logging(config.log_level)

        self._transport = transport or WebSocketTransport(
            config.server_url, config.api_key, config.transport_options
        )
        self._connection = ConnectionManager(
            self._transport,
            max_retries=config.max_retries,
            retry_delay_ms=config.retry_delay_ms,
            reconnect_delay_max_ms=config.reconnect_delay_max_ms,
        )
        self._jobs = JobCorrelator(self._connection, config.timeout_ms)
        self._streams = StreamingJobCorrelator(self._connection, config.timeout_ms)
        self._metrics = MetricsCollector()
        self._rate_limiter = RateLimiter(config.rate_limit_per_minute)

        self._sandboxes: dict[str, SandboxConfig] = {}
        self._contexts: dict[str, CodeContext] = {}

    async def __aenter__(self) -> "SandboxSDK":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    # ─── Connection Management ───────────────────────────────────────

    async def connect(self) -> None:
        """Start the connection and wait for the first successful connect."""
        await self._connection.connect(self.config.connect_timeout_ms)
        if self.config.enable_metrics:
            self._metrics.start_reporting(self.config.metrics_interval_ms)

    async def wait_for_connection(self, timeout_ms: int | None = None) -> None:
        await self._connection.wait_for_connection(
            timeout_ms or self.config.connect_timeout_ms
        )

    def is_ready(self) -> bool:
        return self._connection.is_ready()

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection.state

    async def disconnect(self) -> None:
        await self._metrics.stop_reporting()
        await self._connection.close()

    # ─── Sandbox Management ──────────────────────────────────────────

    async def create_sandbox(
        self, options: CreateSandboxOptions | dict[str, Any]
    ) -> SandboxCreationResponse:
        opts = _coerce(CreateSandboxOptions, options)
        await self._ensure_connected()
        self._check_rate_limit()

        output = await self._send(
            SocketEvent.SANDBOX_CREATE, opts.model_dump(by_alias=True, exclude_none=True)
        )
        sandbox = _parse(SandboxConfig, output)
        self._sandboxes[sandbox.id] = sandbox
        self._metrics.update_active_sandboxes(len(self._sandboxes))
        logger.info(f"Created sandbox {sandbox.id} from template {sandbox.template_id}")

        return SandboxCreationResponse(
            sandbox=sandbox,
            credentials=SandboxCredentials(api_key=self.config.api_key),
        )

    async def delete_sandbox(self, sandbox_id: str) -> None:
        await self._ensure_connected()

        for context_id, context in list(self._contexts.items()):
            if context.sandbox_id == sandbox_id:
                del self._contexts[context_id]
        self._sandboxes.pop(sandbox_id, None)
        self._metrics.update_active_sandboxes(len(self._sandboxes))

        await self._send(SocketEvent.SANDBOX_DELETE, {"sandboxId": sandbox_id})
        logger.info(f"Deleted sandbox {sandbox_id}")

    async def get_sandbox_status(self, sandbox_id: str) -> SandboxStatus:
        await self._ensure_connected()
        sandbox = self._require_sandbox(sandbox_id)

        output = await self._send(SocketEvent.SANDBOX_STATUS, {"sandboxId": sandbox_id})
        status = _parse(SandboxStatusReply, output).status
        sandbox.status = status
        return status

    def list_sandboxes(self) -> list[SandboxConfig]:
        return list(self._sandboxes.values())

    # ─── Template Management ─────────────────────────────────────────

    async def get_templates(self, page: int = 1, page_size: int = 10) -> TemplateListResponse:
        await self._ensure_connected()
        output = await self._send(
            SocketEvent.TEMPLATE_LIST, {"page": page, "pageSize": page_size}
        )
        return _parse(TemplateListResponse, output)

    async def get_template(self, template_id: str) -> SandboxTemplate:
        await self._ensure_connected()
        output = await self._send(SocketEvent.TEMPLATE_GET, {"templateId": template_id})
        return _parse(SandboxTemplate, output)

    async def create_template(
        self, template: TemplateConfig | dict[str, Any]
    ) -> SandboxTemplate:
        config = _coerce(TemplateConfig, template)
        await self._ensure_connected()
        output = await self._send(
            SocketEvent.TEMPLATE_CREATE, config.model_dump(by_alias=True, exclude_none=True)
        )
        return _parse(SandboxTemplate, output)

    # ─── Code Execution ──────────────────────────────────────────────

    async def run_code(
        self,
        sandbox_id: str,
        code: str,
        options: RunCodeOptions | None = None,
    ) -> ExecutionResult:
        """
        Run code in a sandbox, streaming output through the option callbacks.

        An exception raised by the code itself does not fail this call; it
        is returned as ``result.execution.error``.
        """
        opts = options or RunCodeOptions()
        await self._ensure_connected()
        self._check_rate_limit()

        sandbox = self._require_sandbox(sandbox_id)
        if opts.context_id and opts.context_id not in self._contexts:
            raise SandboxSDKError.not_found("Context", opts.context_id)

        started = time.monotonic()
        metadata = ExecutionMetadata(
            execution_id=str(uuid.uuid4()),
            sandbox_id=sandbox_id,
            context_id=opts.context_id,
            start_time=datetime.now(),
        )
        payload: dict[str, Any] = {
            "code": code,
            "language": sandbox.template_config.language,
            "sandboxId": sandbox_id,
            "envVars": opts.envs,
        }
        if opts.context_id:
            payload["contextId"] = opts.context_id

        execution = Execution()
        try:
            async with self._track_job():
                outcome = await self._streams.send_streaming(
                    SocketEvent.EXECUTE,
                    payload,
                    timeout_ms=opts.timeout_ms,
                    callbacks=opts.callbacks(),
                    execution=execution,
                )
        finally:
            metadata.end_time = datetime.now()
            metadata.duration_ms = (time.monotonic() - started) * 1000

        metadata.exit_code = outcome.exit_code
        self._metrics.record_execution(metadata.duration_ms)
        return ExecutionResult(
            execution=outcome.execution,
            metadata=metadata,
            timestamp=time.time() * 1000,
        )

    async def run_terminal(
        self,
        sandbox_id: str,
        command: str,
        options: RunCodeOptions | None = None,
    ) -> str:
        """Run a shell command and return everything it printed."""
        opts = options or RunCodeOptions()
        await self._ensure_connected()
        self._check_rate_limit()
        self._require_sandbox(sandbox_id)

        async with self._track_job():
            result = await self._streams.send_raw(
                SocketEvent.TERMINAL,
                {"command": command, "sandboxId": sandbox_id},
                timeout_ms=opts.timeout_ms,
                on_stdout=opts.on_stdout,
            )
        if result.exit_code:
            logger.debug(f"Terminal command exited with {result.exit_code}")
        return result.output

    # ─── File Management ─────────────────────────────────────────────

    async def read_file(self, options: FileOperationOptions | dict[str, Any]) -> str:
        opts = _coerce(FileOperationOptions, options)
        await self._ensure_connected()
        self._require_sandbox(opts.sandbox_id)

        payload = {
            "op": "read",
            "sandboxId": opts.sandbox_id,
            "path": opts.path,
            "encoding": opts.encoding,
        }
        return await self._send(SocketEvent.FILE, payload)

    async def write_file(
        self, options: FileOperationOptions | dict[str, Any], content: str
    ) -> str:
        opts = _coerce(FileOperationOptions, options)
        await self._ensure_connected()
        self._require_sandbox(opts.sandbox_id)

        payload = {
            "op": "write",
            "sandboxId": opts.sandbox_id,
            "path": opts.path,
            "content": content,
            "createParents": opts.create_parents,
        }
        return await self._send(SocketEvent.FILE, payload)

    async def delete_file(self, options: FileOperationOptions | dict[str, Any]) -> None:
        opts = _coerce(FileOperationOptions, options)
        await self._ensure_connected()
        self._require_sandbox(opts.sandbox_id)

        payload = {"op": "delete", "sandboxId": opts.sandbox_id, "path": opts.path}
        await self._send(SocketEvent.FILE, payload)

    async def list_files(self, sandbox_id: str, dir_path: str = ".") -> FileListResponse:
        await self._ensure_connected()
        self._require_sandbox(sandbox_id)

        output = await self._send(
            SocketEvent.FILE_LIST, {"sandboxId": sandbox_id, "dirPath": dir_path}
        )
        return _parse(FileListResponse, output)

    # ─── Context Management ──────────────────────────────────────────

    async def create_code_context(
        self, options: CreateContextOptions | dict[str, Any]
    ) -> CodeContext:
        opts = _coerce(CreateContextOptions, options)
        await self._ensure_connected()
        sandbox = self._require_sandbox(opts.sandbox_id)

        payload = {
            "sandboxId": opts.sandbox_id,
            "language": opts.language or sandbox.template_config.language,
            "cwd": opts.cwd or "/workspace",
        }
        output = await self._send(
            SocketEvent.CONTEXT_CREATE, payload, opts.request_timeout_ms
        )
        context = _parse(CodeContext, output)
        self._contexts[context.id] = context
        return context

    async def delete_code_context(self, context_id: str) -> None:
        await self._ensure_connected()
        self._contexts.pop(context_id, None)
        await self._send(SocketEvent.CONTEXT_DELETE, {"contextId": context_id})

    def list_code_contexts(self, sandbox_id: str) -> list[CodeContext]:
        return [ctx for ctx in self._contexts.values() if ctx.sandbox_id == sandbox_id]

    # ─── Batch Operations ────────────────────────────────────────────

    async def execute_batch(
        self,
        sandbox_id: str,
        jobs: list[BatchExecutionJob | dict[str, Any]],
        options: RunCodeOptions | None = None,
    ) -> list[BatchExecutionResult]:
        """Run jobs one after another; individual failures are reported, not raised."""
        self._require_sandbox(sandbox_id)
        base = options or RunCodeOptions()
        batch = [_coerce(BatchExecutionJob, job) for job in jobs]

        results: list[BatchExecutionResult] = []
        for job in batch:
            started = time.monotonic()
            opts = RunCodeOptions(**{**base.__dict__, "timeout_ms": job.timeout})
            try:
                res = await self.run_code(sandbox_id, job.code, opts)
                results.append(
                    BatchExecutionResult(
                        job_id=job.id,
                        success=True,
                        execution=res.execution,
                        duration_ms=(time.monotonic() - started) * 1000,
                    )
                )
            except Exception as e:
                logger.warning(f"Batch job {job.id} failed: {e}")
                results.append(
                    BatchExecutionResult(
                        job_id=job.id,
                        success=False,
                        error=str(e),
                        duration_ms=(time.monotonic() - started) * 1000,
                    )
                )
        return results

    # ─── Metrics & Monitoring ────────────────────────────────────────

    def get_metrics(self) -> MetricsSnapshot:
        return self._metrics.snapshot()

    def reset_metrics(self) -> None:
        self._metrics.reset()
        self._metrics.update_active_sandboxes(len(self._sandboxes))

    # ─── Private Helpers ─────────────────────────────────────────────

    async def _ensure_connected(self) -> None:
        if self._connection.is_ready():
            return
        if not self._connection.started:
            self._connection.start()
        await self._connection.wait_for_connection(self.config.connect_timeout_ms)

    def _check_rate_limit(self) -> None:
        if not self._rate_limiter.can_admit():
            raise SandboxSDKError.rate_limited(self._rate_limiter.retry_after())
        self._rate_limiter.record()

    def _require_sandbox(self, sandbox_id: str) -> SandboxConfig:
        sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is None:
            raise SandboxSDKError.not_found("Sandbox", sandbox_id)
        return sandbox

    @asynccontextmanager
    async def _track_job(self) -> AsyncIterator[None]:
        """Count the job as in flight and record its outcome."""
        started = time.monotonic()
        self._rate_limiter.job_started()
        ok = False
        try:
            yield
            ok = True
        finally:
            self._rate_limiter.job_finished()
            self._metrics.record_request(ok, (time.monotonic() - started) * 1000)

    async def _send(
        self, event: SocketEvent, payload: Any, timeout_ms: int | None = None
    ) -> Any:
        async with self._track_job():
            return await self._jobs.send(event, payload, timeout_ms)
