"""
Request/stream jobs over the shared socket.

Two flavours share one mechanism:

- structured (code runs): ``job:output`` frames ``{jobId, line}`` where each
  line decodes to a typed output record folded into an ``Execution``;
  finished by an ``error`` line or by ``job:stream:end``.
- raw (terminal commands): ``job:stream`` frames ``{jobId, chunk}``
  concatenated verbatim; finished by ``job:stream:end``.

Frames for a job are queued as they arrive and applied one at a time by the
waiting coroutine, so callbacks see them in delivery order and may be async.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ValidationError

from sandbox_sdk.errors import SandboxSDKError
from sandbox_sdk.execution import (
    ErrorLine,
    Execution,
    ExecutionCountLine,
    ExecutionError,
    OutputLine,
    OutputMessage,
    Result,
    ResultLine,
    StderrLine,
    StdoutLine,
    now_us,
    parse_output_line,
)
from sandbox_sdk.jobs.correlator import DEFAULT_JOB_TIMEOUT_MS, new_job
from sandbox_sdk.logger import get_logger
from sandbox_sdk.models import (
    OutputChunkMessage,
    SocketEvent,
    StreamChunkMessage,
    StreamEndMessage,
    event_name,
)

if TYPE_CHECKING:
    from sandbox_sdk.connection.manager import ConnectionManager

logger = get_logger(__name__)

MaybeAwaitable = Union[None, Awaitable[None]]


@dataclass
class StreamCallbacks:
    """Optional per-chunk hooks; each may be a function or a coroutine function."""

    on_stdout: Optional[Callable[[OutputMessage], MaybeAwaitable]] = None
    on_stderr: Optional[Callable[[OutputMessage], MaybeAwaitable]] = None
    on_result: Optional[Callable[[Result], MaybeAwaitable]] = None
    on_error: Optional[Callable[[ExecutionError], MaybeAwaitable]] = None


@dataclass
class StreamOutcome:
    execution: Execution
    exit_code: int | None = None
    ended_by_error: bool = False


@dataclass
class RawStreamResult:
    output: str
    exit_code: int | None = None
    chunks: list[str] = field(default_factory=list, repr=False)


async def _call(callback: Optional[Callable[[Any], MaybeAwaitable]], arg: Any) -> None:
    if callback is None:
        return
    ret = callback(arg)
    if inspect.isawaitable(ret):
        await ret


async def apply_output_line(
    execution: Execution,
    line: OutputLine,
    callbacks: StreamCallbacks | None = None,
) -> bool:
    """
    Fold one decoded line into ``execution`` and fire its callback.

    Returns:
        True if the line ends the stream (an ``error`` line).
    """
    callbacks = callbacks or StreamCallbacks()

    if isinstance(line, ResultLine):
        result = line.to_result()
        execution.results.append(result)
        await _call(callbacks.on_result, result)
    elif isinstance(line, StdoutLine):
        execution.logs.stdout.append(line.text)
        await _call(callbacks.on_stdout, OutputMessage(line.text, now_us(), error=False))
    elif isinstance(line, StderrLine):
        execution.logs.stderr.append(line.text)
        await _call(callbacks.on_stderr, OutputMessage(line.text, now_us(), error=True))
    elif isinstance(line, ErrorLine):
        execution.error = line.to_error()
        await _call(callbacks.on_error, execution.error)
        return True
    elif isinstance(line, ExecutionCountLine):
        execution.execution_count = line.execution_count
    else:
        raise SandboxSDKError.protocol(f"Unhandled output line: {type(line).__name__}")
    return False


class StreamingJobCorrelator:
    """Sends one event and consumes the stream of frames tagged with its id."""

    def __init__(
        self,
        connection: "ConnectionManager",
        default_timeout_ms: int = DEFAULT_JOB_TIMEOUT_MS,
    ):
        self._connection = connection
        self.default_timeout_ms = default_timeout_ms

    async def send_streaming(
        self,
        event: SocketEvent | str,
        payload: Any,
        timeout_ms: int | None = None,
        callbacks: StreamCallbacks | None = None,
        execution: Execution | None = None,
    ) -> StreamOutcome:
        """
        Run a structured-output job and assemble its ``Execution``.

        Raises:
            SandboxSDKError: CONNECTION, TIMEOUT, CONNECTION_LOST, PROTOCOL
                on a malformed line, or whatever a callback raised.
        """
        outcome = StreamOutcome(execution=execution or Execution())

        async def apply(chunk: OutputChunkMessage) -> bool:
            line = parse_output_line(chunk.line)
            done = await apply_output_line(outcome.execution, line, callbacks)
            outcome.ended_by_error = done
            return done

        end = await self._stream(
            event,
            payload,
            timeout_ms or self.default_timeout_ms,
            SocketEvent.OUTPUT,
            OutputChunkMessage,
            apply,
            "Code execution",
        )
        if end is not None:
            outcome.exit_code = end.exit_code
        return outcome

    async def send_raw(
        self,
        event: SocketEvent | str,
        payload: Any,
        timeout_ms: int | None = None,
        on_stdout: Optional[Callable[[OutputMessage], MaybeAwaitable]] = None,
    ) -> RawStreamResult:
        """Run a raw-text job and return the concatenated output."""
        result = RawStreamResult(output="")

        async def apply(chunk: StreamChunkMessage) -> bool:
            if chunk.chunk:
                result.chunks.append(chunk.chunk)
                timestamp = int(chunk.timestamp) if chunk.timestamp else now_us()
                await _call(on_stdout, OutputMessage(chunk.chunk, timestamp, error=False))
            return False

        end = await self._stream(
            event,
            payload,
            timeout_ms or self.default_timeout_ms,
            SocketEvent.STREAM,
            StreamChunkMessage,
            apply,
            "Terminal command",
        )
        result.output = "".join(result.chunks)
        if end is not None:
            result.exit_code = end.exit_code
        return result

    async def _stream(
        self,
        event: SocketEvent | str,
        payload: Any,
        timeout_ms: int,
        chunk_event: SocketEvent,
        chunk_model: type[BaseModel],
        apply: Callable[[Any], Awaitable[bool]],
        label: str,
    ) -> StreamEndMessage | None:
        """
        Shared wait loop.

        Returns the end envelope, or None when ``apply`` ended the stream.
        """
        if not self._connection.is_ready():
            raise SandboxSDKError.connection()

        job = new_job(event_name(event), payload, timeout_ms)
        queue: asyncio.Queue = asyncio.Queue()

        def enqueue(model: type[BaseModel]) -> Callable[[Any], None]:
            def handler(data: Any) -> None:
                if not isinstance(data, dict) or data.get("jobId") != job.job_id:
                    return
                try:
                    queue.put_nowait(model.model_validate(data))
                except ValidationError:
                    queue.put_nowait(
                        SandboxSDKError.protocol(
                            f"Malformed {model.__name__} frame", job_id=job.job_id
                        )
                    )

            return handler

        async def consume() -> StreamEndMessage | None:
            while True:
                item = await queue.get()
                if isinstance(item, BaseException):
                    raise item
                if isinstance(item, StreamEndMessage):
                    return item
                if await apply(item):
                    return None

        listeners = self._connection.listeners
        with (
            self._connection.pending.track(job, queue.put_nowait),
            listeners.listening(chunk_event.value, enqueue(chunk_model)),
            listeners.listening(SocketEvent.STREAM_END.value, enqueue(StreamEndMessage)),
        ):
            logger.debug(f"Stream job {job.job_id} -> {job.event}")
            await self._connection.emit(job.event, job.job_id, payload)
            try:
                return await asyncio.wait_for(consume(), timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                logger.debug(f"Stream job {job.job_id} timed out after {timeout_ms}ms")
                raise SandboxSDKError.timeout(
                    f"{label} timeout after {timeout_ms}ms"
                ) from None
