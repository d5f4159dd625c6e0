"""
Request/response jobs over the shared socket.

Every job gets a fresh correlation id. The reply listener on ``job:result``
ignores frames for other ids, so any number of jobs can wait concurrently.
"""

import asyncio
import time
import uuid
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from sandbox_sdk.errors import SandboxSDKError
from sandbox_sdk.jobs.registry import Job
from sandbox_sdk.logger import get_logger
from sandbox_sdk.models import JobResultMessage, SocketEvent, event_name

if TYPE_CHECKING:
    from sandbox_sdk.connection.manager import ConnectionManager

logger = get_logger(__name__)

DEFAULT_JOB_TIMEOUT_MS = 60_000


def new_job_id() -> str:
    return str(uuid.uuid4())


def _discard(future: asyncio.Future) -> None:
    """Drop a future nobody will await, marking any stored exception as seen."""
    if not future.done():
        future.cancel()
    elif not future.cancelled():
        future.exception()


def new_job(event: str, payload: Any, timeout_ms: int) -> Job:
    return Job(
        job_id=new_job_id(),
        event=event,
        payload=payload,
        deadline=time.monotonic() + timeout_ms / 1000,
    )


class JobCorrelator:
    """Sends one event and waits for the single matching ``job:result``."""

    def __init__(
        self,
        connection: "ConnectionManager",
        default_timeout_ms: int = DEFAULT_JOB_TIMEOUT_MS,
    ):
        self._connection = connection
        self.default_timeout_ms = default_timeout_ms

    async def send(
        self, event: SocketEvent | str, payload: Any, timeout_ms: int | None = None
    ) -> Any:
        """
        Emit ``event`` and return the ``output`` of the matching reply.

        Raises:
            SandboxSDKError: CONNECTION if the socket is not ready,
                TIMEOUT if no reply arrives in time, SANDBOX if the server
                reports failure, CONNECTION_LOST on disconnect.
        """
        if not self._connection.is_ready():
            raise SandboxSDKError.connection()

        timeout_ms = timeout_ms or self.default_timeout_ms
        job = new_job(event_name(event), payload, timeout_ms)
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        def settle_error(exc: BaseException) -> None:
            if not future.done():
                future.set_exception(exc)

        def on_result(data: Any) -> None:
            if not isinstance(data, dict) or data.get("jobId") != job.job_id:
                return
            if future.done():
                return
            try:
                res = JobResultMessage.model_validate(data)
            except ValidationError:
                logger.warning(f"Malformed result for job {job.job_id}")
                error = data.get("error")
                future.set_exception(
                    SandboxSDKError.sandbox(str(error) if error else "Job failed")
                )
                return

            if res.success is True and res.output is not None:
                future.set_result(res.output)
            else:
                future.set_exception(SandboxSDKError.sandbox(res.error or "Job failed"))

        with (
            self._connection.pending.track(job, settle_error),
            self._connection.listeners.listening(SocketEvent.RESULT.value, on_result),
        ):
            logger.debug(f"Job {job.job_id} -> {job.event}")
            try:
                await self._connection.emit(job.event, job.job_id, payload)
            except SandboxSDKError:
                _discard(future)
                raise
            try:
                return await asyncio.wait_for(future, timeout=timeout_ms / 1000)
            except asyncio.TimeoutError:
                logger.debug(f"Job {job.job_id} timed out after {timeout_ms}ms")
                raise SandboxSDKError.timeout(
                    f"Job timeout after {timeout_ms}ms"
                ) from None
