"""
Execution results assembled from streamed output lines.

Each line of a code run decodes to exactly one of five variants, selected by
its ``type`` field:

    result           -> Execution.results
    stdout / stderr  -> Execution.logs
    error            -> Execution.error (terminal)
    execution_count  -> Execution.execution_count

Lines with any other ``type`` are rejected.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from sandbox_sdk.errors import SandboxSDKError

# Keys that map to a named attribute on Result; everything else lands in extra.
RESULT_FORMATS = (
    "text",
    "html",
    "markdown",
    "svg",
    "png",
    "jpeg",
    "pdf",
    "latex",
    "json",
    "javascript",
    "data",
    "chart",
)
_RESERVED_KEYS = frozenset(RESULT_FORMATS) | {"type", "is_main_result"}


def now_us() -> int:
    """Current epoch time in microseconds."""
    return int(time.time() * 1_000_000)


# ─── Values ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExecutionError:
    """An exception raised by the executed code (not a failed job)."""

    name: str
    value: str
    traceback: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "value": self.value, "traceback": self.traceback}


@dataclass(frozen=True)
class OutputMessage:
    line: str
    timestamp: int
    error: bool = False


@dataclass(frozen=True)
class Result:
    """One output artifact of an execution (text, image, chart, ...)."""

    is_main_result: bool = False
    text: str | None = None
    html: str | None = None
    markdown: str | None = None
    svg: str | None = None
    png: str | None = None
    jpeg: str | None = None
    pdf: str | None = None
    latex: str | None = None
    json: str | None = None
    javascript: str | None = None
    data: dict[str, Any] | None = None
    chart: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_raw(cls, raw: dict[str, Any], is_main_result: bool = False) -> "Result":
        known = {key: raw.get(key) for key in RESULT_FORMATS}
        extra = {k: v for k, v in raw.items() if k not in _RESERVED_KEYS}
        return cls(is_main_result=is_main_result, extra=extra, raw=dict(raw), **known)

    def formats(self) -> list[str]:
        """Names of the formats present on this result."""
        present = [name for name in RESULT_FORMATS if getattr(self, name)]
        return present + list(self.extra)

    def to_dict(self) -> dict[str, Any]:
        data = {name: getattr(self, name) for name in RESULT_FORMATS}
        if self.extra:
            data["extra"] = self.extra
        return data


@dataclass
class Logs:
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)


@dataclass
class Execution:
    """Accumulated outcome of a streamed code run."""

    results: list[Result] = field(default_factory=list)
    logs: Logs = field(default_factory=Logs)
    error: ExecutionError | None = None
    execution_count: int | None = None

    @property
    def text(self) -> str | None:
        """Text of the main result, if any."""
        for result in self.results:
            if result.is_main_result:
                return result.text
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "logs": {"stdout": list(self.logs.stdout), "stderr": list(self.logs.stderr)},
            "error": self.error.to_dict() if self.error else None,
            "execution_count": self.execution_count,
        }


@dataclass
class ExecutionMetadata:
    execution_id: str
    sandbox_id: str
    start_time: datetime
    context_id: str | None = None
    end_time: datetime | None = None
    duration_ms: float | None = None
    exit_code: int | None = None


@dataclass
class ExecutionResult:
    execution: Execution
    metadata: ExecutionMetadata
    timestamp: float


@dataclass
class BatchExecutionResult:
    job_id: str
    success: bool
    duration_ms: float
    execution: Execution | None = None
    error: str | None = None


# ─── Streamed line variants ──────────────────────────────────────────


class ResultLine(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["result"]
    is_main_result: bool = False

    def to_result(self) -> Result:
        raw = self.model_dump()
        return Result.from_raw(raw, is_main_result=self.is_main_result)


class StdoutLine(BaseModel):
    type: Literal["stdout"]
    text: str


class StderrLine(BaseModel):
    type: Literal["stderr"]
    text: str


class ErrorLine(BaseModel):
    type: Literal["error"]
    name: str
    value: str
    traceback: str = ""

    def to_error(self) -> ExecutionError:
        return ExecutionError(name=self.name, value=self.value, traceback=self.traceback)


class ExecutionCountLine(BaseModel):
    type: Literal["execution_count"]
    execution_count: int


OutputLine = Annotated[
    Union[ResultLine, StdoutLine, StderrLine, ErrorLine, ExecutionCountLine],
    Field(discriminator="type"),
]

_output_line_adapter: TypeAdapter[OutputLine] = TypeAdapter(OutputLine)


def parse_output_line(line: str) -> OutputLine:
    """
    Decode one streamed output line.

    Raises:
        SandboxSDKError: PROTOCOL kind if the line is not JSON or its type
            is not one of the known variants.
    """
    try:
        return _output_line_adapter.validate_json(line)
    except ValidationError as e:
        raise SandboxSDKError.protocol(
            f"Malformed output line: {e.errors()[0].get('msg', 'invalid')}",
            line=line,
        ) from e
