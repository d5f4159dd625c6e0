"""
Pydantic models for the sandbox protocol.

Covers:
- Event names used on the shared socket
- Wire envelopes (job results, stream chunks, stream end)
- Records exchanged by the facade (sandboxes, templates, contexts, files)

The server speaks camelCase; every model accepts either spelling and
dumps camelCase with ``model_dump(by_alias=True)``.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class SocketEvent(str, Enum):
    RESULT = "job:result"
    OUTPUT = "job:output"
    STREAM = "job:stream"
    STREAM_END = "job:stream:end"
    EXECUTE = "job:execute"
    TERMINAL = "job:terminal"
    FILE = "job:file"
    FILE_LIST = "file:list"
    SANDBOX_CREATE = "sandbox:create"
    SANDBOX_DELETE = "sandbox:delete"
    SANDBOX_STATUS = "sandbox:status"
    CONTEXT_CREATE = "context:create"
    CONTEXT_DELETE = "context:delete"
    TEMPLATE_LIST = "template:list"
    TEMPLATE_GET = "template:get"
    TEMPLATE_CREATE = "template:create"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─── Wire envelopes ──────────────────────────────────────────────────


class JobResultMessage(WireModel):
    """Server → Client: reply to a unary job."""

    job_id: str
    success: bool | None = None
    output: Any = None
    error: str | None = None
    timestamp: float | None = None

    @field_validator("error", mode="before")
    @classmethod
    def _error_text(cls, value: Any) -> Any:
        if isinstance(value, dict) and isinstance(value.get("message"), str):
            return value["message"]
        if value is not None and not isinstance(value, str):
            return str(value)
        return value


class OutputChunkMessage(WireModel):
    """Server → Client: one structured output line of a code run."""

    job_id: str
    line: str


class StreamChunkMessage(WireModel):
    """Server → Client: raw text emitted by a terminal command."""

    job_id: str
    chunk: str = ""
    timestamp: float | None = None


class StreamEndMessage(WireModel):
    """Server → Client: end of a streamed job."""

    job_id: str
    exit_code: int | None = None
    timestamp: float | None = None


# ─── Templates ───────────────────────────────────────────────────────


class TemplateConfig(WireModel):
    name: str
    language: str
    version: str
    docker_image: str
    framework: str | None = None
    dependencies: list[str] = Field(default_factory=list)
    install_command: str | None = None
    start_command: str | None = None
    default_env_vars: dict[str, str] = Field(default_factory=dict)
    timeout_ms: int | None = None
    max_instances: int | None = None


class SandboxTemplate(WireModel):
    id: str
    config: TemplateConfig
    created_at: datetime | None = None
    updated_at: datetime | None = None
    is_public: bool = False
    author_id: str | None = None


class TemplateListResponse(WireModel):
    templates: list[SandboxTemplate] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 10


# ─── Sandboxes ───────────────────────────────────────────────────────


class SandboxStatus(str, Enum):
    CREATING = "creating"
    READY = "ready"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    TERMINATED = "terminated"


class SandboxConfig(WireModel):
    """Cached record of a remote sandbox."""

    id: str
    user_id: str | None = None
    template_id: str
    template_config: TemplateConfig
    status: SandboxStatus = SandboxStatus.CREATING
    container_id: str | None = None
    port: int | None = None
    exposed_url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SandboxStatusReply(WireModel):
    status: SandboxStatus


class CreateSandboxOptions(WireModel):
    template_id: str
    name: str | None = None
    expiry_time: int | None = None
    initial_env_vars: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    auto_start: bool = True


class SandboxCredentials(WireModel):
    username: str | None = None
    password: str | None = None
    api_key: str | None = None


class SandboxCreationResponse(WireModel):
    sandbox: SandboxConfig
    connection_string: str | None = None
    credentials: SandboxCredentials | None = None


# ─── Contexts ────────────────────────────────────────────────────────


class CodeContext(WireModel):
    id: str
    sandbox_id: str
    language: str
    cwd: str = "/workspace"
    created_at: datetime | None = None


class CreateContextOptions(WireModel):
    sandbox_id: str
    cwd: str | None = None
    language: str | None = None
    request_timeout_ms: int | None = None


# ─── Files ───────────────────────────────────────────────────────────


class FileOperationOptions(WireModel):
    sandbox_id: str
    path: str
    encoding: str = "utf-8"
    create_parents: bool = True


class FileInfo(WireModel):
    path: str
    is_directory: bool = False
    size: int = 0
    created_at: datetime | None = None
    modified_at: datetime | None = None


class FileListResponse(WireModel):
    files: list[FileInfo] = Field(default_factory=list)
    directory: str = "."


# ─── Batch ───────────────────────────────────────────────────────────


class BatchExecutionJob(WireModel):
    id: str
    code: str
    language: str | None = None
    timeout: int | None = None
    priority: int | None = Field(default=None, ge=1, le=10)


def event_name(event: "SocketEvent | str") -> str:
    """Wire name of an event given as enum member or plain string."""
    return event.value if isinstance(event, SocketEvent) else event
