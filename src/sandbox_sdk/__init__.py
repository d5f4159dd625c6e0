"""
sandbox-sdk
===========

Async client for a remote sandbox service: create sandboxes, run code and
terminal commands with streamed output, and manage files and contexts, all
over one shared WebSocket connection.

Usage:
    from sandbox_sdk import SandboxSDK

    async with SandboxSDK(api_key="your-api-key", server_url="ws://localhost:3000") as sdk:
        created = await sdk.create_sandbox({"templateId": "python-3-11"})
        result = await sdk.run_code(created.sandbox.id, 'print("Hello!")')
        await sdk.delete_sandbox(created.sandbox.id)
"""

from sandbox_sdk.client import RunCodeOptions, SandboxSDK
from sandbox_sdk.config import SandboxSDKConfig
from sandbox_sdk.connection import ConnectionState, Transport
from sandbox_sdk.errors import ErrorKind, SandboxSDKError
from sandbox_sdk.execution import (
    BatchExecutionResult,
    Execution,
    ExecutionError,
    ExecutionMetadata,
    ExecutionResult,
    Logs,
    OutputMessage,
    Result,
)
from sandbox_sdk.metrics import MetricsSnapshot
from sandbox_sdk.models import (
    BatchExecutionJob,
    CodeContext,
    CreateContextOptions,
    CreateSandboxOptions,
    FileInfo,
    FileListResponse,
    FileOperationOptions,
    SandboxConfig,
    SandboxCreationResponse,
    SandboxStatus,
    SandboxTemplate,
    SocketEvent,
    TemplateConfig,
    TemplateListResponse,
)

VERSION = "1.0.0"
SDK_NAME = "sandbox-sdk"

__all__ = [
    "SandboxSDK",
    "SandboxSDKConfig",
    "RunCodeOptions",
    "ConnectionState",
    "Transport",
    "ErrorKind",
    "SandboxSDKError",
    "BatchExecutionResult",
    "Execution",
    "ExecutionError",
    "ExecutionMetadata",
    "ExecutionResult",
    "Logs",
    "OutputMessage",
    "Result",
    "MetricsSnapshot",
    "BatchExecutionJob",
    "CodeContext",
    "CreateContextOptions",
    "CreateSandboxOptions",
    "FileInfo",
    "FileListResponse",
    "FileOperationOptions",
    "SandboxConfig",
    "SandboxCreationResponse",
    "SandboxStatus",
    "SandboxTemplate",
    "SocketEvent",
    "TemplateConfig",
    "TemplateListResponse",
    "VERSION",
    "SDK_NAME",
]
