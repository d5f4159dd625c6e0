"""
Error type raised by the SDK.

Every failure is a ``SandboxSDKError`` carrying an ``ErrorKind`` so callers
branch on ``err.kind`` instead of on exception subclasses:

    try:
        await sdk.run_code(sandbox_id, code)
    except SandboxSDKError as err:
        if err.kind is ErrorKind.RATE_LIMITED:
            await asyncio.sleep(err.retry_after_ms / 1000)
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Discriminant for ``SandboxSDKError``."""

    CONNECTION = "connection"
    CONNECTION_LOST = "connection_lost"
    TIMEOUT = "timeout"
    SANDBOX = "sandbox"
    RATE_LIMITED = "rate_limited"
    PROTOCOL = "protocol"
    NOT_FOUND = "not_found"
    INVALID_CONFIG = "invalid_config"


class SandboxSDKError(Exception):
    """Raised for connection, timeout, remote, rate-limit and usage failures."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        retry_after_ms: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retry_after_ms = retry_after_ms
        self.details = details or {}

    def __repr__(self) -> str:
        return f"SandboxSDKError(kind={self.kind.value!r}, message={self.message!r})"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.retry_after_ms is not None:
            data["retry_after_ms"] = self.retry_after_ms
        if self.details:
            data["details"] = self.details
        return data

    # ─── Constructors ────────────────────────────────────────────────

    @classmethod
    def connection(cls, message: str = "Socket not connected") -> "SandboxSDKError":
        return cls(ErrorKind.CONNECTION, message)

    @classmethod
    def connection_lost(
        cls, message: str = "Connection lost before the job settled"
    ) -> "SandboxSDKError":
        return cls(ErrorKind.CONNECTION_LOST, message)

    @classmethod
    def timeout(cls, message: str) -> "SandboxSDKError":
        return cls(ErrorKind.TIMEOUT, message)

    @classmethod
    def sandbox(cls, message: str) -> "SandboxSDKError":
        return cls(ErrorKind.SANDBOX, message)

    @classmethod
    def rate_limited(cls, retry_after_ms: float) -> "SandboxSDKError":
        return cls(
            ErrorKind.RATE_LIMITED,
            f"Rate limit exceeded. Retry after {retry_after_ms:.0f}ms",
            retry_after_ms=retry_after_ms,
        )

    @classmethod
    def protocol(cls, message: str, **details: Any) -> "SandboxSDKError":
        return cls(ErrorKind.PROTOCOL, message, details=details)

    @classmethod
    def not_found(cls, what: str, ident: str) -> "SandboxSDKError":
        return cls(ErrorKind.NOT_FOUND, f"{what} {ident} not found")

    @classmethod
    def invalid_config(cls, message: str) -> "SandboxSDKError":
        return cls(ErrorKind.INVALID_CONFIG, message)
