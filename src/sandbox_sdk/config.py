"""
SDK configuration.

Values can be passed directly or read from ``SANDBOX_*`` environment
variables (a ``.env`` file is loaded first when present).
"""

import os
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sandbox_sdk.errors import SandboxSDKError

LogLevel = Literal["debug", "info", "warn", "error"]

_ENV_FIELDS = {
    "SANDBOX_API_KEY": "api_key",
    "SANDBOX_SERVER_URL": "server_url",
    "SANDBOX_TIMEOUT_MS": "timeout_ms",
    "SANDBOX_CONNECT_TIMEOUT_MS": "connect_timeout_ms",
    "SANDBOX_MAX_RETRIES": "max_retries",
    "SANDBOX_RETRY_DELAY_MS": "retry_delay_ms",
    "SANDBOX_RECONNECT_DELAY_MAX_MS": "reconnect_delay_max_ms",
    "SANDBOX_ENABLE_LOGGING": "enable_logging",
    "SANDBOX_LOG_LEVEL": "log_level",
    "SANDBOX_ENABLE_METRICS": "enable_metrics",
    "SANDBOX_METRICS_INTERVAL_MS": "metrics_interval_ms",
    "SANDBOX_RATE_LIMIT_PER_MINUTE": "rate_limit_per_minute",
}


class SandboxSDKConfig(BaseModel):
    """Options recognised by ``SandboxSDK``."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    api_key: str
    server_url: str = "ws://localhost:3000"

    timeout_ms: int = Field(default=60_000, gt=0)
    connect_timeout_ms: int = Field(default=10_000, gt=0)

    # Reconnection policy
    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1_000, ge=0)
    reconnect_delay_max_ms: int = Field(default=5_000, ge=0)

    enable_logging: bool = False
    log_level: LogLevel = "info"

    enable_metrics: bool = False
    metrics_interval_ms: int = Field(default=30_000, gt=0)

    rate_limit_per_minute: int = Field(default=60, gt=0)

    # Extra keyword arguments for websockets.connect
    transport_options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("api_key")
    @classmethod
    def _check_api_key(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Invalid API key provided")
        return value

    @field_validator("server_url")
    @classmethod
    def _check_server_url(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Invalid server URL provided")
        return value.strip()

    @classmethod
    def create(cls, **options: Any) -> "SandboxSDKConfig":
        """Validate options, raising ``SandboxSDKError`` on bad input."""
        try:
            return cls(**options)
        except ValidationError as e:
            raise SandboxSDKError.invalid_config(_describe(e)) from e

    @classmethod
    def from_env(
        cls, env_file: str | Path | None = None, **overrides: Any
    ) -> "SandboxSDKConfig":
        """
        Build a config from the environment.

        Args:
            env_file: Optional .env path. Defaults to ``.env`` in the cwd.
            **overrides: Explicit values that win over the environment.
        """
        load_dotenv(env_file or Path.cwd() / ".env")

        options: dict[str, Any] = {}
        for env_name, field_name in _ENV_FIELDS.items():
            value = os.getenv(env_name)
            if value is not None and value != "":
                options[field_name] = value
        options.update(overrides)
        options.setdefault("api_key", "")
        return cls.create(**options)


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ()))
        msg = item.get("msg", "invalid value").removeprefix("Value error, ")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)
