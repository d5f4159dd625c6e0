"""
Logging for the SDK, built on loguru.

The library is silent by default. ``setup_logging`` turns the
``sandbox_sdk`` namespace on and routes it to stderr at the requested level.
"""

import sys

from loguru import logger

_PACKAGE = "sandbox_sdk"
_LEVELS = {
    "debug": "DEBUG",
    "info": "INFO",
    "warn": "WARNING",
    "warning": "WARNING",
    "error": "ERROR",
}

_sink_id: int | None = None

logger.disable(_PACKAGE)


def _normalize_level(level: str) -> str:
    return _LEVELS.get(level.lower(), level.upper())


def setup_logging(level: str = "info", enabled: bool = True) -> None:
    """Enable or disable SDK log output.

    Args:
        level: One of debug, info, warn, error.
        enabled: When False the namespace is disabled and the sink removed.
    """
    global _sink_id

    if _sink_id is not None:
        logger.remove(_sink_id)
        _sink_id = None

    if not enabled:
        logger.disable(_PACKAGE)
        return

    logger.enable(_PACKAGE)
    _sink_id = logger.add(
        sys.stderr,
        level=_normalize_level(level),
        format="{time:HH:mm:ss} [{level}] {extra[name]}: {message}",
        filter=lambda record: record["name"].startswith(_PACKAGE),
    )


def get_logger(name: str):
    """Return a loguru logger bound to the given module name."""
    return logger.bind(name=name)
