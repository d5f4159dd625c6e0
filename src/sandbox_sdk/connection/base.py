"""
Transport interface.

A transport is a duplex channel carrying named events. Handlers are plain
callables registered per event name; ``dispatch`` invokes them in
registration order and runs each to completion before the next frame is
processed.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable

from sandbox_sdk.logger import get_logger

logger = get_logger(__name__)

Handler = Callable[[Any], None]


class Transport(ABC):
    """
    Abstract base class for transports.

    Concrete transports implement ``open``, ``emit``, ``listen`` and
    ``close``; event bookkeeping lives here.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = {}
        self.session_id: str | None = None

    def on(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._handlers[event]

    def handler_count(self, event: str | None = None) -> int:
        """Number of attached handlers, for one event or overall."""
        if event is not None:
            return len(self._handlers.get(event, ()))
        return sum(len(h) for h in self._handlers.values())

    def dispatch(self, event: str, data: Any) -> None:
        """Deliver an incoming event to its handlers."""
        handlers = self._handlers.get(event)
        if not handlers:
            logger.debug(f"No handlers for event '{event}'")
            return
        for handler in list(handlers):
            handler(data)

    @abstractmethod
    async def open(self) -> None:
        """
        Open the channel and authenticate.

        Raises:
            ConnectionError: If the peer rejects the handshake.
            OSError: If the channel cannot be opened.
        """

    @abstractmethod
    async def emit(self, event: str, *args: Any) -> None:
        """Send an event with positional arguments."""

    @abstractmethod
    async def listen(self) -> None:
        """Read and dispatch incoming frames until the channel closes."""

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Safe to call more than once."""
