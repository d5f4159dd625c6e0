"""
Connection layer: the transport interface, the WebSocket transport, and the
manager that keeps it connected.
"""

from sandbox_sdk.connection.base import Handler, Transport
from sandbox_sdk.connection.manager import ConnectionManager, ConnectionState
from sandbox_sdk.connection.websocket import WebSocketTransport

__all__ = [
    "Handler",
    "Transport",
    "ConnectionManager",
    "ConnectionState",
    "WebSocketTransport",
]
