"""
WebSocket transport.

Protocol:
    Client -> Server (on connect):
        {"type": "connect", "auth": {"apiKey": "..."}}

    Server -> Client (handshake reply):
        {"type": "connected", "sid": "..."}   or   {"type": "error", "error": "..."}

    Client -> Server (emit):
        {"event": "job:execute", "args": ["<job id>", {...payload}]}

    Server -> Client (event):
        {"event": "job:result", "data": {"jobId": "...", "success": true, ...}}
"""

import json
from typing import Any

import websockets

from sandbox_sdk.connection.base import Transport
from sandbox_sdk.logger import get_logger

logger = get_logger(__name__)


def to_ws_url(url: str) -> str:
    """Rewrite http(s) URLs to their ws(s) equivalents."""
    if url.startswith("https://"):
        return "wss://" + url[len("https://") :]
    if url.startswith("http://"):
        return "ws://" + url[len("http://") :]
    return url


class WebSocketTransport(Transport):
    """
    Args:
        url: Server URL (ws, wss, http or https).
        api_key: Credential sent in the handshake.
        connect_options: Extra keyword arguments for ``websockets.connect``.
    """

    def __init__(
        self,
        url: str,
        api_key: str,
        connect_options: dict[str, Any] | None = None,
    ):
        super().__init__()
        self.url = to_ws_url(url)
        self._api_key = api_key
        self._connect_options = connect_options or {}
        self._ws = None

    def _build_connect_message(self) -> dict[str, Any]:
        return {"type": "connect", "auth": {"apiKey": self._api_key}}

    async def open(self) -> None:
        logger.debug(f"Opening {self.url}")
        try:
            ws = await websockets.connect(self.url, **self._connect_options)
        except websockets.exceptions.WebSocketException as e:
            raise ConnectionError(str(e)) from e

        try:
            await ws.send(json.dumps(self._build_connect_message()))
            resp = json.loads(await ws.recv())
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectionError(f"Closed during handshake: {e}") from e
        except ValueError as e:
            # Covers non-JSON text and bytes that are not valid UTF-8.
            await ws.close()
            raise ConnectionError("Malformed handshake reply") from e

        if not isinstance(resp, dict) or resp.get("type") == "error":
            await ws.close()
            reason = resp.get("error") if isinstance(resp, dict) else resp
            raise ConnectionError(f"Handshake rejected: {reason}")

        self.session_id = resp.get("sid")
        self._ws = ws

    async def emit(self, event: str, *args: Any) -> None:
        if self._ws is None:
            raise ConnectionError("Socket not connected")
        try:
            await self._ws.send(json.dumps({"event": event, "args": list(args)}))
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectionError(f"Connection closed: {e}") from e

    async def listen(self) -> None:
        if self._ws is None:
            raise ConnectionError("Socket not connected")

        try:
            await self._read_loop(self._ws)
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectionError(f"Connection closed: {e}") from e

    async def _read_loop(self, ws) -> None:
        async for message in ws:
            try:
                frame = json.loads(message)
            except ValueError:
                logger.warning("Dropping non-JSON frame")
                continue

            event = frame.get("event") if isinstance(frame, dict) else None
            if not isinstance(event, str):
                logger.debug(f"Unhandled frame: {str(frame)[:200]}")
                continue

            self.dispatch(event, frame.get("data"))

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        self.session_id = None
        if ws is not None:
            await ws.close()
