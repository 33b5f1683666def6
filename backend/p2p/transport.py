"""
Session wrappers over the two websocket stacks.

Server-side sessions wrap a FastAPI/Starlette ``WebSocket``; the client-side
session wraps a ``websockets`` connection. Both expose the same small
surface to the Connection Manager, and ``close()`` is idempotent on both.
"""

import logging

from fastapi import WebSocket
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)


class ServerSession:
    """An inbound session accepted by the peer listener."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket
        self._closed = False

    async def send_text(self, text: str) -> None:
        if self._closed:
            raise ConnectionError("Session is closed")
        await self._ws.send_text(text)

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close(code=code)
        except Exception as e:
            # Peer already gone
            logger.debug(f"Ignoring close error: {e}")


class ClientSession:
    """The single outbound session opened in client mode."""

    def __init__(self, connection) -> None:
        self._conn = connection
        self._closed = False

    async def send_text(self, text: str) -> None:
        if self._closed:
            raise ConnectionError("Session is closed")
        try:
            await self._conn.send(text)
        except ConnectionClosed as e:
            raise ConnectionError(f"Session closed by peer: {e}") from e

    async def receive(self):
        """Yield inbound text frames until the connection closes."""
        async for frame in self._conn:
            yield frame

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._conn.close(code=code)
        except Exception as e:
            logger.debug(f"Ignoring close error: {e}")
