"""
Node events pushed to local UI clients over ``/events``.

Every frame is ``{"event": <name>, "data": <json>}``. A client that connects
first receives a ``status`` frame with the node's current status, then every
event the node emits from that point on.
"""

import asyncio
import logging
from typing import Any, Callable

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel

from p2p.protocol import WireModel

logger = logging.getLogger(__name__)

SEND_TIMEOUT = 2.0  # seconds before a stalled UI client is dropped


def encode_event(event: str, data: Any = None) -> dict:
    """Build the UI frame for one node event."""
    if isinstance(data, WireModel):
        data = data.to_wire()
    elif isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return {"event": event, "data": jsonable_encoder(data)}


class EventHub:
    """Fans node events out to the connected UI websockets."""

    def __init__(self, snapshot: Callable[[], dict] | None = None) -> None:
        self._clients: set[WebSocket] = set()
        self._snapshot = snapshot

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        if self._snapshot is not None:
            await websocket.send_json(encode_event("status", self._snapshot()))
        self._clients.add(websocket)
        logger.info(f"UI client connected. Total: {len(self._clients)}")

    def disconnect(self, websocket: WebSocket) -> None:
        self._clients.discard(websocket)
        logger.info(f"UI client disconnected. Total: {len(self._clients)}")

    async def broadcast(self, event: str, data: Any = None) -> int:
        """Send one event to every client. Returns how many received it."""
        if not self._clients:
            return 0
        frame = encode_event(event, data)
        clients = list(self._clients)
        results = await asyncio.gather(*(self._send(ws, frame) for ws in clients))
        for ws, delivered in zip(clients, results):
            if not delivered:
                self._clients.discard(ws)
        return sum(results)

    async def _send(self, websocket: WebSocket, frame: dict) -> bool:
        try:
            await asyncio.wait_for(websocket.send_json(frame), timeout=SEND_TIMEOUT)
            return True
        except Exception as e:
            logger.debug(f"Dropping UI client: {e}")
            return False
