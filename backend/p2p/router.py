"""
Inbound message router.

Dispatches each decoded message to exactly one handler by type and
publishes every message to "last received" subscribers first, so higher
layers can observe traffic without the router knowing about them.
"""

import logging
import time

from pydantic import ValidationError

from p2p.protocol import PAIRING_TYPES, Message

logger = logging.getLogger(__name__)


class MessageRouter:
    """Routes ``(connection_id, Message)`` pairs to registered handlers."""

    def __init__(self, authorizer=None) -> None:
        # handler: async fn(connection_id, message)
        self._handlers: dict[str, object] = {}
        # subscriber: async fn(connection_id, message)
        self._subscribers: list = []
        # authorizer: fn(connection_id) -> bool, True once the session is paired
        self._authorizer = authorizer
        self.last_received: dict | None = None

    def set_authorizer(self, authorizer) -> None:
        self._authorizer = authorizer

    def register(self, msg_type, handler) -> None:
        """Register the single handler for a message type."""
        key = getattr(msg_type, "value", msg_type)
        if key in self._handlers:
            raise ValueError(f"Handler already registered for '{key}'")
        self._handlers[key] = handler

    def subscribe(self, callback) -> None:
        """Receive every inbound message regardless of type."""
        self._subscribers.append(callback)

    async def dispatch(self, connection_id: str, message: Message) -> bool:
        """
        Route one inbound message.

        Returns True if a handler ran to completion. Unknown types,
        unauthorized messages, and handler validation errors are logged
        and dropped; the session is left open.
        """
        self.last_received = {
            "connection_id": connection_id,
            "message": message,
            "timestamp": time.time(),
        }
        for cb in list(self._subscribers):
            try:
                await cb(connection_id, message)
            except Exception as e:
                logger.error(f"Message subscriber error: {e}", exc_info=True)

        if message.known_type is None:
            logger.warning(f"Dropping unknown message type '{message.type}' from {connection_id}")
            return False

        if message.known_type not in PAIRING_TYPES and self._authorizer is not None:
            if not self._authorizer(connection_id):
                logger.warning(f"Dropping '{message.type}' from unpaired connection {connection_id}")
                return False

        handler = self._handlers.get(message.type)
        if handler is None:
            logger.debug(f"No handler for '{message.type}' in this mode, dropping")
            return False

        try:
            await handler(connection_id, message)
        except ValidationError as e:
            logger.warning(f"Invalid '{message.type}' payload from {connection_id}: {e}")
            return False
        except Exception as e:
            logger.error(f"Handler for '{message.type}' failed: {e}", exc_info=True)
            return False
        return True
