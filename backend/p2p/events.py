"""Callback registry shared by the peer services."""

import logging

logger = logging.getLogger(__name__)


class EventEmitter:
    """Mixin: ``on_event(callback)`` where callback is ``async fn(event, data)``."""

    def __init__(self) -> None:
        self._event_callbacks: list = []

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in list(self._event_callbacks):
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error ({event_type}): {e}", exc_info=True)
