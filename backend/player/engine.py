"""
Playback engine contract.

The native video engine lives outside this package. The node only needs
its command surface (one coroutine per command type, each taking an opaque
options dict) and its event stream (``mediaInfo``, ``playerInfo``,
``currentVideoState``).
"""

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

ENGINE_EVENTS = ("mediaInfo", "playerInfo", "currentVideoState")


class PlaybackEngine(Protocol):
    async def open(self, options: Any) -> None: ...
    async def playback(self, options: Any) -> None: ...
    async def audio(self, options: Any) -> None: ...
    async def video(self, options: Any) -> None: ...
    async def subtitle(self, options: Any) -> None: ...
    async def window(self, options: Any) -> None: ...
    async def shortcut(self, options: Any) -> None: ...

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_name: str, data: dict)."""
        ...


class NullPlaybackEngine:
    """Stand-in used when no native engine is attached. Logs every command."""

    def __init__(self) -> None:
        self._callbacks: list = []
        self.history: list[tuple[str, Any]] = []

    async def _record(self, command: str, options: Any) -> None:
        logger.info(f"Engine command {command}: {options}")
        self.history.append((command, options))

    async def open(self, options: Any) -> None:
        await self._record("open", options)

    async def playback(self, options: Any) -> None:
        await self._record("playback", options)

    async def audio(self, options: Any) -> None:
        await self._record("audio", options)

    async def video(self, options: Any) -> None:
        await self._record("video", options)

    async def subtitle(self, options: Any) -> None:
        await self._record("subtitle", options)

    async def window(self, options: Any) -> None:
        await self._record("window", options)

    async def shortcut(self, options: Any) -> None:
        await self._record("shortcut", options)

    def on_event(self, callback) -> None:
        self._callbacks.append(callback)

    async def emit(self, event: str, data: dict) -> None:
        """Feed an engine event (used by adapters and tests)."""
        if event not in ENGINE_EVENTS:
            raise ValueError(f"Unknown engine event '{event}'")
        for cb in list(self._callbacks):
            await cb(event, data)
