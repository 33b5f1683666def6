"""
Live playback telemetry, player -> controller.

Best-effort and unbatched: each engine event produces one ``state_update``
carrying the full current snapshot. The controller applies it verbatim.
"""

import copy
import logging

from p2p.events import EventEmitter
from p2p.models import ConnectionStatus, P2PMode
from p2p.protocol import Message, MessageType

logger = logging.getLogger(__name__)

# Fields of the engine state that are mirrored on the controller
STATE_FIELDS = (
    "time",
    "duration",
    "playerState",
    "volume",
    "isMuted",
    "isInitialized",
    "audioTracks",
    "subtitleTracks",
    "videoTracks",
    "currentAudioTrack",
    "currentSubtitleTrack",
    "currentVideoTrack",
)

DEFAULT_PLAYER_STATE = {
    "time": 0,
    "duration": 0,
    "playerState": "idle",
    "volume": 100,
    "isMuted": False,
    "isInitialized": True,
    "audioTracks": [],
    "subtitleTracks": [],
    "videoTracks": [],
    "currentAudioTrack": -1,
    "currentSubtitleTrack": -1,
    "currentVideoTrack": -1,
}


class StateBroadcaster:
    """Player side: streams every engine state change to the controller."""

    def __init__(self, manager, engine) -> None:
        self._manager = manager
        self.snapshot: dict = {}
        engine.on_event(self._on_engine_event)

    async def _on_engine_event(self, event: str, data: dict) -> None:
        changed = {k: v for k, v in (data or {}).items() if k in STATE_FIELDS}
        if not changed:
            return
        self.snapshot.update(changed)
        await self.publish()

    async def publish(self) -> bool:
        """Send the current snapshot if we are a connected player."""
        if self._manager.mode != P2PMode.CLIENT or self._manager.status != ConnectionStatus.CONNECTED:
            return False
        return await self._manager.send_to_server(
            Message.build(MessageType.STATE_UPDATE, dict(self.snapshot))
        )


class PlayerStateMirror(EventEmitter):
    """Controller side: the remote player's state, last-received-wins."""

    def __init__(self) -> None:
        super().__init__()
        self.state: dict = copy.deepcopy(DEFAULT_PLAYER_STATE)

    def register(self, router) -> None:
        router.register(MessageType.STATE_UPDATE, self.handle_state_update)

    async def handle_state_update(self, connection_id: str, message: Message) -> None:
        if not isinstance(message.payload, dict):
            logger.warning(f"Ignoring non-object state_update from {connection_id}")
            return
        self.apply(message.payload)
        await self._emit("player_state", {"connection_id": connection_id, "state": self.state})

    def apply(self, payload: dict) -> None:
        self.state.update(payload)

    def reset(self) -> None:
        self.state = copy.deepcopy(DEFAULT_PLAYER_STATE)
