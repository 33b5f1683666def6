"""Playback command relay between controller and player."""

import logging
from typing import Any

from p2p.models import P2PMode
from p2p.protocol import COMMAND_TYPES, Message, MessageType

logger = logging.getLogger(__name__)


class CommandForwarder:
    """Player side: hands command payloads to the local engine untouched."""

    def __init__(self, manager, engine) -> None:
        self._manager = manager
        self._engine = engine

    def register(self, router) -> None:
        for msg_type in COMMAND_TYPES:
            router.register(msg_type, self.handle_command)

    async def handle_command(self, connection_id: str, message: Message) -> None:
        if self._manager.mode != P2PMode.CLIENT:
            logger.warning(f"Ignoring '{message.type}' command: not in client mode")
            return
        command = getattr(self._engine, message.type)
        await command(message.payload)


class RemotePlayer:
    """Controller side: sends engine commands to the selected player."""

    def __init__(self, manager, mirror=None) -> None:
        self._manager = manager
        self._mirror = mirror

    async def command(self, command: str | MessageType, options: Any = None) -> bool:
        msg_type = MessageType(command)
        if msg_type not in COMMAND_TYPES:
            raise ValueError(f"'{msg_type.value}' is not a playback command")

        # Optimistic seek so the controller UI does not jump back
        if (
            msg_type == MessageType.PLAYBACK
            and self._mirror is not None
            and isinstance(options, dict)
            and "time" in options
        ):
            self._mirror.state["time"] = options["time"]

        return await self._manager.send_to_player(Message.build(msg_type, options))

    async def open(self, options: Any) -> bool:
        return await self.command(MessageType.OPEN, options)

    async def playback(self, options: Any) -> bool:
        return await self.command(MessageType.PLAYBACK, options)

    async def audio(self, options: Any) -> bool:
        return await self.command(MessageType.AUDIO, options)

    async def video(self, options: Any) -> bool:
        return await self.command(MessageType.VIDEO, options)

    async def subtitle(self, options: Any) -> bool:
        return await self.command(MessageType.SUBTITLE, options)

    async def window(self, options: Any) -> bool:
        return await self.command(MessageType.WINDOW, options)

    async def shortcut(self, options: Any) -> bool:
        return await self.command(MessageType.SHORTCUT, options)
