"""
Profile synchronizer: bootstraps a player from the controller's profile and
keeps user data converged between the two.

Controller (server mode)
    pushes ``profile_sync{profile}`` after a pairing is accepted, answers
    ``request: "full"`` with profile, playlist and user data in one message,
    and merges any ``userData`` it receives.

Player (client mode)
    selects the pushed profile, requests a full sync when it has no cached
    playlist, stores ``m3uData`` verbatim, and merges ``userData`` before
    sending the merged result back.
"""

import asyncio
import logging

from config import FULL_SYNC_TIMEOUT, MAX_RETRIES, RETRY_DELAY
from p2p.events import EventEmitter
from p2p.models import P2PMode
from p2p.protocol import Message, MessageType
from sync.merge import merge_user_data
from sync.models import ProfileSyncPayload, UserData

logger = logging.getLogger(__name__)


class ProfileSynchronizer(EventEmitter):
    """Handles ``profile_sync`` for whichever side this node is playing."""

    def __init__(
        self,
        manager,
        repository,
        timeout: float = FULL_SYNC_TIMEOUT,
        retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
    ) -> None:
        super().__init__()
        self._manager = manager
        self._repository = repository
        self._timeout = timeout
        self._retries = retries
        self._retry_delay = retry_delay

        self._full_sync_task: asyncio.Task | None = None
        self._full_sync_received: asyncio.Event | None = None

    def register(self, router) -> None:
        router.register(MessageType.PROFILE_SYNC, self.handle_profile_sync)

    @property
    def full_sync_in_progress(self) -> bool:
        return self._full_sync_task is not None and not self._full_sync_task.done()

    async def handle_profile_sync(self, connection_id: str, message: Message) -> None:
        payload = ProfileSyncPayload.model_validate(message.payload or {})
        if self._manager.mode == P2PMode.SERVER:
            await self._handle_as_server(connection_id, payload)
        elif self._manager.mode == P2PMode.CLIENT:
            await self._handle_as_client(connection_id, payload)

    # --- Controller side ---

    async def _handle_as_server(self, connection_id: str, payload: ProfileSyncPayload) -> None:
        if payload.request == "full":
            logger.info(f"Full sync requested by {connection_id}")
            await self.send_full_sync(connection_id)
        if payload.user_data is not None:
            await self.merge_remote(payload.user_data)

    async def push_profile(self, connection_id: str | None = None) -> int:
        """Announce the selected profile to one player, or every paired one."""
        profile = await self._repository.current()
        if profile is None:
            logger.warning("No active profile to push")
            return 0

        message = Message.build(MessageType.PROFILE_SYNC, ProfileSyncPayload(profile=profile))
        if connection_id is not None:
            targets = [connection_id]
        else:
            targets = [c.connection_id for c in self._manager.get_connections() if c.paired]

        sent = 0
        for target in targets:
            if await self._manager.send(target, message):
                sent += 1
        logger.info(f"Pushed profile {profile.username} to {sent} player(s)")
        return sent

    async def send_full_sync(self, connection_id: str) -> bool:
        """Reply with profile, playlist and user data in a single message."""
        profile = await self._repository.current()
        if profile is None:
            logger.warning("No active profile to sync")
            return False

        m3u = await self._repository.read_m3u(profile.uuid)
        if m3u is None:
            logger.error(f"Playlist {profile.uuid} has no cached source, cannot sync")
            return False

        payload = ProfileSyncPayload(
            profile=profile,
            m3u_data=m3u,
            user_data=await self._repository.read_user_data(profile.username),
        )
        return await self._manager.send(connection_id, Message.build(MessageType.PROFILE_SYNC, payload))

    # --- Player side ---

    async def _handle_as_client(self, connection_id: str, payload: ProfileSyncPayload) -> None:
        if payload.profile is not None:
            profile = payload.profile
            await self._repository.ensure_profile(profile)
            await self._repository.select(profile.username, profile.uuid)
            await self._emit("profile_selected", profile.to_wire())

            if payload.m3u_data is None:
                if await self._repository.has_source(profile.uuid):
                    logger.info(f"Playlist {profile.uuid} already cached, skipping download")
                    await self._emit("content_changed", {"uuid": profile.uuid})
                else:
                    self.start_full_sync()

        if payload.m3u_data is not None:
            current = await self._repository.current()
            if current is None:
                logger.warning("No active profile to store playlist data")
            else:
                await self._repository.write_m3u(current.uuid, payload.m3u_data)
                if self._full_sync_received is not None:
                    self._full_sync_received.set()
                await self._emit("content_changed", {"uuid": current.uuid})

        if payload.user_data is not None:
            merged = await self.merge_remote(payload.user_data)
            if merged is not None:
                await self._manager.send(
                    connection_id,
                    Message.build(MessageType.PROFILE_SYNC, ProfileSyncPayload(user_data=merged)),
                )

    def start_full_sync(self) -> bool:
        """Run request_full_sync in the background. False if one is already running."""
        if self.full_sync_in_progress:
            return False
        # The response arrives on the same reader loop, so never await it inline
        self._full_sync_task = asyncio.create_task(self.request_full_sync())
        return True

    async def request_full_sync(self) -> bool:
        """Ask the controller for everything, retrying with backoff."""
        request = Message.build(MessageType.PROFILE_SYNC, ProfileSyncPayload(request="full"))
        for attempt in range(self._retries + 1):
            self._full_sync_received = asyncio.Event()
            if await self._manager.send_to_server(request):
                logger.info("Requested full sync from controller")
                try:
                    await asyncio.wait_for(self._full_sync_received.wait(), self._timeout)
                    self._full_sync_received = None
                    return True
                except asyncio.TimeoutError:
                    logger.warning(f"Full sync timed out after {self._timeout}s")
            if attempt < self._retries:
                await asyncio.sleep(self._retry_delay * (2 ** attempt))

        self._full_sync_received = None
        logger.error(f"Full sync failed after {self._retries + 1} attempts")
        await self._emit("sync_failed", {"attempts": self._retries + 1})
        return False

    def reset(self) -> None:
        """Abandon any in-flight full sync (mode switch)."""
        if self._full_sync_task is not None:
            self._full_sync_task.cancel()
            self._full_sync_task = None
        self._full_sync_received = None

    # --- Both sides ---

    async def merge_remote(self, remote: UserData) -> UserData | None:
        """Merge remote user data into the active profile and persist it."""
        profile = await self._repository.current()
        if profile is None:
            logger.warning("No active profile to merge user data into")
            return None

        local = await self._repository.read_user_data(profile.username)
        merged = merge_user_data(local, remote)
        await self._repository.write_user_data(profile.username, merged)
        logger.info(f"Merged user data for {profile.username} ({len(merged.watchables)} items)")
        await self._emit("user_data_changed", {"username": profile.username})
        return merged
