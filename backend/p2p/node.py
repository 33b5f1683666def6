"""
PeerNode: builds every peer service for one installation and wires their
events together. Both roles live in the same node; the connection manager's
mode decides which half is active.
"""

import logging
from pathlib import Path

from config import AUTO_CONNECT, CONFIG_DIR, DATA_SUBDIR, P2P_PORT
from discovery.identity import IdentityService
from discovery.models import DiscoveredController
from discovery.service import DiscoveryService
from discovery.trust import TrustStore
from p2p.broadcaster import PlayerStateMirror, StateBroadcaster
from p2p.commands import CommandForwarder, RemotePlayer
from p2p.events import EventEmitter
from p2p.manager import ConnectionManager
from p2p.models import ConnectionStatus, P2PMode
from p2p.pairing import PairingAuthority
from p2p.router import MessageRouter
from player.engine import NullPlaybackEngine
from storage.blob import FileBlobStore
from sync.profiles import ProfileRepository
from sync.service import ProfileSynchronizer

logger = logging.getLogger(__name__)


class PeerNode(EventEmitter):
    """Composition root. Re-emits every service event through ``on_event``."""

    def __init__(
        self,
        config_dir: Path = CONFIG_DIR,
        engine=None,
        discovery: DiscoveryService | None = None,
        blob_store=None,
        port: int = P2P_PORT,
        auto_connect: bool = AUTO_CONNECT,
        server_factory=None,
        connector=None,
    ) -> None:
        super().__init__()
        config_dir = Path(config_dir)
        self.auto_connect = auto_connect

        self.identity = IdentityService(config_dir)
        self.trust_store = TrustStore(config_dir)
        self.discovery = discovery or DiscoveryService(port=port)

        self.router = MessageRouter()
        self.manager = ConnectionManager(
            self.identity,
            self.router,
            port=port,
            server_factory=server_factory,
            connector=connector,
        )
        self.router.set_authorizer(self.manager.is_paired)

        self.engine = engine or NullPlaybackEngine()
        self.pairing = PairingAuthority(
            self.manager, self.identity, self.trust_store, auto_connect=auto_connect
        )
        self.forwarder = CommandForwarder(self.manager, self.engine)
        self.broadcaster = StateBroadcaster(self.manager, self.engine)
        self.mirror = PlayerStateMirror()
        self.remote = RemotePlayer(self.manager, self.mirror)

        self.repository = ProfileRepository(blob_store or FileBlobStore(config_dir / DATA_SUBDIR))
        self.synchronizer = ProfileSynchronizer(self.manager, self.repository)

        for service in (self.pairing, self.forwarder, self.mirror, self.synchronizer):
            service.register(self.router)

        self.manager.on_event(self._on_manager_event)
        self.pairing.on_event(self._on_pairing_event)
        self.mirror.on_event(self._emit)
        self.synchronizer.on_event(self._emit)

    # --- Event wiring ---

    async def _on_manager_event(self, event: str, data: dict) -> None:
        if event == "connection_opened" and self.manager.mode == P2PMode.CLIENT:
            # Players introduce themselves as soon as the socket is up
            await self.pairing.request_pairing(data["connection_id"])
        elif event == "connection_closed":
            await self.pairing.discard_connection(data["connection_id"])
        elif event == "mode_changed":
            await self.pairing.reset()
            self.synchronizer.reset()
            self.mirror.reset()
        await self._emit(event, data)

    async def _on_pairing_event(self, event: str, data: dict) -> None:
        await self._emit(event, data)
        if event == "pairing_accepted" and self.manager.mode == P2PMode.SERVER:
            await self.synchronizer.push_profile(data["connection_id"])

    # --- Lifecycle ---

    async def start(self) -> None:
        logger.info(
            f"Peer node {self.identity.device_name} ({self.identity.device_id}) ready, "
            f"{len(self.trust_store.all())} trusted peer(s)"
        )

    async def stop(self) -> None:
        self.discovery.stop_scan()
        self.synchronizer.reset()
        await self.manager.set_mode(P2PMode.OFF)
        logger.info("Peer node stopped")

    # --- Discovery ---

    async def scan_and_connect(self) -> list[DiscoveredController]:
        """
        Scan the subnet, refresh trusted addresses and auto-connect.

        The first discovered controller that is trusted with auto-connect
        set is connected to; later matches are not considered.
        """
        found = await self.discovery.scan()
        controllers = [c for c in found if c.device_id != self.identity.device_id]

        for controller in controllers:
            self.trust_store.refresh_address(controller.device_id, controller.ip, controller.port)
        await self._emit("discovery_results", {"controllers": [c.to_wire() for c in controllers]})

        if not self.auto_connect or self.manager.mode == P2PMode.SERVER:
            return controllers
        if self.manager.mode == P2PMode.CLIENT and self.manager.status in (
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
        ):
            return controllers

        target = self.trust_store.find_auto_connect(controllers)
        if target is not None:
            logger.info(f"Auto-connecting to trusted controller {target.device_name} at {target.ip}")
            await self.manager.connect_with_retry(target.ip, target.port)
        return controllers

    # --- Introspection ---

    def status(self) -> dict:
        pending = self.pairing.pending
        return {
            "deviceId": self.identity.device_id,
            "deviceName": self.identity.device_name,
            "mode": self.manager.mode.value,
            "status": self.manager.status.value,
            "role": self.manager.role,
            "serverPort": self.manager.server_port,
            "serverRunning": self.manager.server_running,
            "selectedConnectionId": self.manager.selected_connection_id,
            "connections": [c.model_dump(mode="json") for c in self.manager.get_connections()],
            "scanning": self.discovery.is_scanning,
            "pendingPairing": pending.model_dump(mode="json") if pending else None,
            "fullSyncInProgress": self.synchronizer.full_sync_in_progress,
        }
