"""Trust store for peers approved through operator-confirmed pairing."""

import json
import logging
import time
from pathlib import Path

from discovery.models import DiscoveredController
from p2p.models import PeerAddress
from p2p.protocol import WireModel

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class TrustedPeer(WireModel):
    """A peer the operator has paired with. Never expires."""
    device_id: str
    device_name: str
    last_address: PeerAddress | None = None
    auto_connect: bool = True
    paired_at: int = 0


class TrustStore:
    """Persists the trusted-peer list as a JSON array."""

    def __init__(self, config_dir: Path):
        self._store_path = Path(config_dir) / "trusted_peers.json"
        self._peers: dict[str, TrustedPeer] = {}
        self._load()

    def _load(self) -> None:
        if not self._store_path.exists():
            return

        try:
            data = json.loads(self._store_path.read_text())
            for peer_data in data:
                peer = TrustedPeer.model_validate(peer_data)
                self._peers[peer.device_id] = peer
            logger.info(f"Loaded {len(self._peers)} trusted peers.")
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to load trusted peers: {e}")

    def _save(self) -> None:
        try:
            self._store_path.parent.mkdir(parents=True, exist_ok=True)
            data = [peer.to_wire() for peer in self._peers.values()]
            self._store_path.write_text(json.dumps(data, indent=2))
        except OSError as e:
            logger.error(f"Failed to save trusted peers: {e}")

    def all(self) -> list[TrustedPeer]:
        return list(self._peers.values())

    def get(self, device_id: str) -> TrustedPeer | None:
        return self._peers.get(device_id)

    def add_trusted_peer(
        self,
        device_id: str,
        device_name: str,
        last_address: PeerAddress | None = None,
        auto_connect: bool | None = None,
    ) -> TrustedPeer:
        """Create or refresh the entry for a peer that was just paired."""
        existing = self._peers.get(device_id)
        if auto_connect is None:
            auto_connect = existing.auto_connect if existing else True
        peer = TrustedPeer(
            device_id=device_id,
            device_name=device_name,
            last_address=last_address or (existing.last_address if existing else None),
            auto_connect=auto_connect,
            paired_at=_now_ms(),
        )
        self._peers[device_id] = peer
        self._save()
        logger.info(f"Added trusted peer: {device_name} ({device_id})")
        return peer

    def update(self, device_id: str, **changes) -> TrustedPeer | None:
        """Apply operator edits (e.g. auto_connect, device_name)."""
        peer = self._peers.get(device_id)
        if peer is None:
            return None
        peer = peer.model_copy(update=changes)
        self._peers[device_id] = peer
        self._save()
        return peer

    def remove(self, device_id: str) -> bool:
        if self._peers.pop(device_id, None) is None:
            return False
        self._save()
        logger.info(f"Removed trusted peer {device_id}")
        return True

    def refresh_address(self, device_id: str, ip: str, port: int) -> bool:
        """Record where a trusted peer was last seen. Returns True if it changed."""
        peer = self._peers.get(device_id)
        if peer is None:
            return False
        address = PeerAddress(ip=ip, port=port)
        if peer.last_address == address:
            return False
        self._peers[device_id] = peer.model_copy(update={"last_address": address})
        self._save()
        return True

    def find_auto_connect(
        self, controllers: list[DiscoveredController]
    ) -> DiscoveredController | None:
        """First discovered controller that is trusted with auto_connect set."""
        for controller in controllers:
            peer = self._peers.get(controller.device_id)
            if peer is not None and peer.auto_connect:
                return controller
        return None
