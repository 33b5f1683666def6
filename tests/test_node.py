"""Tests for PeerNode wiring: auto-connect after discovery and status."""

import pytest

from conftest import FakeConnector, FakeServerFactory, settle
from discovery.models import DiscoveredController
from p2p.models import P2PMode
from p2p.node import PeerNode


class StubDiscovery:
    def __init__(self, controllers):
        self.controllers = controllers
        self.port = 8080
        self.is_scanning = False
        self.stopped = False

    async def scan(self):
        return list(self.controllers)

    def stop_scan(self):
        self.stopped = True


def controller(device_id: str, ip: str) -> DiscoveredController:
    return DiscoveredController(device_id=device_id, device_name=f"PC {device_id}", ip=ip, port=8080)


def make_node(tmp_path, controllers, auto_connect=True):
    connector = FakeConnector()
    node = PeerNode(
        tmp_path,
        discovery=StubDiscovery(controllers),
        auto_connect=auto_connect,
        server_factory=FakeServerFactory(),
        connector=connector,
    )
    return node, connector


class TestAutoConnect:
    @pytest.mark.asyncio
    async def test_connects_to_first_trusted_auto_connect_match(self, tmp_path):
        found = [
            controller("stranger", "192.168.1.2"),
            controller("pc-1", "192.168.1.3"),
            controller("pc-2", "192.168.1.4"),
            controller("pc-3", "192.168.1.5"),
        ]
        node, connector = make_node(tmp_path, found)
        node.trust_store.add_trusted_peer("pc-1", "Desktop", auto_connect=False)
        node.trust_store.add_trusted_peer("pc-2", "Laptop")
        node.trust_store.add_trusted_peer("pc-3", "Server")

        await node.scan_and_connect()

        assert connector.uris == ["ws://192.168.1.4:8080/ws"]
        assert node.manager.mode == P2PMode.CLIENT

    @pytest.mark.asyncio
    async def test_scan_refreshes_trusted_addresses(self, tmp_path):
        node, _ = make_node(tmp_path, [controller("pc-1", "192.168.1.99")], auto_connect=False)
        node.trust_store.add_trusted_peer("pc-1", "Desktop")

        await node.scan_and_connect()

        assert node.trust_store.get("pc-1").last_address.ip == "192.168.1.99"

    @pytest.mark.asyncio
    async def test_auto_connect_disabled(self, tmp_path):
        node, connector = make_node(tmp_path, [controller("pc-1", "192.168.1.3")], auto_connect=False)
        node.trust_store.add_trusted_peer("pc-1", "Desktop")

        await node.scan_and_connect()

        assert connector.uris == []

    @pytest.mark.asyncio
    async def test_controller_never_auto_connects(self, tmp_path):
        node, connector = make_node(tmp_path, [controller("pc-1", "192.168.1.3")])
        node.trust_store.add_trusted_peer("pc-1", "Desktop")
        await node.manager.set_mode(P2PMode.SERVER)

        await node.scan_and_connect()

        assert connector.uris == []
        assert node.manager.mode == P2PMode.SERVER

    @pytest.mark.asyncio
    async def test_own_listener_is_filtered_from_results(self, tmp_path):
        node, _ = make_node(tmp_path, [])
        node.discovery.controllers = [controller(node.identity.device_id, "192.168.1.50")]

        assert await node.scan_and_connect() == []


class TestWiring:
    @pytest.mark.asyncio
    async def test_player_requests_pairing_once_connected(self, tmp_path):
        node, connector = make_node(tmp_path, [])
        await node.manager.connect_to_server("192.168.1.3", 8080)

        sent = connector.connections[0].messages()
        assert [m["type"] for m in sent] == ["pair_request"]
        assert node.pairing.outgoing is not None

    @pytest.mark.asyncio
    async def test_status_and_stop(self, tmp_path):
        node, _ = make_node(tmp_path, [])
        await node.manager.set_mode(P2PMode.SERVER)

        status = node.status()
        assert status["mode"] == "server"
        assert status["serverRunning"] is True
        assert status["pendingPairing"] is None

        await node.stop()
        await settle()
        assert node.manager.mode == P2PMode.OFF
        assert node.discovery.stopped
