"""Tests for the control API and the peer listener app."""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import FakeConnector, FakeServerFactory
from api.websocket import EventHub, encode_event
from main import create_app
from p2p.models import P2PMode, PeerAddress
from p2p.node import PeerNode
from p2p.server import create_peer_app


@pytest.fixture
def node(tmp_path) -> PeerNode:
    return PeerNode(
        tmp_path,
        server_factory=FakeServerFactory(),
        connector=FakeConnector(failures=100),
    )


@pytest.fixture
def client(tmp_path, node):
    with TestClient(create_app(tmp_path, node=node)) as client:
        yield client


class TestControlApi:
    def test_status(self, client, node):
        status = client.get("/api/status").json()
        assert status["deviceId"] == node.identity.device_id
        assert status["mode"] == "off"
        assert status["connections"] == []

    def test_switch_to_server_mode(self, client):
        status = client.put("/api/mode", json={"mode": "server"}).json()
        assert status["mode"] == "server"
        assert status["serverRunning"] is True
        assert status["role"] == "controller"

    def test_invalid_mode(self, client):
        assert client.put("/api/mode", json={"mode": "relay"}).status_code == 422

    def test_settings(self, client, node):
        assert client.put("/api/settings", json={"device_name": "Bedroom TV"}).status_code == 200
        assert node.identity.device_name == "Bedroom TV"
        assert client.put("/api/settings", json={"device_name": "  "}).status_code == 400

        client.put("/api/settings", json={"server_port": 9191})
        assert client.get("/api/settings").json()["server_port"] == 9191
        assert node.discovery.port == 9191

    def test_failed_connect(self, client):
        response = client.post("/api/connect", json={"ip": "192.168.1.5", "port": 8080})
        assert response.status_code == 502
        assert client.get("/api/status").json()["status"] == "error"

    def test_pairing_without_pending_request(self, client):
        assert client.get("/api/pairing").json() == {"pending": None, "queued": [], "outgoing": None}
        assert client.post("/api/pairing/accept", json={"remember": True}).status_code == 404
        assert client.post("/api/pairing/reject").status_code == 404
        assert client.post("/api/pairing/request").status_code == 409

    def test_trusted_peers(self, client, node):
        node.trust_store.add_trusted_peer("pc-1", "Desktop")

        peers = client.get("/api/trusted").json()["peers"]
        assert [p["deviceId"] for p in peers] == ["pc-1"]

        patched = client.patch("/api/trusted/pc-1", json={"auto_connect": False}).json()
        assert patched["autoConnect"] is False
        assert client.patch("/api/trusted/nobody", json={"auto_connect": False}).status_code == 404

        assert client.delete("/api/trusted/pc-1").status_code == 200
        assert client.delete("/api/trusted/pc-1").status_code == 404

    def test_commands_need_a_player(self, client):
        client.put("/api/mode", json={"mode": "server"})
        assert client.post("/api/commands/playback", json={"action": "pause"}).status_code == 409
        assert client.post("/api/commands/teleport", json={}).status_code == 400

    def test_player_state(self, client):
        state = client.get("/api/player/state").json()
        assert state["playerState"] == "idle"
        assert state["currentAudioTrack"] == -1

    def test_sync_routes_check_mode(self, client):
        assert client.post("/api/sync/profile").status_code == 409
        assert client.post("/api/sync/full").status_code == 409

        client.put("/api/mode", json={"mode": "server"})
        assert client.post("/api/sync/profile").json() == {"sent": 0}

    def test_profiles(self, client):
        created = client.post("/api/profiles", json={
            "username": "alice",
            "source_url": "http://prov.example/get.m3u",
            "source": "#EXTM3U\n",
        }).json()
        assert created["sourceURL"] == "http://prov.example/get.m3u"

        listing = client.get("/api/profiles").json()
        assert [p["username"] for p in listing["profiles"]] == ["alice"]
        assert listing["current"] == created

        assert client.post("/api/profiles/alice/select").json()["uuid"] == created["uuid"]
        assert client.post("/api/profiles/bob/select").status_code == 404

    def test_events_websocket(self, client):
        with client.websocket_connect("/events") as ws:
            snapshot = ws.receive_json()
            assert snapshot["event"] == "status"
            assert snapshot["data"]["mode"] == "off"

            client.put("/api/mode", json={"mode": "server"})
            events = []
            for _ in range(5):
                event = ws.receive_json()
                events.append(event["event"])
                if event["event"] == "mode_changed":
                    break

        assert events[-1] == "mode_changed"
        assert event["data"] == {"mode": "server", "previous": "off"}


class TestPeerApp:
    def test_discover_describes_controller(self, node):
        asyncio.run(node.manager.set_mode(P2PMode.SERVER))
        client = TestClient(create_peer_app(node.manager, node.identity))

        body = client.get("/api/discover").json()

        assert body == {
            "role": "controller",
            "deviceId": node.identity.device_id,
            "deviceName": node.identity.device_name,
            "port": node.manager.server_port,
            "version": "1.0.0",
        }

    def test_trusted_player_is_paired_over_websocket(self, node):
        node.trust_store.add_trusted_peer("tv-1", "Living Room TV")
        asyncio.run(node.manager.set_mode(P2PMode.SERVER))
        client = TestClient(create_peer_app(node.manager, node.identity))

        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({
                "type": "pair_request",
                "payload": {"deviceId": "tv-1", "deviceName": "Living Room TV", "pin": "1234"},
            }))
            response = ws.receive_json()

        assert response["type"] == "pair_response"
        assert response["payload"]["accepted"] is True
        assert response["payload"]["deviceId"] == node.identity.device_id

    def test_session_refused_outside_server_mode(self, node):
        client = TestClient(create_peer_app(node.manager, node.identity))

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws") as ws:
                ws.receive_text()

        assert exc_info.value.code == 1013


class FakeUiSocket:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.accepted = False
        self.frames: list[dict] = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket gone")
        self.frames.append(data)


class TestEventHub:
    def test_encode_event_serializes_models(self):
        frame = encode_event("peer", PeerAddress(ip="192.168.1.9", port=8080))
        assert frame == {"event": "peer", "data": {"ip": "192.168.1.9", "port": 8080}}
        assert encode_event("mode_changed", {"mode": P2PMode.SERVER}) == {
            "event": "mode_changed", "data": {"mode": "server"},
        }

    @pytest.mark.asyncio
    async def test_new_client_gets_status_snapshot(self):
        hub = EventHub(snapshot=lambda: {"mode": "off"})
        ws = FakeUiSocket()

        await hub.connect(ws)

        assert ws.accepted
        assert ws.frames == [{"event": "status", "data": {"mode": "off"}}]

    @pytest.mark.asyncio
    async def test_broadcast_drops_dead_clients(self):
        hub = EventHub()
        alive, dead = FakeUiSocket(), FakeUiSocket(fail=True)
        await hub.connect(alive)
        await hub.connect(dead)

        assert await hub.broadcast("scan_started") == 1
        assert await hub.broadcast("scan_finished", {"count": 0}) == 1

        assert [f["event"] for f in alive.frames] == ["scan_started", "scan_finished"]
        assert alive.frames[0]["data"] is None
